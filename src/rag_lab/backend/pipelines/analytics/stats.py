# src/rag_lab/backend/pipelines/analytics/stats.py

"""
[职责] analytics 统计：描述统计/分位数、Spearman/Pearson 相关、离群检测（z-score 与 IQR）、异常标记与调优建议。
[边界] 纯函数；只读 PipelineMetadata；空样本返回零值分布或 None，不抛异常。
[上游关系] pipeline 构造 StageStats 时调用 describe；MetadataTracker 生成报告时调用 build_report。
[下游关系] AnalyticsReport（/retrieval/analytics）与 tracker 日志中的 anomaly 事件。
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional, Sequence

from rag_lab.backend.schemas.analytics import (
    AnalyticsReport,
    Anomaly,
    PipelineMetadata,
    ScoreDistribution,
    StageStats,
)
from rag_lab.backend.utils.constants import (
    LATENCY_SPIKE_MIN_SAMPLES,
    OUTLIER_Z_THRESHOLD,
    QUALITY_FLOOR,
)


PERCENTILES = (10, 25, 50, 75, 90, 95, 99)  # docstring: 报告输出的分位点

IMPROVEMENT_FLOOR = 0.1  # docstring: 平均分数提升低于此值建议调整重排
LATENCY_CEILING_MS = 5000.0  # docstring: 平均总延迟高于此值建议降低 limit
THROUGHPUT_FLOOR = 1.0  # docstring: docs/s
EFFICIENCY_FLOOR = 0.001  # docstring: 分数提升 / 延迟(ms)
STAGE1_SCORE_FLOOR = 0.5

RECOMMEND_RERANKING = "Consider adjusting re-ranking model or initial retrieval parameters"
RECOMMEND_LATENCY = "Pipeline latency is high - consider reducing initial limit or using faster models"
RECOMMEND_THROUGHPUT = "Low throughput detected - consider optimizing document processing"
RECOMMEND_EFFICIENCY = "Low efficiency ratio - review pipeline configuration for better score improvements"
RECOMMEND_STAGE1 = "Initial retrieval scores are low - consider improving query preprocessing or document quality"
RECOMMEND_OPTIMAL = "Pipeline performance looks optimal"


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _std(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation between closest ranks; `sorted_values` must be ascending."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    if n == 1:
        return float(sorted_values[0])
    pos = (max(0.0, min(100.0, float(p))) / 100.0) * (n - 1)
    lo = int(math.floor(pos))
    hi = min(lo + 1, n - 1)
    frac = pos - lo
    return float(sorted_values[lo]) + (float(sorted_values[hi]) - float(sorted_values[lo])) * frac


def describe(values: Sequence[float]) -> ScoreDistribution:
    vals = sorted(float(v) for v in values)
    if not vals:
        return ScoreDistribution()
    return ScoreDistribution(
        count=len(vals),
        mean=_mean(vals),
        median=percentile(vals, 50),
        std=_std(vals),
        min=vals[0],
        max=vals[-1],
        percentiles={f"p{p}": percentile(vals, p) for p in PERCENTILES},
    )


def pearson(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    if len(xs) != len(ys) or len(xs) < 2:
        return None
    mx, my = _mean(xs), _mean(ys)
    cov = sum((x - mx) * (y - my) for x, y in zip(xs, ys))
    vx = sum((x - mx) ** 2 for x in xs)
    vy = sum((y - my) ** 2 for y in ys)
    if vx <= 0 or vy <= 0:
        return None
    return cov / math.sqrt(vx * vy)


def average_ranks(values: Sequence[float]) -> List[float]:
    """1-based ranks, ties share the mean of their positions."""
    order = sorted(range(len(values)), key=lambda i: values[i])
    ranks = [0.0] * len(values)
    i = 0
    while i < len(order):
        j = i
        while j + 1 < len(order) and values[order[j + 1]] == values[order[i]]:
            j += 1
        shared = (i + j) / 2.0 + 1.0
        for k in range(i, j + 1):
            ranks[order[k]] = shared
        i = j + 1
    return ranks


def spearman(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    """
    [职责] Spearman 秩相关 = 平均秩上的 Pearson 相关（正确处理并列）。
    [边界] 长度不等、样本 < 2 或任一侧无方差时返回 None。
    """
    if len(xs) != len(ys) or len(xs) < 2:
        return None
    return pearson(average_ranks(xs), average_ranks(ys))


def z_outliers(values: Sequence[float], *, threshold: float = OUTLIER_Z_THRESHOLD) -> List[int]:
    std = _std(values)
    if std <= 0:
        return []
    m = _mean(values)
    return [i for i, v in enumerate(values) if abs(v - m) / std > threshold]


def iqr_outliers(values: Sequence[float], *, k: float = 1.5) -> List[int]:
    if len(values) < 4:
        return []
    s = sorted(values)
    q1, q3 = percentile(s, 25), percentile(s, 75)
    iqr = q3 - q1
    lo, hi = q1 - k * iqr, q3 + k * iqr
    return [i for i, v in enumerate(values) if v < lo or v > hi]


def count_outliers(values: Sequence[float]) -> int:
    """Union of z-score and IQR outliers."""
    return len(set(z_outliers(values)) | set(iqr_outliers(values)))


def final_stage(record: PipelineMetadata) -> Optional[StageStats]:
    """The stage whose scores ranked the returned results."""
    s2 = record.stage("stage2")
    if s2 is not None and not s2.skipped:
        return s2
    return record.stage("diversify") or record.stage("stage1")


def detect_anomalies(record: PipelineMetadata, history: Sequence[PipelineMetadata]) -> List[Anomaly]:
    """
    [职责] 对单条执行记录做异常标记：分数离群、延迟尖刺（相对滚动均值）、质量退化。
    [边界] history 不包含 record 本身；历史不足 LATENCY_SPIKE_MIN_SAMPLES 时不判定延迟尖刺。
    """
    out: List[Anomaly] = []
    eid = str(record.execution_id)

    if record.quality.outlier_count > 0:
        out.append(
            Anomaly(
                kind="score_outlier",
                execution_id=eid,
                message=f"{record.quality.outlier_count} final scores deviate strongly from the result set",
                value=float(record.quality.outlier_count),
            )
        )

    latencies = [h.total_latency_ms for h in history]
    if len(latencies) >= LATENCY_SPIKE_MIN_SAMPLES:
        m, s = _mean(latencies), _std(latencies)
        limit = m + OUTLIER_Z_THRESHOLD * s if s > 0 else m * 2.0
        if record.total_latency_ms > limit and limit > 0:
            out.append(
                Anomaly(
                    kind="latency_spike",
                    execution_id=eid,
                    message=f"total latency {record.total_latency_ms:.1f}ms exceeds rolling mean {m:.1f}ms",
                    value=record.total_latency_ms,
                )
            )

    if record.stage2_enabled:
        s2 = record.stage("stage2")
        if s2 is not None and s2.scores.count > 0 and s2.scores.mean < QUALITY_FLOOR:
            out.append(
                Anomaly(
                    kind="quality_degradation",
                    execution_id=eid,
                    message=f"mean final confidence {s2.scores.mean:.3f} below {QUALITY_FLOOR}",
                    value=s2.scores.mean,
                )
            )
    return out


def recommendations(records: Sequence[PipelineMetadata]) -> List[str]:
    """
    [职责] 基于窗口内平均指标生成调优建议（文本列表）。
    [边界] 空窗口返回空列表；全部指标正常时返回单条 "optimal"。
    """
    if not records:
        return []
    out: List[str] = []

    improvements = [r.quality.mean_score_improvement for r in records if r.quality.mean_score_improvement is not None]
    latencies = [r.total_latency_ms for r in records]
    mean_latency = _mean(latencies)
    docs = [float((r.stage("stage1") or StageStats(stage="stage1")).docs_out) for r in records]
    throughput = sum(docs) / (sum(latencies) / 1000.0) if sum(latencies) > 0 else float("inf")
    stage1_means = [s.scores.mean for s in (r.stage("stage1") for r in records) if s is not None and s.scores.count]

    if improvements and _mean(improvements) < IMPROVEMENT_FLOOR:
        out.append(RECOMMEND_RERANKING)
    if mean_latency > LATENCY_CEILING_MS:
        out.append(RECOMMEND_LATENCY)
    if throughput < THROUGHPUT_FLOOR:
        out.append(RECOMMEND_THROUGHPUT)
    if improvements and mean_latency > 0 and _mean(improvements) / mean_latency < EFFICIENCY_FLOOR:
        out.append(RECOMMEND_EFFICIENCY)
    if stage1_means and _mean(stage1_means) < STAGE1_SCORE_FLOOR:
        out.append(RECOMMEND_STAGE1)
    if not out:
        out.append(RECOMMEND_OPTIMAL)
    return out


def build_report(records: Sequence[PipelineMetadata]) -> AnalyticsReport:
    """
    [职责] 汇总最近执行窗口：每 stage 分数均值与延迟分布、平均秩相关、降级比例、逐条异常与建议。
    [边界] 逐条异常以该条之前的记录作为滚动历史。
    [上游关系] MetadataTracker.report()。
    [下游关系] GET /retrieval/analytics。
    """
    if not records:
        return AnalyticsReport()

    stage_scores: Dict[str, List[float]] = {}
    stage_latency: Dict[str, List[float]] = {}
    for r in records:
        for s in r.stages:
            if s.skipped:
                continue
            if s.scores.count:
                stage_scores.setdefault(s.stage, []).append(s.scores.mean)
            stage_latency.setdefault(s.stage, []).append(s.latency_ms)
        stage_latency.setdefault("total", []).append(r.total_latency_ms)

    correlations = [r.quality.rank_correlation for r in records if r.quality.rank_correlation is not None]
    anomalies: List[Anomaly] = []
    for i, r in enumerate(records):
        anomalies.extend(detect_anomalies(r, records[:i]))

    return AnalyticsReport(
        sample_size=len(records),
        score_distributions={k: describe(v) for k, v in stage_scores.items()},
        latency_distributions={k: describe(v) for k, v in stage_latency.items()},
        mean_rank_correlation=_mean(correlations) if correlations else None,
        degraded_ratio=sum(1 for r in records if r.degraded) / len(records),
        anomalies=anomalies,
        recommendations=recommendations(records),
    )
