# src/rag_lab/backend/pipelines/retrieval/fusion.py

"""
[职责] fusion：Stage 1 的阈值过滤、通道内排名、融合打分（weighted_sum/RRF/comb_sum/adaptive）与稳定排序。
[边界] 只读写 Candidate 上的分数/排名字段；不做 I/O；adaptive 的实际选择必须随结果返回以便写入元数据。
[上游关系] scorer.HybridScorer 合并多变体通道结果后调用。
[下游关系] diversify 消费排序后的候选；pipeline 将 FusionOutcome 写入 PipelineMetadata。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from rag_lab.backend.utils.constants import ADAPTIVE_MIN_SAMPLES, ADAPTIVE_SKEW_THRESHOLD, DEFAULT_RRF_K

from .types import Candidate


@dataclass(frozen=True)
class FusionOutcome:
    """Requested vs effective fusion method plus the channel skews adaptive looked at."""

    method: str
    effective_method: str
    skew: Dict[str, Optional[float]] = field(default_factory=dict)


def passes_thresholds(candidate: Candidate, *, semantic_threshold: float, lexical_threshold: float) -> bool:
    """OR eligibility: a candidate stays if it clears either channel threshold."""
    sem_ok = candidate.semantic_rank is not None and candidate.semantic_score >= semantic_threshold
    lex_ok = candidate.lexical_rank is not None and candidate.lexical_score >= lexical_threshold
    return sem_ok or lex_ok


def filter_by_thresholds(
    candidates: Sequence[Candidate],
    *,
    semantic_threshold: float,
    lexical_threshold: float,
) -> List[Candidate]:
    return [
        c
        for c in candidates
        if passes_thresholds(c, semantic_threshold=semantic_threshold, lexical_threshold=lexical_threshold)
    ]


def assign_channel_ranks(candidates: Sequence[Candidate]) -> None:
    """
    [职责] 在每个通道内按原始分降序重排 1-based rank（id 升序破平）。
    [边界] 只处理该通道出现过的候选（rank 非 None）；阈值过滤后需重新调用。
    """
    sem = sorted((c for c in candidates if c.semantic_rank is not None), key=lambda c: (-c.semantic_score, c.id))
    for idx, c in enumerate(sem, start=1):
        c.semantic_rank = idx
    lex = sorted((c for c in candidates if c.lexical_rank is not None), key=lambda c: (-c.lexical_score, c.id))
    for idx, c in enumerate(lex, start=1):
        c.lexical_rank = idx


def _rrf_score(rank: Optional[int], rrf_k: int) -> float:
    if not rank:
        return 0.0  # docstring: 缺席通道不贡献分数
    return 1.0 / (float(rrf_k) + float(rank))


def sample_skewness(values: Sequence[float]) -> Optional[float]:
    """Fisher-Pearson skewness; None when fewer than ADAPTIVE_MIN_SAMPLES or zero variance."""
    n = len(values)
    if n < ADAPTIVE_MIN_SAMPLES:
        return None
    mean = sum(values) / n
    m2 = sum((v - mean) ** 2 for v in values) / n
    if m2 <= 0:
        return None
    m3 = sum((v - mean) ** 3 for v in values) / n
    return m3 / math.pow(m2, 1.5)


def choose_adaptive_method(candidates: Sequence[Candidate]) -> Tuple[str, Dict[str, Optional[float]]]:
    """
    [职责] adaptive 策略：任一通道原始分分布偏度绝对值超过阈值时选 RRF（只用名次，抗长尾），否则 weighted_sum。
    [边界] 样本不足的通道不参与判定；返回 (method, skew 快照)。
    """
    skew = {
        "semantic": sample_skewness([c.semantic_score for c in candidates if c.semantic_rank is not None]),
        "lexical": sample_skewness([c.lexical_score for c in candidates if c.lexical_rank is not None]),
    }
    skewed = any(s is not None and abs(s) > ADAPTIVE_SKEW_THRESHOLD for s in skew.values())
    return ("reciprocal_rank_fusion" if skewed else "weighted_sum"), skew


def _channel_support(c: Candidate, method: str, semantic_weight: float, lexical_weight: float) -> int:
    """Channels the candidate appears in that can move its hybrid score."""
    weighted = method == "weighted_sum"
    support = 0
    if c.semantic_rank is not None and (not weighted or semantic_weight > 0):
        support += 1
    if c.lexical_rank is not None and (not weighted or lexical_weight > 0):
        support += 1
    return support


def fuse_scores(
    candidates: Sequence[Candidate],
    *,
    method: str,
    semantic_weight: float,
    lexical_weight: float,
    rrf_k: int = DEFAULT_RRF_K,
) -> FusionOutcome:
    """
    [职责] 按融合方法写入 hybrid_score（weighted_sum/comb_sum 使用归一化分；RRF 使用通道 rank）。
    [边界] 未知方法抛 ValueError（配置层已用 Literal 约束）。
    [上游关系] HybridScorer 在 normalize_channels 之后调用。
    [下游关系] rank_by_hybrid 排序。
    """
    effective = method
    skew: Dict[str, Optional[float]] = {}
    if method == "adaptive":
        effective, skew = choose_adaptive_method(candidates)

    for c in candidates:
        if effective == "weighted_sum":
            c.hybrid_score = float(semantic_weight) * c.semantic_norm + float(lexical_weight) * c.lexical_norm
        elif effective == "reciprocal_rank_fusion":
            c.hybrid_score = _rrf_score(c.semantic_rank, rrf_k) + _rrf_score(c.lexical_rank, rrf_k)
        elif effective == "comb_sum":
            c.hybrid_score = c.semantic_norm + c.lexical_norm
        else:
            raise ValueError(f"unknown fusion method: {method}")
        c.channel_support = _channel_support(c, effective, float(semantic_weight), float(lexical_weight))
        c.metadata["fusion_method"] = effective  # docstring: 单条候选也可追溯融合方法

    return FusionOutcome(method=method, effective_method=effective, skew=skew)


def rank_by_hybrid(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Sort by hybrid desc, channel support desc, raw semantic desc, id asc; assign initial_rank 1..N."""
    ordered = sorted(candidates, key=lambda c: (-c.hybrid_score, -c.channel_support, -c.semantic_score, c.id))
    for idx, c in enumerate(ordered, start=1):
        c.initial_rank = idx
    return ordered
