# src/rag_lab/backend/schemas/analytics.py

"""
[职责] Analytics 契约层：PipelineMetadata（单次执行的不可变记录）与分析报告结构（分布/异常/建议）。
[边界] 封闭字段（extra=forbid）+ 版本标签 schema_version；不包含统计算法（见 pipelines/analytics/stats.py）。
[上游关系] orchestrator 在执行结束时构造 PipelineMetadata；stats 构造报告。
[下游关系] MetadataTracker 缓冲并写入 AnalyticsSink；HTTP 响应与 DB 记录使用同一结构。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .ids import ExecutionId


StageName = Literal["preprocess", "stage1", "diversify", "stage2"]  # docstring: 可记录的 stage 名称
AnomalyKind = Literal["score_outlier", "latency_spike", "quality_degradation"]  # docstring: 异常类型


class _Frozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ScoreDistribution(_Frozen):
    """Descriptive statistics of one stage's ranking scores."""  # docstring: 空列表时全部为 0

    count: int = Field(default=0, ge=0)
    mean: float = 0.0
    median: float = 0.0
    std: float = 0.0
    min: float = 0.0
    max: float = 0.0
    percentiles: Dict[str, float] = Field(default_factory=dict)  # docstring: p10/p25/p50/p75/p90/p95/p99


class StageStats(_Frozen):
    """
    [职责] 单个 stage 的执行快照：耗时、输入/输出文档数、排序分数分布。
    [边界] 跳过的 stage 以 skipped=True 记录，latency 为 0。
    """

    stage: StageName
    latency_ms: float = Field(default=0.0, ge=0.0)
    docs_in: int = Field(default=0, ge=0)
    docs_out: int = Field(default=0, ge=0)
    scores: ScoreDistribution = Field(default_factory=ScoreDistribution)
    skipped: bool = False


class ErrorEntry(_Frozen):
    stage: StageName
    kind: str  # docstring: DomainError.error_code
    message: str
    retry_count: int = Field(default=0, ge=0)
    timestamp: datetime


class ResourceUsage(_Frozen):
    api_calls: int = Field(default=0, ge=0)  # docstring: 外部调用次数（含重试）
    retries: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)  # docstring: 估算成本
    cache_hit: bool = False


class QualityMetrics(_Frozen):
    rank_correlation: Optional[float] = None  # docstring: Stage1 vs Stage2 Spearman（未重排时为空）
    score_variance: float = 0.0  # docstring: 最终排序分数方差
    outlier_count: int = Field(default=0, ge=0)
    mean_score_improvement: Optional[float] = None  # docstring: 重排相对 Stage 1 的平均提升


class PipelineMetadata(_Frozen):
    """
    [职责] PipelineMetadata：一次执行的不可变记录（配置、各 stage 快照、质量指标、资源、错误）。
    [边界] 创建后不再修改（frozen）；query_text 保存预览，完整文本只保存 hash。
    [上游关系] pipelines/retrieval/pipeline.py 在执行结束时构造。
    [下游关系] MetadataTracker 追加到 sink；analytics report 消费。
    """

    schema_version: Literal["v1"] = "v1"
    execution_id: ExecutionId
    user_id: str
    query_text: str  # docstring: 截断后的查询预览
    query_hash: str
    document_ids: Tuple[str, ...]
    timestamp: datetime

    config: Dict[str, Any]  # docstring: RetrievalConfig.snapshot()
    fusion_method: str  # docstring: 请求的融合方法
    effective_fusion_method: str  # docstring: 实际使用的方法（adaptive 时为其选择）
    weights_sum_to_one: bool = True

    stages: Tuple[StageStats, ...] = ()
    total_latency_ms: float = Field(default=0.0, ge=0.0)
    stage2_enabled: bool = False  # docstring: Stage 2 是否实际产出最终排序
    degraded: bool = False  # docstring: Stage 2 失败并回退到 Stage 1
    stage2_skip_reason: Optional[str] = None

    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    resources: ResourceUsage = Field(default_factory=ResourceUsage)
    errors: Tuple[ErrorEntry, ...] = ()

    def stage(self, name: StageName) -> Optional[StageStats]:
        for s in self.stages:
            if s.stage == name:
                return s
        return None


class Anomaly(_Frozen):
    kind: AnomalyKind
    execution_id: Optional[str] = None
    message: str
    value: float = 0.0


class AnalyticsReport(_Frozen):
    """
    [职责] 最近执行窗口的分析报告：每 stage 分数分布、延迟分布、平均秩相关、异常与建议。
    [边界] 只读取 PipelineMetadata；不回写。
    """

    sample_size: int = 0
    score_distributions: Dict[str, ScoreDistribution] = Field(default_factory=dict)
    latency_distributions: Dict[str, ScoreDistribution] = Field(default_factory=dict)
    mean_rank_correlation: Optional[float] = None
    degraded_ratio: float = 0.0
    anomalies: List[Anomaly] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
