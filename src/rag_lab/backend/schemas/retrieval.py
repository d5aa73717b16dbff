# src/rag_lab/backend/schemas/retrieval.py

"""
[职责] Retrieval 契约层：定义两阶段检索的请求级配置 RetrievalConfig（限额/权重/阈值/融合/归一化/重排/预算）。
[边界] 不包含检索实现；只做字段级约束（非负/正整数）；跨字段策略（权重和）由 orchestrator 统一判定。
[上游关系] HTTP body（camelCase）或 presets 构造配置；调用方提供。
[下游关系] pipelines/retrieval/* 只读使用；PipelineMetadata.config 保存其快照。
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rag_lab.backend.utils.constants import DEFAULT_RERANK_WEIGHT, DEFAULT_RRF_K, WEIGHT_SUM_TOLERANCE


FusionMethod = Literal["weighted_sum", "reciprocal_rank_fusion", "comb_sum", "adaptive"]  # docstring: 融合方法
NormalizationMethod = Literal["min_max", "z_score", "rank_based"]  # docstring: 分数归一化方法
RerankProvider = Literal["cohere", "cross_encoder", "none"]  # docstring: Stage 2 重排 provider


class RetrievalConfig(BaseModel):
    """
    [职责] RetrievalConfig：单次请求的检索配置（运行期间只读）。
    [边界] 字段名 snake_case，对外 camelCase alias；frozen 保证 pipeline 执行中不被修改。
    [上游关系] routers/retrieval.py 从请求体解析；presets.build_preset_config 生成。
    [下游关系] HybridScorer/Diversifier/ReRanker/Orchestrator 读取；cache key 使用 model_dump。
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    # limits
    semantic_limit: int = Field(default=60, ge=1, le=1000)  # docstring: 语义通道候选上限（每个变体）
    lexical_limit: int = Field(default=60, ge=1, le=1000)  # docstring: 词法通道候选上限（每个变体）
    top_k_initial: int = Field(default=100, ge=1, le=1000)  # docstring: 送入 Stage 2 的候选上限
    final_limit: int = Field(default=20, ge=1, le=1000)  # docstring: 最终结果上限

    # fusion
    semantic_weight: float = Field(default=0.6, ge=0.0)  # docstring: 语义分数权重（weighted_sum）
    lexical_weight: float = Field(default=0.4, ge=0.0)  # docstring: 词法分数权重（weighted_sum）
    semantic_threshold: float = Field(default=0.7, ge=0.0)  # docstring: 语义原始分阈值
    lexical_threshold: float = Field(default=0.1, ge=0.0)  # docstring: 词法原始分阈值
    fusion_method: FusionMethod = Field(default="weighted_sum")
    normalize_scores: bool = Field(default=True)  # docstring: False 时直接使用原始分融合
    normalization_method: NormalizationMethod = Field(default="min_max")
    rrf_k: int = Field(default=DEFAULT_RRF_K, ge=1)  # docstring: RRF 常量 k
    strict_weights: bool = Field(default=False)  # docstring: True 时权重和 != 1 直接拒绝

    # diversification
    enable_diversification: bool = Field(default=True)
    max_results_per_document: int = Field(default=3, ge=1)  # docstring: 每文档最多保留结果数

    # stage 2
    reranking_provider: RerankProvider = Field(default="cohere")
    reranking_model: str = Field(default="rerank-english-v3.0", min_length=1)
    rerank_weight: float = Field(default=DEFAULT_RERANK_WEIGHT, ge=0.0, le=1.0)  # docstring: confidence 中 rerank 占比
    return_documents: bool = Field(default=True)  # docstring: False 时结果不回传 content
    max_chunks_per_doc: int = Field(default=1000, ge=1)  # docstring: provider 单文档切块上限

    # pipeline
    enable_stage1: bool = Field(default=True)  # docstring: 仅作快照；Stage 1 不可关闭
    enable_stage2: bool = Field(default=True)
    enable_parallel_processing: bool = Field(default=False)  # docstring: 语义/词法通道并发拉取
    timeout_ms: int = Field(default=30000, ge=1)  # docstring: 每次外部调用超时
    retry_attempts: int = Field(default=3, ge=0, le=10)  # docstring: 瞬时故障最多重试次数
    retry_base_ms: float = Field(default=1000.0, ge=0.0)  # docstring: 退避基数
    retry_cap_ms: float = Field(default=10000.0, ge=0.0)  # docstring: 退避上限
    max_stage2_cost_usd: Optional[float] = Field(default=None, ge=0.0)  # docstring: Stage 2 成本预算
    max_latency_ms: Optional[float] = Field(default=None, gt=0.0)  # docstring: 进入 Stage 2 前的延迟预算
    enable_cache: bool = Field(default=True)

    # preprocessing
    enable_query_preprocessing: bool = Field(default=True)
    enable_spell_correction: bool = Field(default=True)
    enable_synonym_expansion: bool = Field(default=True)
    enable_query_reformulation: bool = Field(default=True)
    max_synonyms: int = Field(default=3, ge=0)
    preserve_entities: bool = Field(default=True)
    max_query_variants: int = Field(default=4, ge=1, le=32)  # docstring: Stage 1 实际检索的变体上限

    @property
    def weight_sum(self) -> float:
        return float(self.semantic_weight) + float(self.lexical_weight)

    @property
    def weights_sum_to_one(self) -> bool:
        """True when semantic_weight + lexical_weight == 1 within tolerance."""
        return abs(self.weight_sum - 1.0) <= WEIGHT_SUM_TOLERANCE

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe snapshot keyed by field name."""  # docstring: 用于 metadata/cache key
        return self.model_dump(mode="json")
