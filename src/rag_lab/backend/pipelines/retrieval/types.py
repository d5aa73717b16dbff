# src/rag_lab/backend/pipelines/retrieval/types.py
"""
[职责] Retrieval types：两阶段检索各 stage 共享的最小公共类型（无 DB/外部依赖）。
[边界] 仅定义数据结构；Candidate 可变（各 stage 只追加分数/排名，不删除字段）。
[上游关系] providers 产出 RawHit；scoring 合并为 Candidate。
[下游关系] diversify/rerank/pipeline/HTTP 响应使用统一 Candidate 语义。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional


Channel = Literal["semantic", "lexical"]  # docstring: 候选源通道


@dataclass(frozen=True)
class RawHit:
    """One row returned by a CandidateSource channel."""  # docstring: score 为原始分（未归一化）

    id: str
    content: str
    score: float
    document_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Candidate:
    """
    [职责] Candidate：贯穿 Stage 1 -> Diversifier -> Stage 2 的候选结构。
    [边界] 缺席某通道时该通道 raw/norm 分为 0、rank 为 None；optional 字段由后续 stage 填充。
    [上游关系] scoring.merge_channels 创建。
    [下游关系] 响应序列化；调用方可自行持久化。
    """

    id: str
    content: str
    document_id: str
    semantic_score: float = 0.0  # docstring: 语义原始分
    lexical_score: float = 0.0  # docstring: 词法原始分
    semantic_rank: Optional[int] = None  # docstring: 通道内 1-based rank
    lexical_rank: Optional[int] = None
    semantic_norm: float = 0.0  # docstring: 归一化后的语义分
    lexical_norm: float = 0.0
    hybrid_score: float = 0.0  # docstring: Stage 1 融合分
    channel_support: int = 0  # docstring: 出现且对融合分有贡献的通道数（同分时区分"最弱命中"与"缺席"）
    initial_rank: int = 0  # docstring: Stage 1/Diversifier 后的 1-based rank
    reranking_score: Optional[float] = None  # docstring: Stage 2 provider 分数
    confidence_score: Optional[float] = None  # docstring: Stage 2 融合分
    final_rank: Optional[int] = None
    stage_latency_ms: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    matched_variants: List[str] = field(default_factory=list)  # docstring: 命中该候选的查询变体

    @property
    def ranking_score(self) -> float:
        """Score the current stage ranks by."""  # docstring: 有 confidence 用 confidence，否则 hybrid
        return float(self.confidence_score if self.confidence_score is not None else self.hybrid_score)

    def to_dict(self, *, include_content: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "document_id": self.document_id,
            "semantic_score": self.semantic_score,
            "lexical_score": self.lexical_score,
            "semantic_rank": self.semantic_rank,
            "lexical_rank": self.lexical_rank,
            "hybrid_score": self.hybrid_score,
            "initial_rank": self.initial_rank,
            "reranking_score": self.reranking_score,
            "confidence_score": self.confidence_score,
            "final_rank": self.final_rank,
            "stage_latency_ms": dict(self.stage_latency_ms),
            "metadata": dict(self.metadata),
        }
        if include_content:
            out["content"] = self.content
        return out
