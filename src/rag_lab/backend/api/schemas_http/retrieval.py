# src/rag_lab/backend/api/schemas_http/retrieval.py

"""
[职责] Retrieval HTTP 契约：two-stage 请求体（query/documentIds/userId + RetrievalConfig camelCase 字段）、预处理与预设的请求/响应。
[边界] 只做 HTTP 结构校验；业务级校验（空 query、权重策略）由 pipeline.validate_request 负责。
[上游关系] routers/retrieval.py 解析请求体。
[下游关系] RetrievalService.two_stage/preprocess/preset。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import Field

from rag_lab.backend.api.schemas_http._common import CamelModel
from rag_lab.backend.pipelines.query.preprocess import PreprocessedQuery
from rag_lab.backend.schemas.retrieval import RetrievalConfig


_REQUEST_ONLY_FIELDS = {"query", "document_ids", "user_id"}  # docstring: 非配置字段


class TwoStageRequest(RetrievalConfig):
    """
    [职责] POST /retrieval/two-stage 请求体：扁平结构，配置字段与 query 同级。
    [边界] query 缺省为空串，交由 validate_request 产出 400 validation_error。
    """

    query: str = Field(default="")
    document_ids: List[str] = Field(default_factory=list)
    user_id: str = Field(default="")

    def config(self) -> RetrievalConfig:
        """Strip the request-only fields and return the bare config."""
        return RetrievalConfig.model_validate(self.model_dump(exclude=_REQUEST_ONLY_FIELDS))


class PreprocessRequest(CamelModel):
    query: str = Field(default="")
    enable_spell_correction: bool = True
    enable_synonym_expansion: bool = True
    enable_query_reformulation: bool = True
    max_synonyms: int = Field(default=3, ge=0)
    preserve_entities: bool = True

    def config(self) -> RetrievalConfig:
        return RetrievalConfig(
            enable_spell_correction=self.enable_spell_correction,
            enable_synonym_expansion=self.enable_synonym_expansion,
            enable_query_reformulation=self.enable_query_reformulation,
            max_synonyms=self.max_synonyms,
            preserve_entities=self.preserve_entities,
        )


class PreprocessResponse(CamelModel):
    original: str
    normalized: str
    corrected: str
    reformulated: List[str]
    variants: List[str]
    entities: List[str]
    intent: str
    confidence: float
    semantic_query: str
    stats: Dict[str, Any]

    @classmethod
    def from_result(cls, pq: PreprocessedQuery) -> "PreprocessResponse":
        return cls(
            original=pq.original,
            normalized=pq.normalized,
            corrected=pq.corrected,
            reformulated=list(pq.reformulated),
            variants=list(pq.variants),
            entities=list(pq.entities),
            intent=pq.intent,
            confidence=pq.confidence,
            semantic_query=pq.semantic_query,
            stats=dict(pq.stats()),
        )


class PresetRequest(CamelModel):
    """Body for POST /retrieval/presets/{goal}; overrides use snake_case or camelCase field names."""

    query: str = Field(default="")
    overrides: Optional[Dict[str, Any]] = Field(default=None)
