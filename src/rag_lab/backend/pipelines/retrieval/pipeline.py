# src/rag_lab/backend/pipelines/retrieval/pipeline.py

"""
[职责] TwoStagePipeline（orchestrator）：校验 -> 缓存 -> 预处理 -> Stage 1 -> Diversifier -> 预算判定 -> Stage 2/降级 -> 元数据记录。
[边界] stage 严格串行；Stage 1 失败中止请求，Stage 2 失败降级为 Stage 1 结果；analytics 失败只记日志。
[上游关系] services/retrieval_service.RetrievalService.run 为每个请求调用 run()。
[下游关系] TwoStageResult.to_response() 生成 HTTP 响应；PipelineMetadata 交给 MetadataTracker。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Sequence

from rag_lab.backend.pipelines.analytics.stats import count_outliers, describe, spearman
from rag_lab.backend.pipelines.base.cache import ResultCache, make_cache_key
from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.query.preprocess import PreprocessedQuery, PreprocessOptions, QueryPreprocessor
from rag_lab.backend.schemas.analytics import PipelineMetadata, QualityMetrics, StageStats
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.constants import (
    STAGE_DIVERSIFY,
    STAGE_PREPROCESS,
    STAGE_STAGE1,
    STAGE_STAGE2,
)
from rag_lab.backend.utils.errors import DomainError, ValidationError
from rag_lab.backend.utils.logging_ import get_logger, hash_text, log_event, truncate_text

from .diversify import diversify_candidates
from .rerank import ReRanker, rerank_pool, stage1_fallback
from .scorer import HybridScorer
from .types import Candidate


logger = get_logger("pipelines.retrieval.pipeline")


class MetadataSink(Protocol):
    """Anything that accepts finished execution records (MetadataTracker in production)."""

    def record(self, metadata: PipelineMetadata) -> bool: ...


@dataclass(frozen=True)
class TwoStageResult:
    """
    [职责] 单次执行的完整输出：最终候选 + 不可变元数据 + 响应所需的派生字段。
    [边界] 缓存命中时复用同一 results 列表（只读）；cache_hit/execution_ms 为本次请求的值。
    """

    results: List[Candidate]
    metadata: PipelineMetadata
    preprocessed: Optional[PreprocessedQuery]
    config: RetrievalConfig
    stage1_latency_ms: float
    stage2_latency_ms: float
    initial_documents: int
    reranked_documents: int
    models_used: List[str] = field(default_factory=list)
    providers_used: List[str] = field(default_factory=list)
    stage2_method: str = "none"
    cache_hit: bool = False
    execution_ms: float = 0.0

    @property
    def stage2_enabled(self) -> bool:
        return self.metadata.stage2_enabled

    @property
    def degraded(self) -> bool:
        return self.metadata.degraded

    def to_response(self) -> Dict[str, Any]:
        """
        [职责] 生成 HTTP 响应体（results/pipeline/performance/metadata/executionTime）。
        [边界] return_documents=False 时省略 content。
        """
        md = self.metadata
        query_info: Optional[Dict[str, Any]] = None
        if self.preprocessed is not None:
            query_info = {
                "corrected": self.preprocessed.corrected,
                "intent": self.preprocessed.intent,
                "confidence": self.preprocessed.confidence,
                "variants": list(self.preprocessed.variants),
                "entities": list(self.preprocessed.entities),
            }
        return {
            "results": [c.to_dict(include_content=self.config.return_documents) for c in self.results],
            "pipeline": {
                "stage1_enabled": True,
                "stage2_enabled": md.stage2_enabled,
                "parallel_processing": self.config.enable_parallel_processing,
                "degraded": md.degraded,
            },
            "performance": {
                "stage1_latency_ms": self.stage1_latency_ms,
                "stage2_latency_ms": self.stage2_latency_ms,
                "total_latency_ms": md.total_latency_ms,
                "initial_documents": self.initial_documents,
                "reranked_documents": self.reranked_documents,
                "final_results": len(self.results),
            },
            "metadata": {
                "models_used": list(self.models_used),
                "providers_used": list(self.providers_used),
                "stage1_method": md.fusion_method,
                "stage2_method": self.stage2_method,
                "effective_fusion_method": md.effective_fusion_method,
                "weights_sum_to_one": md.weights_sum_to_one,
                "stage2_skip_reason": md.stage2_skip_reason,
                "execution_id": str(md.execution_id),
                "cache_hit": self.cache_hit,
                "errors": [e.model_dump(mode="json") for e in md.errors],
                "query": query_info,
            },
            "executionTime": self.execution_ms,
        }


def validate_request(
    query: str,
    document_ids: Sequence[str],
    user_id: str,
    config: RetrievalConfig,
) -> None:
    """
    [职责] 请求级校验：query/document_ids/user_id 非空；strict_weights 时权重和必须为 1。
    [边界] 字段级约束（正整数 limit、非负权重）由 RetrievalConfig 完成；这里只做跨字段与必填项。
    """
    if query is None or not str(query).strip():
        raise ValidationError(message="query is required", detail={"field": "query"})
    if not document_ids or not any(str(d).strip() for d in document_ids):
        raise ValidationError(message="documentIds must contain at least one id", detail={"field": "documentIds"})
    if user_id is None or not str(user_id).strip():
        raise ValidationError(message="userId is required", detail={"field": "userId"})
    if config.strict_weights and not config.weights_sum_to_one:
        raise ValidationError(
            message="semanticWeight + lexicalWeight must equal 1",
            detail={"semantic_weight": config.semantic_weight, "lexical_weight": config.lexical_weight},
        )


def preprocess_options(config: RetrievalConfig) -> PreprocessOptions:
    return PreprocessOptions(
        enable_spell_correction=config.enable_spell_correction,
        enable_synonym_expansion=config.enable_synonym_expansion,
        enable_query_reformulation=config.enable_query_reformulation,
        max_synonyms=config.max_synonyms,
        preserve_entities=config.preserve_entities,
    )


def stage2_skip_reason(
    config: RetrievalConfig,
    *,
    candidate_count: int,
    provider_available: bool,
    estimated_cost_usd: float,
    elapsed_ms: float,
) -> Optional[str]:
    """Why Stage 2 will not run for this request, or None when it should run."""
    if not config.enable_stage2:
        return "disabled"
    if config.reranking_provider == "none":
        return "provider_none"
    if candidate_count == 0:
        return "no_candidates"
    if not provider_available:
        return "provider_unconfigured"
    if config.max_stage2_cost_usd is not None and estimated_cost_usd > config.max_stage2_cost_usd:
        return "cost_budget"
    if config.max_latency_ms is not None and elapsed_ms >= config.max_latency_ms:
        return "latency_budget"
    return None


class TwoStagePipeline:
    """
    [职责] 两阶段检索编排器；持有跨请求共享组件（preprocessor/scorer/reranker/cache/tracker）的引用。
    [边界] 每次 run 使用独立 PipelineContext；缓存与 tracker 是仅有的共享可变状态。
    [上游关系] RetrievalService 装配。
    [下游关系] TwoStageResult。
    """

    def __init__(
        self,
        *,
        scorer: HybridScorer,
        reranker: ReRanker,
        preprocessor: Optional[QueryPreprocessor] = None,
        cache: Optional[ResultCache[TwoStageResult]] = None,
        tracker: Optional[MetadataSink] = None,
        embedding_model: Optional[str] = None,
    ) -> None:
        self._scorer = scorer
        self._reranker = reranker
        self._preprocessor = preprocessor or QueryPreprocessor()
        self._cache = cache
        self._tracker = tracker
        self._embedding_model = embedding_model

    def _record(self, metadata: PipelineMetadata, ctx: PipelineContext) -> None:
        if self._tracker is None:
            return
        try:
            self._tracker.record(metadata)
        except Exception:
            log_event(logger, logging.WARNING, "analytics record dropped", context=ctx, exc_info=True)

    def _base_metadata(
        self,
        *,
        ctx: PipelineContext,
        query: str,
        document_ids: Sequence[str],
        config: RetrievalConfig,
    ) -> Dict[str, Any]:
        return {
            "execution_id": ctx.execution_id,
            "user_id": ctx.user_id,
            "query_text": truncate_text(query.strip()) or "",
            "query_hash": hash_text(query.strip()) or "",
            "document_ids": tuple(str(d) for d in document_ids),
            "timestamp": ctx.started_at,
            "config": config.snapshot(),
            "fusion_method": config.fusion_method,
            "effective_fusion_method": config.fusion_method,
            "weights_sum_to_one": config.weights_sum_to_one,
        }

    def _cache_hit(
        self,
        cached: TwoStageResult,
        *,
        ctx: PipelineContext,
    ) -> TwoStageResult:
        ctx.cache_hit = True
        elapsed = ctx.timing.elapsed_ms()
        metadata = cached.metadata.model_copy(
            update={
                "execution_id": ctx.execution_id,
                "user_id": ctx.user_id,
                "timestamp": ctx.started_at,
                "total_latency_ms": elapsed,
                "resources": ctx.resources(),
                "errors": (),
            }
        )
        self._record(metadata, ctx)
        log_event(logger, logging.INFO, "two-stage cache hit", context=ctx)
        return replace(cached, metadata=metadata, cache_hit=True, execution_ms=elapsed)

    async def run(
        self,
        query: str,
        *,
        document_ids: Sequence[str],
        config: RetrievalConfig,
        ctx: PipelineContext,
    ) -> TwoStageResult:
        """
        [职责] 执行一次两阶段检索并返回结果与元数据。
        [边界] ValidationError/RetrievalError 向上抛出（失败记录仍会写入 tracker）；Stage 2 异常只降级。
        [上游关系] RetrievalService.run。
        [下游关系] TwoStageResult.to_response。
        """
        validate_request(query, document_ids, ctx.user_id, config)
        if not config.weights_sum_to_one:
            log_event(
                logger,
                logging.WARNING,
                "fusion weights do not sum to 1",
                context=ctx,
                fields={"weight_sum": config.weight_sum},
            )

        cache_key: Optional[str] = None
        if self._cache is not None and config.enable_cache:
            cache_key = make_cache_key(
                query=query, document_ids=document_ids, user_id=ctx.user_id, config=config.snapshot()
            )
            cached = self._cache.get(cache_key)
            if cached is not None:
                return self._cache_hit(cached, ctx=ctx)

        base = self._base_metadata(ctx=ctx, query=query, document_ids=document_ids, config=config)
        stages: List[StageStats] = []

        preprocessed: Optional[PreprocessedQuery] = None
        with ctx.timing.stage(STAGE_PREPROCESS):
            if config.enable_query_preprocessing:
                preprocessed = self._preprocessor.preprocess(query, preprocess_options(config))
                variants: Sequence[str] = preprocessed.variants
                rerank_query = preprocessed.corrected
            else:
                variants = (query.strip(),)
                rerank_query = query.strip()
        stages.append(
            StageStats(
                stage="preprocess",
                latency_ms=ctx.timing.get(STAGE_PREPROCESS, 0.0) or 0.0,
                docs_out=len(variants),
                skipped=not config.enable_query_preprocessing,
            )
        )

        try:
            with ctx.timing.stage(STAGE_STAGE1):
                stage1 = await self._scorer.run(variants, document_ids=document_ids, config=config, ctx=ctx)
        except DomainError as exc:
            ctx.record_error("stage1", exc, retry_count=ctx.retries)
            failed = PipelineMetadata(
                **base,
                stages=tuple(stages),
                total_latency_ms=ctx.timing.elapsed_ms(),
                resources=ctx.resources(),
                errors=tuple(ctx.errors),
            )
            self._record(failed, ctx)
            log_event(
                logger,
                logging.ERROR,
                "stage1 failed",
                context=ctx,
                fields={"kind": exc.error_code, "retries": ctx.retries},
            )
            raise

        stage1_ms = ctx.timing.get(STAGE_STAGE1, 0.0) or 0.0
        base["effective_fusion_method"] = stage1.fusion.effective_method
        stages.append(
            StageStats(
                stage="stage1",
                latency_ms=stage1_ms,
                docs_in=stage1.fetched_count,
                docs_out=len(stage1.candidates),
                scores=describe([c.hybrid_score for c in stage1.candidates]),
            )
        )
        for c in stage1.candidates:
            c.stage_latency_ms[STAGE_STAGE1] = stage1_ms

        with ctx.timing.stage(STAGE_DIVERSIFY):
            diversified = diversify_candidates(
                stage1.candidates,
                max_per_document=config.max_results_per_document,
                enabled=config.enable_diversification,
            )
        stages.append(
            StageStats(
                stage="diversify",
                latency_ms=ctx.timing.get(STAGE_DIVERSIFY, 0.0) or 0.0,
                docs_in=len(stage1.candidates),
                docs_out=len(diversified),
                scores=describe([c.hybrid_score for c in diversified]),
                skipped=not config.enable_diversification,
            )
        )

        pool_size = len(rerank_pool(diversified, config=config))
        skip_reason = stage2_skip_reason(
            config,
            candidate_count=len(diversified),
            provider_available=self._reranker.provider_for(config.reranking_provider) is not None,
            estimated_cost_usd=self._reranker.estimate_cost(config.reranking_provider, pool_size),
            elapsed_ms=ctx.timing.elapsed_ms(),
        )

        degraded = False
        reranked = 0
        stage2_method = "none"
        results: List[Candidate]
        if skip_reason is None:
            retries_before = ctx.retries
            try:
                with ctx.timing.stage(STAGE_STAGE2):
                    outcome = await self._reranker.run(rerank_query, diversified, config=config, ctx=ctx)
                results = outcome.results
                reranked = outcome.reranked_count
                stage2_method = outcome.provider
            except DomainError as exc:
                degraded = True
                ctx.record_error("stage2", exc, retry_count=ctx.retries - retries_before)
                results = stage1_fallback(diversified, final_limit=config.final_limit)
                log_event(
                    logger,
                    logging.WARNING,
                    "stage2 degraded to stage1 results",
                    context=ctx,
                    fields={"kind": exc.error_code, "provider": config.reranking_provider},
                )
        else:
            results = stage1_fallback(diversified, final_limit=config.final_limit)

        stage2_ran = skip_reason is None and not degraded
        stage2_ms = ctx.timing.get(STAGE_STAGE2, 0.0) or 0.0
        if stage2_ran:
            for c in results:
                c.stage_latency_ms[STAGE_STAGE2] = stage2_ms
        stages.append(
            StageStats(
                stage="stage2",
                latency_ms=stage2_ms,
                docs_in=reranked,
                docs_out=len(results) if stage2_ran else 0,
                scores=describe([c.ranking_score for c in results]) if stage2_ran else describe([]),
                skipped=not stage2_ran,
            )
        )

        final_scores = [c.ranking_score for c in results]
        quality = QualityMetrics(
            rank_correlation=(
                spearman([float(c.initial_rank) for c in results], [float(c.final_rank or 0) for c in results])
                if stage2_ran
                else None
            ),
            score_variance=describe(final_scores).std ** 2,
            outlier_count=count_outliers(final_scores),
            mean_score_improvement=(
                sum(float(c.metadata.get("score_improvement", 0.0)) for c in results) / len(results)
                if stage2_ran and results
                else None
            ),
        )

        total_ms = ctx.timing.elapsed_ms()
        metadata = PipelineMetadata(
            **base,
            stages=tuple(stages),
            total_latency_ms=total_ms,
            stage2_enabled=stage2_ran,
            degraded=degraded,
            stage2_skip_reason=skip_reason,
            quality=quality,
            resources=ctx.resources(),
            errors=tuple(ctx.errors),
        )

        models_used: List[str] = []
        providers_used: List[str] = []
        if self._embedding_model:
            models_used.append(self._embedding_model)
        embed_name = ctx.provider_snapshot.get("embedding", {}).get("name")
        if embed_name:
            providers_used.append(str(embed_name))
        if stage2_ran:
            models_used.append(config.reranking_model)
            providers_used.append(stage2_method)

        result = TwoStageResult(
            results=results,
            metadata=metadata,
            preprocessed=preprocessed,
            config=config,
            stage1_latency_ms=stage1_ms,
            stage2_latency_ms=stage2_ms,
            initial_documents=len(stage1.candidates),
            reranked_documents=reranked,
            models_used=list(dict.fromkeys(models_used)),
            providers_used=list(dict.fromkeys(providers_used)),
            stage2_method=stage2_method,
            execution_ms=total_ms,
        )

        if cache_key is not None and not degraded:
            self._cache.set(cache_key, result)  # type: ignore[union-attr]
        self._record(metadata, ctx)

        log_event(
            logger,
            logging.INFO,
            "two-stage retrieval complete",
            context=ctx,
            fields={
                "final_results": len(results),
                "stage2_enabled": stage2_ran,
                "degraded": degraded,
                "stage2_skip_reason": skip_reason,
                "total_ms": round(total_ms, 3),
            },
        )
        return result
