# src/rag_lab/backend/pipelines/retrieval/scorer.py

"""
[职责] HybridScorer（Stage 1）：按查询变体拉取语义/词法候选（可并发），合并去重，阈值过滤，归一化，融合并排序。
[边界] 每次外部调用都带 timeout 与有界退避重试；任一变体失败则整个 Stage 1 失败（不与成功变体的结果混合）。
[上游关系] pipeline.TwoStagePipeline 传入 variants/config/context。
[下游关系] Stage1Result 交给 diversify 与 rerank；FusionOutcome 写入 PipelineMetadata。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.base.retry import SleepFn, retry_with_backoff
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import DomainError, ProviderTimeout, RetrievalError
from rag_lab.backend.utils.logging_ import get_logger, log_event

from .fusion import (
    FusionOutcome,
    assign_channel_ranks,
    filter_by_thresholds,
    fuse_scores,
    rank_by_hybrid,
)
from .normalize import normalize_channels
from .providers import CandidateSource, EmbeddingProvider
from .types import Candidate, RawHit


T = TypeVar("T")

_PRESENT = 0  # docstring: 合并阶段的通道出现标记（assign_channel_ranks 会改写为真实 rank）

logger = get_logger("pipelines.retrieval.scorer")


@dataclass(frozen=True)
class Stage1Result:
    candidates: List[Candidate]  # docstring: 阈值过滤 + 融合排序后的候选（initial_rank 1..N）
    fusion: FusionOutcome
    fetched_count: int  # docstring: 合并去重后、阈值过滤前的候选数
    variants: Tuple[str, ...]


async def gather_or_cancel(coros: Sequence[Awaitable[T]]) -> List[T]:
    """
    [职责] 并发执行并在首个异常时取消其余任务（fan-out/fan-in）。
    [边界] 取消后等待剩余任务收尾，避免悬挂任务。
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def merge_channels(per_variant: Sequence[Tuple[str, List[RawHit], List[RawHit]]]) -> List[Candidate]:
    """
    [职责] 将多变体、双通道命中合并为按 id 去重的 Candidate（每通道取最大原始分）。
    [边界] content/document_id 取首个非空值；metadata 浅合并（先到先得）。
    """
    merged: Dict[str, Candidate] = {}

    def _touch(hit: RawHit, variant: str) -> Candidate:
        c = merged.get(hit.id)
        if c is None:
            c = Candidate(id=hit.id, content=hit.content, document_id=hit.document_id)
            merged[hit.id] = c
        if not c.content and hit.content:
            c.content = hit.content
        if not c.document_id and hit.document_id:
            c.document_id = hit.document_id
        for k, v in hit.metadata.items():
            c.metadata.setdefault(k, v)
        if variant not in c.matched_variants:
            c.matched_variants.append(variant)
        return c

    for variant, semantic_hits, lexical_hits in per_variant:
        for hit in semantic_hits:
            c = _touch(hit, variant)
            c.semantic_score = hit.score if c.semantic_rank is None else max(c.semantic_score, hit.score)
            c.semantic_rank = _PRESENT
        for hit in lexical_hits:
            c = _touch(hit, variant)
            c.lexical_score = hit.score if c.lexical_rank is None else max(c.lexical_score, hit.score)
            c.lexical_rank = _PRESENT

    return sorted(merged.values(), key=lambda c: c.id)


class HybridScorer:
    """
    [职责] Stage 1 编排器（一次请求一次 run）。
    [边界] 不持有跨请求状态；sleep 可注入以便测试跳过退避等待。
    """

    def __init__(
        self,
        *,
        source: CandidateSource,
        embedder: EmbeddingProvider,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._source = source
        self._embedder = embedder
        self._sleep = sleep

    async def _guarded(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        channel: str,
        config: RetrievalConfig,
        ctx: PipelineContext,
    ) -> T:
        """One external call with timeout, error normalization and bounded retry."""
        timeout_s = config.timeout_ms / 1000.0

        async def _attempt() -> T:
            ctx.count_call()
            try:
                return await asyncio.wait_for(fn(), timeout=timeout_s)
            except asyncio.TimeoutError as exc:
                raise ProviderTimeout(
                    message=f"{channel} call exceeded {config.timeout_ms}ms",
                    detail={"stage": "stage1", "channel": channel, "timeout_ms": config.timeout_ms},
                    cause=exc,
                ) from exc
            except DomainError:
                raise
            except Exception as exc:
                raise RetrievalError(
                    message=f"{channel} call failed",
                    detail={"stage": "stage1", "channel": channel, "error": exc.__class__.__name__},
                    cause=exc,
                ) from exc

        def _on_retry(attempt: int, exc: BaseException, delay_ms: float) -> None:
            ctx.count_retry()
            log_event(
                logger,
                logging.WARNING,
                "stage1 retry",
                context=ctx,
                fields={"channel": channel, "attempt": attempt + 1, "delay_ms": delay_ms, "kind": getattr(exc, "error_code", None)},
            )

        return await retry_with_backoff(
            _attempt,
            retries=config.retry_attempts,
            base_ms=config.retry_base_ms,
            cap_ms=config.retry_cap_ms,
            sleep=self._sleep,
            on_retry=_on_retry,
        )

    async def _semantic(
        self, variant: str, *, document_ids: Sequence[str], config: RetrievalConfig, ctx: PipelineContext
    ) -> List[RawHit]:
        embedding = await self._guarded(
            lambda: self._embedder.embed(variant), channel="embedding", config=config, ctx=ctx
        )
        hits = await self._guarded(
            lambda: self._source.semantic_search(
                embedding, document_ids=document_ids, user_id=ctx.user_id, limit=config.semantic_limit
            ),
            channel="semantic",
            config=config,
            ctx=ctx,
        )
        return list(hits)[: config.semantic_limit]

    async def _lexical(
        self, variant: str, *, document_ids: Sequence[str], config: RetrievalConfig, ctx: PipelineContext
    ) -> List[RawHit]:
        hits = await self._guarded(
            lambda: self._source.lexical_search(
                variant, document_ids=document_ids, user_id=ctx.user_id, limit=config.lexical_limit
            ),
            channel="lexical",
            config=config,
            ctx=ctx,
        )
        return list(hits)[: config.lexical_limit]

    async def _fetch_variant(
        self, variant: str, *, document_ids: Sequence[str], config: RetrievalConfig, ctx: PipelineContext
    ) -> Tuple[str, List[RawHit], List[RawHit]]:
        kwargs: Dict[str, Any] = {"document_ids": document_ids, "config": config, "ctx": ctx}
        if config.enable_parallel_processing:
            semantic_hits, lexical_hits = await gather_or_cancel(
                [self._semantic(variant, **kwargs), self._lexical(variant, **kwargs)]
            )
        else:
            semantic_hits = await self._semantic(variant, **kwargs)
            lexical_hits = await self._lexical(variant, **kwargs)
        return variant, semantic_hits, lexical_hits

    async def run(
        self,
        variants: Sequence[str],
        *,
        document_ids: Sequence[str],
        config: RetrievalConfig,
        ctx: PipelineContext,
    ) -> Stage1Result:
        """
        [职责] 执行 Stage 1 全流程并返回排序候选与融合快照。
        [边界] 变体先去重再截断到 max_query_variants；失败统一以 RetrievalError 抛出。
        [上游关系] TwoStagePipeline.run。
        [下游关系] diversify_candidates / ReRanker。
        """
        distinct: List[str] = []
        for v in variants:
            s = str(v).strip()
            if s and s not in distinct:
                distinct.append(s)
        distinct = distinct[: config.max_query_variants]

        ctx.with_provider("embedding", {"name": getattr(self._embedder, "name", type(self._embedder).__name__)})
        ctx.with_provider("candidate_source", {"name": type(self._source).__name__})

        try:
            if config.enable_parallel_processing:
                per_variant = await gather_or_cancel(
                    [self._fetch_variant(v, document_ids=document_ids, config=config, ctx=ctx) for v in distinct]
                )
            else:
                per_variant = [
                    await self._fetch_variant(v, document_ids=document_ids, config=config, ctx=ctx) for v in distinct
                ]
        except RetrievalError:
            raise
        except DomainError as exc:
            raise RetrievalError(
                message="stage 1 candidate retrieval failed",
                detail={"stage": "stage1", "cause_kind": exc.error_code},
                cause=exc,
                retryable=False,
            ) from exc

        merged = merge_channels(per_variant)
        survivors = filter_by_thresholds(
            merged, semantic_threshold=config.semantic_threshold, lexical_threshold=config.lexical_threshold
        )
        assign_channel_ranks(survivors)
        normalize_channels(survivors, method=config.normalization_method, enabled=config.normalize_scores)
        outcome = fuse_scores(
            survivors,
            method=config.fusion_method,
            semantic_weight=config.semantic_weight,
            lexical_weight=config.lexical_weight,
            rrf_k=config.rrf_k,
        )
        ranked = rank_by_hybrid(survivors)

        log_event(
            logger,
            logging.INFO,
            "stage1 complete",
            context=ctx,
            fields={
                "variants": len(distinct),
                "fetched": len(merged),
                "survivors": len(ranked),
                "fusion_method": outcome.effective_method,
            },
        )
        return Stage1Result(candidates=ranked, fusion=outcome, fetched_count=len(merged), variants=tuple(distinct))
