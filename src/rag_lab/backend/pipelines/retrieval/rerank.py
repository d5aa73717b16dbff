# src/rag_lab/backend/pipelines/retrieval/rerank.py

"""
[职责] ReRanker（Stage 2）：调用外部重排 provider，融合 rerank 分与 Stage 1 分得到 confidence，重排截断并写质量指标。
[边界] 失败只抛 ReRankingError/ProviderTimeout，由 orchestrator 决定降级；熔断器按 provider 共享（跨请求）。
[上游关系] TwoStagePipeline 传入 diversify 后的候选。
[下游关系] 最终结果与 PipelineMetadata.quality；stage1_fallback 提供降级结果。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from rag_lab.backend.pipelines.base.breaker import CircuitBreaker
from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.base.retry import SleepFn, retry_with_backoff
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.constants import STAGE_STAGE2
from rag_lab.backend.utils.errors import DomainError, ProviderTimeout, ReRankingError
from rag_lab.backend.utils.logging_ import get_logger, log_event

from .providers import RerankingProvider
from .types import Candidate


logger = get_logger("pipelines.retrieval.rerank")


@dataclass(frozen=True)
class Stage2Result:
    results: List[Candidate]
    reranked_count: int  # docstring: 实际发送给 provider 的文档数
    provider: str
    model: str
    cost_usd: float


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))


def blend_confidence(reranking_score: float, hybrid_norm: float, *, rerank_weight: float) -> float:
    """
    [职责] confidence = α·clamp(rerank) + (1-α)·hybrid_norm。
    [边界] α 截断到 [0,1]；α>0 时对 rerank 分单调递增。
    """
    a = _clamp01(rerank_weight)
    return a * _clamp01(reranking_score) + (1.0 - a) * _clamp01(hybrid_norm)


def rank_stability(initial_rank: int, final_rank: int) -> float:
    """max(0, 1 - |Δrank| / max(r0, r1)); 1.0 means the candidate did not move."""
    denom = max(int(initial_rank), int(final_rank))
    if denom <= 0:
        return 1.0
    return max(0.0, 1.0 - abs(int(initial_rank) - int(final_rank)) / denom)


def stage1_fallback(candidates: Sequence[Candidate], *, final_limit: int) -> List[Candidate]:
    """Stage-1 ordering truncated to final_limit; used when Stage 2 is disabled, skipped or degraded."""
    out = list(candidates)[: max(0, int(final_limit))]
    for idx, c in enumerate(out, start=1):
        c.final_rank = idx
        c.reranking_score = None
        c.confidence_score = None
    return out


def rerank_pool(candidates: Sequence[Candidate], *, config: RetrievalConfig) -> List[Candidate]:
    """Candidates sent to the provider: the first top_k_initial, capped by max_chunks_per_doc."""
    limit = min(int(config.top_k_initial), int(config.max_chunks_per_doc))
    return list(candidates)[:limit]


class ReRanker:
    """
    [职责] Stage 2 执行器：provider 选择、熔断、超时、重试、分数融合、排序。
    [边界] providers/breakers 由 RetrievalService 注入并跨请求共享；本类不持有请求状态。
    """

    def __init__(
        self,
        *,
        providers: Mapping[str, RerankingProvider],
        breakers: Optional[Mapping[str, CircuitBreaker]] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._providers: Dict[str, RerankingProvider] = dict(providers)
        self._breakers: Dict[str, CircuitBreaker] = dict(breakers or {})
        self._sleep = sleep

    def provider_for(self, name: str) -> Optional[RerankingProvider]:
        return self._providers.get(name)

    def breaker_for(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def estimate_cost(self, name: str, n_documents: int) -> float:
        provider = self._providers.get(name)
        if provider is None:
            return 0.0
        return float(provider.estimate_cost(n_documents))

    async def run(
        self,
        query: str,
        candidates: Sequence[Candidate],
        *,
        config: RetrievalConfig,
        ctx: PipelineContext,
    ) -> Stage2Result:
        """
        [职责] 执行一次重排并返回截断到 final_limit 的最终候选（final_rank 1..N）。
        [边界] 熔断打开/provider 缺失/分数未对齐均抛 ReRankingError；不修改输入候选直到分数校验通过。
        [上游关系] TwoStagePipeline.run（enable_stage2 且预算允许时）。
        [下游关系] orchestrator 捕获异常后调用 stage1_fallback 降级。
        """
        name = config.reranking_provider
        provider = self._providers.get(name)
        if provider is None:
            raise ReRankingError(message=f"reranking provider '{name}' is not configured", detail={"provider": name})

        breaker = self._breakers.get(name)
        if breaker is not None and not breaker.allow():
            raise ReRankingError(
                message=f"circuit open for reranking provider '{name}'",
                detail={"provider": name, "breaker": breaker.state},
            )

        pool = rerank_pool(candidates, config=config)
        if not pool:
            return Stage2Result(results=[], reranked_count=0, provider=name, model=config.reranking_model, cost_usd=0.0)

        documents = [c.content for c in pool]
        cost = float(provider.estimate_cost(len(documents)))
        ctx.with_provider(
            "reranking",
            {"name": name, "model": config.reranking_model, "documents": len(documents)},
        )

        async def _attempt() -> List[float]:
            ctx.count_call(cost_usd=cost)
            try:
                return await asyncio.wait_for(
                    provider.rerank(
                        query,
                        documents,
                        model=config.reranking_model,
                        max_chunks_per_doc=config.max_chunks_per_doc,
                    ),
                    timeout=config.timeout_ms / 1000.0,
                )
            except asyncio.TimeoutError as exc:
                raise ProviderTimeout(
                    message=f"reranking call exceeded {config.timeout_ms}ms",
                    detail={"stage": STAGE_STAGE2, "provider": name, "timeout_ms": config.timeout_ms},
                    cause=exc,
                ) from exc
            except DomainError:
                raise
            except Exception as exc:
                raise ReRankingError(
                    message="reranking call failed",
                    detail={"provider": name, "error": exc.__class__.__name__},
                    cause=exc,
                ) from exc

        def _on_retry(attempt: int, exc: BaseException, delay_ms: float) -> None:
            ctx.count_retry()
            log_event(
                logger,
                logging.WARNING,
                "stage2 retry",
                context=ctx,
                fields={"provider": name, "attempt": attempt + 1, "delay_ms": delay_ms},
            )

        try:
            scores = await retry_with_backoff(
                _attempt,
                retries=config.retry_attempts,
                base_ms=config.retry_base_ms,
                cap_ms=config.retry_cap_ms,
                sleep=self._sleep,
                on_retry=_on_retry,
            )
            if len(scores) != len(pool):
                raise ReRankingError(
                    message="reranking scores misaligned with documents",
                    detail={"provider": name, "expected": len(pool), "received": len(scores)},
                )
        except Exception:
            if breaker is not None:
                breaker.record_failure()
            raise
        if breaker is not None:
            breaker.record_success()

        max_hybrid = max((c.hybrid_score for c in pool), default=0.0)
        for c, s in zip(pool, scores):
            hybrid_norm = c.hybrid_score / max_hybrid if max_hybrid > 0 else 0.0
            c.reranking_score = float(s)
            c.confidence_score = blend_confidence(float(s), hybrid_norm, rerank_weight=config.rerank_weight)
            c.metadata["score_improvement"] = c.confidence_score - hybrid_norm

        ordered = sorted(pool, key=lambda c: (-(c.confidence_score or 0.0), -(c.reranking_score or 0.0), c.initial_rank))
        final = ordered[: config.final_limit]
        for idx, c in enumerate(final, start=1):
            c.final_rank = idx
            c.metadata["rank_stability"] = rank_stability(c.initial_rank, idx)
            c.metadata["reranking_model"] = config.reranking_model

        return Stage2Result(
            results=final,
            reranked_count=len(pool),
            provider=name,
            model=config.reranking_model,
            cost_usd=cost,
        )
