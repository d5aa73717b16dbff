# src/rag_lab/backend/services/retrieval_service.py

"""
[职责] RetrievalService：装配并持有跨请求共享的检索组件（provider、结果缓存、熔断器、MetadataTracker），对 API 层提供 two_stage/preprocess/preset/health/analytics 能力。
[边界] 不做 HTTP 映射；每个请求新建 PipelineContext；provider 由 Settings 装配或由测试注入 test double。
[上游关系] api/deps.get_retrieval_service；app lifespan 调用 start()/close()。
[下游关系] TwoStagePipeline.run；MetadataTracker；AnalyticsSink。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from rag_lab.backend.pipelines.analytics.sink import AnalyticsSink, MemoryAnalyticsSink, SqlAnalyticsSink
from rag_lab.backend.pipelines.analytics.tracker import MetadataTracker
from rag_lab.backend.pipelines.base.breaker import CircuitBreaker
from rag_lab.backend.pipelines.base.cache import ResultCache
from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.base.retry import SleepFn
from rag_lab.backend.pipelines.query.preprocess import PreprocessedQuery, QueryPreprocessor
from rag_lab.backend.pipelines.retrieval.pipeline import TwoStagePipeline, TwoStageResult, preprocess_options
from rag_lab.backend.pipelines.retrieval.presets import QueryComplexity, analyze_query, preset_config
from rag_lab.backend.pipelines.retrieval.providers import (
    CandidateSource,
    CohereRerankingProvider,
    CrossEncoderRerankingProvider,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    RerankingProvider,
    RpcCandidateSource,
)
from rag_lab.backend.pipelines.retrieval.rerank import ReRanker
from rag_lab.backend.pipelines.retrieval.scorer import HybridScorer
from rag_lab.backend.pipelines.retrieval.types import RawHit
from rag_lab.backend.schemas.analytics import AnalyticsReport
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import RetrievalError
from rag_lab.backend.utils.logging_ import get_logger, log_event
from rag_lab.config import Settings, settings as default_settings


logger = get_logger("services.retrieval")


class UnconfiguredStore:
    """Stands in for a missing candidate store / embedding key; every call fails without retry."""

    name = "unconfigured"

    def __init__(self, what: str) -> None:
        self._what = what

    def _fail(self) -> RetrievalError:
        return RetrievalError(
            message=f"{self._what} is not configured",
            detail={"component": self._what},
            retryable=False,
        )

    async def embed(self, text: str) -> List[float]:
        raise self._fail()

    async def semantic_search(self, embedding: Sequence[float], **_: Any) -> List[RawHit]:
        raise self._fail()

    async def lexical_search(self, query: str, **_: Any) -> List[RawHit]:
        raise self._fail()


class RetrievalService:
    """
    [职责] 检索服务门面：一个进程一个实例。
    [边界] 只持有共享组件；请求级状态全部在 PipelineContext。
    """

    def __init__(
        self,
        *,
        source: CandidateSource,
        embedder: EmbeddingProvider,
        rerankers: Mapping[str, RerankingProvider],
        tracker: MetadataTracker,
        cache: Optional[ResultCache[TwoStageResult]] = None,
        breakers: Optional[Mapping[str, CircuitBreaker]] = None,
        preprocessor: Optional[QueryPreprocessor] = None,
        embedding_model: Optional[str] = None,
        sleep: Optional[SleepFn] = None,
        clients: Sequence[httpx.AsyncClient] = (),
    ) -> None:
        self.preprocessor = preprocessor or QueryPreprocessor()
        self.cache = cache
        self.tracker = tracker
        self.breakers: Dict[str, CircuitBreaker] = dict(breakers or {})
        for name in rerankers:
            self.breakers.setdefault(name, CircuitBreaker(name=name))
        self._clients = list(clients)
        self.pipeline = TwoStagePipeline(
            scorer=HybridScorer(source=source, embedder=embedder, sleep=sleep),
            reranker=ReRanker(providers=rerankers, breakers=self.breakers, sleep=sleep),
            preprocessor=self.preprocessor,
            cache=cache,
            tracker=tracker,
            embedding_model=embedding_model,
        )

    async def two_stage(
        self,
        *,
        query: str,
        document_ids: Sequence[str],
        user_id: str,
        config: RetrievalConfig,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> TwoStageResult:
        ctx = PipelineContext.create(user_id=user_id, trace_id=trace_id, request_id=request_id)
        log_event(
            logger,
            logging.INFO,
            "two-stage retrieval start",
            context=ctx,
            fields={"documents": len(document_ids), "fusion_method": config.fusion_method},
        )
        return await self.pipeline.run(query, document_ids=document_ids, config=config, ctx=ctx)

    def preprocess(self, query: str, config: Optional[RetrievalConfig] = None) -> PreprocessedQuery:
        return self.preprocessor.preprocess(query, preprocess_options(config or RetrievalConfig()))

    @staticmethod
    def preset(
        goal: str, query: str, *, overrides: Optional[Mapping[str, Any]] = None
    ) -> Tuple[RetrievalConfig, QueryComplexity]:
        return preset_config(goal, query, overrides=overrides), analyze_query(query)

    def analytics_report(self) -> AnalyticsReport:
        return self.tracker.report()

    def health(self) -> Dict[str, Any]:
        breakers = {name: b.snapshot() for name, b in sorted(self.breakers.items())}
        open_breakers = [name for name, b in breakers.items() if b["state"] == "open"]
        return {
            "status": "degraded" if open_breakers else "ok",
            "cache": self.cache.stats() if self.cache is not None else None,
            "breakers": breakers,
            "analytics": self.tracker.stats(),
            "version": {"api": "v1"},
        }

    async def start(self) -> None:
        await self.tracker.start()

    async def close(self) -> None:
        await self.tracker.stop()
        for client in self._clients:
            await client.aclose()


def build_analytics_sink(s: Settings) -> AnalyticsSink:
    if str(s.ANALYTICS_SINK).strip().lower() == "sql":
        from rag_lab.backend.db.engine import get_sessionmaker

        return SqlAnalyticsSink(get_sessionmaker())
    return MemoryAnalyticsSink()


def build_retrieval_service(s: Optional[Settings] = None) -> RetrievalService:
    """
    [职责] 按 Settings 装配生产 RetrievalService（httpx 客户端共享、未配置的 provider 跳过或以 UnconfiguredStore 代替）。
    [边界] 不发起网络请求；缺少 key 的重排 provider 不注册（Stage 2 以 provider_unconfigured 跳过）。
    [上游关系] api/deps.get_retrieval_service 首次调用。
    [下游关系] RetrievalService。
    """
    s = s or default_settings
    client = httpx.AsyncClient(timeout=httpx.Timeout(s.HTTP_TIMEOUT_S))

    source: CandidateSource
    if s.CANDIDATE_STORE_URL:
        source = RpcCandidateSource(base_url=s.CANDIDATE_STORE_URL, api_key=s.CANDIDATE_STORE_KEY or "", client=client)
    else:
        source = UnconfiguredStore("candidate store")

    embedder: EmbeddingProvider
    if s.OPENAI_API_KEY:
        embedder = OpenAIEmbeddingProvider(
            api_key=s.OPENAI_API_KEY, model=s.OPENAI_EMBED_MODEL, base_url=s.OPENAI_API_BASE, client=client
        )
    else:
        embedder = UnconfiguredStore("embedding provider")

    rerankers: Dict[str, RerankingProvider] = {}
    if s.COHERE_API_KEY:
        rerankers["cohere"] = CohereRerankingProvider(api_key=s.COHERE_API_KEY, base_url=s.COHERE_API_BASE, client=client)
    if s.HUGGINGFACE_API_KEY:
        rerankers["cross_encoder"] = CrossEncoderRerankingProvider(
            api_key=s.HUGGINGFACE_API_KEY,
            default_model=s.CROSS_ENCODER_MODEL,
            base_url=s.HUGGINGFACE_API_BASE,
            client=client,
        )

    breakers = {
        name: CircuitBreaker(
            name=name,
            failure_threshold=s.BREAKER_FAILURE_THRESHOLD,
            recovery_timeout_s=s.BREAKER_RECOVERY_TIMEOUT_S,
            success_threshold=s.BREAKER_SUCCESS_THRESHOLD,
        )
        for name in ("cohere", "cross_encoder")
    }

    tracker = MetadataTracker(
        sink=build_analytics_sink(s),
        sampling_rate=s.ANALYTICS_SAMPLING_RATE,
        batch_size=s.ANALYTICS_BATCH_SIZE,
        flush_interval_s=s.ANALYTICS_FLUSH_INTERVAL_S,
    )

    return RetrievalService(
        source=source,
        embedder=embedder,
        rerankers=rerankers,
        tracker=tracker,
        cache=ResultCache(ttl_s=s.RESULT_CACHE_TTL_S, max_size=s.RESULT_CACHE_MAX_SIZE),
        breakers=breakers,
        embedding_model=s.OPENAI_EMBED_MODEL if s.OPENAI_API_KEY else None,
        clients=[client],
    )
