# playground/rerank_gate/test_rerank_gate.py

"""
[职责] rerank gate：验证 confidence 融合、ReRanker 排序/截断、熔断器三态与 Cohere 适配器的错误分类。
[边界] provider 使用 double 或 httpx.MockTransport；不访问真实服务。
[上游关系] pipelines/retrieval/rerank.py、pipelines/base/breaker.py、pipelines/retrieval/providers.py。
[下游关系] orchestrator 依赖 ReRankingError 触发降级。
"""

from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from gate_doubles import FailingReranker, FakeReranker, no_sleep
from rag_lab.backend.pipelines.base.breaker import CircuitBreaker
from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.retrieval.providers import (
    CohereRerankingProvider,
    CrossEncoderRerankingProvider,
    cross_encoder_scores,
)
from rag_lab.backend.pipelines.retrieval.rerank import (
    ReRanker,
    blend_confidence,
    rank_stability,
    rerank_pool,
    stage1_fallback,
)
from rag_lab.backend.pipelines.retrieval.types import Candidate
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import ReRankingError


pytestmark = pytest.mark.rerank_gate


def _ranked(n: int) -> List[Candidate]:
    out = []
    for i in range(1, n + 1):
        out.append(
            Candidate(id=f"c{i}", content=f"doc {i}", document_id=f"d{i}", hybrid_score=1.0 - (i - 1) * 0.1, initial_rank=i)
        )
    return out


def test_blend_confidence_is_monotonic_and_bounded() -> None:
    lo = blend_confidence(0.2, 0.5, rerank_weight=0.7)
    hi = blend_confidence(0.9, 0.5, rerank_weight=0.7)
    assert hi > lo
    assert blend_confidence(0.9, 0.5, rerank_weight=0.7) == pytest.approx(0.7 * 0.9 + 0.3 * 0.5)
    assert blend_confidence(5.0, 2.0, rerank_weight=0.7) == pytest.approx(1.0)
    assert blend_confidence(0.3, 0.8, rerank_weight=0.0) == pytest.approx(0.8)


def test_rank_stability_and_fallback() -> None:
    assert rank_stability(3, 3) == 1.0
    assert rank_stability(1, 4) == pytest.approx(0.25)
    cands = _ranked(5)
    cands[0].confidence_score = 0.9
    out = stage1_fallback(cands, final_limit=3)
    assert [c.id for c in out] == ["c1", "c2", "c3"]
    assert [c.final_rank for c in out] == [1, 2, 3]
    assert out[0].confidence_score is None


def test_rerank_pool_bounded_by_top_k_and_chunks() -> None:
    cands = _ranked(10)
    assert len(rerank_pool(cands, config=RetrievalConfig(top_k_initial=4))) == 4
    assert len(rerank_pool(cands, config=RetrievalConfig(top_k_initial=8, max_chunks_per_doc=2))) == 2


@pytest.mark.asyncio
async def test_reranker_orders_by_confidence_and_truncates() -> None:
    provider = FakeReranker(scores={"doc 1": 0.1, "doc 2": 0.2, "doc 3": 0.99, "doc 4": 0.95})
    reranker = ReRanker(providers={"cohere": provider}, sleep=no_sleep)
    ctx = PipelineContext.create(user_id="u1")

    out = await reranker.run("q", _ranked(4), config=RetrievalConfig(final_limit=3), ctx=ctx)

    assert out.reranked_count == 4
    assert [c.id for c in out.results] == ["c3", "c4", "c2"]  # docstring: 0.933 > 0.875 > 0.41 > 0.37
    assert [c.final_rank for c in out.results] == [1, 2, 3]
    assert all(c.confidence_score is not None for c in out.results)
    assert out.results[0].metadata["reranking_model"] == "rerank-english-v3.0"
    assert ctx.api_calls == 1
    assert ctx.cost_usd == pytest.approx(0.004)


@pytest.mark.asyncio
async def test_reranker_missing_provider_raises() -> None:
    reranker = ReRanker(providers={}, sleep=no_sleep)
    with pytest.raises(ReRankingError):
        await reranker.run("q", _ranked(2), config=RetrievalConfig(), ctx=PipelineContext.create(user_id="u1"))


@pytest.mark.asyncio
async def test_breaker_opens_after_consecutive_failures() -> None:
    provider = FailingReranker()
    breaker = CircuitBreaker(name="cohere", failure_threshold=2, recovery_timeout_s=60.0)
    reranker = ReRanker(providers={"cohere": provider}, breakers={"cohere": breaker}, sleep=no_sleep)
    config = RetrievalConfig()

    for _ in range(2):
        with pytest.raises(ReRankingError):
            await reranker.run("q", _ranked(2), config=config, ctx=PipelineContext.create(user_id="u1"))
    assert breaker.state == "open"

    with pytest.raises(ReRankingError) as info:
        await reranker.run("q", _ranked(2), config=config, ctx=PipelineContext.create(user_id="u1"))
    assert "circuit open" in info.value.message
    assert provider.calls == 2  # docstring: 熔断打开后不再调用 provider


def test_breaker_half_open_recovery() -> None:
    now = [0.0]
    breaker = CircuitBreaker(name="p", failure_threshold=1, recovery_timeout_s=10.0, success_threshold=2, clock=lambda: now[0])
    breaker.record_failure()
    assert breaker.state == "open" and not breaker.allow()

    now[0] = 10.0
    assert breaker.state == "half_open"
    breaker.record_success()
    assert breaker.state == "half_open"
    breaker.record_success()
    assert breaker.state == "closed"

    breaker.record_failure()
    now[0] = 25.0
    assert breaker.state == "half_open"
    breaker.record_failure()  # docstring: 探测失败立即重新熔断
    assert breaker.state == "open"


@pytest.mark.asyncio
async def test_cohere_provider_aligns_scores_by_index() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"results": [{"index": 1, "relevance_score": 0.9}, {"index": 0, "relevance_score": 0.3}]},
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = CohereRerankingProvider(api_key="k", client=client)
    try:
        scores = await provider.rerank("q", ["a" * 2000, "b", "c"], model="rerank-english-v3.0", max_chunks_per_doc=10)
    finally:
        await client.aclose()

    assert scores == [0.3, 0.9, 0.0]
    assert len(seen["body"]["documents"][0]) == 1000  # docstring: 单文档截断
    assert seen["body"]["top_n"] == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("status, retryable", [(429, True), (503, True), (400, False)])
async def test_cohere_provider_classifies_http_errors(status: int, retryable: bool) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(status, json={})))
    provider = CohereRerankingProvider(api_key="k", client=client)
    try:
        with pytest.raises(ReRankingError) as info:
            await provider.rerank("q", ["a"], model="m", max_chunks_per_doc=1)
    finally:
        await client.aclose()
    assert info.value.retryable is retryable
    assert info.value.detail["status"] == status


def test_cross_encoder_scores_are_monotonic_per_response() -> None:
    mixed = cross_encoder_scores([0.95, 1.5, -2.0])
    assert mixed[1] > mixed[0] > mixed[2]  # docstring: 整批 logits 走 sigmoid，顺序不变
    assert all(0.0 < s < 1.0 for s in mixed)

    probs = cross_encoder_scores([0.2, 0.95])
    assert probs == [0.2, 0.95]


@pytest.mark.asyncio
async def test_cross_encoder_provider_parses_response_shapes() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[3.2, {"label": "LABEL_0", "score": 1.5}, [{"label": "LABEL_0", "score": -0.4}]],
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = CrossEncoderRerankingProvider(api_key="k", base_url="https://hf.test/models", client=client)
    try:
        scores = await provider.rerank("q", ["a" * 900, "b", "c"], model="rerank-english-v3.0", max_chunks_per_doc=10)
    finally:
        await client.aclose()

    assert seen["url"] == "https://hf.test/models/cross-encoder/ms-marco-MiniLM-L-6-v2"  # docstring: 非 HF 模型名回退默认
    assert seen["body"]["inputs"][0][0] == "q"
    assert len(seen["body"]["inputs"][0][1]) == 512
    assert scores[0] > scores[1] > scores[2]
    assert all(0.0 < s < 1.0 for s in scores)


@pytest.mark.asyncio
async def test_cross_encoder_provider_rejects_misaligned_scores() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[0.5])))
    provider = CrossEncoderRerankingProvider(api_key="k", client=client)
    try:
        with pytest.raises(ReRankingError):
            await provider.rerank("q", ["a", "b"], model="cross-encoder/x", max_chunks_per_doc=1)
    finally:
        await client.aclose()
