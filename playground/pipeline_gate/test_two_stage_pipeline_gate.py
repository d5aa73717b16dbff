# playground/pipeline_gate/test_two_stage_pipeline_gate.py

"""
[职责] pipeline gate：端到端验证两阶段编排（预处理 -> Stage 1 -> 去重 -> Stage 2）、降级、缓存、跳过原因与元数据记录。
[边界] 通过 RetrievalService 装配内存 double；不跑 HTTP。
[上游关系] pipelines/retrieval/pipeline.py、services/retrieval_service.py。
[下游关系] routers/retrieval.py 直接返回 TwoStageResult.to_response()。
"""

from __future__ import annotations

from collections import Counter
from typing import List

import pytest

from gate_doubles import (
    SCENARIO_LEXICAL,
    SCENARIO_SEMANTIC,
    FailingReranker,
    FakeCandidateSource,
    FakeReranker,
    SlowReranker,
    make_service,
)
from rag_lab.backend.pipelines.analytics.sink import MemoryAnalyticsSink
from rag_lab.backend.pipelines.retrieval.pipeline import stage2_skip_reason
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import RetrievalError, ValidationError


pytestmark = pytest.mark.pipeline_gate

DOCS = ["d1", "d2", "d3"]
QUERY = "What is machine learning?"


def _ids(result) -> List[str]:
    return [c.id for c in result.results]


@pytest.mark.asyncio
async def test_scenario_caps_results_per_document() -> None:
    service = make_service(reranker=FakeReranker())
    config = RetrievalConfig(max_results_per_document=2)

    result = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=config)

    per_doc = Counter(c.document_id for c in result.results)
    assert max(per_doc.values()) <= 2
    assert len(result.results) <= config.final_limit
    assert len(result.results) == 6  # docstring: 8 个候选，d1/d2 各被截去 1 个
    assert [c.final_rank for c in result.results] == list(range(1, 7))
    assert result.initial_documents == 8
    assert result.reranked_documents == 6
    assert result.stage2_enabled is True
    assert result.metadata.effective_fusion_method == "weighted_sum"
    assert result.preprocessed is not None and result.preprocessed.intent == "definitional"


@pytest.mark.asyncio
async def test_response_shape() -> None:
    service = make_service(reranker=FakeReranker())
    result = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig())
    body = result.to_response()

    assert set(body) == {"results", "pipeline", "performance", "metadata", "executionTime"}
    assert body["pipeline"] == {
        "stage1_enabled": True,
        "stage2_enabled": True,
        "parallel_processing": False,
        "degraded": False,
    }
    assert body["performance"]["final_results"] == len(body["results"])
    assert body["metadata"]["stage1_method"] == "weighted_sum"
    assert body["metadata"]["stage2_method"] == "cohere"
    assert body["metadata"]["providers_used"] == ["fake-embed", "cohere"]
    assert body["metadata"]["models_used"] == ["fake-embed-model", "rerank-english-v3.0"]
    assert body["metadata"]["cache_hit"] is False
    assert body["metadata"]["errors"] == []
    assert "content" in body["results"][0]


@pytest.mark.asyncio
async def test_return_documents_false_omits_content() -> None:
    service = make_service(reranker=FakeReranker())
    result = await service.two_stage(
        query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig(return_documents=False)
    )
    assert all("content" not in r for r in result.to_response()["results"])


@pytest.mark.asyncio
async def test_rerank_failure_degrades_to_stage1_order() -> None:
    config = RetrievalConfig(final_limit=4)
    failing = make_service(reranker=FailingReranker(), cache=False)
    baseline = make_service(reranker=None, cache=False)

    degraded = await failing.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=config)
    plain = await baseline.two_stage(
        query=QUERY, document_ids=DOCS, user_id="u1", config=config.model_copy(update={"enable_stage2": False})
    )

    assert _ids(degraded) == _ids(plain)
    assert len(degraded.results) == 4
    assert degraded.stage2_enabled is False
    assert degraded.degraded is True
    assert all(c.reranking_score is None for c in degraded.results)
    body = degraded.to_response()
    assert body["pipeline"]["degraded"] is True
    assert body["pipeline"]["stage2_enabled"] is False
    assert [e["stage"] for e in body["metadata"]["errors"]] == ["stage2"]
    assert body["metadata"]["errors"][0]["kind"] == "reranking_error"


@pytest.mark.asyncio
async def test_cache_hit_skips_providers_and_records_new_execution() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL)
    reranker = FakeReranker()
    service = make_service(source=source, reranker=reranker)

    first = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig())
    calls = (source.lexical_calls, reranker.calls)
    second = await service.two_stage(query=QUERY, document_ids=["d3", "d2", "d1"], user_id="u1", config=RetrievalConfig())

    assert second.cache_hit is True
    assert (source.lexical_calls, reranker.calls) == calls
    assert _ids(second) == _ids(first)
    assert second.metadata.execution_id != first.metadata.execution_id
    assert second.metadata.resources.cache_hit is True
    assert service.tracker.stats()["recent"] == 2


@pytest.mark.asyncio
async def test_degraded_results_are_not_cached() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL)
    service = make_service(source=source, reranker=FailingReranker())

    await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig())
    before = source.lexical_calls
    again = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig())

    assert again.cache_hit is False
    assert source.lexical_calls > before


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query, docs, user",
    [("", DOCS, "u1"), ("   ", DOCS, "u1"), (QUERY, [], "u1"), (QUERY, DOCS, "")],
)
async def test_request_validation(query: str, docs: List[str], user: str) -> None:
    service = make_service(reranker=FakeReranker())
    with pytest.raises(ValidationError):
        await service.two_stage(query=query, document_ids=docs, user_id=user, config=RetrievalConfig())


@pytest.mark.asyncio
async def test_weight_sum_is_flagged_or_rejected() -> None:
    service = make_service(reranker=FakeReranker())
    loose = RetrievalConfig(semantic_weight=0.5, lexical_weight=0.4)
    result = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=loose)
    assert result.metadata.weights_sum_to_one is False
    assert result.to_response()["metadata"]["weights_sum_to_one"] is False

    strict = loose.model_copy(update={"strict_weights": True})
    with pytest.raises(ValidationError):
        await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=strict)


@pytest.mark.asyncio
async def test_stage1_failure_is_recorded_and_raised() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, fail_times=1, retryable=False)
    sink = MemoryAnalyticsSink()
    service = make_service(source=source, reranker=FakeReranker(), sink=sink)

    with pytest.raises(RetrievalError):
        await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=RetrievalConfig())

    await service.tracker.flush()
    records = sink.records()
    assert len(records) == 1
    assert records[0].errors[0].stage == "stage1"
    assert records[0].errors[0].kind == "retrieval_error"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reranker, update, reason",
    [
        (None, {}, "provider_unconfigured"),
        (FakeReranker(), {"enable_stage2": False}, "disabled"),
        (FakeReranker(), {"reranking_provider": "none"}, "provider_none"),
        (FakeReranker(), {"max_stage2_cost_usd": 0.0}, "cost_budget"),
    ],
)
async def test_stage2_skip_reasons(reranker, update, reason: str) -> None:
    service = make_service(reranker=reranker, cache=False)
    config = RetrievalConfig().model_copy(update=update)

    result = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=config)

    assert result.metadata.stage2_skip_reason == reason
    assert result.stage2_enabled is False
    assert result.degraded is False  # docstring: 预算/配置跳过不算降级
    assert [c.final_rank for c in result.results] == list(range(1, len(result.results) + 1))


def test_stage2_skip_reason_latency_budget() -> None:
    config = RetrievalConfig(max_latency_ms=50.0)
    assert (
        stage2_skip_reason(config, candidate_count=3, provider_available=True, estimated_cost_usd=0.0, elapsed_ms=80.0)
        == "latency_budget"
    )
    assert (
        stage2_skip_reason(config, candidate_count=0, provider_available=True, estimated_cost_usd=0.0, elapsed_ms=1.0)
        == "no_candidates"
    )
    assert (
        stage2_skip_reason(config, candidate_count=3, provider_available=True, estimated_cost_usd=0.0, elapsed_ms=1.0)
        is None
    )


@pytest.mark.asyncio
async def test_stage2_timeout_degrades_to_stage1_order() -> None:
    reranker = SlowReranker(delay_s=1.0)
    service = make_service(reranker=reranker, cache=False)
    config = RetrievalConfig(final_limit=4, timeout_ms=20, retry_attempts=0)
    baseline = make_service(reranker=None, cache=False)

    result = await service.two_stage(query=QUERY, document_ids=DOCS, user_id="u1", config=config)
    plain = await baseline.two_stage(
        query=QUERY, document_ids=DOCS, user_id="u1", config=config.model_copy(update={"enable_stage2": False})
    )

    assert reranker.calls == 1
    assert result.degraded is True
    assert result.stage2_enabled is False
    assert _ids(result) == _ids(plain)
    errors = result.to_response()["metadata"]["errors"]
    assert errors[0]["stage"] == "stage2"
    assert errors[0]["kind"] == "provider_timeout"
