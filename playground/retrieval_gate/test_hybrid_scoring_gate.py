# playground/retrieval_gate/test_hybrid_scoring_gate.py

"""
[职责] retrieval gate：验证归一化范围、融合公式、阈值 OR 判定、通道合并、HybridScorer 重试/超时与 Diversifier 上限。
[边界] 候选源为内存 double；不访问网络。
[上游关系] pipelines/retrieval/{normalize,fusion,scorer,diversify}.py。
[下游关系] ReRanker 与 orchestrator 依赖 initial_rank/hybrid_score 语义。
"""

from __future__ import annotations

import asyncio
import json
from typing import List, Sequence

import httpx
import pytest

from gate_doubles import SCENARIO_LEXICAL, SCENARIO_SEMANTIC, FakeCandidateSource, FakeEmbedder, hit, no_sleep
from rag_lab.backend.pipelines.base.context import PipelineContext
from rag_lab.backend.pipelines.retrieval.diversify import distinct_documents, diversify_candidates
from rag_lab.backend.pipelines.retrieval.fusion import (
    assign_channel_ranks,
    filter_by_thresholds,
    fuse_scores,
    rank_by_hybrid,
)
from rag_lab.backend.pipelines.retrieval.normalize import min_max, normalize_channels, rank_based, z_score
from rag_lab.backend.pipelines.retrieval.providers import RpcCandidateSource
from rag_lab.backend.pipelines.retrieval.scorer import HybridScorer, merge_channels
from rag_lab.backend.pipelines.retrieval.types import Candidate, RawHit
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import RetrievalError


pytestmark = pytest.mark.retrieval_gate


SCORES = [3.2, 0.1, 7.7, 7.7, 2.0, -1.5]


def _both_channels(rows: Sequence[tuple]) -> List[Candidate]:
    """rows: (id, semantic_raw, lexical_raw, document_id)."""
    out = []
    for cid, sem, lex, doc in rows:
        out.append(
            Candidate(
                id=cid,
                content=cid,
                document_id=doc,
                semantic_score=sem,
                lexical_score=lex,
                semantic_rank=0,
                lexical_rank=0,
            )
        )
    assign_channel_ranks(out)
    return out


@pytest.mark.parametrize("fn", [min_max, rank_based])
def test_bounded_normalizers_stay_in_unit_interval(fn) -> None:
    out = fn(SCORES)
    assert len(out) == len(SCORES)
    assert all(0.0 <= v <= 1.0 for v in out)
    assert fn([]) == []


def test_normalizer_edge_cases() -> None:
    assert min_max([4.0, 4.0]) == [1.0, 1.0]  # docstring: 常数列表全部并列第一
    assert max(min_max(SCORES)) == 1.0 and min(min_max(SCORES)) == 0.0
    z = z_score(SCORES)
    assert all(0.0 < v < 1.0 for v in z)
    assert z_score([2.0, 2.0, 2.0]) == [0.5, 0.5, 0.5]
    ranks = rank_based([0.2, 0.9, 0.5])
    assert ranks == [pytest.approx(1 / 3), 1.0, pytest.approx(2 / 3)]


def test_weighted_sum_scenario_point_six_point_four() -> None:
    a = Candidate(id="a", content="a", document_id="d1", semantic_rank=1, lexical_rank=None, semantic_norm=1.0)
    b = Candidate(id="b", content="b", document_id="d2", semantic_rank=None, lexical_rank=1, lexical_norm=1.0)

    outcome = fuse_scores([a, b], method="weighted_sum", semantic_weight=0.6, lexical_weight=0.4)
    ranked = rank_by_hybrid([b, a])

    assert outcome.effective_method == "weighted_sum"
    assert a.hybrid_score == pytest.approx(0.6)
    assert b.hybrid_score == pytest.approx(0.4)
    assert [c.id for c in ranked] == ["a", "b"]
    assert (a.initial_rank, b.initial_rank) == (1, 2)


@pytest.mark.parametrize(
    "weights, key",
    [((1.0, 0.0), "semantic_score"), ((0.0, 1.0), "lexical_score")],
)
def test_single_channel_weights_reduce_to_that_channel(weights, key) -> None:
    cands = _both_channels(
        [
            ("c1", 0.91, 2.0, "d1"),
            ("c2", 0.72, 9.0, "d1"),
            ("c3", 0.88, 4.5, "d2"),
            ("c4", 0.99, 0.5, "d3"),
        ]
    )
    normalize_channels(cands, method="min_max")
    fuse_scores(cands, method="weighted_sum", semantic_weight=weights[0], lexical_weight=weights[1])
    ranked = [c.id for c in rank_by_hybrid(cands)]
    expected = [c.id for c in sorted(cands, key=lambda c: -getattr(c, key))]
    assert ranked == expected


def _single_channel_mix() -> List[Candidate]:
    """a/b only lexical, c only semantic."""
    cands = [
        Candidate(id="a", content="a", document_id="d1", lexical_score=5.0, lexical_rank=0),
        Candidate(id="b", content="b", document_id="d1", lexical_score=2.0, lexical_rank=0),
        Candidate(id="c", content="c", document_id="d2", semantic_score=0.9, semantic_rank=0),
    ]
    assign_channel_ranks(cands)
    normalize_channels(cands, method="min_max")
    return cands


def test_lexical_only_weights_keep_weakest_lexical_hit_above_absent() -> None:
    cands = _single_channel_mix()
    fuse_scores(cands, method="weighted_sum", semantic_weight=0.0, lexical_weight=1.0)
    b = next(c for c in cands if c.id == "b")
    assert b.lexical_norm == 0.0  # docstring: 最弱命中与缺席同为 0 分
    assert [c.id for c in rank_by_hybrid(cands)] == ["a", "b", "c"]


def test_semantic_only_weights_rank_absent_lexical_hits_last() -> None:
    cands = _single_channel_mix()
    fuse_scores(cands, method="weighted_sum", semantic_weight=1.0, lexical_weight=0.0)
    ranked = [c.id for c in rank_by_hybrid(cands)]
    assert ranked[0] == "c"
    assert [c.channel_support for c in cands] == [0, 0, 1]


def test_rrf_and_comb_sum() -> None:
    cands = _both_channels([("x", 0.9, 5.0, "d1"), ("y", 0.8, 6.0, "d1")])
    fuse_scores(cands, method="reciprocal_rank_fusion", semantic_weight=0.6, lexical_weight=0.4, rrf_k=60)
    x, y = cands
    assert x.hybrid_score == pytest.approx(1 / 61 + 1 / 62)
    assert y.hybrid_score == pytest.approx(1 / 62 + 1 / 61)

    normalize_channels(cands, method="min_max")
    fuse_scores(cands, method="comb_sum", semantic_weight=0.6, lexical_weight=0.4)
    assert x.hybrid_score == pytest.approx(1.0)  # docstring: 1.0 + 0.0
    assert x.metadata["fusion_method"] == "comb_sum"


def test_adaptive_switches_to_rrf_on_skewed_scores() -> None:
    skewed = _both_channels([(f"s{i}", s, 1.0 + i, "d1") for i, s in enumerate([0.1, 0.1, 0.1, 0.1, 5.0])])
    outcome = fuse_scores(skewed, method="adaptive", semantic_weight=0.6, lexical_weight=0.4)
    assert outcome.method == "adaptive"
    assert outcome.effective_method == "reciprocal_rank_fusion"

    flat = _both_channels([("a", 1.0, 1.0, "d1"), ("b", 2.0, 2.0, "d1"), ("c", 3.0, 3.0, "d1")])
    assert fuse_scores(flat, method="adaptive", semantic_weight=0.6, lexical_weight=0.4).effective_method == "weighted_sum"


def test_thresholds_use_or_over_raw_scores() -> None:
    both = Candidate(id="both", content="", document_id="d", semantic_score=0.5, lexical_score=0.2, semantic_rank=0, lexical_rank=0)
    weak = Candidate(id="weak", content="", document_id="d", semantic_score=0.5, semantic_rank=0)
    strong = Candidate(id="strong", content="", document_id="d", semantic_score=0.75, semantic_rank=0)
    kept = filter_by_thresholds([both, weak, strong], semantic_threshold=0.7, lexical_threshold=0.1)
    assert [c.id for c in kept] == ["both", "strong"]


def test_merge_channels_dedupes_and_keeps_max_score() -> None:
    merged = merge_channels(
        [
            ("q1", [hit("a", 0.7, "d1"), hit("b", 0.9, "d2")], [hit("a", 2.0, "d1")]),
            ("q2", [hit("a", 0.8, "d1")], [hit("c", 1.0, "d3")]),
        ]
    )
    by_id = {c.id: c for c in merged}
    assert sorted(by_id) == ["a", "b", "c"]
    assert by_id["a"].semantic_score == pytest.approx(0.8)
    assert by_id["a"].lexical_score == pytest.approx(2.0)
    assert by_id["a"].matched_variants == ["q1", "q2"]
    assert by_id["c"].semantic_rank is None  # docstring: 缺席通道保持 None


@pytest.mark.parametrize("cap", [1, 2, 3])
def test_diversify_respects_per_document_cap(cap: int) -> None:
    cands = rank_by_hybrid(merge_channels([("q", SCENARIO_SEMANTIC, SCENARIO_LEXICAL)]))
    kept = diversify_candidates(cands, max_per_document=cap)
    counts: dict = {}
    for c in kept:
        counts[c.document_id] = counts.get(c.document_id, 0) + 1
    assert max(counts.values()) <= cap
    assert [c.initial_rank for c in kept] == list(range(1, len(kept) + 1))
    original_order = [c.id for c in cands if c in kept]
    assert [c.id for c in kept] == original_order  # docstring: 相对顺序不变
    assert distinct_documents(kept) == 3


@pytest.mark.asyncio
async def test_scorer_dedupes_and_caps_variants() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL)
    scorer = HybridScorer(source=source, embedder=FakeEmbedder(), sleep=no_sleep)
    config = RetrievalConfig(max_query_variants=2)
    ctx = PipelineContext.create(user_id="u1")

    result = await scorer.run(["alpha", "alpha", " beta ", "gamma"], document_ids=["d1", "d2", "d3"], config=config, ctx=ctx)

    assert result.variants == ("alpha", "beta")
    assert source.queries == ["alpha", "beta"]
    assert result.fetched_count == 8
    assert [c.initial_rank for c in result.candidates] == list(range(1, len(result.candidates) + 1))
    assert ctx.provider_snapshot["embedding"]["name"] == "fake-embed"


@pytest.mark.asyncio
async def test_scorer_parallel_matches_sequential() -> None:
    async def _ids(parallel: bool) -> List[str]:
        scorer = HybridScorer(
            source=FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL),
            embedder=FakeEmbedder(),
            sleep=no_sleep,
        )
        res = await scorer.run(
            ["q1", "q2"],
            document_ids=["d1", "d2", "d3"],
            config=RetrievalConfig(enable_parallel_processing=parallel),
            ctx=PipelineContext.create(user_id="u1"),
        )
        return [c.id for c in res.candidates]

    assert await _ids(True) == await _ids(False)


@pytest.mark.asyncio
async def test_scorer_retries_transient_failures() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL, fail_times=2)
    scorer = HybridScorer(source=source, embedder=FakeEmbedder(), sleep=no_sleep)
    ctx = PipelineContext.create(user_id="u1")

    result = await scorer.run(["q"], document_ids=["d1", "d2", "d3"], config=RetrievalConfig(retry_attempts=3), ctx=ctx)

    assert result.candidates
    assert ctx.retries == 2
    assert source.semantic_calls == 3


@pytest.mark.asyncio
async def test_scorer_does_not_retry_permanent_failures() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, fail_times=5, retryable=False)
    scorer = HybridScorer(source=source, embedder=FakeEmbedder(), sleep=no_sleep)
    ctx = PipelineContext.create(user_id="u1")

    with pytest.raises(RetrievalError):
        await scorer.run(["q"], document_ids=["d1"], config=RetrievalConfig(), ctx=ctx)
    assert source.semantic_calls == 1
    assert ctx.retries == 0


class _SlowSource(FakeCandidateSource):
    async def semantic_search(self, embedding, *, document_ids, user_id, limit) -> List[RawHit]:
        await asyncio.sleep(1.0)
        return []


@pytest.mark.asyncio
async def test_scorer_timeout_surfaces_as_retrieval_error() -> None:
    scorer = HybridScorer(source=_SlowSource(), embedder=FakeEmbedder(), sleep=no_sleep)
    config = RetrievalConfig(timeout_ms=10, retry_attempts=0)

    with pytest.raises(RetrievalError) as info:
        await scorer.run(["q"], document_ids=["d1"], config=config, ctx=PipelineContext.create(user_id="u1"))
    assert info.value.detail["cause_kind"] == "provider_timeout"
    assert info.value.retryable is False


@pytest.mark.asyncio
async def test_rpc_source_fetches_unthresholded_hits() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[
                {"id": "c1", "content": "ml", "similarity": 0.92, "document_id": "d1"},
                {"id": "c2", "content": "weak", "similarity": 0.15, "metadata": {"document_id": "d2"}},
                {"content": "no id"},
            ],
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = RpcCandidateSource(base_url="https://store.test/", api_key="k", client=client)
    try:
        hits = await source.semantic_search([0.1, 0.2], document_ids=["d1", "d2"], user_id="u1", limit=5)
    finally:
        await client.aclose()

    assert seen["path"] == "/rest/v1/rpc/semantic_search"
    assert seen["body"]["similarity_threshold"] == 0.0  # docstring: 阈值留给进程内 OR 过滤
    assert [(h.id, h.document_id) for h in hits] == [("c1", "d1"), ("c2", "d2")]

    weak = Candidate(id="c2", content="weak", document_id="d2", semantic_score=0.15, semantic_rank=1)
    assert filter_by_thresholds([weak], semantic_threshold=0.7, lexical_threshold=0.1) == []
