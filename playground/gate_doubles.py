# playground/gate_doubles.py

"""
[职责] gate 共享 test double：内存候选源、固定向量 embedder、可控重排 provider，以及装配 RetrievalService 的工厂。
[边界] 不访问网络；行为完全由构造参数决定。
[上游关系] 各 *_gate 测试直接 import。
[下游关系] HybridScorer / ReRanker / RetrievalService 通过 Protocol 使用这些 double。
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Mapping, Optional, Sequence

from rag_lab.backend.pipelines.analytics.sink import MemoryAnalyticsSink
from rag_lab.backend.pipelines.analytics.tracker import MetadataTracker
from rag_lab.backend.pipelines.base.cache import ResultCache
from rag_lab.backend.pipelines.retrieval.types import RawHit
from rag_lab.backend.services.retrieval_service import RetrievalService
from rag_lab.backend.utils.errors import ReRankingError, RetrievalError


async def no_sleep(_: float) -> None:
    return None  # docstring: skip backoff waits


def hit(cid: str, score: float, doc: str, content: Optional[str] = None) -> RawHit:
    return RawHit(id=cid, content=content or f"content of {cid}", score=score, document_id=doc)


# 5 semantic + 5 lexical candidates spread over 3 documents (d1 has 3 distinct candidates).
SCENARIO_SEMANTIC: List[RawHit] = [
    hit("c1", 0.95, "d1"),
    hit("c2", 0.90, "d1"),
    hit("c3", 0.85, "d2"),
    hit("c4", 0.80, "d2"),
    hit("c5", 0.75, "d3"),
]
SCENARIO_LEXICAL: List[RawHit] = [
    hit("c1", 7.5, "d1"),
    hit("c6", 6.0, "d1"),
    hit("c7", 4.5, "d3"),
    hit("c3", 3.0, "d2"),
    hit("c8", 1.5, "d2"),
]


class FakeCandidateSource:
    """Returns the same hits for every query, restricted to the requested documents."""

    def __init__(
        self,
        *,
        semantic: Sequence[RawHit] = (),
        lexical: Sequence[RawHit] = (),
        fail_times: int = 0,
        retryable: bool = True,
    ) -> None:
        self._semantic = list(semantic)
        self._lexical = list(lexical)
        self._fail_times = fail_times
        self._retryable = retryable
        self.semantic_calls = 0
        self.lexical_calls = 0
        self.queries: List[str] = []

    def _maybe_fail(self) -> None:
        if self._fail_times > 0:
            self._fail_times -= 1
            raise RetrievalError(message="store unavailable", retryable=self._retryable)

    async def semantic_search(
        self, embedding: Sequence[float], *, document_ids: Sequence[str], user_id: str, limit: int
    ) -> List[RawHit]:
        self.semantic_calls += 1
        self._maybe_fail()
        docs = set(document_ids)
        return [h for h in self._semantic if h.document_id in docs][:limit]

    async def lexical_search(
        self, query: str, *, document_ids: Sequence[str], user_id: str, limit: int
    ) -> List[RawHit]:
        self.lexical_calls += 1
        self.queries.append(query)
        self._maybe_fail()
        docs = set(document_ids)
        return [h for h in self._lexical if h.document_id in docs][:limit]


class FakeEmbedder:
    name = "fake-embed"

    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        return [0.1, 0.2, 0.3]


class FakeReranker:
    """Scores documents by content lookup (default 0.5)."""

    def __init__(self, *, name: str = "cohere", scores: Optional[Mapping[str, float]] = None, cost_per_doc: float = 0.001) -> None:
        self.name = name
        self._scores: Dict[str, float] = dict(scores or {})
        self._cost_per_doc = cost_per_doc
        self.calls = 0
        self.last_documents: List[str] = []

    def estimate_cost(self, n_documents: int) -> float:
        return n_documents * self._cost_per_doc

    async def rerank(
        self, query: str, documents: Sequence[str], *, model: str, max_chunks_per_doc: int
    ) -> List[float]:
        self.calls += 1
        self.last_documents = list(documents)
        return [self._scores.get(d, 0.5) for d in documents]


class FailingReranker(FakeReranker):
    def __init__(self, *, name: str = "cohere", retryable: bool = False) -> None:
        super().__init__(name=name)
        self._retryable = retryable

    async def rerank(
        self, query: str, documents: Sequence[str], *, model: str, max_chunks_per_doc: int
    ) -> List[float]:
        self.calls += 1
        raise ReRankingError(message="provider exploded", retryable=self._retryable)


def make_service(
    *,
    source: Optional[FakeCandidateSource] = None,
    reranker: Optional[FakeReranker] = None,
    cache: bool = True,
    sink: Optional[MemoryAnalyticsSink] = None,
) -> RetrievalService:
    source = source or FakeCandidateSource(semantic=SCENARIO_SEMANTIC, lexical=SCENARIO_LEXICAL)
    rerankers = {reranker.name: reranker} if reranker is not None else {}
    tracker = MetadataTracker(
        sink=sink if sink is not None else MemoryAnalyticsSink(), batch_size=1000, rng=lambda: 0.0
    )
    return RetrievalService(
        source=source,
        embedder=FakeEmbedder(),
        rerankers=rerankers,
        tracker=tracker,
        cache=ResultCache(ttl_s=60.0, max_size=16) if cache else None,
        embedding_model="fake-embed-model",
        sleep=no_sleep,
    )


class SlowReranker(FakeReranker):
    """Sleeps before answering; pair with a small timeout_ms."""

    def __init__(self, *, name: str = "cohere", delay_s: float = 1.0) -> None:
        super().__init__(name=name)
        self._delay_s = delay_s

    async def rerank(
        self, query: str, documents: Sequence[str], *, model: str, max_chunks_per_doc: int
    ) -> List[float]:
        self.calls += 1
        await asyncio.sleep(self._delay_s)
        return [0.5 for _ in documents]
