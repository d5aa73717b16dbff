# src/rag_lab/backend/pipelines/retrieval/providers.py

"""
[职责] 外部协作者能力接口（CandidateSource/EmbeddingProvider/RerankingProvider）与基于 httpx 的 HTTP 适配器。
[边界] 只做协议转换与错误归类（超时 -> ProviderTimeout；429/5xx/传输错误 -> retryable）；不做超时控制与重试（由 orchestrator 负责）。
[上游关系] services/retrieval_service 按 Settings 装配；测试注入 test double。
[下游关系] scoring（Stage 1）调用候选源与 embedding；rerank（Stage 2）调用重排 provider。
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

import httpx

from rag_lab.backend.utils.constants import (
    COHERE_COST_PER_1K_DOCS,
    COHERE_MAX_DOC_CHARS,
    CROSS_ENCODER_COST_PER_1K_DOCS,
    CROSS_ENCODER_MAX_DOC_CHARS,
)
from rag_lab.backend.utils.errors import DomainError, ProviderTimeout, ReRankingError, RetrievalError

from .types import RawHit


_RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}  # docstring: 视为瞬时故障的 HTTP status


@runtime_checkable
class CandidateSource(Protocol):
    """Semantic + lexical candidate store scoped to a document set."""

    async def semantic_search(
        self,
        embedding: Sequence[float],
        *,
        document_ids: Sequence[str],
        user_id: str,
        limit: int,
    ) -> List[RawHit]: ...

    async def lexical_search(
        self,
        query: str,
        *,
        document_ids: Sequence[str],
        user_id: str,
        limit: int,
    ) -> List[RawHit]: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str

    async def embed(self, text: str) -> List[float]: ...


@runtime_checkable
class RerankingProvider(Protocol):
    """Relevance scores aligned by index with `documents`."""

    name: str

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        *,
        model: str,
        max_chunks_per_doc: int,
    ) -> List[float]: ...

    def estimate_cost(self, n_documents: int) -> float: ...


def _classify_http_error(
    exc: Exception,
    *,
    channel: str,
    error_cls: type,
) -> DomainError:
    """
    [职责] 将 httpx 异常映射为领域错误。
    [边界] TimeoutException -> ProviderTimeout；HTTPStatusError 按 status 判定 retryable；其它传输错误 retryable。
    """
    if isinstance(exc, httpx.TimeoutException):
        return ProviderTimeout(message=f"{channel} request timed out", detail={"channel": channel}, cause=exc)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return error_cls(
            message=f"{channel} request failed with status {status}",
            detail={"channel": channel, "status": status},
            cause=exc,
            retryable=status in _RETRYABLE_STATUS,
        )
    return error_cls(
        message=f"{channel} request failed",
        detail={"channel": channel, "error": exc.__class__.__name__},
        cause=exc,
        retryable=True,
    )


def _rows_to_hits(rows: Any, *, channel: str) -> List[RawHit]:
    if not isinstance(rows, list):
        raise RetrievalError(
            message=f"{channel} returned a malformed payload",
            detail={"channel": channel},
            retryable=False,
        )
    hits: List[RawHit] = []
    for row in rows:
        if not isinstance(row, Mapping) or row.get("id") is None:
            continue  # docstring: 跳过缺失 id 的行
        meta = row.get("metadata") if isinstance(row.get("metadata"), Mapping) else {}
        hits.append(
            RawHit(
                id=str(row["id"]),
                content=str(row.get("content") or ""),
                score=float(row.get("score", row.get("similarity", 0.0)) or 0.0),
                document_id=str(row.get("document_id") or meta.get("document_id") or ""),
                metadata=dict(meta),
            )
        )
    return hits


class RpcCandidateSource:
    """
    [职责] PostgREST 风格候选源适配器：POST {base}/rest/v1/rpc/semantic_search 与 /bm25_search。
    [边界] 不传阈值（阈值在 Stage 1 进程内做 OR 判定）；不做重试。
    [上游关系] Settings.CANDIDATE_STORE_URL/KEY。
    [下游关系] scoring.fetch_channels。
    """

    def __init__(self, *, base_url: str, api_key: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient()

    async def _rpc(self, fn: str, payload: Dict[str, Any], *, channel: str) -> List[RawHit]:
        try:
            resp = await self._client.post(
                f"{self._base_url}/rest/v1/rpc/{fn}", json=payload, headers=self._headers
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise _classify_http_error(exc, channel=channel, error_cls=RetrievalError) from exc
        return _rows_to_hits(resp.json(), channel=channel)

    async def semantic_search(
        self,
        embedding: Sequence[float],
        *,
        document_ids: Sequence[str],
        user_id: str,
        limit: int,
    ) -> List[RawHit]:
        payload = {
            "query_embedding": list(embedding),
            "doc_ids": list(document_ids),
            "user_id": user_id,
            "match_limit": int(limit),
            "similarity_threshold": 0.0,  # docstring: 阈值在拉取后于进程内按 OR 规则过滤（fusion.filter_by_thresholds）
        }
        return await self._rpc("semantic_search", payload, channel="semantic")

    async def lexical_search(
        self,
        query: str,
        *,
        document_ids: Sequence[str],
        user_id: str,
        limit: int,
    ) -> List[RawHit]:
        payload = {
            "search_query": query,
            "doc_ids": list(document_ids),
            "user_id": user_id,
            "match_limit": int(limit),
        }
        return await self._rpc("bm25_search", payload, channel="lexical")

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIEmbeddingProvider:
    """OpenAI embeddings over HTTP (POST {base}/embeddings)."""  # docstring: 失败统一归为 RetrievalError

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self._url = f"{base_url.rstrip('/')}/embeddings"
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient()

    async def embed(self, text: str) -> List[float]:
        try:
            resp = await self._client.post(
                self._url, json={"model": self.model, "input": text}, headers=self._headers
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise _classify_http_error(exc, channel="embedding", error_cls=RetrievalError) from exc
        try:
            vector = resp.json()["data"][0]["embedding"]
            return [float(x) for x in vector]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise RetrievalError(
                message="embedding response malformed", detail={"channel": "embedding"}, cause=exc, retryable=False
            ) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


class CohereRerankingProvider:
    """
    [职责] Cohere /rerank 适配器：返回与输入文档按 index 对齐的 relevance_score。
    [边界] 文档截断为 1000 字符；未返回的 index 记为 0.0。
    """

    name = "cohere"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.cohere.ai/v1",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/rerank"
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        self._client = client or httpx.AsyncClient()

    def estimate_cost(self, n_documents: int) -> float:
        return max(0, int(n_documents)) / 1000.0 * COHERE_COST_PER_1K_DOCS

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        *,
        model: str,
        max_chunks_per_doc: int,
    ) -> List[float]:
        if not documents:
            return []
        payload = {
            "model": model,
            "query": query,
            "documents": [d[:COHERE_MAX_DOC_CHARS] for d in documents],
            "top_n": len(documents),
            "max_chunks_per_doc": int(max_chunks_per_doc),
            "return_documents": False,
        }
        try:
            resp = await self._client.post(self._url, json=payload, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise _classify_http_error(exc, channel="rerank", error_cls=ReRankingError) from exc

        scores = [0.0] * len(documents)
        for item in resp.json().get("results") or []:
            idx = int(item.get("index", -1))
            if 0 <= idx < len(scores):
                scores[idx] = float(item.get("relevance_score") or 0.0)
        return scores

    async def aclose(self) -> None:
        await self._client.aclose()


def _sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def _parse_cross_encoder_item(item: Any) -> float:
    """HF inference returns a number, a {label, score} dict, or a list of such dicts."""
    if isinstance(item, (int, float)):
        return float(item)
    if isinstance(item, Mapping):
        return float(item.get("score") or 0.0)
    if isinstance(item, list) and item:
        return _parse_cross_encoder_item(item[0])
    return 0.0


def cross_encoder_scores(items: Sequence[Any]) -> List[float]:
    """
    [职责] 将一次响应的原始分数映射到 [0,1]。
    [边界] 整批判定：任一分数超出 [0,1] 即视为 logits，全部过 sigmoid；否则原样返回，保持单调。
    """
    raw = [_parse_cross_encoder_item(item) for item in items]
    if any(v < 0.0 or v > 1.0 for v in raw):
        return [_sigmoid(v) for v in raw]
    return raw


class CrossEncoderRerankingProvider:
    """HuggingFace inference cross-encoder (one [query, passage] pair per document)."""

    name = "cross_encoder"

    def __init__(
        self,
        *,
        api_key: str,
        default_model: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        base_url: str = "https://api-inference.huggingface.co/models",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._default_model = default_model
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient()

    def estimate_cost(self, n_documents: int) -> float:
        return max(0, int(n_documents)) / 1000.0 * CROSS_ENCODER_COST_PER_1K_DOCS

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        *,
        model: str,
        max_chunks_per_doc: int,
    ) -> List[float]:
        if not documents:
            return []
        target = model if "/" in model else self._default_model  # docstring: Cohere 风格模型名回退到默认 cross-encoder
        payload = {"inputs": [[query, d[:CROSS_ENCODER_MAX_DOC_CHARS]] for d in documents]}
        try:
            resp = await self._client.post(f"{self._base_url}/{target}", json=payload, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise _classify_http_error(exc, channel="rerank", error_cls=ReRankingError) from exc

        data = resp.json()
        if not isinstance(data, list) or len(data) != len(documents):
            raise ReRankingError(
                message="cross-encoder returned misaligned scores",
                detail={"expected": len(documents), "received": len(data) if isinstance(data, list) else 0},
            )
        return cross_encoder_scores(data)

    async def aclose(self) -> None:
        await self._client.aclose()
