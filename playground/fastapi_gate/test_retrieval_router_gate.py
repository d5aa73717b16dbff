# playground/fastapi_gate/test_retrieval_router_gate.py

"""
[职责] retrieval/health router gate：验证 HTTP 请求体（camelCase）、响应结构、错误体 {error, kind, details?, trace_id} 与 header 透传。
[边界] RetrievalService 使用内存 double 注入；不触发真实 provider。
[上游关系] api/routers/retrieval.py、api/routers/health.py、api/errors.py、api/middleware.py。
[下游关系] 调用方依赖此 HTTP 契约。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from gate_doubles import FailingReranker, FakeCandidateSource, FakeReranker, SCENARIO_SEMANTIC, make_service
from rag_lab.backend.api.app import create_app
from rag_lab.backend.api.deps import get_retrieval_service
from rag_lab.backend.api.errors import register_error_handlers
from rag_lab.backend.api.middleware import TraceContextMiddleware
from rag_lab.backend.api.routers.health import router as health_router
from rag_lab.backend.api.routers.retrieval import router as retrieval_router
from rag_lab.backend.schemas.ids import new_uuid
from rag_lab.backend.services.retrieval_service import RetrievalService


pytestmark = pytest.mark.fastapi_gate

BODY: Dict[str, Any] = {
    "query": "What is machine learning?",
    "documentIds": ["d1", "d2", "d3"],
    "userId": "u1",
    "maxResultsPerDocument": 2,
}


def _app(service: RetrievalService) -> FastAPI:
    app = FastAPI()
    app.add_middleware(TraceContextMiddleware)  # docstring: inject trace/request headers
    register_error_handlers(app)
    app.include_router(retrieval_router)
    app.include_router(health_router)
    app.dependency_overrides[get_retrieval_service] = lambda: service  # docstring: override service dep
    return app


async def _post(app: FastAPI, path: str, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
    transport = ASGITransport(app=app)  # docstring: ASGI transport for httpx
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.post(path, json=body, headers=headers or {})


@pytest.mark.asyncio
async def test_two_stage_router_success() -> None:
    trace_id, request_id = str(new_uuid()), str(new_uuid())
    resp = await _post(
        _app(make_service(reranker=FakeReranker())),
        "/retrieval/two-stage",
        BODY,
        headers={"x-trace-id": trace_id, "x-request-id": request_id},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert set(data) == {"results", "pipeline", "performance", "metadata", "executionTime"}
    assert data["pipeline"]["stage2_enabled"] is True
    assert len(data["results"]) == 6
    assert data["metadata"]["query"]["intent"] == "definitional"
    assert resp.headers["x-trace-id"] == trace_id  # docstring: trace_id must propagate
    assert resp.headers["x-request-id"] == request_id


@pytest.mark.asyncio
async def test_two_stage_router_degrades_not_fails() -> None:
    resp = await _post(_app(make_service(reranker=FailingReranker())), "/retrieval/two-stage", BODY)
    assert resp.status_code == 200
    assert resp.json()["pipeline"] == {
        "stage1_enabled": True,
        "stage2_enabled": False,
        "parallel_processing": False,
        "degraded": True,
    }


@pytest.mark.asyncio
async def test_two_stage_router_empty_query_is_400() -> None:
    trace_id = str(new_uuid())
    resp = await _post(
        _app(make_service(reranker=FakeReranker())),
        "/retrieval/two-stage",
        {**BODY, "query": "  "},
        headers={"x-trace-id": trace_id},
    )

    assert resp.status_code == 400
    data = resp.json()
    assert data["kind"] == "validation_error"
    assert data["error"] == "query is required"
    assert data["trace_id"] == trace_id
    assert set(data) <= {"error", "kind", "details", "trace_id"}


@pytest.mark.asyncio
async def test_two_stage_router_schema_violation_is_400() -> None:
    resp = await _post(
        _app(make_service(reranker=FakeReranker())),
        "/retrieval/two-stage",
        {**BODY, "semanticLimit": 0, "unknownField": True},
    )
    assert resp.status_code == 400
    data = resp.json()
    assert data["kind"] == "validation_error"
    assert "body.semanticLimit" in data["details"]  # docstring: details 为紧凑 JSON 文本
    assert "body.unknownField" in data["details"]
    assert data["trace_id"]


@pytest.mark.asyncio
async def test_two_stage_router_stage1_failure_is_500() -> None:
    source = FakeCandidateSource(semantic=SCENARIO_SEMANTIC, fail_times=1, retryable=False)
    resp = await _post(_app(make_service(source=source, reranker=FakeReranker())), "/retrieval/two-stage", BODY)
    assert resp.status_code == 500
    assert resp.json()["kind"] == "retrieval_error"


@pytest.mark.asyncio
async def test_preprocess_router() -> None:
    resp = await _post(
        _app(make_service()),
        "/retrieval/preprocess",
        {"query": "What is machne learning?", "enableSynonymExpansion": False},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["corrected"] == "what is machine learning"
    assert data["variants"] == ["what is machine learning", "machine learning"]
    assert data["intent"] == "definitional"
    assert data["stats"]["spell_correction_applied"] is True


@pytest.mark.asyncio
async def test_preset_router() -> None:
    app = _app(make_service())
    resp = await _post(
        app,
        "/retrieval/presets/accuracy",
        {"query": "how does a neural network work", "overrides": {"finalLimit": 5}},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["config"]["topKInitial"] == 200
    assert data["config"]["finalLimit"] == 5
    assert data["config"]["enableStage2"] is True
    assert data["analysis"]["has_technical_terms"] is True

    bad_goal = await _post(app, "/retrieval/presets/cheapest", {"query": "q"})
    assert bad_goal.status_code == 400
    assert bad_goal.json()["kind"] == "validation_error"

    bad_override = await _post(app, "/retrieval/presets/speed", {"query": "q", "overrides": {"finalLimit": 0}})
    assert bad_override.status_code == 400


@pytest.mark.asyncio
async def test_analytics_and_health_routers() -> None:
    service = make_service(reranker=FakeReranker())
    app = _app(service)
    await _post(app, "/retrieval/two-stage", BODY)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        analytics = await client.get("/retrieval/analytics")
        health = await client.get("/health")

    assert analytics.status_code == 200
    assert analytics.json()["sample_size"] == 1
    assert health.status_code == 200
    data = health.json()
    assert data["status"] == "ok"
    assert data["breakers"]["cohere"]["state"] == "closed"
    assert data["cache"]["size"] == 1
    assert data["version"]["api"] == "v1"


@pytest.mark.asyncio
async def test_create_app_uses_injected_service() -> None:
    app = create_app(make_service(reranker=FakeReranker()))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post("/retrieval/two-stage", json=BODY)
        health = await client.get("/health")
    assert resp.status_code == 200
    assert health.json()["status"] == "ok"
