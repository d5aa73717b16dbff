# src/rag_lab/backend/api/routers/retrieval.py

"""
[职责] retrieval router：提供两阶段检索、查询预处理、预设配置与分析报告的 HTTP 入口。
[边界] 不实现检索逻辑；只做 HTTP 入参解析、服务调用与错误映射。
[上游关系] 前端或调用方发起 /retrieval/* 请求。
[下游关系] RetrievalService（pipelines/retrieval + analytics）。
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import pydantic
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rag_lab.backend.api.deps import get_retrieval_service, get_trace_context
from rag_lab.backend.api.errors import to_json_response
from rag_lab.backend.api.schemas_http.retrieval import (
    PreprocessRequest,
    PreprocessResponse,
    PresetRequest,
    TwoStageRequest,
)
from rag_lab.backend.schemas.audit import TraceContext
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.services.retrieval_service import RetrievalService
from rag_lab.backend.utils.errors import ValidationError


router = APIRouter(prefix="/retrieval", tags=["retrieval"])

_FIELD_BY_ALIAS: Dict[str, str] = {
    (info.alias or name): name for name, info in RetrievalConfig.model_fields.items()
}  # docstring: camelCase -> snake_case


def _snake_overrides(overrides: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {_FIELD_BY_ALIAS.get(str(k), str(k)): v for k, v in dict(overrides or {}).items()}


@router.post("/two-stage")
async def two_stage_retrieval(
    body: TwoStageRequest,
    trace_context: TraceContext = Depends(get_trace_context),
    service: RetrievalService = Depends(get_retrieval_service),
) -> Any:
    """
    [职责] 执行一次两阶段检索并返回 results/pipeline/performance/metadata/executionTime。
    [边界] Stage 2 失败在 pipeline 内降级，不视为请求失败；Stage 1 失败映射为 500。
    """
    trace_id = str(trace_context.trace_id)
    request_id = str(trace_context.request_id)
    try:
        result = await service.two_stage(
            query=body.query,
            document_ids=body.document_ids,
            user_id=body.user_id,
            config=body.config(),
            trace_id=trace_id,
            request_id=request_id,
        )
    except Exception as exc:
        return to_json_response(exc, trace_id=trace_id, request_id=request_id)
    return JSONResponse(content=result.to_response())


@router.post("/preprocess", response_model=PreprocessResponse)
async def preprocess_query(
    body: PreprocessRequest,
    trace_context: TraceContext = Depends(get_trace_context),
    service: RetrievalService = Depends(get_retrieval_service),
) -> Any:
    try:
        pq = service.preprocess(body.query, body.config())
    except Exception as exc:
        return to_json_response(
            exc, trace_id=str(trace_context.trace_id), request_id=str(trace_context.request_id)
        )
    return PreprocessResponse.from_result(pq)


@router.post("/presets/{goal}")
async def preset_for_goal(
    goal: str,
    body: PresetRequest,
    trace_context: TraceContext = Depends(get_trace_context),
    service: RetrievalService = Depends(get_retrieval_service),
) -> Any:
    """Build the preset config for a goal (speed/accuracy/balanced) and report the query analysis."""
    try:
        try:
            config, analysis = service.preset(goal, body.query, overrides=_snake_overrides(body.overrides))
        except pydantic.ValidationError as exc:
            raise ValidationError(
                message="invalid preset overrides",
                detail={"errors": [str(e.get("msg", "")) for e in exc.errors()]},
                cause=exc,
            ) from exc
    except Exception as exc:
        return to_json_response(
            exc, trace_id=str(trace_context.trace_id), request_id=str(trace_context.request_id)
        )
    return {
        "goal": goal,
        "config": config.model_dump(mode="json", by_alias=True),
        "analysis": analysis.to_dict(),
    }


@router.get("/analytics")
async def analytics_report(
    trace_context: TraceContext = Depends(get_trace_context),
    service: RetrievalService = Depends(get_retrieval_service),
) -> Any:
    try:
        report = service.analytics_report()
    except Exception as exc:
        return to_json_response(
            exc, trace_id=str(trace_context.trace_id), request_id=str(trace_context.request_id)
        )
    return report.model_dump(mode="json")
