# src/rag_lab/backend/api/errors.py

"""
[职责] API 错误映射：将异常统一转换为 ErrorResponse 与 HTTP status，并注册请求体校验失败的 400 handler。
[边界] 只在映射 5xx 时记录日志；不负责 trace/request 注入（由 middleware 负责）。
[上游关系] routers 捕获异常后调用 to_json_response；app factory 调用 register_error_handlers。
[下游关系] 调用方收到 {error, kind, details?, trace_id}。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from rag_lab.backend.api.schemas_http._common import ErrorResponse
from rag_lab.backend.schemas.ids import new_uuid
from rag_lab.backend.utils.constants import REQUEST_HEADER, TRACE_HEADER
from rag_lab.backend.utils.errors import ValidationError, to_http_error
from rag_lab.backend.utils.logging_ import get_logger, log_event


logger = get_logger("api.errors")


def _ensure_trace_id(trace_id: Optional[str]) -> str:
    raw = str(trace_id or "").strip()
    if raw:
        return raw
    return str(new_uuid())  # docstring: 无 trace_id 时生成兜底


def to_error_response(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
) -> Tuple[int, ErrorResponse]:
    """
    [职责] 将异常转换为 (status_code, ErrorResponse)。
    [边界] 不写 header；未知异常统一为 internal_error。
    """
    resolved_trace_id = _ensure_trace_id(trace_id)
    status_code, payload = to_http_error(error, trace_id=resolved_trace_id)
    return status_code, ErrorResponse.model_validate(payload)


def to_json_response(
    error: Exception,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """
    [职责] 将异常转换为 JSONResponse（含 header 透传）。
    [边界] 5xx 记录 error 日志（含堆栈）；4xx 不记录。
    [上游关系] routers 捕获异常后调用。
    [下游关系] FastAPI 直接返回该响应对象。
    """
    status_code, response = to_error_response(error, trace_id=trace_id)
    if status_code >= 500:
        log_event(
            logger,
            logging.ERROR,
            "request failed",
            context={"trace_id": trace_id, "request_id": request_id},
            fields={"kind": response.kind, "status": status_code},
            exc_info=error,
        )

    content: Dict[str, Any] = response.model_dump(exclude_none=True)
    headers: Dict[str, str] = {}
    if trace_id:
        headers[TRACE_HEADER] = str(trace_id)
    if request_id:
        headers[REQUEST_HEADER] = str(request_id)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body/path validation failures use the same 400 contract as ValidationError."""
    problems = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": str(err.get("msg", ""))}
        for err in exc.errors()
    ]
    error = ValidationError(message="invalid request", detail={"errors": problems})
    return to_json_response(
        error,
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _request_validation_handler)  # type: ignore[arg-type]
