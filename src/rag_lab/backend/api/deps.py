# src/rag_lab/backend/api/deps.py

"""
[职责] API 依赖装配：提供 trace_context 与进程级 RetrievalService 注入。
[边界] 不做业务逻辑；RetrievalService 懒加载一次，测试通过 dependency_overrides 替换。
[上游关系] FastAPI 路由层调用依赖注入。
[下游关系] routers 通过本模块获取依赖实例。
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from rag_lab.backend.schemas.audit import TraceContext
from rag_lab.backend.schemas.ids import UUIDStr, new_uuid
from rag_lab.backend.services.retrieval_service import RetrievalService, build_retrieval_service


_SERVICE: Optional[RetrievalService] = None


def get_retrieval_service() -> RetrievalService:
    """
    [职责] 获取进程级 RetrievalService（首次调用时按 Settings 装配）。
    [边界] 不启动后台任务（由 app lifespan 负责）。
    """
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = build_retrieval_service()
    return _SERVICE


def set_retrieval_service(service: Optional[RetrievalService]) -> None:
    """Install (or clear) the process-wide service; used by the app factory."""
    global _SERVICE
    _SERVICE = service


def get_trace_context(request: Request) -> TraceContext:
    """
    [职责] 获取或创建 TraceContext（优先使用 middleware 注入）。
    [边界] 不写入日志；不校验 UUID 格式。
    """
    existing = getattr(request.state, "trace_context", None)
    if isinstance(existing, TraceContext):
        return existing

    trace_id = str(getattr(request.state, "trace_id", "") or "").strip() or str(new_uuid())
    request_id = str(getattr(request.state, "request_id", "") or "").strip() or str(new_uuid())
    ctx = TraceContext(trace_id=UUIDStr(trace_id), request_id=UUIDStr(request_id), tags={})
    request.state.trace_context = ctx  # docstring: 写回 state 以复用
    request.state.trace_id = trace_id
    request.state.request_id = request_id
    return ctx
