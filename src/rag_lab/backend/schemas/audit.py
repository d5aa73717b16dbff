# src/rag_lab/backend/schemas/audit.py

"""
[职责] 审计契约层：TraceContext（trace_id/request_id）。
[边界] 仅标识与轻量 tags；不包含 span 级别细节。
[上游关系] api/middleware 创建并挂到 request.state；也可由调用方 header 透传。
[下游关系] routers 把 trace_id/request_id 交给 RetrievalService -> PipelineContext。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .ids import UUIDStr, new_uuid


class TraceContext(BaseModel):
    """One request's tracing identifiers."""

    model_config = ConfigDict(extra="allow")

    trace_id: UUIDStr = Field(default_factory=new_uuid)  # docstring: 全链路追踪ID
    request_id: UUIDStr = Field(default_factory=new_uuid)  # docstring: 单次 HTTP 请求ID

    parent_request_id: Optional[UUIDStr] = Field(default=None)  # docstring: 上游请求ID（链式调用）
    tags: Dict[str, Any] = Field(default_factory=dict)
