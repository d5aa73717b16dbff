# src/rag_lab/backend/api/schemas_http/_common.py

"""
[职责] HTTP Schema 公共组件：ErrorResponse 与 camelCase 请求基类。
[边界] 仅描述 HTTP 输入/输出结构；不负责 trace 注入、异常映射或业务逻辑。
[上游关系] api/errors 将 DomainError 映射到 ErrorResponse。
[下游关系] api/schemas_http/retrieval.py 复用本模块结构。
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


ErrorKind = Literal[
    "validation_error",
    "retrieval_error",
    "reranking_error",
    "provider_timeout",
    "internal_error",
]  # docstring: 对外 error kind 枚举


class ErrorResponse(BaseModel):
    """
    [职责] ErrorResponse：统一错误体 {error, kind, details?, trace_id}。
    [边界] 不包含 HTTP status/retryable；这些由 api/errors.py 决定。
    """

    model_config = ConfigDict(extra="forbid")  # docstring: 锁死错误字段，避免 drift

    error: str = Field(..., min_length=1)  # docstring: 人类可读错误信息
    kind: ErrorKind = Field(...)  # docstring: 机器可读错误类型
    details: Optional[str] = Field(default=None)  # docstring: 结构化细节（紧凑 JSON 文本）
    trace_id: str = Field(..., min_length=1)


class CamelModel(BaseModel):
    """Request base: snake_case fields, camelCase on the wire."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)
