# src/rag_lab/backend/schemas/ids.py

"""
[职责] ID 契约层：统一 execution/trace/request 等 ID 的类型别名与生成策略（UUID v4 string）。
[边界] 文档/候选/用户 ID 由外部系统分配，仅做别名，不做 UUID 校验。
[上游关系] 无（纯工具/契约层）。
[下游关系] pipelines/services/api 在创建执行记录与透传 trace 时使用。
"""

from __future__ import annotations

from typing import NewType
from uuid import uuid4


UUIDStr = NewType("UUIDStr", str)  # docstring: 统一 UUID 字符串类型（运行时仍为 str）

ExecutionId = UUIDStr  # docstring: 单次 pipeline 执行ID（PipelineMetadata.execution_id）
TraceId = UUIDStr  # docstring: 跨请求链路ID
RequestId = UUIDStr  # docstring: 单次 HTTP 请求ID

UserId = NewType("UserId", str)  # docstring: 调用方用户ID（外部分配）
DocumentId = NewType("DocumentId", str)  # docstring: 源文档ID（外部分配）
CandidateId = NewType("CandidateId", str)  # docstring: 候选 chunk ID（候选源分配）


def new_uuid() -> UUIDStr:
    """Generate UUID v4 as string."""  # docstring: 系统内唯一 ID 的默认生成策略
    return UUIDStr(str(uuid4()))

