# src/rag_lab/backend/pipelines/base/context.py

"""
[职责] PipelineContext：单次检索执行的运行上下文（trace/execution ID、timing、provider 快照、错误与资源计数）。
[边界] 不持有跨请求状态（cache/tracker/breaker 由 service 持有）；不做流程编排；只做聚合与透传。
[上游关系] services/retrieval_service 或测试为每次请求构造。
[下游关系] pipelines 记录 timing/errors/计数；orchestrator 最终据此构造不可变的 PipelineMetadata。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rag_lab.backend.schemas.analytics import ErrorEntry, ResourceUsage, StageName
from rag_lab.backend.schemas.ids import ExecutionId, UUIDStr, new_uuid
from rag_lab.backend.utils.errors import DomainError, INTERNAL_ERROR_CODE

from .timing import TimingCollector


@dataclass
class PipelineContext:
    """
    [职责] 为单次 pipeline 执行提供可观测性字段与可变计数器。
    [边界] errors/计数只追加；PipelineMetadata 生成后不再读取本对象。
    [上游关系] RetrievalService.run 调用 PipelineContext.create(...)。
    [下游关系] log_event(context=ctx) 自动附加 trace_id/request_id/execution_id/user_id。
    """

    user_id: str
    trace_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 跨请求链路ID（可由 header 注入）
    request_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 单次请求ID
    execution_id: ExecutionId = field(default_factory=new_uuid)  # docstring: 单次 pipeline 执行ID
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    timing: TimingCollector = field(default_factory=TimingCollector)
    provider_snapshot: Dict[str, Any] = field(default_factory=dict)  # docstring: embed/candidate/rerank 参数快照
    errors: List[ErrorEntry] = field(default_factory=list)

    api_calls: int = 0  # docstring: 外部调用次数（含重试）
    retries: int = 0
    cost_usd: float = 0.0
    cache_hit: bool = False

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> "PipelineContext":
        """Build a context, reusing upstream trace/request ids when present."""
        return cls(
            user_id=str(user_id),
            trace_id=UUIDStr(trace_id) if trace_id else new_uuid(),
            request_id=UUIDStr(request_id) if request_id else new_uuid(),
        )

    def with_provider(self, kind: str, snapshot: Dict[str, Any]) -> None:
        k = str(kind).strip()
        if not k:
            return
        self.provider_snapshot[k] = snapshot

    def count_call(self, *, cost_usd: float = 0.0) -> None:
        self.api_calls += 1
        self.cost_usd += max(0.0, float(cost_usd))

    def count_retry(self) -> None:
        self.retries += 1

    def record_error(self, stage: StageName, error: BaseException, *, retry_count: int = 0) -> ErrorEntry:
        """
        [职责] 追加一条 stage 错误（降级或失败都会记录）。
        [边界] 非 DomainError 统一记为 internal_error，message 只保留类名。
        [上游关系] orchestrator 在 Stage 1 失败/Stage 2 降级时调用。
        [下游关系] PipelineMetadata.errors 与 HTTP metadata.errors。
        """
        if isinstance(error, DomainError):
            kind, message = error.error_code, error.message
        else:
            kind, message = INTERNAL_ERROR_CODE, error.__class__.__name__
        entry = ErrorEntry(
            stage=stage,
            kind=kind,
            message=message,
            retry_count=int(retry_count),
            timestamp=datetime.now(timezone.utc),
        )
        self.errors.append(entry)
        return entry

    def resources(self) -> ResourceUsage:
        return ResourceUsage(
            api_calls=self.api_calls,
            retries=self.retries,
            cost_usd=round(self.cost_usd, 8),
            cache_hit=self.cache_hit,
        )
