# src/rag_lab/backend/pipelines/analytics/sink.py

"""
[职责] AnalyticsSink：PipelineMetadata 批次的 append-only 落地（内存有界实现 / SQLAlchemy 实现）。
[边界] 只写不改；失败直接抛出，由 MetadataTracker 记录日志并丢弃该批次。
[上游关系] MetadataTracker.flush。
[下游关系] 内存 deque 或 pipeline_metadata 表。
"""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Protocol, Sequence, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_lab.backend.db.repo import AnalyticsRepo
from rag_lab.backend.schemas.analytics import PipelineMetadata


@runtime_checkable
class AnalyticsSink(Protocol):
    async def write_batch(self, records: Sequence[PipelineMetadata]) -> int: ...


class MemoryAnalyticsSink:
    """Bounded in-memory sink; oldest records fall off when full."""

    def __init__(self, *, max_records: int = 10000) -> None:
        self._records: Deque[PipelineMetadata] = deque(maxlen=max(1, int(max_records)))
        self.batches_written = 0

    async def write_batch(self, records: Sequence[PipelineMetadata]) -> int:
        self._records.extend(records)
        self.batches_written += 1
        return len(records)

    def records(self) -> List[PipelineMetadata]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)


class SqlAnalyticsSink:
    """
    [职责] 每个批次一个会话/事务写入 pipeline_metadata。
    [边界] 写入失败时回滚并抛出。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def write_batch(self, records: Sequence[PipelineMetadata]) -> int:
        if not records:
            return 0
        async with self._session_factory() as session:
            try:
                n = await AnalyticsRepo(session).add_many(records)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return n
