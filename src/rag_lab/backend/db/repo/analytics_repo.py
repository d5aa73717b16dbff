# src/rag_lab/backend/db/repo/analytics_repo.py

"""
[职责] AnalyticsRepo：PipelineMetadata 记录的批量追加与按时间倒序回读。
[边界] append-only；不做统计；事务提交由调用方（sink）控制。
[上游关系] SqlAnalyticsSink.write_batch。
[下游关系] 离线分析/测试回读 PipelineMetadata。
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rag_lab.backend.schemas.analytics import PipelineMetadata

from ..models.pipeline_metadata import PipelineMetadataModel


def to_row(metadata: PipelineMetadata) -> PipelineMetadataModel:
    return PipelineMetadataModel(
        execution_id=str(metadata.execution_id),
        schema_version=metadata.schema_version,
        user_id=metadata.user_id,
        query_hash=metadata.query_hash,
        query_text=metadata.query_text,
        executed_at=metadata.timestamp,
        effective_fusion_method=metadata.effective_fusion_method,
        total_latency_ms=metadata.total_latency_ms,
        stage2_enabled=metadata.stage2_enabled,
        degraded=metadata.degraded,
        error_count=len(metadata.errors),
        rank_correlation=metadata.quality.rank_correlation,
        record=metadata.model_dump(mode="json"),
    )


class AnalyticsRepo:
    """Pipeline metadata repository (async SQLAlchemy)."""

    def __init__(self, session: AsyncSession):
        self._session = session  # docstring: DB 会话（由 sink 注入）

    async def add_many(self, records: Sequence[PipelineMetadata]) -> int:
        """Append records; returns the number of rows added."""  # docstring: 不 commit
        rows = [to_row(r) for r in records]
        self._session.add_all(rows)
        await self._session.flush()
        return len(rows)

    async def get(self, execution_id: str) -> Optional[PipelineMetadata]:
        row = await self._session.get(PipelineMetadataModel, execution_id)
        if row is None:
            return None
        return PipelineMetadata.model_validate(row.record)

    async def list_recent(self, *, limit: int = 100, user_id: Optional[str] = None) -> List[PipelineMetadata]:
        stmt = select(PipelineMetadataModel).order_by(PipelineMetadataModel.executed_at.desc()).limit(int(limit))
        if user_id:
            stmt = stmt.where(PipelineMetadataModel.user_id == user_id)
        rows = (await self._session.scalars(stmt)).all()
        return [PipelineMetadata.model_validate(r.record) for r in rows]

    async def count(self) -> int:
        return int(await self._session.scalar(select(func.count()).select_from(PipelineMetadataModel)) or 0)
