# src/rag_lab/backend/db/models/pipeline_metadata.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class PipelineMetadataModel(Base, TimestampMixin):
    """
    [职责] PipelineMetadataModel：一次两阶段检索执行的 append-only 分析记录。
    [边界] 只追加不更新；完整记录以 JSON 保存（schema_version 标记版本），常用过滤字段单独成列。
    [上游关系] SqlAnalyticsSink 批量写入。
    [下游关系] AnalyticsRepo.list_recent 回读为 PipelineMetadata 做离线分析。
    """

    __tablename__ = "pipeline_metadata"

    execution_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        comment="执行ID（UUID字符串）",
    )

    schema_version: Mapped[str] = mapped_column(
        String(8),
        default="v1",
        nullable=False,
        comment="记录版本",
    )

    user_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
        comment="调用方用户ID",
    )

    query_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="查询文本 sha256",
    )

    query_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="查询预览（截断）",
    )

    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        comment="执行开始时间",
    )

    effective_fusion_method: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="实际融合方法",
    )

    total_latency_ms: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="总耗时(ms)",
    )

    stage2_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    rank_correlation: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Stage1/Stage2 Spearman",
    )

    record: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        comment="完整 PipelineMetadata（JSON）",
    )
