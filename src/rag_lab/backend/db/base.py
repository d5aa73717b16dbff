# src/rag_lab/backend/db/base.py

"""
[职责] ORM 基类：DeclarativeBase 与通用时间戳 mixin。
[边界] 不定义业务表；不创建 engine。
[上游关系] 无。
[下游关系] db/models/* 继承 Base/TimestampMixin；engine.init_db 使用 Base.metadata。
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="创建时间",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="更新时间",
    )
