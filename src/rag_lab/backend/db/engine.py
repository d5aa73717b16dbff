# src/rag_lab/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / AsyncSession，供 analytics 持久化使用。
[边界] 不包含 ORM Model 定义；不负责迁移；只服务 pipeline_metadata 的写入与读取。
[上游关系] config.py / 环境变量提供数据库连接串；应用启动时调用 init_db。
[下游关系] SqlAnalyticsSink 通过 sessionmaker 打开会话；tests 传入内存 engine。
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .base import Base


def _find_repo_root(start: Path) -> Path:
    """Closest ancestor containing `pyproject.toml` (falls back to `start`)."""
    cur = start.resolve()
    for _ in range(20):
        if (cur / "pyproject.toml").exists():
            return cur
        if cur.parent == cur:
            break
        cur = cur.parent
    return start.resolve()


def _settings_db_url() -> str | None:
    """Read RAG_LAB_DATABASE_URL from Settings without binding engine.py to settings at import time."""
    try:
        from rag_lab.config import settings as _settings

        v = str(getattr(_settings, "RAG_LAB_DATABASE_URL", "") or "").strip()
        return v or None
    except ImportError:
        return None


def _default_db_url() -> str:
    """
    Resolve the fallback database URL.

    Priority (see resolve_db_url):
        1) settings: RAG_LAB_DATABASE_URL (loads .env)
        2) env: RAG_LAB_DATABASE_URL
        3) env: DATABASE_URL
        4) fallback: local sqlite file (repo-root/.Local/rag_lab.db)
    """
    repo_root = _find_repo_root(Path(__file__).resolve())
    db_path = repo_root / ".Local" / "rag_lab.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_path.as_posix()}"


def resolve_db_url(override: str | None = None) -> str:
    if override:
        return override
    s_url = _settings_db_url()
    if s_url:
        return s_url
    env_url = os.getenv("RAG_LAB_DATABASE_URL", "").strip()
    if env_url:
        return env_url
    env_url2 = os.getenv("DATABASE_URL", "").strip()
    if env_url2:
        return env_url2
    return _default_db_url()


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create AsyncEngine (SQLite relies on the aiosqlite driver)."""  # docstring: 测试可传入 sqlite 内存库
    db_url = resolve_db_url(url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")  # docstring: SQL 打印开关
    return create_async_engine(db_url, echo=db_echo, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async sessionmaker."""  # docstring: 统一 expire_on_commit=False
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


_ENGINE: AsyncEngine | None = None
_SESSION_FACTORY: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Lazily created process-wide engine."""  # docstring: 首次使用时才解析 URL 并建库目录
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = create_engine()
    return _ENGINE


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = create_sessionmaker(get_engine())
    return _SESSION_FACTORY


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """
    Context manager for a DB session.

    Usage:
      async with session_scope() as s:
          ...
    """  # docstring: 事务由调用方控制 commit/rollback
    async with get_sessionmaker()() as session:
        yield session


async def init_db(*, engine: AsyncEngine | None = None) -> None:
    """Create tables (create_all). Models must be imported so they register on Base.metadata."""
    from . import models  # noqa: F401  # docstring: 强制注册 ORM 表

    eng = engine or get_engine()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(*, engine: AsyncEngine | None = None) -> None:
    """Drop all tables; local/dev/tests only."""
    from . import models  # noqa: F401

    eng = engine or get_engine()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine() -> None:
    global _ENGINE, _SESSION_FACTORY
    if _ENGINE is not None:
        await _ENGINE.dispose()
    _ENGINE = None
    _SESSION_FACTORY = None
