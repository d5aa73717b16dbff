# playground/conftest.py

"""
[职责] gate 共享 fixture：隔离 sqlite 会话、sessionmaker 与 RetrievalService 依赖复位。
[边界] 每个测试独立 sqlite 文件，不触碰默认本地库。
[上游关系] sql_gate / fastapi_gate / analytics_gate。
[下游关系] db/engine.py 的 create_engine/init_db。
"""

from __future__ import annotations

from typing import AsyncIterator, Iterator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rag_lab.backend.api.deps import set_retrieval_service
from rag_lab.backend.db.engine import create_engine, create_sessionmaker, init_db


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    url = f"sqlite+aiosqlite:///{tmp_path / 'gate.db'}"  # docstring: 独立临时 sqlite 文件
    engine = create_engine(url=url, echo=False)
    await init_db(engine=engine)
    try:
        yield create_sessionmaker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as s:
        yield s


@pytest.fixture(autouse=True)
def _reset_service() -> Iterator[None]:
    yield
    set_retrieval_service(None)  # docstring: 避免进程级 service 在测试间泄漏
