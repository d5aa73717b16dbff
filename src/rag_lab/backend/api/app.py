# src/rag_lab/backend/api/app.py

"""
[职责] FastAPI app factory：挂载 TraceContextMiddleware、错误 handler 与 retrieval/health 路由，并在 lifespan 中启动/关闭 RetrievalService。
[边界] 不含业务逻辑；sql 分析落库时在启动阶段建表。
[上游关系] uvicorn `rag_lab.backend.api.app:app` 或测试直接调用 create_app。
[下游关系] api/routers/*；services/retrieval_service。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from rag_lab.backend.api.deps import get_retrieval_service, set_retrieval_service
from rag_lab.backend.api.errors import register_error_handlers
from rag_lab.backend.api.middleware import TraceContextMiddleware
from rag_lab.backend.api.routers.health import router as health_router
from rag_lab.backend.api.routers.retrieval import router as retrieval_router
from rag_lab.backend.services.retrieval_service import RetrievalService
from rag_lab.backend.utils.logging_ import configure_logging, get_logger, log_event
from rag_lab.config import settings


logger = get_logger("api.app")


def create_app(service: Optional[RetrievalService] = None) -> FastAPI:
    """
    [职责] 构造应用；传入 service 时直接使用（测试），否则首次依赖解析时按 Settings 装配。
    [边界] lifespan 仅在 ASGI lifespan 事件触发时运行。
    """
    if service is not None:
        set_retrieval_service(service)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        configure_logging(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
        if str(settings.ANALYTICS_SINK).strip().lower() == "sql":
            from rag_lab.backend.db.engine import dispose_engine, init_db

            await init_db()
        svc = get_retrieval_service()
        await svc.start()
        log_event(logger, logging.INFO, "service started", fields={"sink": settings.ANALYTICS_SINK})
        try:
            yield
        finally:
            await svc.close()
            if str(settings.ANALYTICS_SINK).strip().lower() == "sql":
                await dispose_engine()
            log_event(logger, logging.INFO, "service stopped")

    app = FastAPI(title="rag-lab", debug=settings.DEBUG, lifespan=lifespan)
    app.add_middleware(TraceContextMiddleware)
    register_error_handlers(app)
    app.include_router(retrieval_router)
    app.include_router(health_router)
    return app


app = create_app()
