# src/rag_lab/backend/api/routers/health.py

"""
[职责] health router：提供系统健康检查（结果缓存、熔断器状态、分析缓冲）。
[边界] 不做外部 provider 连通性探测；任何熔断器 open 时 status=degraded。
[上游关系] 运维/前端调用 GET /health。
[下游关系] RetrievalService.health()。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from rag_lab.backend.api.deps import get_retrieval_service
from rag_lab.backend.services.retrieval_service import RetrievalService


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(service: RetrievalService = Depends(get_retrieval_service)) -> Dict[str, Any]:
    return service.health()
