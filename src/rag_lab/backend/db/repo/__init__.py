# src/rag_lab/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露仓储对象，供 analytics sink 与测试调用。
[边界] 仅做导入与 __all__ 暴露。
[上游关系] 依赖各 repo 模块。
[下游关系] pipelines/analytics/sink.py 通过本模块导入仓储能力。
"""

from __future__ import annotations

from .analytics_repo import AnalyticsRepo

__all__ = [
    "AnalyticsRepo",
]
