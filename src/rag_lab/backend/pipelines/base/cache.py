# src/rag_lab/backend/pipelines/base/cache.py

"""
[职责] ResultCache：跨请求共享的有界结果缓存（TTL 过期 + 满容量时淘汰最早写入项）。
[边界] 单事件循环内使用，不加锁；last-write-wins；允许陈旧读（在 TTL 内）。
[上游关系] RetrievalService 持有一个实例并注入 orchestrator；时钟可注入以便测试。
[下游关系] orchestrator 命中时直接返回缓存结果；/health 读取 stats()。
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Mapping, Optional, Sequence, Tuple, TypeVar

from rag_lab.backend.utils.logging_ import hash_text


V = TypeVar("V")
Clock = Callable[[], float]


def make_cache_key(
    *,
    query: str,
    document_ids: Sequence[str],
    user_id: str,
    config: Mapping[str, Any],
) -> str:
    """Stable key over (query, document set, user, config snapshot)."""  # docstring: 文档集合排序后参与 key
    raw = json.dumps(
        {
            "q": query.strip(),
            "docs": sorted(str(d) for d in document_ids),
            "user": str(user_id),
            "config": dict(config),
        },
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hash_text(raw) or ""


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class ResultCache(Generic[V]):
    """
    [职责] TTL + 容量有界的 key/value 缓存。
    [边界] 覆盖写会把 key 移到最新位置；淘汰顺序按写入时间。
    """

    def __init__(self, *, ttl_s: float = 3600.0, max_size: int = 1000, clock: Optional[Clock] = None) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._ttl_s = float(ttl_s)
        self._max_size = int(max_size)
        self._clock: Clock = clock or time.monotonic
        self._entries: "OrderedDict[str, _Entry[V]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]  # docstring: 过期项读时清理
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def set(self, key: str, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        self._purge_expired()
        while len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)  # docstring: 淘汰最早写入项
            self._evictions += 1
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + self._ttl_s)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired: Tuple[str, ...] = tuple(k for k, e in self._entries.items() if e.expires_at <= now)
        for k in expired:
            del self._entries[k]

    def stats(self) -> Dict[str, Any]:
        size = len(self._entries)
        return {
            "size": size,
            "max_size": self._max_size,
            "utilization": size / self._max_size,
            "ttl_s": self._ttl_s,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }
