# src/rag_lab/backend/pipelines/base/breaker.py

"""
[职责] CircuitBreaker：为重排 provider 提供 CLOSED/OPEN/HALF_OPEN 三态熔断。
[边界] 单事件循环内使用，不加锁；时钟可注入；只统计调用结果，不发起调用。
[上游关系] RetrievalService 为每个 provider 持有一个实例。
[下游关系] ReRanker 在调用前 allow()，调用后 record_success()/record_failure()；/health 读取 snapshot()。
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Literal, Optional


BreakerState = Literal["closed", "open", "half_open"]


class CircuitBreaker:
    """Consecutive-failure circuit breaker."""

    def __init__(
        self,
        *,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        success_threshold: int = 3,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.name = name
        self._failure_threshold = max(1, int(failure_threshold))
        self._recovery_timeout_s = float(recovery_timeout_s)
        self._success_threshold = max(1, int(success_threshold))
        self._clock = clock or time.monotonic
        self._state: BreakerState = "closed"
        self._failures = 0
        self._successes = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if self._state == "open" and self._opened_at is not None:
            if self._clock() - self._opened_at >= self._recovery_timeout_s:
                self._state = "half_open"  # docstring: 冷却结束，放行探测请求
                self._successes = 0
        return self._state

    def allow(self) -> bool:
        return self.state != "open"

    def record_success(self) -> None:
        if self.state == "half_open":
            self._successes += 1
            if self._successes >= self._success_threshold:
                self._state = "closed"
                self._failures = 0
                self._opened_at = None
            return
        self._failures = 0

    def record_failure(self) -> None:
        if self.state == "half_open":
            self._trip()  # docstring: 探测失败立即重新熔断
            return
        self._failures += 1
        if self._failures >= self._failure_threshold:
            self._trip()

    def _trip(self) -> None:
        self._state = "open"
        self._opened_at = self._clock()
        self._successes = 0

    def snapshot(self) -> Dict[str, Any]:
        return {"name": self.name, "state": self.state, "failures": self._failures}
