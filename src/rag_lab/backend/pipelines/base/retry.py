# src/rag_lab/backend/pipelines/base/retry.py

"""
[职责] 通用退避重试：attempt -> min(2^attempt * base, cap) 的延迟计算与 async 重试执行器。
[边界] 只重试 is_transient(...) 为真的异常（retryable DomainError）；ValidationError 与未知异常立即抛出。
[上游关系] orchestrator 包裹候选源/embedding/rerank 调用；其它后台任务也可复用。
[下游关系] on_retry 回调用于计数与日志；最终异常原样向上抛出。
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from rag_lab.backend.utils.errors import is_transient


T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]  # docstring: 可注入的 sleep（秒），测试用于跳过等待
RetryHook = Callable[[int, BaseException, float], None]  # docstring: (attempt, error, delay_ms)


def backoff_delay_ms(attempt: int, *, base_ms: float, cap_ms: float) -> float:
    """
    [职责] 计算第 attempt 次重试前的等待时长（ms）。
    [边界] attempt 从 0 开始；负数按 0 处理；结果不超过 cap_ms。
    """
    n = max(0, int(attempt))
    return float(min((2**n) * float(base_ms), float(cap_ms)))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int,
    base_ms: float,
    cap_ms: float,
    sleep: Optional[SleepFn] = None,
    on_retry: Optional[RetryHook] = None,
) -> T:
    """
    [职责] 执行 fn，遇到瞬时故障时按指数退避最多再尝试 retries 次。
    [边界] 总尝试次数 = retries + 1；非瞬时异常不进入重试；重试耗尽抛出最后一次异常。
    [上游关系] HybridScorer 的通道拉取、ReRanker 的 provider 调用。
    [下游关系] 调用方捕获最终异常决定失败或降级。
    """
    do_sleep = sleep or asyncio.sleep
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= int(retries) or not is_transient(exc):
                raise
            delay_ms = backoff_delay_ms(attempt, base_ms=base_ms, cap_ms=cap_ms)
            if on_retry is not None:
                on_retry(attempt, exc, delay_ms)
            if delay_ms > 0:
                await do_sleep(delay_ms / 1000.0)
            attempt += 1
