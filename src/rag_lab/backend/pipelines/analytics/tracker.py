# src/rag_lab/backend/pipelines/analytics/tracker.py

"""
[职责] MetadataTracker：按采样率收集 PipelineMetadata，缓冲后按批量阈值或定时器刷写到 AnalyticsSink，并维护最近窗口供报告使用。
[边界] best-effort：sink 失败只记日志并丢弃该批次；缓冲有界（溢出丢最旧）；record() 同步且不阻塞检索路径。
[上游关系] TwoStagePipeline 在每次执行结束时调用 record()；app lifespan 调用 start()/stop()。
[下游关系] AnalyticsSink.write_batch；GET /retrieval/analytics 读取 report()；/health 读取 stats()。
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from rag_lab.backend.schemas.analytics import AnalyticsReport, PipelineMetadata
from rag_lab.backend.utils.constants import RECENT_WINDOW
from rag_lab.backend.utils.logging_ import get_logger, log_event

from .sink import AnalyticsSink
from .stats import build_report, detect_anomalies


logger = get_logger("pipelines.analytics.tracker")


class MetadataTracker:
    """
    [职责] 采样 + 缓冲 + 批量刷写。
    [边界] 单事件循环内使用；rng 可注入以便测试确定采样。
    """

    def __init__(
        self,
        *,
        sink: AnalyticsSink,
        sampling_rate: float = 1.0,
        batch_size: int = 100,
        flush_interval_s: float = 5.0,
        recent_window: int = RECENT_WINDOW,
        max_buffer: Optional[int] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self._sink = sink
        self._sampling_rate = max(0.0, min(1.0, float(sampling_rate)))
        self._batch_size = max(1, int(batch_size))
        self._flush_interval_s = float(flush_interval_s)
        self._rng = rng or random.random
        self._buffer: Deque[PipelineMetadata] = deque(maxlen=max_buffer or self._batch_size * 10)
        self._recent: Deque[PipelineMetadata] = deque(maxlen=max(1, int(recent_window)))
        self._flush_task: Optional["asyncio.Task[int]"] = None
        self._timer_task: Optional["asyncio.Task[None]"] = None

        self.sampled_out = 0
        self.flushed = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def record(self, metadata: PipelineMetadata) -> bool:
        """Buffer one record if sampled; returns whether it was kept."""
        if self._rng() >= self._sampling_rate:
            self.sampled_out += 1
            return False

        for anomaly in detect_anomalies(metadata, list(self._recent)):
            log_event(
                logger,
                logging.WARNING,
                "pipeline anomaly",
                fields={"execution_id": anomaly.execution_id, "kind": anomaly.kind, "value": anomaly.value},
            )

        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1  # docstring: 缓冲已满，最旧记录被挤出
        self._buffer.append(metadata)
        self._recent.append(metadata)

        if len(self._buffer) >= self._batch_size:
            self._schedule_flush()
        return True

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # docstring: 无事件循环时等待下一次定时/手动 flush
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self.flush())

    async def flush(self) -> int:
        """
        [职责] 将当前缓冲整体作为一个批次写入 sink。
        [边界] 写入失败时记录日志并丢弃该批次（返回 0），不向上抛出。
        """
        if not self._buffer:
            return 0
        batch = list(self._buffer)
        self._buffer.clear()
        try:
            n = await self._sink.write_batch(batch)
        except Exception:
            self.dropped += len(batch)
            log_event(
                logger,
                logging.WARNING,
                "analytics batch dropped",
                fields={"batch_size": len(batch)},
                exc_info=True,
            )
            return 0
        self.flushed += int(n)
        return int(n)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_s)
            await self.flush()

    async def start(self) -> None:
        if self.running:
            return
        self._timer_task = asyncio.get_running_loop().create_task(self._run_timer())

    async def stop(self) -> None:
        """Cancel the timer, wait for an in-flight flush, then flush what is left."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush()

    def report(self) -> AnalyticsReport:
        return build_report(list(self._recent))

    def stats(self) -> Dict[str, Any]:
        return {
            "buffered": len(self._buffer),
            "recent": len(self._recent),
            "flushed": self.flushed,
            "dropped": self.dropped,
            "sampled_out": self.sampled_out,
            "sampling_rate": self._sampling_rate,
            "batch_size": self._batch_size,
            "running": self.running,
        }
