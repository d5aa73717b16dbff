# src/rag_lab/backend/pipelines/base/timing.py

"""
[职责] timing 基础设施：为两阶段检索提供阶段计时（ms）收集与导出，供 PipelineMetadata 与 HTTP performance 字段使用。
[边界] 不做分布式 tracing；不负责日志落地；单请求/单协程内使用，不做线程安全保证。
[上游关系] orchestrator 在 preprocess/stage1/diversify/stage2 外层用 stage(...) 包裹。
[下游关系] PipelineMetadata.stages[*].latency_ms 与 performance.stage*_latency_ms。
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional


def _now_ms() -> float:
    """Monotonic high-resolution timestamp in milliseconds."""  # docstring: 仅用于相对耗时
    return time.perf_counter() * 1000.0


@dataclass
class TimingCollector:
    """
    [职责] 收集 pipeline 各阶段耗时并导出 dict[str, float]（ms）。
    [边界] stage key 不做枚举限制；同名 stage 默认覆盖，重试场景可累加。
    """

    _stages_ms: Dict[str, float] = field(default_factory=dict)
    _start_ms: float = field(default_factory=_now_ms)

    def add_ms(self, key: str, ms: float, *, accumulate: bool = True) -> None:
        k = str(key).strip()
        if not k:
            return
        v = max(0.0, float(ms))  # docstring: 负值截断为 0
        self._stages_ms[k] = self._stages_ms.get(k, 0.0) + v if accumulate else v

    @contextmanager
    def stage(self, key: str, *, accumulate: bool = False) -> Iterator[None]:
        """
        [职责] 上下文管理器形式的阶段计时，退出（含异常退出）时写入耗时。
        [边界] 默认不累加，避免嵌套包裹导致叠加。
        [上游关系] with ctx.timing.stage("stage1"): ...
        [下游关系] get()/to_dict()。
        """
        start = _now_ms()
        try:
            yield
        finally:
            self.add_ms(key, _now_ms() - start, accumulate=accumulate)

    def elapsed_ms(self) -> float:
        """Milliseconds since the collector was created."""  # docstring: latency 预算判定使用
        return _now_ms() - self._start_ms

    def to_dict(self, *, include_total: bool = True, total_key: str = "total") -> Dict[str, float]:
        out = dict(self._stages_ms)
        if include_total:
            out[total_key] = float(self.elapsed_ms())
        return out

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self._stages_ms.get(key, default)
