# playground/pipeline_gate/test_backoff_cache_presets_gate.py

"""
[职责] orchestrator 辅助组件 gate：退避延迟增长与上限、ResultCache 的 TTL 过期与容量淘汰、presets 的 Stage 2 开关阈值。
[边界] 纯内存；时钟与 sleep 注入，不真实等待。
[上游关系] pipelines/base/{retry,cache}.py、pipelines/retrieval/presets.py。
[下游关系] TwoStagePipeline 依赖这些组件的确定性行为。
"""

from __future__ import annotations

from typing import List, Tuple

import pytest

from rag_lab.backend.pipelines.base.cache import ResultCache, make_cache_key
from rag_lab.backend.pipelines.base.retry import backoff_delay_ms, retry_with_backoff
from rag_lab.backend.pipelines.retrieval.presets import analyze_query, preset_config
from rag_lab.backend.schemas.retrieval import RetrievalConfig
from rag_lab.backend.utils.errors import RetrievalError, ValidationError


pytestmark = pytest.mark.pipeline_gate


def test_backoff_delay_doubles_then_caps() -> None:
    delays = [backoff_delay_ms(n, base_ms=1000.0, cap_ms=10000.0) for n in range(6)]
    assert delays == [1000.0, 2000.0, 4000.0, 8000.0, 10000.0, 10000.0]
    assert backoff_delay_ms(-3, base_ms=250.0, cap_ms=10000.0) == 250.0  # docstring: 负数按 0 处理


@pytest.mark.asyncio
async def test_retry_sleeps_with_backoff_and_gives_up() -> None:
    slept: List[float] = []
    seen: List[Tuple[int, float]] = []
    calls = {"n": 0}

    async def fake_sleep(seconds: float) -> None:
        slept.append(seconds)

    async def always_fails() -> int:
        calls["n"] += 1
        raise RetrievalError(message="store unavailable", retryable=True)

    with pytest.raises(RetrievalError):
        await retry_with_backoff(
            always_fails,
            retries=3,
            base_ms=100.0,
            cap_ms=300.0,
            sleep=fake_sleep,
            on_retry=lambda attempt, exc, delay: seen.append((attempt, delay)),
        )

    assert calls["n"] == 4
    assert slept == pytest.approx([0.1, 0.2, 0.3])
    assert seen == [(0, 100.0), (1, 200.0), (2, 300.0)]


@pytest.mark.asyncio
async def test_retry_never_retries_validation_errors() -> None:
    calls = {"n": 0}

    async def invalid() -> int:
        calls["n"] += 1
        raise ValidationError(message="bad input")

    with pytest.raises(ValidationError):
        await retry_with_backoff(invalid, retries=5, base_ms=1.0, cap_ms=1.0)
    assert calls["n"] == 1


def test_cache_entries_expire_after_ttl() -> None:
    now = [0.0]
    cache: ResultCache[str] = ResultCache(ttl_s=10.0, max_size=4, clock=lambda: now[0])
    cache.set("k", "v")

    now[0] = 9.9
    assert cache.get("k") == "v"
    now[0] = 10.0
    assert cache.get("k") is None
    assert len(cache) == 0
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_cache_evicts_oldest_entry_at_capacity() -> None:
    cache: ResultCache[int] = ResultCache(ttl_s=60.0, max_size=2, clock=lambda: 0.0)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 11)  # docstring: 覆盖写移到最新位置
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 11
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1
    assert cache.stats()["utilization"] == pytest.approx(1.0)


def test_cache_key_ignores_document_order() -> None:
    config = RetrievalConfig().snapshot()
    k1 = make_cache_key(query="ml", document_ids=["d1", "d2"], user_id="u1", config=config)
    k2 = make_cache_key(query="ml ", document_ids=["d2", "d1"], user_id="u1", config=config)
    k3 = make_cache_key(query="ml", document_ids=["d1", "d2"], user_id="u2", config=config)
    assert k1 == k2
    assert k1 != k3


@pytest.mark.parametrize(
    "query, speed_stage2, balanced_stage2",
    [
        ("weather report", False, False),  # docstring: complexity 0.1
        ("neural network with no labels", False, True),  # docstring: complexity 0.65
        ("how does a neural network algorithm not work?", True, True),  # docstring: complexity 1.0
    ],
)
def test_preset_stage2_thresholds(query: str, speed_stage2: bool, balanced_stage2: bool) -> None:
    assert preset_config("speed", query).enable_stage2 is speed_stage2
    assert preset_config("balanced", query).enable_stage2 is balanced_stage2
    assert preset_config("accuracy", query).enable_stage2 is True


def test_preset_complexity_score() -> None:
    assert analyze_query("weather report").complexity == pytest.approx(0.1)
    assert analyze_query("neural network with no labels").complexity == pytest.approx(0.65)
    assert analyze_query("how does a neural network algorithm not work?").complexity == 1.0


def test_preset_keeps_config_defaults_outside_goal_fields() -> None:
    config = preset_config("speed", "weather report", overrides={"rrf_k": 30})
    defaults = RetrievalConfig()
    assert (config.top_k_initial, config.final_limit) == (50, 10)
    assert config.rrf_k == 30
    assert config.semantic_weight == defaults.semantic_weight
    assert config.fusion_method == defaults.fusion_method
    assert config.timeout_ms == defaults.timeout_ms
