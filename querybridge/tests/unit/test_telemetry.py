from __future__ import annotations

import time

import pytest

from querybridge.services import telemetry
from querybridge.services.resilience import CircuitBreaker, CircuitBreakerConfig


@pytest.fixture(autouse=True)
def fresh_telemetry() -> None:
    telemetry.reset_telemetry()
    yield
    telemetry.reset_telemetry()


def test_latency_summary_groups_by_label() -> None:
    for latency in (10.0, 20.0, 30.0):
        telemetry.record_external_call(integration="llm.openai", latency_ms=latency, success=True)
    telemetry.record_external_call(integration="llm.openai", latency_ms=400.0, success=False)
    telemetry.record_external_call(integration="engine.postgres", latency_ms=5.0, success=True)

    summary = telemetry.latency_summary("external", window_s=60)

    assert summary["llm.openai"]["count"] == 4
    assert summary["llm.openai"]["max"] == 400.0
    assert summary["llm.openai"]["p95"] == 400.0
    assert summary["llm.openai"]["error_rate"] == 0.25
    assert summary["engine.postgres"]["error_rate"] == 0.0


def test_latency_summary_drops_samples_outside_window() -> None:
    telemetry.record_execution(engine_type="mongodb", latency_ms=12.0, status="failed")

    assert telemetry.latency_summary("execution", window_s=60)["mongodb"]["error_rate"] == 1.0
    assert telemetry.latency_summary("execution", window_s=60, now=time.time() + 120) == {}
    # Executions and external calls are summarized separately.
    assert telemetry.latency_summary("external", window_s=60) == {}


def test_counters_and_gauges_snapshots() -> None:
    telemetry.increment_counter("result_cache_hits_total")
    telemetry.increment_counter("result_cache_hits_total", 2)
    telemetry.set_gauge("engine_pools_open", 3.0)

    assert telemetry.counters_snapshot() == {"result_cache_hits_total": 3}
    assert telemetry.gauges_snapshot() == {"engine_pools_open": 3.0}


@pytest.mark.asyncio
async def test_breaker_transitions_are_counted() -> None:
    breaker = CircuitBreaker(
        "llm.metrics",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1),
        time_source=lambda: 0.0,
    )
    await breaker.record_failure()

    assert telemetry.counters_snapshot()["circuit_breaker_transition_total.llm.metrics.open"] == 1
    assert telemetry.gauges_snapshot()["circuit_breaker_state.llm.metrics"] == 1.0
