from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Literal


SampleKind = Literal["external", "execution"]


@dataclass(frozen=True)
class LatencySample:
    ts: float
    kind: SampleKind
    # Integration name for external calls ("llm.openai", "engine.postgres"); engine type for executions.
    label: str
    latency_ms: float
    outcome: str


_samples: dict[SampleKind, Deque[LatencySample]] = {
    "external": deque(maxlen=10000),
    "execution": deque(maxlen=10000),
}
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _samples["external"].append(
        LatencySample(
            ts=time.time(),
            kind="external",
            label=integration,
            latency_ms=latency_ms,
            outcome="ok" if success else "error",
        )
    )


def record_execution(*, engine_type: str, latency_ms: float, status: str) -> None:
    _samples["execution"].append(
        LatencySample(ts=time.time(), kind="execution", label=engine_type, latency_ms=latency_ms, outcome=status)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _p95(latencies: list[float]) -> float:
    ordered = sorted(latencies)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def latency_summary(kind: SampleKind, *, window_s: int, now: float | None = None) -> dict[str, dict[str, float]]:
    """p95/max latency and error share per label over the trailing window."""
    cutoff = (now if now is not None else time.time()) - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    errors: dict[str, int] = defaultdict(int)
    for sample in _samples[kind]:
        if sample.ts < cutoff:
            continue
        latencies[sample.label].append(sample.latency_ms)
        if sample.outcome in ("error", "failed"):
            errors[sample.label] += 1
    return {
        label: {
            "p95": _p95(values),
            "max": max(values),
            "count": float(len(values)),
            "error_rate": errors[label] / len(values),
        }
        for label, values in latencies.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Process-local state; tests and worker restarts start from zero.
    for samples in _samples.values():
        samples.clear()
    _counters.clear()
    _gauges.clear()
