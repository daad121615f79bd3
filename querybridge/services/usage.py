from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from querybridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageDelta:
    queries: int = 0
    tokens: int = 0


class UsageRecorder(Protocol):
    async def record_usage(self, tenant_id: str, usage: UsageDelta) -> None:
        ...


class TelemetryUsageRecorder:
    """Default hook: counters and a log line; billing plugs its own recorder in."""

    async def record_usage(self, tenant_id: str, usage: UsageDelta) -> None:
        increment_counter(f"usage_queries_total.{tenant_id}", usage.queries)
        increment_counter(f"usage_tokens_total.{tenant_id}", usage.tokens)
        logger.info("usage_recorded tenant_id=%s queries=%s tokens=%s", tenant_id, usage.queries, usage.tokens)


class RecordingUsageRecorder:
    """Keeps every call in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, UsageDelta]] = []

    async def record_usage(self, tenant_id: str, usage: UsageDelta) -> None:
        self.calls.append((tenant_id, usage))
