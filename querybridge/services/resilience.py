from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from querybridge.core.config import get_settings
from querybridge.core.errors import IntegrationUnavailableError
from querybridge.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Exceptions that mean "the other side was slow or unreachable", not "the request was wrong".
TransientException = (TimeoutError, OSError)

_PHASE_GAUGE = {"closed": 0.0, "half_open": 0.5, "open": 1.0}

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    # Breaker state is shared across processes only with the redis cache backend.
    global _redis_client, _redis_loop
    settings = get_settings()
    if settings.cache_backend != "redis":
        return None
    loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_loop is not loop:
        try:
            _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        except ValueError as exc:
            logger.warning("resilience_redis_unavailable url_scheme_invalid=true", exc_info=exc)
            return None
        _redis_loop = loop
    return _redis_client


def default_retryable(exc: Exception) -> bool:
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered to spread concurrent retries.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Run ``func`` with a per-attempt timeout, retrying only transient failures."""
    policy = policy or RetryPolicy.from_settings()
    is_retryable = retryable or default_retryable
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-retryable failures propagate unchanged
            if attempt == attempts or not is_retryable(exc):
                raise
            increment_counter("external_retries_total")
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            await asyncio.sleep(policy.delay_s(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class CircuitBreakerState:
    state: str = "closed"
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.half_open_trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> "CircuitBreakerState":
        return cls(
            state=raw.get("state", "closed"),
            failures=int(raw.get("failures") or 0),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials") or 0),
        )


class _StateStore(Protocol):
    async def load(self) -> CircuitBreakerState:
        ...

    async def save(self, state: CircuitBreakerState) -> None:
        ...


class _LocalStore:
    def __init__(self) -> None:
        self._state = CircuitBreakerState()

    async def load(self) -> CircuitBreakerState:
        return self._state

    async def save(self, state: CircuitBreakerState) -> None:
        self._state = state


class _RedisStore:
    def __init__(self, redis: Redis, key: str, ttl_s: int) -> None:
        self._redis = redis
        self._key = key
        self._ttl_s = ttl_s

    async def load(self) -> CircuitBreakerState:
        raw = await self._redis.hgetall(self._key)
        return CircuitBreakerState.from_mapping(raw) if raw else CircuitBreakerState()

    async def save(self, state: CircuitBreakerState) -> None:
        await self._redis.hset(self._key, mapping=state.to_mapping())
        await self._redis.expire(self._key, self._ttl_s)


class CircuitBreaker:
    """Closed, open, half-open breaker around one external integration.

    ``failure_threshold`` consecutive failures open it; after ``open_seconds``
    at most ``half_open_trials`` probe calls are let through, and the first
    probe outcome closes or reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig.from_settings()
        self._time = time_source or time.monotonic
        self._store: _StateStore
        if redis is None:
            self._store = _LocalStore()
        else:
            key = f"{get_settings().cb_redis_prefix}:{name}"
            self._store = _RedisStore(redis, key, max(self._config.open_seconds * 4, 60))

    @property
    def name(self) -> str:
        return self._name

    def _enter(self, current: CircuitBreakerState, phase: str) -> CircuitBreakerState:
        if current.state != phase:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, phase)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{phase}")
            set_gauge(f"circuit_breaker_state.{self._name}", _PHASE_GAUGE[phase])
        return CircuitBreakerState(state=phase, opened_at=self._time() if phase == "open" else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self._name} is temporarily unavailable", integration=self._name)

    async def before_call(self) -> CircuitBreakerState:
        state = await self._store.load()
        if state.state == "open":
            cooled = state.opened_at is not None and self._time() - state.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            state = self._enter(state, "half_open")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise self._unavailable()
            state.half_open_trials += 1
            await self._store.save(state)
        return state

    async def record_success(self) -> None:
        state = await self._store.load()
        await self._store.save(self._enter(state, "closed"))

    async def record_failure(self) -> None:
        state = await self._store.load()
        if state.state == "half_open" or state.failures + 1 >= self._config.failure_threshold:
            await self._store.save(self._enter(state, "open"))
            return
        state.failures += 1
        await self._store.save(state)
