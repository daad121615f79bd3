from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from querybridge.core.config import get_settings


logger = logging.getLogger(__name__)


class TTLCache(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def put(self, key: str, value: Any, ttl_s: int) -> None:
        ...

    async def invalidate(self, key: str) -> None:
        ...


class InMemoryTTLCache:
    """Process-local cache; entries expire lazily on read."""

    def __init__(self, *, time_source: Callable[[], float] | None = None, max_entries: int = 10000) -> None:
        self._time = time_source or time.monotonic
        self._max_entries = max_entries
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._time():
            self._entries.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: Any, ttl_s: int) -> None:
        # Single dict assignment: readers see the old value or the new one.
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self._evict()
        self._entries[key] = (self._time() + ttl_s, value)

    async def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def _evict(self) -> None:
        now = self._time()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            # Drop the entry closest to expiry when nothing has lapsed yet.
            oldest = min(self._entries, key=lambda item: self._entries[item][0])
            self._entries.pop(oldest, None)


class RedisTTLCache:
    """Shared cache for multi-process deployments; values must be JSON-serializable."""

    def __init__(self, redis: Redis, *, prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = prefix or get_settings().cache_redis_prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl_s: int) -> None:
        await self._redis.set(self._key(key), json.dumps(value, default=str), ex=max(1, int(ttl_s)))

    async def invalidate(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class SingleFlight:
    """At most one in-flight build per key; concurrent callers await the same result."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future] = {}

    async def do(self, key: str, builder: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        if existing is not None:
            # Shield so one waiter's cancellation does not cancel the shared build.
            return await asyncio.shield(existing)
        task = asyncio.ensure_future(builder())
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(key, None)
            else:
                task.add_done_callback(lambda _: self._inflight.pop(key, None))

    def inflight(self, key: str) -> bool:
        return key in self._inflight


def build_cache() -> TTLCache:
    settings = get_settings()
    if settings.cache_backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisTTLCache(redis)
    return InMemoryTTLCache()
