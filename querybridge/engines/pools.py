from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from querybridge.engines.base import ConnectionConfig, EngineAdapter
from querybridge.engines.registry import EngineRegistry
from querybridge.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

PoolKey = tuple[str, str]
ConfigLoader = Callable[[str, str], Awaitable[ConnectionConfig]]


@dataclass(frozen=True)
class PoolEntry:
    # Only the adapter and the live pool are kept; the decrypted config is dropped after build.
    adapter: EngineAdapter
    pool: Any
    engine_type: str


class PoolManager:
    """Owns every tenant database pool, keyed by (tenant_id, connection_id).

    Pools are built lazily under a per-key lock so concurrent first callers
    share one pool, and closed explicitly on delete, rotation or shutdown.
    """

    def __init__(self, registry: EngineRegistry, loader: ConfigLoader) -> None:
        self._registry = registry
        self._loader = loader
        self._pools: dict[PoolKey, PoolEntry] = {}
        self._locks: dict[PoolKey, asyncio.Lock] = {}

    def _lock(self, key: PoolKey) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    async def acquire(self, tenant_id: str, connection_id: str) -> PoolEntry:
        key = (tenant_id, connection_id)
        entry = self._pools.get(key)
        if entry is not None:
            return entry
        async with self._lock(key):
            entry = self._pools.get(key)
            if entry is not None:
                return entry
            config = await self._loader(tenant_id, connection_id)
            adapter = self._registry.get(config.engine_type)
            pool = await adapter.create_pool(config)
            entry = PoolEntry(adapter=adapter, pool=pool, engine_type=config.engine_type)
            self._pools[key] = entry
        increment_counter("engine_pools_created_total")
        set_gauge("engine_pools_open", float(len(self._pools)))
        logger.info(
            "engine_pool_created tenant_id=%s connection_id=%s engine=%s",
            tenant_id,
            connection_id,
            entry.engine_type,
        )
        return entry

    async def discard(self, tenant_id: str, connection_id: str, *, only: PoolEntry | None = None) -> bool:
        # With ``only`` set, a pool rebuilt by another caller in the meantime is left alone.
        key = (tenant_id, connection_id)
        async with self._lock(key):
            entry = self._pools.get(key)
            if entry is None or (only is not None and entry is not only):
                return False
            self._pools.pop(key, None)
        self._locks.pop(key, None)
        await self._close(key, entry)
        set_gauge("engine_pools_open", float(len(self._pools)))
        return True

    async def close_all(self) -> None:
        entries = list(self._pools.items())
        self._pools.clear()
        self._locks.clear()
        for key, entry in entries:
            await self._close(key, entry)
        set_gauge("engine_pools_open", 0.0)

    async def _close(self, key: PoolKey, entry: PoolEntry) -> None:
        try:
            await entry.adapter.close_pool(entry.pool)
            logger.info("engine_pool_closed tenant_id=%s connection_id=%s", key[0], key[1])
        except Exception as exc:  # noqa: BLE001 - one bad close must not leak the remaining pools
            logger.error("engine_pool_close_failed tenant_id=%s connection_id=%s", key[0], key[1], exc_info=exc)

    def open_keys(self) -> list[PoolKey]:
        return list(self._pools)
