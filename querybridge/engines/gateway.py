from __future__ import annotations

import logging
import time
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from querybridge.core.errors import ExecutionError, ValidationError
from querybridge.domain.schema import SchemaTable
from querybridge.engines.base import ConnectionConfig, ConnectionTestResult, EngineResult
from querybridge.engines.guards import enforce_read_only
from querybridge.engines.pools import PoolManager
from querybridge.engines.registry import EngineRegistry, is_relational
from querybridge.persistence.db import SessionLocal
from querybridge.services import connections as registry_service
from querybridge.services.crypto.credentials import CredentialCipher, get_credential_cipher
from querybridge.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class EngineGateway:
    """Single entry point for test, introspect and execute across every engine."""

    def __init__(
        self,
        *,
        registry: EngineRegistry | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cipher_provider: Callable[[], CredentialCipher] | None = None,
    ) -> None:
        self._registry = registry or EngineRegistry()
        self._session_factory = session_factory or SessionLocal
        self._cipher_provider = cipher_provider or get_credential_cipher
        self._pools = PoolManager(self._registry, self._load_config)

    @property
    def pools(self) -> PoolManager:
        return self._pools

    async def _load_config(self, tenant_id: str, connection_id: str) -> ConnectionConfig:
        # Decryption happens here, only while a pool is being built.
        async with self._session_factory() as session:
            return await registry_service.get_connection_config(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                cipher=self._cipher_provider(),
            )

    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        adapter = self._registry.get(config.engine_type)
        start = time.monotonic()
        result = await adapter.test_connection(config)
        record_external_call(
            integration=f"engine.{config.engine_type}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=result.success,
        )
        return result

    async def test_stored_connection(self, tenant_id: str, connection_id: str) -> ConnectionTestResult:
        return await self.test_connection(await self._load_config(tenant_id, connection_id))

    async def introspect_schema(self, tenant_id: str, connection_id: str) -> list[SchemaTable]:
        entry = await self._pools.acquire(tenant_id, connection_id)
        try:
            tables = await entry.adapter.introspect_schema(entry.pool)
        except ExecutionError as exc:
            if getattr(exc, "connection_failed", False):
                await self._pools.discard(tenant_id, connection_id, only=entry)
            raise
        logger.info(
            "schema_introspected tenant_id=%s connection_id=%s tables=%s",
            tenant_id,
            connection_id,
            len(tables),
        )
        return tables

    async def execute(
        self,
        tenant_id: str,
        connection_id: str,
        query: Any,
        limit: int,
    ) -> EngineResult:
        async with self._session_factory() as session:
            connection = await registry_service.get_connection(
                session, tenant_id=tenant_id, connection_id=connection_id
            )
        if connection.status in registry_service.UNUSABLE_STATUSES:
            raise ValidationError(
                f"Connection is {connection.status}; test it before querying",
                connection_id=connection.id,
            )
        if is_relational(connection.engine_type):
            enforce_read_only(str(query), read_only=connection.read_only)

        entry = await self._pools.acquire(tenant_id, connection_id)
        start = time.monotonic()
        try:
            result = await entry.adapter.execute(entry.pool, query, limit)
        except ExecutionError as exc:
            record_external_call(
                integration=f"engine.{connection.engine_type}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            if getattr(exc, "connection_failed", False):
                # A broken pool is closed now and rebuilt on the next call.
                await self._pools.discard(tenant_id, connection_id, only=entry)
            raise
        record_external_call(
            integration=f"engine.{connection.engine_type}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return result

    async def close_connection(self, tenant_id: str, connection_id: str) -> bool:
        return await self._pools.discard(tenant_id, connection_id)

    async def shutdown(self) -> None:
        await self._pools.close_all()
