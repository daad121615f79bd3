from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from querybridge.core.errors import ConnectionTestFailure, DecryptionError, QueryBridgeError, ValidationError
from querybridge.domain.schema import SchemaTable
from querybridge.engines.base import ConnectionTestResult
from querybridge.engines.gateway import EngineGateway
from querybridge.persistence.db import SessionLocal
from querybridge.services import connections as registry_service
from querybridge.services.connections import ConnectionDescriptor, ConnectionUpdate, ConnectionView
from querybridge.services.crypto.credentials import CredentialCipher, get_credential_cipher
from querybridge.services.schema_index import SchemaIndex


logger = logging.getLogger(__name__)


class ConnectionAdmin:
    """Admin-facing lifecycle for tenant connections: register, test, refresh, rotate, remove.

    Wraps the registry with the network steps it deliberately does not do
    itself, and keeps pools and the aggregated schema in step with each change.
    """

    def __init__(
        self,
        *,
        gateway: EngineGateway,
        schema_index: SchemaIndex,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        cipher_provider: Callable[[], CredentialCipher] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._schema_index = schema_index
        self._session_factory = session_factory or SessionLocal
        self._cipher_provider = cipher_provider or get_credential_cipher
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def register(
        self,
        tenant_id: str,
        descriptor: ConnectionDescriptor | dict[str, Any],
    ) -> ConnectionView:
        parsed = registry_service.parse_descriptor(descriptor)
        # A failed test stores nothing.
        result = await self._gateway.test_connection(registry_service.descriptor_config(tenant_id, parsed))
        if not result.success:
            raise ConnectionTestFailure(result.error or "Connection test failed")

        async with self._session_factory() as session:
            view = await registry_service.create_connection(
                session,
                tenant_id=tenant_id,
                descriptor=parsed,
                cipher=self._cipher_provider(),
            )
        try:
            await self._store_schema(tenant_id, view.id)
        except QueryBridgeError as exc:
            logger.warning(
                "connection_register_introspection_failed tenant_id=%s connection_id=%s code=%s",
                tenant_id,
                view.id,
                exc.code,
            )
            return view
        async with self._session_factory() as session:
            view = await registry_service.set_connection_status(
                session,
                tenant_id=tenant_id,
                connection_id=view.id,
                status="active",
                tested_at=self._clock(),
            )
        await self._schema_index.invalidate(tenant_id)
        return view

    async def test(self, tenant_id: str, connection_id: str) -> ConnectionTestResult:
        try:
            result = await self._gateway.test_stored_connection(tenant_id, connection_id)
        except DecryptionError as exc:
            await self._set_status(tenant_id, connection_id, "error", exc.message)
            raise
        await self._set_status(
            tenant_id,
            connection_id,
            "active" if result.success else "error",
            None if result.success else result.error,
        )
        await self._schema_index.invalidate(tenant_id)
        return result

    async def refresh_schema(self, tenant_id: str, connection_id: str) -> list[SchemaTable]:
        tables = await self._store_schema(tenant_id, connection_id)
        await self._schema_index.invalidate(tenant_id)
        return tables

    async def update(
        self,
        tenant_id: str,
        connection_id: str,
        changes: ConnectionUpdate | dict[str, Any],
    ) -> ConnectionView:
        async with self._session_factory() as session:
            view = await registry_service.update_connection(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                changes=changes,
                cipher=self._cipher_provider(),
            )
        parsed = changes if isinstance(changes, ConnectionUpdate) else ConnectionUpdate.model_validate(changes)
        if parsed.touches_connectivity():
            await self._gateway.close_connection(tenant_id, connection_id)
        await self._schema_index.invalidate(tenant_id)
        return view

    async def rotate_credentials(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        password: str | None = None,
        uri: str | None = None,
    ) -> ConnectionView:
        if bool(password) == bool(uri):
            raise ValidationError("Provide exactly one of password or uri")
        async with self._session_factory() as session:
            current = await registry_service.get_connection_config(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                cipher=self._cipher_provider(),
            )
        candidate = replace(current, password=password) if password else replace(current, uri=uri)
        result = await self._gateway.test_connection(candidate)
        if not result.success:
            raise ConnectionTestFailure(result.error or "New credentials failed the connection test")

        async with self._session_factory() as session:
            view = await registry_service.update_connection(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                changes=ConnectionUpdate(password=password, uri=uri),
                cipher=self._cipher_provider(),
            )
        # The old pool still holds the previous credentials.
        await self._gateway.close_connection(tenant_id, connection_id)
        logger.info("connection_credentials_rotated tenant_id=%s connection_id=%s", tenant_id, connection_id)
        return view

    async def remove(self, tenant_id: str, connection_id: str) -> None:
        async with self._session_factory() as session:
            await registry_service.delete_connection(session, tenant_id=tenant_id, connection_id=connection_id)
        await self._gateway.close_connection(tenant_id, connection_id)
        await self._schema_index.invalidate(tenant_id)

    async def _store_schema(self, tenant_id: str, connection_id: str) -> list[SchemaTable]:
        tables = await self._gateway.introspect_schema(tenant_id, connection_id)
        async with self._session_factory() as session:
            await registry_service.update_schema_cache(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                tables=tables,
                timestamp=self._clock(),
            )
        return tables

    async def _set_status(self, tenant_id: str, connection_id: str, status: str, error: str | None) -> None:
        async with self._session_factory() as session:
            await registry_service.set_connection_status(
                session,
                tenant_id=tenant_id,
                connection_id=connection_id,
                status=status,
                error=error,
                tested_at=self._clock(),
            )
