from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.domain.models import DatabaseConnection
from querybridge.persistence.guards import tenant_predicate


async def get_connection(
    session: AsyncSession, *, tenant_id: str, connection_id: str
) -> DatabaseConnection | None:
    # Ensure tenant scoping to prevent cross-tenant connection access.
    result = await session.execute(
        select(DatabaseConnection).where(
            DatabaseConnection.id == connection_id,
            tenant_predicate(DatabaseConnection, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def get_connection_by_name(
    session: AsyncSession, *, tenant_id: str, name: str
) -> DatabaseConnection | None:
    result = await session.execute(
        select(DatabaseConnection).where(
            DatabaseConnection.name == name,
            tenant_predicate(DatabaseConnection, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def list_connections(
    session: AsyncSession, *, tenant_id: str, status: str | None = None
) -> list[DatabaseConnection]:
    stmt = select(DatabaseConnection).where(tenant_predicate(DatabaseConnection, tenant_id))
    if status:
        stmt = stmt.where(DatabaseConnection.status == status)
    stmt = stmt.order_by(DatabaseConnection.created_at, DatabaseConnection.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_connections_by_key_id(
    session: AsyncSession, *, exclude_key_id: str
) -> list[DatabaseConnection]:
    # Cross-tenant: only the key rotation script walks every row.
    result = await session.execute(
        select(DatabaseConnection).where(DatabaseConnection.key_id != exclude_key_id)
    )
    return list(result.scalars().all())


async def replace_schema_cache(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    tables: list[dict[str, Any]],
    cached_at: datetime,
) -> bool:
    # Single UPDATE statement swaps the snapshot wholesale.
    result = await session.execute(
        update(DatabaseConnection)
        .where(
            DatabaseConnection.id == connection_id,
            tenant_predicate(DatabaseConnection, tenant_id),
        )
        .values(schema_cache=tables, schema_cached_at=cached_at)
    )
    return (result.rowcount or 0) > 0


async def record_usage(
    session: AsyncSession, *, tenant_id: str, connection_id: str, used_at: datetime
) -> None:
    await session.execute(
        update(DatabaseConnection)
        .where(
            DatabaseConnection.id == connection_id,
            tenant_predicate(DatabaseConnection, tenant_id),
        )
        .values(
            last_used_at=used_at,
            total_queries=DatabaseConnection.total_queries + 1,
        )
    )
