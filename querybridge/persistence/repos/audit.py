from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Integer, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.domain.models import AuditEntry
from querybridge.persistence.guards import tenant_predicate


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str,
    entry_type: str | None = None,
    user_id: str | None = None,
    translation_id: str | None = None,
    safety_passed: bool | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEntry]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEntry).where(tenant_predicate(AuditEntry, tenant_id))
    if entry_type:
        stmt = stmt.where(AuditEntry.entry_type == entry_type)
    if user_id:
        stmt = stmt.where(AuditEntry.user_id == user_id)
    if translation_id:
        stmt = stmt.where(AuditEntry.translation_id == translation_id)
    if safety_passed is not None:
        stmt = stmt.where(AuditEntry.safety_passed == safety_passed)
    if occurred_from:
        stmt = stmt.where(AuditEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEntry.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEntry.occurred_at.desc(), AuditEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def entry_statistics(
    session: AsyncSession,
    *,
    tenant_id: str,
    occurred_from: datetime | None = None,
    user_id: str | None = None,
) -> dict[str, Any]:
    stmt = select(
        func.count(AuditEntry.id),
        func.coalesce(func.sum(cast(AuditEntry.executed, Integer)), 0),
        func.coalesce(func.sum(cast(AuditEntry.safety_passed, Integer)), 0),
        func.avg(AuditEntry.execution_time_ms),
    ).where(tenant_predicate(AuditEntry, tenant_id))
    if occurred_from:
        stmt = stmt.where(AuditEntry.occurred_at >= occurred_from)
    if user_id:
        stmt = stmt.where(AuditEntry.user_id == user_id)
    total, executed, safe, avg_ms = (await session.execute(stmt)).one()
    return {
        "total_queries": int(total or 0),
        "executed_queries": int(executed or 0),
        "safe_queries": int(safe or 0),
        "rejected_queries": int(total or 0) - int(safe or 0),
        "avg_execution_time_ms": float(avg_ms or 0.0),
    }
