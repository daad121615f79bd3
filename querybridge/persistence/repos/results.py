from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.domain.models import ExecutionResult
from querybridge.persistence.guards import tenant_predicate


async def get_live_result(
    session: AsyncSession, *, tenant_id: str, execution_id: str, now: datetime
) -> ExecutionResult | None:
    # Expired rows are invisible even before the prune job removes them.
    result = await session.execute(
        select(ExecutionResult).where(
            ExecutionResult.id == execution_id,
            tenant_predicate(ExecutionResult, tenant_id),
            ExecutionResult.expires_at > now,
        )
    )
    return result.scalar_one_or_none()


async def list_results(
    session: AsyncSession,
    *,
    tenant_id: str,
    user_id: str | None = None,
    connection_id: str | None = None,
    now: datetime,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[ExecutionResult], int]:
    filters = [tenant_predicate(ExecutionResult, tenant_id), ExecutionResult.expires_at > now]
    if user_id:
        filters.append(ExecutionResult.user_id == user_id)
    if connection_id:
        filters.append(ExecutionResult.connection_id == connection_id)
    total = await session.scalar(select(func.count()).select_from(ExecutionResult).where(*filters))
    stmt = (
        select(ExecutionResult)
        .where(*filters)
        .order_by(ExecutionResult.created_at.desc(), ExecutionResult.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), int(total or 0)


async def delete_expired_results(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(delete(ExecutionResult).where(ExecutionResult.expires_at <= now))
    return result.rowcount or 0
