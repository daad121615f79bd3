from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.domain.models import Translation
from querybridge.persistence.guards import tenant_predicate


async def get_translation(
    session: AsyncSession, *, tenant_id: str, translation_id: str
) -> Translation | None:
    # Ensure tenant scoping; a fingerprint from another tenant must never resolve.
    result = await session.execute(
        select(Translation).where(
            Translation.id == translation_id,
            tenant_predicate(Translation, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def attach_execution(
    session: AsyncSession, *, tenant_id: str, translation_id: str, execution_id: str
) -> None:
    # The only mutation a translation ever sees after creation.
    await session.execute(
        update(Translation)
        .where(
            Translation.id == translation_id,
            tenant_predicate(Translation, tenant_id),
        )
        .values(last_execution_id=execution_id)
    )
