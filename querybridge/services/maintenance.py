from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.core.config import get_settings
from querybridge.domain.models import AuditEntry
from querybridge.persistence.repos import results as results_repo
from querybridge.services.connections import reencrypt_stale_secrets


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_audit", "prune_results", "reencrypt_credentials"]


async def prune_audit_entries(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    # The bulk retention sweep is the only path that deletes audit entries.
    days = retention_days if retention_days is not None else get_settings().audit_retention_days
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    result = await session.execute(delete(AuditEntry).where(AuditEntry.occurred_at < cutoff))
    deleted = result.rowcount or 0
    logger.info("audit_entries_pruned deleted=%s retention_days=%s", deleted, days)
    return deleted


async def prune_expired_results(session: AsyncSession, *, now: datetime | None = None) -> int:
    deleted = await results_repo.delete_expired_results(session, now=now or datetime.now(timezone.utc))
    logger.info("execution_results_pruned deleted=%s", deleted)
    return deleted


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> int:
    # Each task runs in the caller's transaction; the caller commits.
    if task == "prune_audit":
        return await prune_audit_entries(session)
    if task == "prune_results":
        return await prune_expired_results(session)
    if task == "reencrypt_credentials":
        return await reencrypt_stale_secrets(session)
    raise ValueError(f"Unknown maintenance task: {task}")
