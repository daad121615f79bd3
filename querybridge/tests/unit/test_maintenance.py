from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from sqlalchemy import func, select

from querybridge.core.config import get_settings
from querybridge.domain.models import AuditEntry, DatabaseConnection, ExecutionResult
from querybridge.persistence.db import SessionLocal
from querybridge.services.audit import record_audit_entry
from querybridge.services.maintenance import prune_audit_entries, prune_expired_results, run_maintenance_task
from querybridge.tests.utils.fakes import member, seed_connection


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


def _result(execution_id: str, expires_at: datetime) -> ExecutionResult:
    return ExecutionResult(
        id=execution_id,
        tenant_id="t-acme",
        user_id="u-member",
        translation_id="tr-1",
        connection_id="c-1",
        rows=[],
        row_count=0,
        truncated=False,
        execution_time_ms=1,
        status="success",
        created_at=expires_at - timedelta(hours=24),
        expires_at=expires_at,
    )


@pytest.mark.asyncio
async def test_prune_audit_entries_respects_retention() -> None:
    now = datetime.now(timezone.utc)
    await record_audit_entry(principal=member(), entry_type="execution", occurred_at=now - timedelta(days=120))
    await record_audit_entry(principal=member(), entry_type="execution", occurred_at=now - timedelta(days=10))

    async with SessionLocal() as session:
        assert await prune_audit_entries(session, retention_days=30, now=now) == 1
        await session.commit()
    assert await _count(AuditEntry) == 1


@pytest.mark.asyncio
async def test_prune_expired_results() -> None:
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        session.add(_result("exec-old", now - timedelta(hours=1)))
        session.add(_result("exec-live", now + timedelta(hours=1)))
        await session.commit()

    async with SessionLocal() as session:
        assert await prune_expired_results(session, now=now) == 1
        await session.commit()
    assert await _count(ExecutionResult) == 1


@pytest.mark.asyncio
async def test_run_maintenance_task_dispatches(monkeypatch) -> None:
    await seed_connection("t-acme")
    monkeypatch.setenv("CREDENTIAL_SECRET_KEY", "33" * 32)
    monkeypatch.setenv("CREDENTIAL_KEY_ID", "k3")
    monkeypatch.setenv("CREDENTIAL_PREVIOUS_KEYS", json.dumps({"k1": "11" * 32}))
    get_settings.cache_clear()

    async with SessionLocal() as session:
        assert await run_maintenance_task(session, "reencrypt_credentials") == 1
        assert await run_maintenance_task(session, "prune_results") == 0
        assert await run_maintenance_task(session, "prune_audit") == 0
        await session.commit()
    async with SessionLocal() as session:
        row = (await session.execute(select(DatabaseConnection))).scalar_one()
    assert row.key_id == "k3"

    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await run_maintenance_task(session, "vacuum")
