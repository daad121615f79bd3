from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from querybridge.core.config import get_settings
from querybridge.core.errors import ConflictError, DecryptionError, NotFoundError, ValidationError
from querybridge.domain.models import DatabaseConnection
from querybridge.persistence.db import SessionLocal
from querybridge.services import connections as registry_service
from querybridge.services.crypto.credentials import get_credential_cipher
from querybridge.tests.utils.fakes import CUSTOMERS_TABLE, descriptor, seed_connection


@pytest.mark.asyncio
async def test_create_encrypts_secret_and_hides_it_from_views() -> None:
    async with SessionLocal() as session:
        view = await registry_service.create_connection(
            session, tenant_id="t-a", descriptor=descriptor(engine_type="postgresql")
        )
    assert view.engine_type == "postgres"
    assert view.status == "testing"
    assert view.read_only is True
    assert view.pool_config == {"max_connections": 5, "connect_timeout_ms": 30000, "idle_timeout_ms": 10000}
    assert not hasattr(view, "encrypted_secret")

    async with SessionLocal() as session:
        row = (await session.execute(select(DatabaseConnection))).scalar_one()
    assert "s3cret-pass" not in row.encrypted_secret
    assert row.key_id == "k1"
    assert len(bytes.fromhex(row.iv)) == 16

    async with SessionLocal() as session:
        config = await registry_service.get_connection_config(session, tenant_id="t-a", connection_id=view.id)
    assert config.password == "s3cret-pass"
    assert "s3cret-pass" not in repr(config)


@pytest.mark.asyncio
async def test_descriptor_validation_lists_missing_fields() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValidationError) as excinfo:
            await registry_service.create_connection(
                session,
                tenant_id="t-a",
                descriptor={"name": "broken", "engine_type": "postgres", "host": "db"},
            )
    assert "port" in " ".join(excinfo.value.details["errors"])

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await registry_service.create_connection(
                session,
                tenant_id="t-a",
                descriptor={"name": "uri", "engine_type": "mongodb", "auth_mode": "uri"},
            )


@pytest.mark.asyncio
async def test_duplicate_name_in_same_tenant_conflicts() -> None:
    await seed_connection("t-a", name="warehouse")
    with pytest.raises(ConflictError):
        await seed_connection("t-a", name="warehouse")
    # Another tenant may reuse the name.
    other = await seed_connection("t-b", name="warehouse")
    assert other.tenant_id == "t-b"


@pytest.mark.asyncio
async def test_connections_never_cross_tenants() -> None:
    view = await seed_connection("t-a")
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await registry_service.get_connection(session, tenant_id="t-b", connection_id=view.id)
        with pytest.raises(NotFoundError):
            await registry_service.get_connection_config(session, tenant_id="t-b", connection_id=view.id)
        with pytest.raises(NotFoundError):
            await registry_service.delete_connection(session, tenant_id="t-b", connection_id=view.id)
        assert await registry_service.list_connections(session, tenant_id="t-b") == []
        assert [item.id for item in await registry_service.list_connections(session, tenant_id="t-a")] == [view.id]


@pytest.mark.asyncio
async def test_update_reencrypts_password_with_new_iv() -> None:
    view = await seed_connection("t-a")
    async with SessionLocal() as session:
        before = (await session.execute(select(DatabaseConnection))).scalar_one()
        old_iv = before.iv

    async with SessionLocal() as session:
        updated = await registry_service.update_connection(
            session,
            tenant_id="t-a",
            connection_id=view.id,
            changes={"password": "rotated-pass", "description": "reporting replica"},
        )
    assert updated.description == "reporting replica"

    async with SessionLocal() as session:
        after = (await session.execute(select(DatabaseConnection))).scalar_one()
        config = await registry_service.get_connection_config(session, tenant_id="t-a", connection_id=view.id)
    assert after.iv != old_iv
    assert config.password == "rotated-pass"


@pytest.mark.asyncio
async def test_uri_secret_on_standard_connection_is_rejected() -> None:
    view = await seed_connection("t-a")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await registry_service.update_connection(
                session, tenant_id="t-a", connection_id=view.id, changes={"uri": "postgres://x"}
            )


@pytest.mark.asyncio
async def test_schema_cache_is_replaced_wholesale_and_usage_counted() -> None:
    view = await seed_connection("t-a", tables=[CUSTOMERS_TABLE])
    assert view.schema_tables is None

    async with SessionLocal() as session:
        stored = await registry_service.get_connection(session, tenant_id="t-a", connection_id=view.id)
        assert stored.schema_tables == (CUSTOMERS_TABLE,)
        await registry_service.record_connection_usage(session, tenant_id="t-a", connection_id=view.id)
        await registry_service.record_connection_usage(session, tenant_id="t-a", connection_id=view.id)

    async with SessionLocal() as session:
        stored = await registry_service.get_connection(session, tenant_id="t-a", connection_id=view.id)
    assert stored.total_queries == 2
    assert stored.last_used_at is not None

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await registry_service.update_schema_cache(
                session, tenant_id="t-b", connection_id=view.id, tables=[]
            )


@pytest.mark.asyncio
async def test_set_status_rejects_unknown_values() -> None:
    view = await seed_connection("t-a", status="testing")
    async with SessionLocal() as session:
        updated = await registry_service.set_connection_status(
            session, tenant_id="t-a", connection_id=view.id, status="error", error="refused"
        )
        assert updated.status == "error"
        assert updated.last_error == "refused"
        with pytest.raises(ValidationError):
            await registry_service.set_connection_status(
                session, tenant_id="t-a", connection_id=view.id, status="paused"
            )


@pytest.mark.asyncio
async def test_key_rotation_reencrypts_stale_rows(monkeypatch) -> None:
    view = await seed_connection("t-a")

    monkeypatch.setenv("CREDENTIAL_SECRET_KEY", "22" * 32)
    monkeypatch.setenv("CREDENTIAL_KEY_ID", "k2")
    monkeypatch.setenv("CREDENTIAL_PREVIOUS_KEYS", json.dumps({"k1": "11" * 32}))
    get_settings.cache_clear()

    async with SessionLocal() as session:
        assert await registry_service.reencrypt_stale_secrets(session) == 1
    async with SessionLocal() as session:
        row = (await session.execute(select(DatabaseConnection))).scalar_one()
        assert row.key_id == "k2"
        assert await registry_service.reencrypt_stale_secrets(session) == 0

    # Once the old key is gone the re-encrypted row still decrypts.
    monkeypatch.delenv("CREDENTIAL_PREVIOUS_KEYS")
    get_settings.cache_clear()
    async with SessionLocal() as session:
        config = await registry_service.get_connection_config(
            session, tenant_id="t-a", connection_id=view.id, cipher=get_credential_cipher()
        )
    assert config.password == "s3cret-pass"


@pytest.mark.asyncio
async def test_dropped_key_makes_connection_undecryptable(monkeypatch) -> None:
    view = await seed_connection("t-a")
    monkeypatch.setenv("CREDENTIAL_SECRET_KEY", "22" * 32)
    monkeypatch.setenv("CREDENTIAL_KEY_ID", "k2")
    get_settings.cache_clear()

    async with SessionLocal() as session:
        with pytest.raises(DecryptionError):
            await registry_service.get_connection_config(session, tenant_id="t-a", connection_id=view.id)
