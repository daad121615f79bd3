from __future__ import annotations

import pytest

from querybridge.core.errors import ExecutionError, NotFoundError, ReadOnlyViolation, ValidationError
from querybridge.engines.base import engine_failure
from querybridge.engines.gateway import EngineGateway
from querybridge.engines.guards import enforce_read_only, leading_mutation
from querybridge.engines.mongodb import MongoAdapter
from querybridge.engines.registry import EngineRegistry, is_relational
from querybridge.engines.sql import MySqlAdapter, PostgresAdapter, SqlServerAdapter
from querybridge.tests.utils.fakes import FakeEngineAdapter, seed_connection


def _gateway(adapter: FakeEngineAdapter) -> EngineGateway:
    return EngineGateway(registry=EngineRegistry({"postgres": lambda: adapter, "mongodb": lambda: adapter}))


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM customers",
        "  update customers set city = 'x'",
        "\n\tDROP TABLE orders",
        "SELECT 1; TRUNCATE orders",
        "/* hidden */ INSERT INTO t VALUES (1)",
        "-- note\nALTER TABLE t ADD c int",
    ],
)
def test_mutating_statements_are_detected(sql: str) -> None:
    assert leading_mutation(sql) is not None
    with pytest.raises(ReadOnlyViolation):
        enforce_read_only(sql, read_only=True)


def test_reads_and_writable_connections_pass_the_guard() -> None:
    assert leading_mutation("SELECT * FROM deleted_items") is None
    assert leading_mutation("WITH x AS (SELECT 1) SELECT * FROM x") is None
    enforce_read_only("DELETE FROM t", read_only=False)


def test_registry_resolves_one_adapter_per_engine() -> None:
    registry = EngineRegistry()
    assert isinstance(registry.get("postgres"), PostgresAdapter)
    assert isinstance(registry.get("mariadb"), MySqlAdapter)
    assert isinstance(registry.get("sqlserver"), SqlServerAdapter)
    assert isinstance(registry.get("mongodb"), MongoAdapter)
    assert registry.get("postgres") is registry.get("postgres")
    with pytest.raises(ValidationError):
        registry.get("oracle")
    assert is_relational("mysql")
    assert not is_relational("mongodb")


@pytest.mark.asyncio
async def test_read_only_rejection_happens_before_any_pool_or_query() -> None:
    adapter = FakeEngineAdapter()
    gateway = _gateway(adapter)
    view = await seed_connection("t-a")

    with pytest.raises(ReadOnlyViolation):
        await gateway.execute("t-a", view.id, "DELETE FROM customers WHERE 1 = 1", 100)
    assert adapter.pools_created == 0
    assert adapter.calls == []


@pytest.mark.asyncio
async def test_writable_connection_reaches_the_engine() -> None:
    adapter = FakeEngineAdapter(rows=[{"id": 1}, {"id": 2}])
    gateway = _gateway(adapter)
    view = await seed_connection("t-a", read_only=False)

    result = await gateway.execute("t-a", view.id, "UPDATE t SET a = 1", 100)
    assert result.row_count == 2
    assert adapter.calls == [("UPDATE t SET a = 1", 100)]


@pytest.mark.asyncio
async def test_pool_is_shared_and_rebuilt_after_connection_failure() -> None:
    adapter = FakeEngineAdapter(rows=[{"id": 1}])
    gateway = _gateway(adapter)
    view = await seed_connection("t-a")

    await gateway.execute("t-a", view.id, "SELECT 1", 10)
    await gateway.execute("t-a", view.id, "SELECT 1", 10)
    assert adapter.pools_created == 1
    assert gateway.pools.open_keys() == [("t-a", view.id)]

    adapter.error = engine_failure("boom", OSError("reset"), connection_failed=True)
    with pytest.raises(ExecutionError):
        await gateway.execute("t-a", view.id, "SELECT 1", 10)
    assert adapter.pools_closed == 1
    assert gateway.pools.open_keys() == []

    adapter.error = None
    await gateway.execute("t-a", view.id, "SELECT 1", 10)
    assert adapter.pools_created == 2


@pytest.mark.asyncio
async def test_query_errors_keep_the_pool() -> None:
    adapter = FakeEngineAdapter()
    adapter.error = engine_failure("bad column", ValueError("no such column"), connection_failed=False)
    gateway = _gateway(adapter)
    view = await seed_connection("t-a")

    with pytest.raises(ExecutionError) as excinfo:
        await gateway.execute("t-a", view.id, "SELECT nope FROM t", 10)
    assert excinfo.value.message == "bad column"
    assert "no such column" in excinfo.value.technical_error
    assert adapter.pools_closed == 0


@pytest.mark.asyncio
async def test_gateway_is_tenant_scoped() -> None:
    adapter = FakeEngineAdapter()
    gateway = _gateway(adapter)
    view = await seed_connection("t-a")

    with pytest.raises(NotFoundError):
        await gateway.execute("t-b", view.id, "SELECT 1", 10)
    with pytest.raises(NotFoundError):
        await gateway.introspect_schema("t-b", view.id)
    assert adapter.pools_created == 0


@pytest.mark.asyncio
async def test_stored_connection_test_uses_decrypted_config_and_shutdown_closes_pools() -> None:
    adapter = FakeEngineAdapter()
    gateway = _gateway(adapter)
    view = await seed_connection("t-a")

    result = await gateway.test_stored_connection("t-a", view.id)
    assert result.success
    assert adapter.tested[0].password == "s3cret-pass"

    tables = await gateway.introspect_schema("t-a", view.id)
    assert [table.name for table in tables] == ["customers"]
    await gateway.shutdown()
    assert adapter.pools_closed == 1
    assert await gateway.close_connection("t-a", view.id) is False
