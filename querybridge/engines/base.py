from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from pydantic_core import to_jsonable_python

from querybridge.core.errors import ExecutionError
from querybridge.domain.schema import SchemaTable


def jsonable_row(row: Mapping[str, Any]) -> dict[str, Any]:
    # Results are persisted as JSON; driver types (Decimal, ObjectId, datetime) become primitives.
    return {
        str(key): to_jsonable_python(value, bytes_mode="base64", fallback=str)
        for key, value in row.items()
    }


def engine_failure(message: str, exc: BaseException, *, connection_failed: bool) -> ExecutionError:
    # The message is user-safe; the driver text rides along for the audit trail only.
    error = ExecutionError(message)
    setattr(error, "technical_error", f"{type(exc).__name__}: {exc}")
    setattr(error, "connection_failed", connection_failed)
    return error


@dataclass(frozen=True)
class ConnectionConfig:
    # Decrypted view of a connection; built only while a pool is being created.
    tenant_id: str
    connection_id: str | None
    engine_type: str
    auth_mode: str
    host: str | None = None
    port: int | None = None
    database: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    uri: str | None = field(default=None, repr=False)
    ssl: bool = False
    max_connections: int = 5
    connect_timeout_ms: int = 30000
    idle_timeout_ms: int = 10000
    read_only: bool = True


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str | None = None
    error: str | None = None
    server_version: str | None = None


@dataclass(frozen=True)
class EngineResult:
    rows: list[dict[str, Any]]
    row_count: int
    execution_time_ms: int
    truncated: bool = False


class EngineAdapter(Protocol):
    engine_types: tuple[str, ...]

    async def create_pool(self, config: ConnectionConfig) -> Any:
        ...

    async def close_pool(self, pool: Any) -> None:
        ...

    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        ...

    async def introspect_schema(self, pool: Any) -> list[SchemaTable]:
        ...

    async def execute(self, pool: Any, query: Any, limit: int) -> EngineResult:
        ...
