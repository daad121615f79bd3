from __future__ import annotations

import asyncio
import logging
import re
import ssl
import time
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from querybridge.core.config import get_settings
from querybridge.core.errors import ExecutionError
from querybridge.domain.schema import SchemaColumn, SchemaTable
from querybridge.engines.base import (
    ConnectionConfig,
    ConnectionTestResult,
    EngineResult,
    engine_failure,
    jsonable_row,
)


logger = logging.getLogger(__name__)

# A lone ":name" in literal SQL would otherwise be read as a bind parameter.
_BIND_LIKE = re.compile(r"(?<![:\w\\]):(?=\w)")

_POSTGRES_INTROSPECTION = """
SELECT
  c.table_schema AS table_schema,
  c.table_name AS table_name,
  c.column_name AS column_name,
  c.data_type AS data_type,
  c.is_nullable AS is_nullable,
  CASE WHEN pk.column_name IS NOT NULL THEN 1 ELSE 0 END AS is_primary_key,
  CASE WHEN fk.column_name IS NOT NULL THEN 1 ELSE 0 END AS is_foreign_key
FROM information_schema.columns c
JOIN information_schema.tables t
  ON t.table_schema = c.table_schema AND t.table_name = c.table_name
LEFT JOIN (
  SELECT ku.table_schema, ku.table_name, ku.column_name
  FROM information_schema.table_constraints tc
  JOIN information_schema.key_column_usage ku
    ON tc.constraint_name = ku.constraint_name AND tc.table_schema = ku.table_schema
  WHERE tc.constraint_type = 'PRIMARY KEY'
) pk ON pk.table_schema = c.table_schema AND pk.table_name = c.table_name AND pk.column_name = c.column_name
LEFT JOIN (
  SELECT DISTINCT ku.table_schema, ku.table_name, ku.column_name
  FROM information_schema.table_constraints tc
  JOIN information_schema.key_column_usage ku
    ON tc.constraint_name = ku.constraint_name AND tc.table_schema = ku.table_schema
  WHERE tc.constraint_type = 'FOREIGN KEY'
) fk ON fk.table_schema = c.table_schema AND fk.table_name = c.table_name AND fk.column_name = c.column_name
WHERE c.table_schema NOT IN ('pg_catalog', 'information_schema')
  AND t.table_type = 'BASE TABLE'
ORDER BY c.table_schema, c.table_name, c.ordinal_position
"""

_MYSQL_INTROSPECTION = """
SELECT
  c.TABLE_SCHEMA AS table_schema,
  c.TABLE_NAME AS table_name,
  c.COLUMN_NAME AS column_name,
  c.DATA_TYPE AS data_type,
  c.IS_NULLABLE AS is_nullable,
  CASE WHEN c.COLUMN_KEY = 'PRI' THEN 1 ELSE 0 END AS is_primary_key,
  CASE WHEN EXISTS (
    SELECT 1 FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE k
    WHERE k.TABLE_SCHEMA = c.TABLE_SCHEMA
      AND k.TABLE_NAME = c.TABLE_NAME
      AND k.COLUMN_NAME = c.COLUMN_NAME
      AND k.REFERENCED_TABLE_NAME IS NOT NULL
  ) THEN 1 ELSE 0 END AS is_foreign_key
FROM INFORMATION_SCHEMA.COLUMNS c
JOIN INFORMATION_SCHEMA.TABLES t
  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
WHERE c.TABLE_SCHEMA = DATABASE()
  AND t.TABLE_TYPE = 'BASE TABLE'
ORDER BY c.TABLE_NAME, c.ORDINAL_POSITION
"""

_SQLSERVER_INTROSPECTION = """
SELECT
  c.TABLE_SCHEMA AS table_schema,
  c.TABLE_NAME AS table_name,
  c.COLUMN_NAME AS column_name,
  c.DATA_TYPE AS data_type,
  c.IS_NULLABLE AS is_nullable,
  CASE WHEN pk.COLUMN_NAME IS NOT NULL THEN 1 ELSE 0 END AS is_primary_key,
  CASE WHEN fk.COLUMN_NAME IS NOT NULL THEN 1 ELSE 0 END AS is_foreign_key
FROM INFORMATION_SCHEMA.COLUMNS c
JOIN INFORMATION_SCHEMA.TABLES t
  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
LEFT JOIN (
  SELECT ku.TABLE_SCHEMA, ku.TABLE_NAME, ku.COLUMN_NAME
  FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
  JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE ku
    ON tc.CONSTRAINT_NAME = ku.CONSTRAINT_NAME AND tc.TABLE_SCHEMA = ku.TABLE_SCHEMA
  WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
) pk ON pk.TABLE_SCHEMA = c.TABLE_SCHEMA AND pk.TABLE_NAME = c.TABLE_NAME AND pk.COLUMN_NAME = c.COLUMN_NAME
LEFT JOIN (
  SELECT DISTINCT ku.TABLE_SCHEMA, ku.TABLE_NAME, ku.COLUMN_NAME
  FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
  JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE ku
    ON tc.CONSTRAINT_NAME = ku.CONSTRAINT_NAME AND tc.TABLE_SCHEMA = ku.TABLE_SCHEMA
  WHERE tc.CONSTRAINT_TYPE = 'FOREIGN KEY'
) fk ON fk.TABLE_SCHEMA = c.TABLE_SCHEMA AND fk.TABLE_NAME = c.TABLE_NAME AND fk.COLUMN_NAME = c.COLUMN_NAME
WHERE c.TABLE_SCHEMA NOT IN ('sys', 'INFORMATION_SCHEMA')
  AND t.TABLE_TYPE = 'BASE TABLE'
ORDER BY c.TABLE_SCHEMA, c.TABLE_NAME, c.ORDINAL_POSITION
"""


def literal_sql(query: str) -> Any:
    """Wrap model-produced SQL so SQLAlchemy passes it through untouched."""
    return text(_BIND_LIKE.sub(r"\\:", query))


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().upper() in {"1", "YES", "TRUE", "T", "Y"}
    return bool(value)


def group_columns(rows: Iterable[Mapping[str, Any]]) -> list[SchemaTable]:
    """Fold one-row-per-column catalog output into tables, keeping catalog order."""
    grouped: dict[tuple[str | None, str], dict[str, SchemaColumn]] = {}
    for row in rows:
        key = (row.get("table_schema"), str(row["table_name"]))
        columns = grouped.setdefault(key, {})
        name = str(row["column_name"])
        column = SchemaColumn(
            name=name,
            type=str(row.get("data_type") or "unknown"),
            nullable=_flag(row.get("is_nullable", True)),
            primary_key=_flag(row.get("is_primary_key")),
            foreign_key=_flag(row.get("is_foreign_key")),
        )
        previous = columns.get(name)
        if previous is not None:
            # Columns listed under several constraints collapse into one entry.
            column = SchemaColumn(
                name=name,
                type=previous.type,
                nullable=previous.nullable,
                primary_key=previous.primary_key or column.primary_key,
                foreign_key=previous.foreign_key or column.foreign_key,
            )
        columns[name] = column
    return [
        SchemaTable(name=table_name, schema_or_db=schema, columns=tuple(columns.values()))
        for (schema, table_name), columns in grouped.items()
    ]


def _is_connection_failure(exc: BaseException) -> bool:
    if isinstance(exc, (OSError, asyncio.TimeoutError, OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class SqlAlchemyAdapter:
    """Relational engines share one adapter shape over SQLAlchemy async engines."""

    engine_types: tuple[str, ...] = ()
    drivername = ""
    introspection_sql = ""
    version_sql = "SELECT 1"

    def __init__(self, *, engine_factory: Callable[..., AsyncEngine] | None = None) -> None:
        # Tests inject a factory that points at SQLite.
        self._engine_factory = engine_factory or create_async_engine

    def url_query(self, config: ConnectionConfig) -> dict[str, str]:
        return {}

    def connect_args(self, config: ConnectionConfig) -> dict[str, Any]:
        return {}

    def build_url(self, config: ConnectionConfig) -> URL:
        if config.auth_mode == "uri":
            try:
                url = make_url(config.uri or "")
            except ArgumentError as exc:
                # Never echo the URI; it carries the password.
                raise engine_failure("Connection URI could not be parsed", exc, connection_failed=True) from None
            return url.set(drivername=self.drivername).update_query_dict(self.url_query(config))
        return URL.create(
            self.drivername,
            username=config.username,
            password=config.password,
            host=config.host,
            port=config.port,
            database=config.database,
            query=self.url_query(config),
        )

    def engine_kwargs(self, config: ConnectionConfig) -> dict[str, Any]:
        # One pool per (tenant, connection), bounded by the descriptor's pool config.
        kwargs: dict[str, Any] = {
            "pool_size": max(1, config.max_connections),
            "max_overflow": 0,
            "pool_timeout": max(1.0, config.connect_timeout_ms / 1000.0),
            "pool_pre_ping": True,
            "connect_args": self.connect_args(config),
        }
        if config.idle_timeout_ms > 0:
            kwargs["pool_recycle"] = max(1, config.idle_timeout_ms // 1000)
        return kwargs

    async def create_pool(self, config: ConnectionConfig) -> AsyncEngine:
        return self._engine_factory(self.build_url(config), **self.engine_kwargs(config))

    async def close_pool(self, pool: AsyncEngine) -> None:
        await pool.dispose()

    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        try:
            engine = self._engine_factory(
                self.build_url(config),
                poolclass=NullPool,
                connect_args=self.connect_args(config),
            )
        except (SQLAlchemyError, ExecutionError) as exc:
            return ConnectionTestResult(success=False, error=f"Invalid connection settings: {type(exc).__name__}")
        start = time.monotonic()
        try:
            async with engine.connect() as conn:
                result = await asyncio.wait_for(
                    conn.execute(text(self.version_sql)),
                    timeout=config.connect_timeout_ms / 1000.0,
                )
                version = result.scalar()
            logger.info(
                "engine_test_ok engine=%s connection_id=%s latency_ms=%.1f",
                config.engine_type,
                config.connection_id,
                (time.monotonic() - start) * 1000.0,
            )
            return ConnectionTestResult(
                success=True,
                message="Connection successful",
                server_version=str(version) if version is not None else None,
            )
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "engine_test_failed engine=%s connection_id=%s error=%s",
                config.engine_type,
                config.connection_id,
                type(exc).__name__,
            )
            return ConnectionTestResult(success=False, error=_describe_test_failure(exc))
        finally:
            await engine.dispose()

    async def introspect_schema(self, pool: AsyncEngine) -> list[SchemaTable]:
        try:
            async with pool.connect() as conn:
                result = await conn.execute(text(self.introspection_sql))
                rows = [dict(row) for row in result.mappings().all()]
        except (SQLAlchemyError, OSError) as exc:
            raise engine_failure(
                "Schema introspection failed",
                exc,
                connection_failed=_is_connection_failure(exc),
            ) from exc
        return group_columns(rows)

    async def execute(self, pool: AsyncEngine, query: str, limit: int) -> EngineResult:
        if not isinstance(query, str) or not query.strip():
            raise engine_failure("Query must be SQL text", TypeError(type(query).__name__), connection_failed=False)
        start = time.monotonic()
        try:
            async with pool.connect() as conn:
                # Fetch one row past the cap to learn whether the result was truncated.
                if pool.dialect.supports_server_side_cursors:
                    streamed = await conn.stream(literal_sql(query))
                    fetched = await streamed.mappings().fetchmany(limit + 1)
                    await streamed.close()
                else:
                    result = await conn.execute(literal_sql(query))
                    fetched = result.mappings().fetchmany(limit + 1)
                    result.close()
        except (SQLAlchemyError, OSError) as exc:
            raise engine_failure(
                "The database rejected or failed to run the query",
                exc,
                connection_failed=_is_connection_failure(exc),
            ) from exc
        rows = [jsonable_row(row) for row in fetched[:limit]]
        return EngineResult(
            rows=rows,
            row_count=len(rows),
            execution_time_ms=int((time.monotonic() - start) * 1000),
            truncated=len(fetched) > limit,
        )


def _describe_test_failure(exc: BaseException) -> str:
    # Coarse, user-safe categories; driver text goes to logs only.
    if isinstance(exc, asyncio.TimeoutError):
        return "Connection timed out"
    if isinstance(exc, OSError):
        return "Host unreachable or connection refused"
    if isinstance(exc, (OperationalError, InterfaceError)):
        return "Could not connect: check host, port, credentials and network access"
    return "Connection test failed"


class PostgresAdapter(SqlAlchemyAdapter):
    engine_types = ("postgres",)
    drivername = "postgresql+asyncpg"
    introspection_sql = _POSTGRES_INTROSPECTION
    version_sql = "SELECT version()"

    def connect_args(self, config: ConnectionConfig) -> dict[str, Any]:
        args: dict[str, Any] = {"timeout": config.connect_timeout_ms / 1000.0}
        if config.ssl:
            args["ssl"] = "require"
        return args


class MySqlAdapter(SqlAlchemyAdapter):
    engine_types = ("mysql", "mariadb")
    drivername = "mysql+aiomysql"
    introspection_sql = _MYSQL_INTROSPECTION
    version_sql = "SELECT VERSION()"

    def connect_args(self, config: ConnectionConfig) -> dict[str, Any]:
        args: dict[str, Any] = {"connect_timeout": max(1, config.connect_timeout_ms // 1000)}
        if config.ssl:
            args["ssl"] = ssl.create_default_context()
        return args


class SqlServerAdapter(SqlAlchemyAdapter):
    engine_types = ("sqlserver",)
    drivername = "mssql+aioodbc"
    introspection_sql = _SQLSERVER_INTROSPECTION
    version_sql = "SELECT @@VERSION"

    def url_query(self, config: ConnectionConfig) -> dict[str, str]:
        return {
            "driver": get_settings().sqlserver_odbc_driver,
            "Encrypt": "yes" if config.ssl else "no",
        }

    def connect_args(self, config: ConnectionConfig) -> dict[str, Any]:
        return {"timeout": max(1, config.connect_timeout_ms // 1000)}
