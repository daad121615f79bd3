from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Callable

from bson import ObjectId
from pymongo import AsyncMongoClient
from pymongo.errors import ConfigurationError, ConnectionFailure, PyMongoError

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

MONGO_OPERATIONS = ("find", "findOne", "aggregate", "count")


@dataclass
class MongoPool:
    client: Any
    database_name: str

    @property
    def database(self) -> Any:
        return self.client[self.database_name]


@dataclass(frozen=True)
class MongoOperation:
    collection: str
    operation: str
    filter: dict[str, Any] = field(default_factory=dict)
    pipeline: list[dict[str, Any]] = field(default_factory=list)
    projection: dict[str, Any] | None = None
    sort: dict[str, Any] | list | None = None
    skip: int = 0
    limit: int | None = None


def normalize_mongo_query(query: dict[str, Any]) -> MongoOperation:
    """Turn a canonical find/aggregate object into one executable operation."""
    if not isinstance(query, dict) or not query.get("collection"):
        raise ExecutionError("MongoDB query must name a collection")
    options = query.get("options") or {}
    operation = query.get("operation")
    if operation is None:
        if "aggregate" in query or "pipeline" in query:
            operation = "aggregate"
        else:
            operation = "find"
    if operation not in MONGO_OPERATIONS:
        raise ExecutionError(f"Unsupported MongoDB operation {operation!r}")
    pipeline = query.get("aggregate") or query.get("pipeline") or []
    filter_doc = query.get("find")
    if filter_doc is None:
        filter_doc = query.get("filter") or {}
    return MongoOperation(
        collection=str(query["collection"]),
        operation=operation,
        filter=dict(filter_doc),
        pipeline=list(pipeline),
        projection=query.get("projection") or options.get("projection"),
        sort=query.get("sort") or options.get("sort"),
        skip=int(query.get("skip") or options.get("skip") or 0),
        limit=query.get("limit") or options.get("limit"),
    )


def bson_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, ObjectId):
        return "ObjectId"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def infer_collection_schema(name: str, database: str, documents: list[dict[str, Any]]) -> SchemaTable:
    # First-seen type wins; _id is always the primary key.
    types: dict[str, str] = {"_id": "ObjectId"}
    seen_id = False
    for document in documents:
        for key, value in document.items():
            if key == "_id" and not seen_id:
                types["_id"] = bson_type_name(value)
                seen_id = True
            elif key not in types:
                types[key] = bson_type_name(value)
    columns = tuple(
        SchemaColumn(
            name=key,
            type=type_name,
            nullable=key != "_id",
            primary_key=key == "_id",
            foreign_key=False,
        )
        for key, type_name in types.items()
    )
    return SchemaTable(name=name, schema_or_db=database, columns=columns)


_SORT_DIRECTIONS = {"asc": 1, "ascending": 1, "desc": -1, "descending": -1}


def _direction(value: Any) -> int:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _SORT_DIRECTIONS:
            return _SORT_DIRECTIONS[lowered]
    direction = int(value)
    if direction not in (1, -1):
        raise ValueError(f"sort direction must be 1 or -1, got {value!r}")
    return direction


def _sort_spec(sort: dict[str, Any] | list | None) -> list[tuple[str, int]] | None:
    if not sort:
        return None
    pairs = sort.items() if isinstance(sort, dict) else sort
    return [(str(key), _direction(direction)) for key, direction in pairs]


class MongoAdapter:
    engine_types = ("mongodb",)

    def __init__(self, *, client_factory: Callable[..., Any] | None = None) -> None:
        self._client_factory = client_factory or AsyncMongoClient

    def _client(self, config: ConnectionConfig, *, pool_size: int) -> Any:
        options: dict[str, Any] = {
            "maxPoolSize": max(1, pool_size),
            "serverSelectionTimeoutMS": config.connect_timeout_ms,
            "connectTimeoutMS": config.connect_timeout_ms,
        }
        if config.idle_timeout_ms > 0:
            options["maxIdleTimeMS"] = config.idle_timeout_ms
        if config.auth_mode == "uri":
            return self._client_factory(config.uri, **options)
        if config.ssl:
            options["tls"] = True
        return self._client_factory(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.password,
            **options,
        )

    def _database_name(self, client: Any, config: ConnectionConfig) -> str:
        if config.database:
            return config.database
        try:
            return client.get_default_database().name
        except ConfigurationError as exc:
            raise engine_failure("No database name in the connection settings", exc, connection_failed=False) from exc

    async def create_pool(self, config: ConnectionConfig) -> MongoPool:
        client = self._client(config, pool_size=config.max_connections)
        try:
            database_name = self._database_name(client, config)
        except ExecutionError:
            await client.close()
            raise
        return MongoPool(client=client, database_name=database_name)

    async def close_pool(self, pool: MongoPool) -> None:
        await pool.client.close()

    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        try:
            client = self._client(config, pool_size=1)
        except (PyMongoError, TypeError, ValueError) as exc:
            return ConnectionTestResult(success=False, error=f"Invalid connection settings: {type(exc).__name__}")
        try:
            await client.admin.command("ping")
            info = await client.server_info()
            return ConnectionTestResult(
                success=True,
                message="Connection successful",
                server_version=info.get("version"),
            )
        except ConnectionFailure as exc:
            logger.warning("engine_test_failed engine=mongodb connection_id=%s error=%s", config.connection_id, type(exc).__name__)
            return ConnectionTestResult(success=False, error="Could not reach the MongoDB server")
        except PyMongoError as exc:
            logger.warning("engine_test_failed engine=mongodb connection_id=%s error=%s", config.connection_id, type(exc).__name__)
            return ConnectionTestResult(success=False, error="MongoDB rejected the connection: check credentials")
        finally:
            await client.close()

    async def introspect_schema(self, pool: MongoPool) -> list[SchemaTable]:
        sample_size = get_settings().mongo_sample_size
        database = pool.database
        tables: list[SchemaTable] = []
        try:
            names = await database.list_collection_names()
            for name in names:
                if name.startswith("system."):
                    continue
                documents = await database[name].find({}).limit(sample_size).to_list(length=sample_size)
                tables.append(infer_collection_schema(name, pool.database_name, documents))
        except PyMongoError as exc:
            raise engine_failure(
                "Schema introspection failed",
                exc,
                connection_failed=isinstance(exc, ConnectionFailure),
            ) from exc
        return tables

    async def execute(self, pool: MongoPool, query: dict[str, Any], limit: int) -> EngineResult:
        try:
            operation = normalize_mongo_query(query)
        except (TypeError, ValueError) as exc:
            raise engine_failure("The query options are malformed", exc, connection_failed=False) from exc
        collection = pool.database[operation.collection]
        start = time.monotonic()
        truncated = False
        try:
            if operation.operation == "count":
                total = await collection.count_documents(operation.filter)
                documents = [{"count": total}]
            elif operation.operation == "findOne":
                document = await collection.find_one(operation.filter, operation.projection)
                documents = [document] if document is not None else []
            elif operation.operation == "aggregate":
                # Trailing probe stage detects whether the cap cut the result short.
                pipeline = list(operation.pipeline) + [{"$limit": limit + 1}]
                cursor = await collection.aggregate(pipeline)
                documents = await cursor.to_list(length=limit + 1)
                truncated = len(documents) > limit
                documents = documents[:limit]
            else:
                requested = int(operation.limit) if operation.limit else None
                cursor = collection.find(operation.filter, operation.projection)
                sort = _sort_spec(operation.sort)
                if sort:
                    cursor = cursor.sort(sort)
                if operation.skip:
                    cursor = cursor.skip(operation.skip)
                if requested is not None and requested <= limit:
                    documents = await cursor.limit(requested).to_list(length=requested)
                else:
                    documents = await cursor.limit(limit + 1).to_list(length=limit + 1)
                    truncated = len(documents) > limit
                    documents = documents[:limit]
        except PyMongoError as exc:
            raise engine_failure(
                "The database rejected or failed to run the query",
                exc,
                connection_failed=isinstance(exc, ConnectionFailure),
            ) from exc
        except (TypeError, ValueError) as exc:
            # Bad sort, skip or projection shapes surface from the driver as plain Python errors.
            raise engine_failure("The query options are malformed", exc, connection_failed=False) from exc
        rows = [jsonable_row(document) for document in documents]
        return EngineResult(
            rows=rows,
            row_count=len(rows),
            execution_time_ms=int((time.monotonic() - start) * 1000),
            truncated=truncated,
        )
