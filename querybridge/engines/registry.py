from __future__ import annotations

from typing import Callable

from querybridge.core.errors import ValidationError
from querybridge.engines.base import EngineAdapter
from querybridge.engines.mongodb import MongoAdapter
from querybridge.engines.sql import MySqlAdapter, PostgresAdapter, SqlServerAdapter


_ENGINE_ADAPTERS: dict[str, Callable[[], EngineAdapter]] = {
    "postgres": PostgresAdapter,
    "mysql": MySqlAdapter,
    "mariadb": MySqlAdapter,
    "sqlserver": SqlServerAdapter,
    "mongodb": MongoAdapter,
}

RELATIONAL_ENGINES = frozenset({"postgres", "mysql", "mariadb", "sqlserver"})


def is_relational(engine_type: str) -> bool:
    return engine_type in RELATIONAL_ENGINES


class EngineRegistry:
    """Resolve one adapter instance per engine type; tests pass their own factories."""

    def __init__(self, adapter_factories: dict[str, Callable[[], EngineAdapter]] | None = None) -> None:
        self._factories = dict(adapter_factories or _ENGINE_ADAPTERS)
        self._adapters: dict[str, EngineAdapter] = {}

    def get(self, engine_type: str) -> EngineAdapter:
        adapter = self._adapters.get(engine_type)
        if adapter is not None:
            return adapter
        factory = self._factories.get(engine_type)
        if factory is None:
            raise ValidationError(f"Unsupported engine type {engine_type!r}")
        adapter = factory()
        self._adapters[engine_type] = adapter
        return adapter
