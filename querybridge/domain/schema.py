from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class SchemaColumn:
    name: str
    type: str
    nullable: bool = True
    primary_key: bool = False
    foreign_key: bool = False


@dataclass(frozen=True)
class SchemaTable:
    name: str
    schema_or_db: str | None
    columns: tuple[SchemaColumn, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchemaTable":
        columns = tuple(SchemaColumn(**column) for column in data.get("columns") or [])
        return cls(name=data["name"], schema_or_db=data.get("schema_or_db"), columns=columns)


@dataclass(frozen=True)
class ConnectionSchema:
    connection_id: str
    connection_name: str
    engine_type: str
    tables: tuple[SchemaTable, ...]


@dataclass(frozen=True)
class AggregatedSchema:
    # Built wholesale and swapped in one assignment; readers never see a partial build.
    tenant_id: str
    connections: tuple[ConnectionSchema, ...]
    built_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AggregatedSchema":
        built_at = data["built_at"]
        if isinstance(built_at, str):
            built_at = datetime.fromisoformat(built_at)
        return cls(
            tenant_id=data["tenant_id"],
            connections=tuple(
                ConnectionSchema(
                    connection_id=item["connection_id"],
                    connection_name=item["connection_name"],
                    engine_type=item["engine_type"],
                    tables=tuple(SchemaTable.from_dict(table) for table in item["tables"]),
                )
                for item in data.get("connections") or []
            ),
            built_at=built_at,
        )


@dataclass(frozen=True)
class TableMatch:
    connection_id: str
    connection_name: str
    engine_type: str
    table: SchemaTable
    score: int
    reasons: tuple[str, ...] = field(default_factory=tuple)
