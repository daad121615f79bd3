from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        # SQLite drops tzinfo; reattach UTC so comparisons stay aware.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DatabaseConnection(Base):
    __tablename__ = "database_connections"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_connections_tenant_name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    engine_type: Mapped[str] = mapped_column(String)
    auth_mode: Mapped[str] = mapped_column(String)
    host: Mapped[str | None] = mapped_column(String, nullable=True)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    database: Mapped[str | None] = mapped_column(String, nullable=True)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    ssl: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Ciphertext and IV are hex; key_id names the key used so rotation can decrypt old rows.
    encrypted_secret: Mapped[str] = mapped_column(Text)
    iv: Mapped[str] = mapped_column(String)
    key_id: Mapped[str] = mapped_column(String)
    pool_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    read_only: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    status: Mapped[str] = mapped_column(String, default="testing")
    # Schema snapshot is replaced wholesale on refresh, never patched.
    schema_cache: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    schema_cached_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_tested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_queries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Translation(Base):
    __tablename__ = "translations"
    __table_args__ = (Index("ix_translations_tenant_created", "tenant_id", "created_at"),)

    # The fingerprint doubles as the id so identical requests resolve to one row.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    connection_id: Mapped[str] = mapped_column(String, index=True)
    engine_type: Mapped[str] = mapped_column(String)
    source_text: Mapped[str] = mapped_column(Text)
    context_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # SQL text for relational engines, a find/aggregate object for MongoDB.
    canonical_query: Mapped[Any] = mapped_column(JSONType)
    explain: Mapped[str] = mapped_column(Text, default="")
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0)
    requires_indexes: Mapped[list[str]] = mapped_column(JSONType, default=list)
    safety_allowed: Mapped[bool] = mapped_column(Boolean)
    safety_reason: Mapped[str] = mapped_column(Text, default="")
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    last_execution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class ExecutionResult(Base):
    __tablename__ = "execution_results"
    __table_args__ = (Index("ix_execution_results_tenant_user", "tenant_id", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    translation_id: Mapped[str] = mapped_column(String, index=True)
    connection_id: Mapped[str] = mapped_column(String, index=True)
    rows: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    row_count: Mapped[int] = mapped_column(Integer, default=0)
    truncated: Mapped[bool] = mapped_column(Boolean, default=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    # success, failed or preview.
    status: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    # Monotonic id keeps ordering stable for same-timestamp entries.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # translation, execution or rejection.
    entry_type: Mapped[str] = mapped_column(String, index=True)
    translation_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    execution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    engine_type: Mapped[str | None] = mapped_column(String, nullable=True)
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    generated_query: Mapped[Any] = mapped_column(JSONType, nullable=True)
    executed: Mapped[bool] = mapped_column(Boolean, default=False)
    safety_passed: Mapped[bool] = mapped_column(Boolean, default=True)
    safety_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    # Operators see the raw driver/provider error here; callers never do.
    technical_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
