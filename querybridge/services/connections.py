from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from querybridge.core.config import get_settings
from querybridge.core.errors import ConflictError, NotFoundError, ValidationError
from querybridge.domain.models import DatabaseConnection
from querybridge.domain.schema import SchemaTable
from querybridge.engines.base import ConnectionConfig
from querybridge.persistence.repos import connections as connections_repo
from querybridge.services.crypto.credentials import (
    CredentialCipher,
    EncryptedSecret,
    get_credential_cipher,
)


logger = logging.getLogger(__name__)

CONNECTION_STATUSES = ("testing", "active", "inactive", "error")
# Connections in these states are never queried until a successful test reactivates them.
UNUSABLE_STATUSES = frozenset({"inactive", "error"})
_ENGINE_ALIASES = {"postgresql": "postgres", "mssql": "sqlserver", "mongo": "mongodb"}


class PoolSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_connections: int = Field(default_factory=lambda: get_settings().pool_max_connections, ge=1, le=20)
    connect_timeout_ms: int = Field(default_factory=lambda: get_settings().pool_connect_timeout_ms, ge=1000)
    idle_timeout_ms: int = Field(default_factory=lambda: get_settings().pool_idle_timeout_ms, ge=0)


def _normalize_engine(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        return _ENGINE_ALIASES.get(lowered, lowered)
    return value


class ConnectionDescriptor(BaseModel):
    """Admin-supplied connection definition; the secret never leaves this model unencrypted."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    engine_type: Literal["postgres", "mysql", "mariadb", "sqlserver", "mongodb"]
    auth_mode: Literal["standard", "uri"] = "standard"
    uri: str | None = Field(default=None, repr=False)
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    ssl: bool = False
    pool_config: PoolSettings = Field(default_factory=PoolSettings)
    read_only: bool = True

    @field_validator("engine_type", mode="before")
    @classmethod
    def _alias_engine(cls, value: Any) -> Any:
        return _normalize_engine(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @model_validator(mode="after")
    def _require_auth_fields(self) -> "ConnectionDescriptor":
        if self.auth_mode == "uri":
            if not self.uri:
                raise ValueError("uri is required when auth_mode is 'uri'")
            return self
        missing = [
            field_name
            for field_name in ("host", "port", "database", "username", "password")
            if getattr(self, field_name) in (None, "")
        ]
        if missing:
            raise ValueError(f"missing required fields for standard auth: {', '.join(missing)}")
        return self

    def secret_payload(self) -> dict[str, str]:
        if self.auth_mode == "uri":
            return {"uri": self.uri or ""}
        return {"password": self.password or ""}


class ConnectionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    uri: str | None = Field(default=None, repr=False)
    ssl: bool | None = None
    pool_config: PoolSettings | None = None
    read_only: bool | None = None
    status: Literal["testing", "active", "inactive", "error"] | None = None

    def touches_connectivity(self) -> bool:
        # Any of these invalidates a live pool built from the old values.
        fields = ("host", "port", "database", "username", "password", "uri", "ssl", "pool_config")
        return any(getattr(self, name) is not None for name in fields)


@dataclass(frozen=True)
class ConnectionView:
    id: str
    tenant_id: str
    name: str
    description: str | None
    engine_type: str
    auth_mode: str
    host: str | None
    port: int | None
    database: str | None
    username: str | None
    ssl: bool
    pool_config: dict[str, int]
    read_only: bool
    status: str
    schema_tables: tuple[SchemaTable, ...] | None
    schema_cached_at: datetime | None
    last_tested_at: datetime | None
    last_error: str | None
    last_used_at: datetime | None
    total_queries: int
    created_at: datetime | None
    updated_at: datetime | None


def _validation_error(exc: PydanticValidationError, message: str) -> ValidationError:
    errors = [
        f"{'.'.join(str(part) for part in error['loc']) or 'descriptor'}: {error['msg']}"
        for error in exc.errors()
    ]
    return ValidationError(message, errors=errors)


def parse_descriptor(descriptor: ConnectionDescriptor | dict[str, Any]) -> ConnectionDescriptor:
    if isinstance(descriptor, ConnectionDescriptor):
        return descriptor
    try:
        return ConnectionDescriptor.model_validate(descriptor)
    except PydanticValidationError as exc:
        raise _validation_error(exc, "Invalid connection descriptor") from exc


def _to_view(row: DatabaseConnection) -> ConnectionView:
    # Never expose encrypted_secret, iv or key_id to callers.
    tables = None
    if row.schema_cache is not None:
        tables = tuple(SchemaTable.from_dict(item) for item in row.schema_cache)
    return ConnectionView(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        engine_type=row.engine_type,
        auth_mode=row.auth_mode,
        host=row.host,
        port=row.port,
        database=row.database,
        username=row.username,
        ssl=bool(row.ssl),
        pool_config=dict(row.pool_config or {}),
        read_only=bool(row.read_only),
        status=row.status,
        schema_tables=tables,
        schema_cached_at=row.schema_cached_at,
        last_tested_at=row.last_tested_at,
        last_error=row.last_error,
        last_used_at=row.last_used_at,
        total_queries=int(row.total_queries or 0),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def _require_row(session: AsyncSession, *, tenant_id: str, connection_id: str) -> DatabaseConnection:
    row = await connections_repo.get_connection(session, tenant_id=tenant_id, connection_id=connection_id)
    if row is None:
        raise NotFoundError("Connection not found", connection_id=connection_id)
    return row


async def create_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    descriptor: ConnectionDescriptor | dict[str, Any],
    cipher: CredentialCipher | None = None,
    connection_id: str | None = None,
    status: str = "testing",
) -> ConnectionView:
    parsed = parse_descriptor(descriptor)
    existing = await connections_repo.get_connection_by_name(session, tenant_id=tenant_id, name=parsed.name)
    if existing is not None:
        raise ConflictError(f"A connection named {parsed.name!r} already exists", name=parsed.name)

    # Encrypt with a fresh IV on every write; plaintext is never stored.
    secret = (cipher or get_credential_cipher()).encrypt(parsed.secret_payload())
    standard = parsed.auth_mode == "standard"
    row = DatabaseConnection(
        id=connection_id or uuid4().hex,
        tenant_id=tenant_id,
        name=parsed.name,
        description=parsed.description,
        engine_type=parsed.engine_type,
        auth_mode=parsed.auth_mode,
        host=parsed.host if standard else None,
        port=parsed.port if standard else None,
        database=parsed.database,
        username=parsed.username if standard else None,
        ssl=parsed.ssl,
        encrypted_secret=secret.ciphertext,
        iv=secret.iv,
        key_id=secret.key_id,
        pool_config=parsed.pool_config.model_dump(),
        read_only=parsed.read_only,
        status=status,
        total_queries=0,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError as exc:
        # Lost a race with a concurrent create of the same name.
        await session.rollback()
        raise ConflictError(f"A connection named {parsed.name!r} already exists", name=parsed.name) from exc
    logger.info(
        "connection_created tenant_id=%s connection_id=%s engine=%s auth_mode=%s",
        tenant_id,
        row.id,
        row.engine_type,
        row.auth_mode,
    )
    return _to_view(row)


async def get_connection(session: AsyncSession, *, tenant_id: str, connection_id: str) -> ConnectionView:
    return _to_view(await _require_row(session, tenant_id=tenant_id, connection_id=connection_id))


async def list_connections(
    session: AsyncSession, *, tenant_id: str, status: str | None = None
) -> list[ConnectionView]:
    rows = await connections_repo.list_connections(session, tenant_id=tenant_id, status=status)
    return [_to_view(row) for row in rows]


def _config_from_row(row: DatabaseConnection, secret: dict[str, Any]) -> ConnectionConfig:
    pool = row.pool_config or {}
    settings = get_settings()
    return ConnectionConfig(
        tenant_id=row.tenant_id,
        connection_id=row.id,
        engine_type=row.engine_type,
        auth_mode=row.auth_mode,
        host=row.host,
        port=row.port,
        database=row.database,
        username=row.username,
        password=secret.get("password"),
        uri=secret.get("uri"),
        ssl=bool(row.ssl),
        max_connections=int(pool.get("max_connections", settings.pool_max_connections)),
        connect_timeout_ms=int(pool.get("connect_timeout_ms", settings.pool_connect_timeout_ms)),
        idle_timeout_ms=int(pool.get("idle_timeout_ms", settings.pool_idle_timeout_ms)),
        read_only=bool(row.read_only),
    )


async def get_connection_config(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    cipher: CredentialCipher | None = None,
) -> ConnectionConfig:
    # The explicit "with secret" read; only the pool builder calls this.
    row = await _require_row(session, tenant_id=tenant_id, connection_id=connection_id)
    secret = (cipher or get_credential_cipher()).decrypt(
        EncryptedSecret(ciphertext=row.encrypted_secret, iv=row.iv, key_id=row.key_id)
    )
    return _config_from_row(row, secret)


def descriptor_config(tenant_id: str, descriptor: ConnectionDescriptor) -> ConnectionConfig:
    # Unsaved descriptors are tested before anything is stored.
    pool = descriptor.pool_config
    return ConnectionConfig(
        tenant_id=tenant_id,
        connection_id=None,
        engine_type=descriptor.engine_type,
        auth_mode=descriptor.auth_mode,
        host=descriptor.host,
        port=descriptor.port,
        database=descriptor.database,
        username=descriptor.username,
        password=descriptor.password,
        uri=descriptor.uri,
        ssl=descriptor.ssl,
        max_connections=pool.max_connections,
        connect_timeout_ms=pool.connect_timeout_ms,
        idle_timeout_ms=pool.idle_timeout_ms,
        read_only=descriptor.read_only,
    )


async def update_connection(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    changes: ConnectionUpdate | dict[str, Any],
    cipher: CredentialCipher | None = None,
) -> ConnectionView:
    if not isinstance(changes, ConnectionUpdate):
        try:
            changes = ConnectionUpdate.model_validate(changes)
        except PydanticValidationError as exc:
            raise _validation_error(exc, "Invalid connection update") from exc
    row = await _require_row(session, tenant_id=tenant_id, connection_id=connection_id)

    if changes.name is not None and changes.name != row.name:
        clash = await connections_repo.get_connection_by_name(session, tenant_id=tenant_id, name=changes.name)
        if clash is not None:
            raise ConflictError(f"A connection named {changes.name!r} already exists", name=changes.name)
        row.name = changes.name
    for field_name in ("description", "database", "ssl", "read_only", "status"):
        value = getattr(changes, field_name)
        if value is not None:
            setattr(row, field_name, value)
    if row.auth_mode == "standard":
        for field_name in ("host", "port", "username"):
            value = getattr(changes, field_name)
            if value is not None:
                setattr(row, field_name, value)
    if changes.pool_config is not None:
        row.pool_config = changes.pool_config.model_dump()

    new_secret: dict[str, str] | None = None
    if row.auth_mode == "uri" and changes.uri:
        new_secret = {"uri": changes.uri}
    elif row.auth_mode == "standard" and changes.password:
        new_secret = {"password": changes.password}
    elif changes.uri or changes.password:
        raise ValidationError(f"Secret does not match auth_mode {row.auth_mode!r}")
    if new_secret is not None:
        secret = (cipher or get_credential_cipher()).encrypt(new_secret)
        row.encrypted_secret = secret.ciphertext
        row.iv = secret.iv
        row.key_id = secret.key_id

    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("A connection with that name already exists") from exc
    logger.info(
        "connection_updated tenant_id=%s connection_id=%s secret_rotated=%s",
        tenant_id,
        connection_id,
        new_secret is not None,
    )
    return _to_view(row)


async def delete_connection(session: AsyncSession, *, tenant_id: str, connection_id: str) -> None:
    row = await _require_row(session, tenant_id=tenant_id, connection_id=connection_id)
    await session.delete(row)
    await session.commit()
    logger.info("connection_deleted tenant_id=%s connection_id=%s", tenant_id, connection_id)


async def set_connection_status(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    status: str,
    error: str | None = None,
    tested_at: datetime | None = None,
) -> ConnectionView:
    if status not in CONNECTION_STATUSES:
        raise ValidationError(f"Unknown connection status {status!r}")
    row = await _require_row(session, tenant_id=tenant_id, connection_id=connection_id)
    row.status = status
    row.last_error = error
    if tested_at is not None:
        row.last_tested_at = tested_at
    await session.commit()
    return _to_view(row)


async def update_schema_cache(
    session: AsyncSession,
    *,
    tenant_id: str,
    connection_id: str,
    tables: list[SchemaTable],
    timestamp: datetime | None = None,
) -> None:
    # Atomic wholesale replace; a snapshot is never partially patched.
    replaced = await connections_repo.replace_schema_cache(
        session,
        tenant_id=tenant_id,
        connection_id=connection_id,
        tables=[table.to_dict() for table in tables],
        cached_at=timestamp or datetime.now(timezone.utc),
    )
    if not replaced:
        await session.rollback()
        raise NotFoundError("Connection not found", connection_id=connection_id)
    await session.commit()


async def record_connection_usage(session: AsyncSession, *, tenant_id: str, connection_id: str) -> None:
    await connections_repo.record_usage(
        session,
        tenant_id=tenant_id,
        connection_id=connection_id,
        used_at=datetime.now(timezone.utc),
    )
    await session.commit()


async def reencrypt_stale_secrets(session: AsyncSession, *, cipher: CredentialCipher | None = None) -> int:
    # Move every ciphertext still on a retired key onto the current key.
    cipher = cipher or get_credential_cipher()
    rows = await connections_repo.list_connections_by_key_id(session, exclude_key_id=cipher.current_key_id)
    for row in rows:
        plaintext = cipher.decrypt(EncryptedSecret(ciphertext=row.encrypted_secret, iv=row.iv, key_id=row.key_id))
        secret = cipher.encrypt(plaintext)
        row.encrypted_secret = secret.ciphertext
        row.iv = secret.iv
        row.key_id = secret.key_id
    await session.commit()
    logger.info("credentials_reencrypted count=%s key_id=%s", len(rows), cipher.current_key_id)
    return len(rows)
