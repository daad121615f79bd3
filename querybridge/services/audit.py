from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from querybridge.domain.models import AuditEntry
from querybridge.domain.principal import Principal
from querybridge.persistence.db import SessionLocal
from querybridge.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "uri", "ssn", "credit_card"]
_REDACTED_VALUE = "[REDACTED]"

STATISTICS_RANGES = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "all": None,
}


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_audit_entry(
    *,
    principal: Principal,
    entry_type: str,
    translation_id: str | None = None,
    execution_id: str | None = None,
    connection_id: str | None = None,
    engine_type: str | None = None,
    source_text: str | None = None,
    generated_query: Any = None,
    executed: bool = False,
    safety_passed: bool = True,
    safety_reason: str | None = None,
    execution_time_ms: int | None = None,
    row_count: int | None = None,
    tokens_used: int | None = None,
    error_code: str | None = None,
    technical_error: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> None:
    # Audit writes are best effort: a failed write is logged, never raised into the query path.
    entry = AuditEntry(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=principal.tenant_id,
        user_id=principal.user_id,
        user_role=principal.role,
        entry_type=entry_type,
        translation_id=translation_id,
        execution_id=execution_id,
        connection_id=connection_id,
        engine_type=engine_type,
        source_text=source_text,
        generated_query=generated_query,
        executed=executed,
        safety_passed=safety_passed,
        safety_reason=safety_reason,
        execution_time_ms=execution_time_ms,
        row_count=row_count,
        tokens_used=tokens_used,
        error_code=error_code,
        technical_error=technical_error,
        request_id=principal.request_id,
        ip_address=principal.ip_address,
        user_agent=principal.user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    async with SessionLocal() as session:
        try:
            session.add(entry)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "audit_entry_write_failed entry_type=%s tenant_id=%s translation_id=%s",
                entry_type,
                principal.tenant_id,
                translation_id,
                exc_info=exc,
            )


async def audit_statistics(
    principal: Principal,
    *,
    time_range: str = "week",
    user_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if time_range not in STATISTICS_RANGES:
        time_range = "all"
    window = STATISTICS_RANGES[time_range]
    occurred_from = None
    if window is not None:
        occurred_from = (now or datetime.now(timezone.utc)) - window
    async with SessionLocal() as session:
        stats = await audit_repo.entry_statistics(
            session,
            tenant_id=principal.tenant_id,
            occurred_from=occurred_from,
            user_id=user_id,
        )
    stats["time_range"] = time_range
    return stats
