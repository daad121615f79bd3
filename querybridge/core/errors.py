from __future__ import annotations

from typing import Any


class QueryBridgeError(Exception):
    """Base error for querybridge; carries a stable code and a user-safe message."""

    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ProviderConfigError(QueryBridgeError):
    """Missing or invalid provider or process configuration."""

    code = "config_error"


class ValidationError(QueryBridgeError):
    """Request or descriptor has the wrong shape."""

    code = "validation_error"


class ConflictError(QueryBridgeError):
    """A connection with the same tenant and name already exists."""

    code = "conflict"


class NotFoundError(QueryBridgeError):
    """Missing connection, translation or result for this tenant."""

    code = "not_found"


class DecryptionError(QueryBridgeError):
    """Stored credentials cannot be decrypted with any configured key."""

    code = "decryption_failed"


class ConnectionTestFailure(QueryBridgeError):
    """Network or auth failure reaching a tenant database."""

    code = "connection_test_failed"


class ReadOnlyViolation(QueryBridgeError):
    """Mutating statement submitted to a read-only connection."""

    code = "read_only_violation"


class SafetyViolation(QueryBridgeError):
    """Query rejected by the safety validator before execution."""

    code = "safety_violation"

    def __init__(
        self,
        reason: str,
        *,
        stage: str | None = None,
        keyword: str | None = None,
    ) -> None:
        super().__init__(reason, stage=stage, keyword=keyword)
        self.reason = reason
        self.stage = stage
        self.keyword = keyword


class TranslationProviderError(QueryBridgeError):
    """Language model provider unavailable, throttled or misconfigured."""

    code = "translation_provider_error"


class IntegrationUnavailableError(TranslationProviderError):
    """Integration short-circuited by an open circuit breaker."""

    code = "integration_unavailable"


class TranslationFormatError(QueryBridgeError):
    """Model output was not parseable or missed required fields."""

    code = "translation_format_error"


class ExecutionTimeout(QueryBridgeError):
    """Execution exceeded the wall-clock budget."""

    code = "execution_timeout"


class ExecutionError(QueryBridgeError):
    """Engine reported a failure while running the query."""

    code = "execution_error"


class QuotaExceeded(QueryBridgeError):
    """Raised by the billing pre-check; respected as an input gate."""

    code = "quota_exceeded"


def to_error_payload(exc: QueryBridgeError) -> dict[str, Any]:
    # Render a structured, user-safe error body for the outer HTTP layer.
    payload: dict[str, Any] = {"code": exc.code, "message": exc.message}
    payload.update({key: value for key, value in exc.details.items() if value is not None})
    return payload
