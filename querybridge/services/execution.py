from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from querybridge.core.config import get_settings
from querybridge.core.errors import (
    ConflictError,
    ExecutionError,
    ExecutionTimeout,
    NotFoundError,
    QueryBridgeError,
    ReadOnlyViolation,
    SafetyViolation,
)
from querybridge.domain.models import ExecutionResult
from querybridge.domain.principal import Principal
from querybridge.engines.base import EngineResult
from querybridge.engines.gateway import EngineGateway
from querybridge.persistence.db import SessionLocal
from querybridge.persistence.repos import results as results_repo
from querybridge.persistence.repos import translations as translations_repo
from querybridge.providers.llm.base import LLMProvider
from querybridge.providers.llm.factory import get_llm_provider
from querybridge.safety.validator import QuerySafetyValidator, ValidatedQuery
from querybridge.services import connections as registry_service
from querybridge.services.audit import audit_statistics, record_audit_entry
from querybridge.services.cache import TTLCache, build_cache
from querybridge.services.crypto.utils import stable_hash
from querybridge.services.schema_index import SchemaIndex
from querybridge.services.telemetry import increment_counter, record_execution
from querybridge.services.usage import TelemetryUsageRecorder, UsageDelta, UsageRecorder
from querybridge.translation.cost import complexity_label
from querybridge.translation.pipeline import TranslationContext, TranslationPipeline, TranslationView


logger = logging.getLogger(__name__)

# Logical query states.
STATE_AWAITING_CONFIRMATION = "awaiting_confirmation"
STATE_EXECUTING = "executing"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_CANCELLED = "cancelled"

MODE_EXECUTE = "execute"
MODE_PREVIEW = "preview"
MODE_REPLAY = "replay"

SENSITIVE_COLUMN_PATTERNS = ("password", "ssn", "credit_card", "api_key", "secret", "token")
REDACTED = "***REDACTED***"


def mask_sensitive_columns(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    masked: list[dict[str, Any]] = []
    for row in rows:
        masked.append(
            {
                key: REDACTED if any(pattern in str(key).lower() for pattern in SENSITIVE_COLUMN_PATTERNS) else value
                for key, value in row.items()
            }
        )
    return masked


@dataclass(frozen=True)
class ResultView:
    execution_id: str
    translation_id: str
    connection_id: str
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool
    execution_time_ms: int
    status: str
    error: str | None
    created_at: datetime
    expires_at: datetime
    cached: bool = False

    def to_cache(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        payload["expires_at"] = self.expires_at.isoformat()
        payload.pop("cached")
        return payload

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> "ResultView":
        data = dict(payload)
        for name in ("created_at", "expires_at"):
            if isinstance(data[name], str):
                data[name] = datetime.fromisoformat(data[name])
        return cls(**data, cached=True)


def result_view(row: ExecutionResult, *, include_rows: bool = True) -> ResultView:
    return ResultView(
        execution_id=row.id,
        translation_id=row.translation_id,
        connection_id=row.connection_id,
        rows=list(row.rows or []) if include_rows else [],
        row_count=int(row.row_count or 0),
        truncated=bool(row.truncated),
        execution_time_ms=int(row.execution_time_ms or 0),
        status=row.status,
        error=row.error,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )


@dataclass(frozen=True)
class ExecutionOutcome:
    state: str
    translation: TranslationView
    result: ResultView | None = None
    requires_confirmation: bool = False
    message: str | None = None


@dataclass(frozen=True)
class CostEstimate:
    translation_id: str
    estimated_cost: float
    complexity: str
    requires_confirmation: bool
    tokens_used: int


@dataclass(frozen=True)
class HistoryPage:
    items: list[ResultView]
    total: int
    page: int
    page_size: int


@dataclass
class ExecutionJob:
    execution_id: str
    tenant_id: str
    user_id: str
    translation_id: str
    started_at: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    state: str = STATE_EXECUTING


class QueryService:
    """Translate, gate, execute and record natural-language queries.

    Per logical query the state moves Translated, then optionally
    AwaitingConfirmation, then Executing, and ends Succeeded, Failed or
    Cancelled. Rejections (safety, read-only) never reach Executing.
    """

    def __init__(
        self,
        *,
        pipeline: TranslationPipeline,
        gateway: EngineGateway,
        cache: TTLCache,
        usage_recorder: UsageRecorder,
        validator: QuerySafetyValidator | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._settings = get_settings()
        self._pipeline = pipeline
        self._gateway = gateway
        self._cache = cache
        self._usage = usage_recorder
        self._validator = validator or pipeline.validator
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._jobs: dict[str, ExecutionJob] = {}

    @property
    def gateway(self) -> EngineGateway:
        return self._gateway

    async def translate(
        self,
        principal: Principal,
        question: str,
        *,
        connection_id: str | None = None,
        context: TranslationContext | dict[str, Any] | None = None,
    ) -> TranslationView:
        return await self._pipeline.translate(principal, question, connection_id=connection_id, context=context)

    async def explain(
        self,
        principal: Principal,
        question: str,
        *,
        connection_id: str | None = None,
        context: TranslationContext | dict[str, Any] | None = None,
    ) -> TranslationView:
        # Translation only; nothing touches the tenant database.
        translation = await self.translate(principal, question, connection_id=connection_id, context=context)
        logger.info(
            "query_explained tenant_id=%s translation_id=%s allowed=%s",
            principal.tenant_id,
            translation.translation_id,
            translation.safety_allowed,
        )
        return translation

    def _needs_confirmation(self, translation: TranslationView) -> bool:
        return translation.estimated_cost > self._settings.expensive_query_threshold

    async def estimate(self, principal: Principal, translation_id: str) -> CostEstimate:
        translation = await self._pipeline.get_translation(principal.tenant_id, translation_id)
        return CostEstimate(
            translation_id=translation.translation_id,
            estimated_cost=translation.estimated_cost,
            complexity=complexity_label(translation.estimated_cost),
            requires_confirmation=self._needs_confirmation(translation),
            tokens_used=translation.tokens_used,
        )

    async def execute(
        self,
        principal: Principal,
        translation_id: str,
        *,
        confirmed: bool = False,
        limit: int | None = None,
        execution_id: str | None = None,
    ) -> ExecutionOutcome:
        translation = await self._pipeline.get_translation(principal.tenant_id, translation_id)
        return await self._run(
            principal,
            translation,
            mode=MODE_EXECUTE,
            confirmed=confirmed,
            limit=limit,
            execution_id=execution_id,
        )

    async def preview(
        self,
        principal: Principal,
        translation_id: str,
        *,
        execution_id: str | None = None,
    ) -> ExecutionOutcome:
        translation = await self._pipeline.get_translation(principal.tenant_id, translation_id)
        return await self._run(
            principal,
            translation,
            mode=MODE_PREVIEW,
            confirmed=True,
            limit=self._settings.preview_limit,
            execution_id=execution_id,
        )

    async def replay(
        self,
        principal: Principal,
        execution_id: str,
        *,
        new_execution_id: str | None = None,
    ) -> ExecutionOutcome:
        original = await self._load_result(principal, execution_id)
        if original is None:
            raise NotFoundError("Original execution not found", execution_id=execution_id)
        translation = await self._pipeline.get_translation(principal.tenant_id, original.translation_id)
        # The original run already passed the confirmation gate.
        return await self._run(
            principal,
            translation,
            mode=MODE_REPLAY,
            confirmed=True,
            limit=None,
            execution_id=new_execution_id,
        )

    async def cancel(self, principal: Principal, execution_id: str) -> bool:
        job = self._jobs.get(execution_id)
        if job is None or job.tenant_id != principal.tenant_id:
            raise NotFoundError("Query execution not found or already completed", execution_id=execution_id)
        if job.user_id != principal.user_id and not principal.is_admin:
            raise NotFoundError("Query execution not found or already completed", execution_id=execution_id)
        job.state = STATE_CANCELLED
        job.cancel_event.set()
        logger.info(
            "query_cancel_requested tenant_id=%s execution_id=%s user_id=%s",
            principal.tenant_id,
            execution_id,
            principal.user_id,
        )
        return True

    def running_executions(self, principal: Principal) -> list[str]:
        return [
            job.execution_id
            for job in self._jobs.values()
            if job.tenant_id == principal.tenant_id and (principal.is_admin or job.user_id == principal.user_id)
        ]

    async def get_result(self, principal: Principal, execution_id: str) -> ResultView | None:
        view = await self._load_result(principal, execution_id)
        if view is None:
            return None
        return self._present(principal, view)

    async def get_history(
        self,
        principal: Principal,
        *,
        page: int = 1,
        page_size: int = 20,
        connection_id: str | None = None,
    ) -> HistoryPage:
        page = max(1, int(page))
        page_size = min(100, max(1, int(page_size)))
        async with self._session_factory() as session:
            rows, total = await results_repo.list_results(
                session,
                tenant_id=principal.tenant_id,
                user_id=principal.user_id,
                connection_id=connection_id,
                now=self._clock(),
                offset=(page - 1) * page_size,
                limit=page_size,
            )
        return HistoryPage(
            items=[result_view(row, include_rows=False) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    async def statistics(self, principal: Principal, *, time_range: str = "week") -> dict[str, Any]:
        # Admins see the whole tenant; everyone else sees their own activity.
        user_id = None if principal.is_admin else principal.user_id
        return await audit_statistics(principal, time_range=time_range, user_id=user_id, now=self._clock())

    async def shutdown(self) -> None:
        for job in list(self._jobs.values()):
            job.cancel_event.set()
        await self._gateway.shutdown()

    async def _load_result(self, principal: Principal, execution_id: str) -> ResultView | None:
        async with self._session_factory() as session:
            row = await results_repo.get_live_result(
                session,
                tenant_id=principal.tenant_id,
                execution_id=execution_id,
                now=self._clock(),
            )
        if row is None:
            return None
        if row.user_id != principal.user_id and not principal.is_admin:
            return None
        return result_view(row)

    def _present(self, principal: Principal, view: ResultView) -> ResultView:
        if principal.is_admin:
            return view
        return replace(view, rows=mask_sensitive_columns(view.rows))

    @staticmethod
    def _result_key(principal: Principal, translation: TranslationView, query: Any, limit: int) -> str:
        # Per user: a cached execution id must stay readable by whoever it is handed to.
        return (
            f"result:{principal.tenant_id}:{principal.user_id}:{translation.connection_id}:"
            f"{stable_hash(query)}:{limit}"
        )

    async def _audit(
        self,
        principal: Principal,
        translation: TranslationView,
        *,
        execution_id: str | None = None,
        executed: bool = False,
        safety_passed: bool = True,
        safety_reason: str | None = None,
        result: ResultView | None = None,
        error: QueryBridgeError | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await record_audit_entry(
            principal=principal,
            entry_type="execution",
            translation_id=translation.translation_id,
            execution_id=execution_id,
            connection_id=translation.connection_id,
            engine_type=translation.engine_type,
            source_text=translation.source_text,
            generated_query=translation.canonical_query,
            executed=executed,
            safety_passed=safety_passed,
            safety_reason=safety_reason,
            execution_time_ms=result.execution_time_ms if result is not None else None,
            row_count=result.row_count if result is not None else None,
            error_code=error.code if error is not None else None,
            technical_error=getattr(error, "technical_error", None) if error is not None else None,
            metadata=metadata,
        )

    def _validate(self, translation: TranslationView) -> ValidatedQuery:
        if not translation.safety_allowed:
            raise SafetyViolation(translation.safety_reason or "Query was refused at translation time")
        return self._validator.validate(translation.canonical_query, engine_type=translation.engine_type)

    async def _run(
        self,
        principal: Principal,
        translation: TranslationView,
        *,
        mode: str,
        confirmed: bool,
        limit: int | None,
        execution_id: str | None,
    ) -> ExecutionOutcome:
        try:
            validated = self._validate(translation)
        except SafetyViolation as violation:
            increment_counter("executions_rejected_total")
            logger.warning(
                "execution_rejected_unsafe tenant_id=%s translation_id=%s stage=%s keyword=%s",
                principal.tenant_id,
                translation.translation_id,
                violation.stage,
                violation.keyword,
            )
            await self._audit(
                principal,
                translation,
                safety_passed=False,
                safety_reason=violation.reason,
                error=violation,
                metadata={"mode": mode},
            )
            raise

        if mode == MODE_EXECUTE and not confirmed and self._needs_confirmation(translation):
            logger.info(
                "execution_awaiting_confirmation tenant_id=%s translation_id=%s cost=%s",
                principal.tenant_id,
                translation.translation_id,
                translation.estimated_cost,
            )
            return ExecutionOutcome(
                state=STATE_AWAITING_CONFIRMATION,
                translation=translation,
                requires_confirmation=True,
                message=(
                    f"This query is estimated to be expensive (cost: {translation.estimated_cost}). "
                    "Please confirm execution."
                ),
            )

        row_limit = min(limit, validated.row_cap) if limit else validated.row_cap
        result_key = self._result_key(principal, translation, validated.query, row_limit)
        if mode == MODE_EXECUTE:
            cached = await self._cache.get(result_key)
            if cached is not None:
                view = ResultView.from_cache(cached)
                increment_counter("result_cache_hits_total")
                logger.info(
                    "result_cache_hit tenant_id=%s execution_id=%s",
                    principal.tenant_id,
                    view.execution_id,
                )
                await self._audit(
                    principal,
                    translation,
                    execution_id=view.execution_id,
                    executed=True,
                    result=view,
                    metadata={"mode": mode, "cached": True},
                )
                return ExecutionOutcome(
                    state=STATE_SUCCEEDED,
                    translation=translation,
                    result=self._present(principal, view),
                )

        execution_id = execution_id or self._id_factory()
        if execution_id in self._jobs:
            raise ConflictError("Execution id already in use", execution_id=execution_id)
        job = ExecutionJob(
            execution_id=execution_id,
            tenant_id=principal.tenant_id,
            user_id=principal.user_id,
            translation_id=translation.translation_id,
            started_at=time.monotonic(),
        )
        self._jobs[execution_id] = job
        start = time.monotonic()
        try:
            engine_result = await self._execute_with_budget(principal, translation, validated, row_limit, job)
        except ReadOnlyViolation as rejection:
            await self._audit(
                principal,
                translation,
                execution_id=execution_id,
                safety_passed=False,
                safety_reason=rejection.message,
                error=rejection,
                metadata={"mode": mode},
            )
            raise
        except (ExecutionError, ExecutionTimeout) as exc:
            await self._record_failure(principal, translation, execution_id, exc, start, mode)
            raise
        except QueryBridgeError as exc:
            await self._audit(principal, translation, execution_id=execution_id, error=exc, metadata={"mode": mode})
            raise
        finally:
            self._jobs.pop(execution_id, None)

        if engine_result is None:
            increment_counter("executions_cancelled_total")
            record_execution(
                engine_type=translation.engine_type,
                latency_ms=(time.monotonic() - start) * 1000.0,
                status=STATE_CANCELLED,
            )
            await self._audit(
                principal,
                translation,
                execution_id=execution_id,
                error=None,
                metadata={"mode": mode, "cancelled": True},
            )
            logger.info("query_cancelled tenant_id=%s execution_id=%s", principal.tenant_id, execution_id)
            return ExecutionOutcome(state=STATE_CANCELLED, translation=translation, message="Query cancelled")

        truncated = engine_result.truncated
        if validated.limit_injected and engine_result.row_count >= validated.row_cap:
            truncated = True
        view = await self._record_success(
            principal,
            translation,
            execution_id,
            engine_result,
            truncated=truncated,
            mode=mode,
        )
        if mode != MODE_PREVIEW:
            await self._cache.put(result_key, view.to_cache(), self._settings.result_cache_ttl_s)
        return ExecutionOutcome(
            state=STATE_SUCCEEDED,
            translation=translation,
            result=self._present(principal, view),
        )

    async def _execute_with_budget(
        self,
        principal: Principal,
        translation: TranslationView,
        validated: ValidatedQuery,
        row_limit: int,
        job: ExecutionJob,
    ) -> EngineResult | None:
        """Race the engine call against cancellation and the wall-clock budget.

        Returns ``None`` when cancelled. The engine call is abandoned, not
        awaited, on cancel or timeout; drivers that ignore task cancellation
        finish in the background and their result is dropped.
        """
        timeout_s = self._settings.execution_timeout_ms / 1000.0
        task = asyncio.ensure_future(
            self._gateway.execute(principal.tenant_id, translation.connection_id, validated.query, row_limit)
        )
        waiter = asyncio.ensure_future(job.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                return task.result()
            task.cancel()
            task.add_done_callback(_drain_abandoned)
            if waiter in done:
                return None
            logger.warning(
                "execution_timeout tenant_id=%s execution_id=%s timeout_ms=%s",
                principal.tenant_id,
                job.execution_id,
                self._settings.execution_timeout_ms,
            )
            raise ExecutionTimeout(
                f"Query execution exceeded {self._settings.execution_timeout_ms / 1000:g}s time limit",
                execution_id=job.execution_id,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

    async def _record_success(
        self,
        principal: Principal,
        translation: TranslationView,
        execution_id: str,
        engine_result: EngineResult,
        *,
        truncated: bool,
        mode: str,
    ) -> ResultView:
        now = self._clock()
        status = "preview" if mode == MODE_PREVIEW else "success"
        row = ExecutionResult(
            id=execution_id,
            tenant_id=principal.tenant_id,
            user_id=principal.user_id,
            translation_id=translation.translation_id,
            connection_id=translation.connection_id,
            rows=engine_result.rows,
            row_count=engine_result.row_count,
            truncated=truncated,
            execution_time_ms=engine_result.execution_time_ms,
            status=status,
            created_at=now,
            expires_at=now + timedelta(hours=self._settings.result_ttl_hours),
        )
        async with self._session_factory() as session:
            session.add(row)
            if mode != MODE_PREVIEW:
                # Previews never become the canonical result of a translation.
                await translations_repo.attach_execution(
                    session,
                    tenant_id=principal.tenant_id,
                    translation_id=translation.translation_id,
                    execution_id=execution_id,
                )
            await session.commit()
            await registry_service.record_connection_usage(
                session, tenant_id=principal.tenant_id, connection_id=translation.connection_id
            )
        view = result_view(row)

        increment_counter("executions_succeeded_total")
        record_execution(
            engine_type=translation.engine_type,
            latency_ms=float(engine_result.execution_time_ms),
            status=status,
        )
        logger.info(
            "query_executed tenant_id=%s execution_id=%s mode=%s rows=%s truncated=%s time_ms=%s",
            principal.tenant_id,
            execution_id,
            mode,
            view.row_count,
            truncated,
            view.execution_time_ms,
        )
        await self._audit(
            principal,
            translation,
            execution_id=execution_id,
            executed=True,
            result=view,
            metadata={"mode": mode, "truncated": truncated},
        )
        await self._usage.record_usage(principal.tenant_id, UsageDelta(queries=1))
        return view

    async def _record_failure(
        self,
        principal: Principal,
        translation: TranslationView,
        execution_id: str,
        exc: QueryBridgeError,
        start: float,
        mode: str,
    ) -> None:
        now = self._clock()
        elapsed_ms = int((time.monotonic() - start) * 1000)
        row = ExecutionResult(
            id=execution_id,
            tenant_id=principal.tenant_id,
            user_id=principal.user_id,
            translation_id=translation.translation_id,
            connection_id=translation.connection_id,
            rows=[],
            row_count=0,
            truncated=False,
            execution_time_ms=elapsed_ms,
            status="failed",
            error=exc.message,
            created_at=now,
            expires_at=now + timedelta(hours=self._settings.result_ttl_hours),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        increment_counter("executions_failed_total")
        record_execution(engine_type=translation.engine_type, latency_ms=float(elapsed_ms), status=STATE_FAILED)
        logger.warning(
            "query_execution_failed tenant_id=%s execution_id=%s code=%s",
            principal.tenant_id,
            execution_id,
            exc.code,
        )
        await self._audit(
            principal,
            translation,
            execution_id=execution_id,
            result=result_view(row),
            error=exc,
            metadata={"mode": mode},
        )


def _drain_abandoned(task: asyncio.Future) -> None:
    # Retrieve the outcome of an abandoned engine call so it is never reported as unhandled.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info("abandoned_execution_finished error=%s", type(exc).__name__)


def build_query_service(
    *,
    provider: LLMProvider | None = None,
    gateway: EngineGateway | None = None,
    cache: TTLCache | None = None,
    usage_recorder: UsageRecorder | None = None,
) -> QueryService:
    cache = cache or build_cache()
    gateway = gateway or EngineGateway()
    usage_recorder = usage_recorder or TelemetryUsageRecorder()
    schema_index = SchemaIndex(cache=cache, gateway=gateway)
    pipeline = TranslationPipeline(
        schema_index=schema_index,
        provider=provider or get_llm_provider(),
        cache=cache,
        usage_recorder=usage_recorder,
    )
    return QueryService(pipeline=pipeline, gateway=gateway, cache=cache, usage_recorder=usage_recorder)
