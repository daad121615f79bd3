from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import date, datetime, timezone
import logging
import time
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from querybridge.core.config import get_settings
from querybridge.core.errors import NotFoundError, SafetyViolation, ValidationError
from querybridge.domain.models import Translation
from querybridge.domain.principal import Principal
from querybridge.domain.schema import TableMatch
from querybridge.persistence.db import SessionLocal
from querybridge.persistence.repos import translations as translations_repo
from querybridge.providers.llm.base import LLMProvider
from querybridge.safety.validator import QuerySafetyValidator
from querybridge.services import connections as registry_service
from querybridge.services.audit import record_audit_entry
from querybridge.services.cache import SingleFlight, TTLCache
from querybridge.services.connections import ConnectionView
from querybridge.services.crypto.utils import stable_hash
from querybridge.services.schema_index import SchemaIndex
from querybridge.services.telemetry import increment_counter
from querybridge.services.usage import UsageDelta, UsageRecorder
from querybridge.translation.cost import estimate_cost
from querybridge.translation.parser import parse_model_output
from querybridge.translation.prompts import build_system_prompt, build_user_prompt


logger = logging.getLogger(__name__)


class HistoryTurn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["user", "assistant"]
    content: str


class TranslationContext(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    history: list[HistoryTurn] = Field(default_factory=list)
    recent_tables: list[str] = Field(default_factory=list, alias="recentTables")
    preferred_connection_id: str | None = Field(default=None, alias="preferredConnectionId")

    def fingerprint_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class TranslationView:
    translation_id: str
    tenant_id: str
    user_id: str
    connection_id: str
    engine_type: str
    source_text: str
    canonical_query: Any
    explain: str
    estimated_cost: float
    requires_indexes: tuple[str, ...]
    safety_allowed: bool
    safety_reason: str
    tokens_used: int
    created_at: datetime
    cached: bool = False

    def to_cache(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["requires_indexes"] = list(self.requires_indexes)
        payload["created_at"] = self.created_at.isoformat()
        payload.pop("cached")
        return payload

    @classmethod
    def from_cache(cls, payload: dict[str, Any]) -> "TranslationView":
        data = dict(payload)
        data["requires_indexes"] = tuple(data.get("requires_indexes") or ())
        created_at = data["created_at"]
        if isinstance(created_at, str):
            data["created_at"] = datetime.fromisoformat(created_at)
        return cls(**data, cached=True)


def translation_view(row: Translation, *, cached: bool) -> TranslationView:
    return TranslationView(
        translation_id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        connection_id=row.connection_id,
        engine_type=row.engine_type,
        source_text=row.source_text,
        canonical_query=row.canonical_query,
        explain=row.explain,
        estimated_cost=float(row.estimated_cost),
        requires_indexes=tuple(row.requires_indexes or ()),
        safety_allowed=bool(row.safety_allowed),
        safety_reason=row.safety_reason or "",
        tokens_used=int(row.tokens_used or 0),
        created_at=row.created_at,
        cached=cached,
    )


def normalize_question(question: str) -> str:
    # Whitespace-only differences map to one fingerprint; case is preserved.
    return " ".join(question.split())


def translation_fingerprint(
    tenant_id: str,
    connection_id: str,
    question: str,
    context: TranslationContext,
) -> str:
    return stable_hash(
        {
            "tenant_id": tenant_id,
            "connection_id": connection_id,
            "question": normalize_question(question),
            "context": context.fingerprint_payload(),
        }
    )


def parse_context(context: TranslationContext | dict[str, Any] | None) -> TranslationContext:
    if context is None:
        return TranslationContext()
    if isinstance(context, TranslationContext):
        return context
    try:
        return TranslationContext.model_validate(context)
    except PydanticValidationError as exc:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ValidationError("Invalid translation context", errors=errors) from exc


class TranslationPipeline:
    """Question + context in, stored Translation out.

    One build per fingerprint: the cache answers first, then the translations
    table, and only then the language model. Concurrent identical requests
    share a single in-flight build.
    """

    def __init__(
        self,
        *,
        schema_index: SchemaIndex,
        provider: LLMProvider,
        cache: TTLCache,
        usage_recorder: UsageRecorder,
        validator: QuerySafetyValidator | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl_s: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._schema_index = schema_index
        self._provider = provider
        self._cache = cache
        self._usage = usage_recorder
        self._validator = validator or QuerySafetyValidator()
        self._session_factory = session_factory or SessionLocal
        self._ttl_s = ttl_s if ttl_s is not None else settings.translation_cache_ttl_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._single_flight = SingleFlight()

    @property
    def validator(self) -> QuerySafetyValidator:
        return self._validator

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"translation:{fingerprint}"

    async def translate(
        self,
        principal: Principal,
        question: str,
        *,
        connection_id: str | None = None,
        context: TranslationContext | dict[str, Any] | None = None,
    ) -> TranslationView:
        settings = get_settings()
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("Question must not be empty")
        if len(question) > settings.max_question_length:
            raise ValidationError(f"Question exceeds {settings.max_question_length} characters")
        parsed_context = parse_context(context)

        connection = await self._resolve_connection(principal, question, connection_id, parsed_context)
        fingerprint = translation_fingerprint(principal.tenant_id, connection.id, question, parsed_context)

        cached = await self._cache.get(self._key(fingerprint))
        if cached is not None:
            increment_counter("translation_cache_hits_total")
            logger.info("translation_cache_hit tenant_id=%s fingerprint=%s", principal.tenant_id, fingerprint)
            return TranslationView.from_cache(cached)

        joined = self._single_flight.inflight(fingerprint)
        view = await self._single_flight.do(
            fingerprint,
            lambda: self._load_or_build(principal, question, connection, parsed_context, fingerprint),
        )
        if joined and not view.cached:
            # Waiters on someone else's build did not invoke the model themselves.
            view = replace(view, cached=True)
        return view

    async def get_translation(self, tenant_id: str, translation_id: str) -> TranslationView:
        async with self._session_factory() as session:
            row = await translations_repo.get_translation(
                session, tenant_id=tenant_id, translation_id=translation_id
            )
        if row is None:
            raise NotFoundError("Translation not found", translation_id=translation_id)
        return translation_view(row, cached=True)

    async def _resolve_connection(
        self,
        principal: Principal,
        question: str,
        connection_id: str | None,
        context: TranslationContext,
    ) -> ConnectionView:
        if connection_id is None:
            suggestion = await self._schema_index.find_best_connection(
                principal.tenant_id,
                question,
                preferred_connection_id=context.preferred_connection_id,
                recent_tables=context.recent_tables,
            )
            if suggestion.best is not None:
                connection_id = suggestion.best.connection_id
            elif context.preferred_connection_id:
                connection_id = context.preferred_connection_id
            else:
                raise NotFoundError("No connected database matches this question")
            logger.info(
                "translation_connection_selected tenant_id=%s connection_id=%s alternatives=%s",
                principal.tenant_id,
                connection_id,
                len(suggestion.alternatives),
            )
        async with self._session_factory() as session:
            connection = await registry_service.get_connection(
                session, tenant_id=principal.tenant_id, connection_id=connection_id
            )
        if connection.status in registry_service.UNUSABLE_STATUSES:
            raise ValidationError(
                f"Connection is {connection.status}; test it before querying",
                connection_id=connection.id,
            )
        return connection

    async def _load_or_build(
        self,
        principal: Principal,
        question: str,
        connection: ConnectionView,
        context: TranslationContext,
        fingerprint: str,
    ) -> TranslationView:
        async with self._session_factory() as session:
            row = await translations_repo.get_translation(
                session, tenant_id=principal.tenant_id, translation_id=fingerprint
            )
        if row is not None:
            view = translation_view(row, cached=True)
            await self._cache.put(self._key(fingerprint), view.to_cache(), self._ttl_s)
            return view
        return await self._build(principal, question, connection, context, fingerprint)

    async def _shortlist(
        self, tenant_id: str, question: str, connection: ConnectionView, context: TranslationContext
    ) -> list[TableMatch]:
        limit = get_settings().shortlist_size
        matches = await self._schema_index.find_matching_tables(
            tenant_id,
            question,
            preferred_connection_id=context.preferred_connection_id,
            recent_tables=context.recent_tables,
            connection_id=connection.id,
        )
        if matches:
            return matches[:limit]
        # Nothing scored: hand the model the first tables of the target connection.
        schema = await self._schema_index.get_aggregated_schema(tenant_id)
        for item in schema.connections:
            if item.connection_id == connection.id:
                return [
                    TableMatch(
                        connection_id=item.connection_id,
                        connection_name=item.connection_name,
                        engine_type=item.engine_type,
                        table=table,
                        score=0,
                    )
                    for table in item.tables[:limit]
                ]
        return []

    async def _build(
        self,
        principal: Principal,
        question: str,
        connection: ConnectionView,
        context: TranslationContext,
        fingerprint: str,
    ) -> TranslationView:
        settings = get_settings()
        engine_type = connection.engine_type
        shortlist = await self._shortlist(principal.tenant_id, question, connection, context)
        system_prompt = build_system_prompt(
            engine_type=engine_type,
            shortlist=shortlist,
            user_role=principal.role,
            today=date.today(),
        )
        history = [turn.model_dump() for turn in context.history[-settings.context_history_turns :]]
        user_prompt = build_user_prompt(
            normalize_question(question),
            engine_type=engine_type,
            history=history,
            recent_tables=context.recent_tables,
        )

        start = time.monotonic()
        generation = await self._provider.generate(system_prompt, user_prompt)
        parsed = parse_model_output(generation.text, engine_type=engine_type)

        allowed = parsed.allowed
        reason = parsed.reason
        if allowed:
            try:
                self._validator.validate(parsed.query, engine_type=engine_type)
            except SafetyViolation as violation:
                allowed = False
                reason = violation.reason
                increment_counter("translation_safety_overrides_total")
                logger.warning(
                    "translation_rejected_by_validator tenant_id=%s fingerprint=%s stage=%s keyword=%s",
                    principal.tenant_id,
                    fingerprint,
                    violation.stage,
                    violation.keyword,
                )

        row = Translation(
            id=fingerprint,
            tenant_id=principal.tenant_id,
            user_id=principal.user_id,
            connection_id=connection.id,
            engine_type=engine_type,
            source_text=question,
            context_json=context.fingerprint_payload(),
            canonical_query=parsed.query,
            explain=parsed.explain,
            estimated_cost=estimate_cost(parsed.query, engine_type=engine_type) if allowed else 0.0,
            requires_indexes=list(parsed.requires_indexes),
            safety_allowed=allowed,
            safety_reason=reason,
            tokens_used=generation.tokens_used,
            created_at=self._clock(),
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Another process stored this fingerprint first; its row wins.
                await session.rollback()
                existing = await translations_repo.get_translation(
                    session, tenant_id=principal.tenant_id, translation_id=fingerprint
                )
                if existing is None:
                    raise
                view = translation_view(existing, cached=True)
                await self._cache.put(self._key(fingerprint), view.to_cache(), self._ttl_s)
                return view
            view = translation_view(row, cached=False)

        await self._cache.put(self._key(fingerprint), view.to_cache(), self._ttl_s)
        increment_counter("translations_built_total")
        logger.info(
            "translation_built tenant_id=%s connection_id=%s fingerprint=%s allowed=%s tokens=%s latency_ms=%.1f",
            principal.tenant_id,
            connection.id,
            fingerprint,
            allowed,
            generation.tokens_used,
            (time.monotonic() - start) * 1000.0,
        )
        await record_audit_entry(
            principal=principal,
            entry_type="translation",
            translation_id=fingerprint,
            connection_id=connection.id,
            engine_type=engine_type,
            source_text=question,
            generated_query=parsed.query,
            executed=False,
            safety_passed=allowed,
            safety_reason=reason,
            tokens_used=generation.tokens_used,
            metadata={"model_allowed": parsed.allowed, "estimated_cost": view.estimated_cost},
        )
        await self._usage.record_usage(principal.tenant_id, UsageDelta(queries=1, tokens=generation.tokens_used))
        return view
