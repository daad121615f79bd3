from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
from typing import Callable, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from querybridge.core.config import get_settings
from querybridge.core.errors import QueryBridgeError
from querybridge.domain.schema import AggregatedSchema, ConnectionSchema, SchemaTable, TableMatch
from querybridge.engines.gateway import EngineGateway
from querybridge.persistence.db import SessionLocal
from querybridge.services import connections as registry_service
from querybridge.services.cache import SingleFlight, TTLCache


logger = logging.getLogger(__name__)

TABLE_NAME_WEIGHT = 20
TABLE_WORD_WEIGHT = 10
COLUMN_EXACT_WEIGHT = 8
COLUMN_CONTAINS_WEIGHT = 4
COLUMN_CONTAINED_WEIGHT = 2
KEYWORD_TABLE_WEIGHT = 5
KEYWORD_COLUMN_WEIGHT = 3
REVENUE_TABLE_WEIGHT = 15
REVENUE_COLUMN_WEIGHT = 10
RICH_TABLE_WEIGHT = 2
RICH_TABLE_MIN_COLUMNS = 5
PREFERRED_CONNECTION_WEIGHT = 15
RECENT_TABLE_WEIGHT = 10

_FIELD_PATTERNS = [
    re.compile(r"\b(id|name|email|status|price|amount|total|count|date|time|created|updated|deleted)\b"),
    re.compile(r"\b(user|customer|order|product|transaction|payment|invoice|address|restaurant|venue|store)\b"),
    re.compile(r"\b(rating|review|feedback|comment|score|stars|rank)\b"),
    re.compile(r"\b(quantity|qty|items|description|notes|title|category|type)\b"),
    re.compile(r"\b(\w+_id|\w+_name|\w+_at|\w+_by)\b"),
]

# "total of the X", "list X", "X of Y", "X in Y": nouns next to prepositions often name columns.
_NOUN_PATTERNS = [
    re.compile(r"(?:average|total|sum|count|number|list|show|get|find|fetch)\s+(?:of\s+)?(?:the\s+)?(\w+)"),
    re.compile(r"(\w+)\s+(?:of|in|from|for)\s+(?:the\s+)?(\w+)"),
]

SEMANTIC_FIELDS = {
    "revenue": ("price", "amount", "total", "mrr", "arr", "subscription", "plan"),
    "income": ("price", "amount", "total", "revenue", "earnings"),
    "sales": ("order", "transaction", "purchase", "total", "amount"),
    "users": ("customer", "account", "profile", "member"),
    "transactions": ("order", "payment", "purchase", "invoice"),
    "rating": ("rating", "score", "stars", "review", "feedback"),
    "reviews": ("review", "rating", "comment", "feedback", "score"),
    "restaurant": ("restaurant", "venue", "store", "shop", "location"),
}

BUSINESS_KEYWORDS = (
    "user", "customer", "order", "product", "transaction", "payment",
    "invoice", "sale", "purchase", "inventory", "account", "profile",
    "address", "contact", "subscription", "plan", "report", "analytics",
    "log", "audit", "history", "record", "entry", "item", "category",
    "tag", "comment", "review", "rating", "feedback",
)

REVENUE_TERMS = ("revenue", "income", "earnings")


def extract_field_candidates(question: str) -> list[str]:
    """Words in the question that plausibly name a column, in first-seen order."""
    text = question.lower()
    fields: dict[str, None] = {}
    for pattern in _FIELD_PATTERNS:
        for match in pattern.finditer(text):
            fields.setdefault(match.group(1), None)
    for pattern in _NOUN_PATTERNS:
        for match in pattern.finditer(text):
            for group in match.groups():
                if group:
                    fields.setdefault(group, None)
    for term, related in SEMANTIC_FIELDS.items():
        if term in text:
            for field_name in related:
                fields.setdefault(field_name, None)
    return list(fields)


def extract_keywords(question: str) -> list[str]:
    text = question.lower()
    return [keyword for keyword in BUSINESS_KEYWORDS if keyword in text]


@dataclass(frozen=True)
class QuestionTerms:
    text: str
    fields: tuple[str, ...]
    keywords: tuple[str, ...]

    @classmethod
    def parse(cls, question: str) -> "QuestionTerms":
        return cls(
            text=question.lower(),
            fields=tuple(extract_field_candidates(question)),
            keywords=tuple(extract_keywords(question)),
        )


def score_table(
    table: SchemaTable,
    connection_id: str,
    terms: QuestionTerms,
    *,
    preferred_connection_id: str | None = None,
    recent_tables: Iterable[str] = (),
) -> int:
    """Additive relevance score; every signal is independent and deterministic."""
    score = 0
    table_name = table.name.lower()
    columns = [column.name.lower() for column in table.columns]
    column_set = set(columns)

    if table_name and table_name in terms.text:
        score += TABLE_NAME_WEIGHT
    for word in re.split(r"[_\s-]", table_name):
        if word and word in terms.text:
            score += TABLE_WORD_WEIGHT

    for field_name in terms.fields:
        if field_name in column_set:
            score += COLUMN_EXACT_WEIGHT
        elif any(field_name in column for column in columns):
            score += COLUMN_CONTAINS_WEIGHT
        elif any(column and column in field_name for column in columns):
            score += COLUMN_CONTAINED_WEIGHT

    for keyword in terms.keywords:
        if keyword in table_name:
            score += KEYWORD_TABLE_WEIGHT
        if any(keyword in column for column in columns):
            score += KEYWORD_COLUMN_WEIGHT

    if any(term in terms.text for term in REVENUE_TERMS):
        if "subscription" in table_name or "plan" in table_name:
            score += REVENUE_TABLE_WEIGHT
        if any("mrr" in column or "arr" in column or "recurring" in column for column in columns):
            score += REVENUE_COLUMN_WEIGHT

    if len(columns) > RICH_TABLE_MIN_COLUMNS:
        score += RICH_TABLE_WEIGHT

    if preferred_connection_id and preferred_connection_id == connection_id:
        score += PREFERRED_CONNECTION_WEIGHT
    if table.name in set(recent_tables):
        score += RECENT_TABLE_WEIGHT
    return score


def match_reasons(table: SchemaTable, terms: QuestionTerms) -> tuple[str, ...]:
    # Observability only; ranking never reads these.
    table_name = table.name.lower()
    columns = [column.name.lower() for column in table.columns]
    reasons: list[str] = []
    if table_name and table_name in terms.text:
        reasons.append(f'Table name "{table.name}" matches query')
    matching_fields = [field_name for field_name in terms.fields if field_name in columns]
    if matching_fields:
        reasons.append(f"Has matching fields: {', '.join(matching_fields)}")
    matching_keywords = [
        keyword
        for keyword in terms.keywords
        if keyword in table_name or any(keyword in column for column in columns)
    ]
    if matching_keywords:
        reasons.append(f"Contains relevant keywords: {', '.join(matching_keywords)}")
    if not reasons:
        reasons.append("Partial match based on schema similarity")
    return tuple(reasons)


def rank_tables(
    schema: AggregatedSchema,
    question: str,
    *,
    preferred_connection_id: str | None = None,
    recent_tables: Sequence[str] = (),
    connection_id: str | None = None,
) -> list[TableMatch]:
    """Score every (connection, table) pair; stable sort keeps catalog order on ties."""
    terms = QuestionTerms.parse(question)
    matches: list[TableMatch] = []
    for connection in schema.connections:
        if connection_id and connection.connection_id != connection_id:
            continue
        for table in connection.tables:
            score = score_table(
                table,
                connection.connection_id,
                terms,
                preferred_connection_id=preferred_connection_id,
                recent_tables=recent_tables,
            )
            if score <= 0:
                continue
            matches.append(
                TableMatch(
                    connection_id=connection.connection_id,
                    connection_name=connection.connection_name,
                    engine_type=connection.engine_type,
                    table=table,
                    score=score,
                    reasons=match_reasons(table, terms),
                )
            )
    return sorted(matches, key=lambda match: -match.score)


@dataclass(frozen=True)
class ConnectionSuggestion:
    best: TableMatch | None
    alternatives: tuple[TableMatch, ...]


class SchemaIndex:
    """Per-tenant aggregated schema behind a TTL cache, plus table ranking."""

    def __init__(
        self,
        *,
        cache: TTLCache,
        gateway: EngineGateway,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl_s: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cache = cache
        self._gateway = gateway
        self._session_factory = session_factory or SessionLocal
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().schema_cache_ttl_s
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._single_flight = SingleFlight()

    @staticmethod
    def _key(tenant_id: str) -> str:
        return f"schema:{tenant_id}"

    async def get_aggregated_schema(self, tenant_id: str, *, force_refresh: bool = False) -> AggregatedSchema:
        key = self._key(tenant_id)
        if not force_refresh:
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("schema_cache_hit tenant_id=%s", tenant_id)
                return AggregatedSchema.from_dict(cached)
        return await self._single_flight.do(key, lambda: self._build(tenant_id))

    async def _build(self, tenant_id: str) -> AggregatedSchema:
        async with self._session_factory() as session:
            views = await registry_service.list_connections(session, tenant_id=tenant_id, status="active")
        connections: list[ConnectionSchema] = []
        for view in views:
            tables = view.schema_tables
            if tables is None:
                logger.info("schema_cache_missing tenant_id=%s connection_id=%s", tenant_id, view.id)
                try:
                    introspected = await self._gateway.introspect_schema(tenant_id, view.id)
                    async with self._session_factory() as session:
                        await registry_service.update_schema_cache(
                            session,
                            tenant_id=tenant_id,
                            connection_id=view.id,
                            tables=introspected,
                            timestamp=self._clock(),
                        )
                except QueryBridgeError as exc:
                    # One unreachable database must not hide the others.
                    logger.warning(
                        "schema_aggregation_connection_failed tenant_id=%s connection_id=%s code=%s",
                        tenant_id,
                        view.id,
                        exc.code,
                    )
                    continue
                tables = tuple(introspected)
            connections.append(
                ConnectionSchema(
                    connection_id=view.id,
                    connection_name=view.name,
                    engine_type=view.engine_type,
                    tables=tuple(tables),
                )
            )
        schema = AggregatedSchema(tenant_id=tenant_id, connections=tuple(connections), built_at=self._clock())
        await self._cache.put(self._key(tenant_id), schema.to_dict(), self._ttl_s)
        logger.info(
            "schema_aggregated tenant_id=%s connections=%s tables=%s",
            tenant_id,
            len(connections),
            sum(len(connection.tables) for connection in connections),
        )
        return schema

    async def refresh(self, tenant_id: str) -> AggregatedSchema:
        return await self.get_aggregated_schema(tenant_id, force_refresh=True)

    async def invalidate(self, tenant_id: str) -> None:
        await self._cache.invalidate(self._key(tenant_id))

    async def find_matching_tables(
        self,
        tenant_id: str,
        question: str,
        *,
        preferred_connection_id: str | None = None,
        recent_tables: Sequence[str] = (),
        connection_id: str | None = None,
    ) -> list[TableMatch]:
        schema = await self.get_aggregated_schema(tenant_id)
        matches = rank_tables(
            schema,
            question,
            preferred_connection_id=preferred_connection_id,
            recent_tables=recent_tables,
            connection_id=connection_id,
        )
        logger.info(
            "table_matching_complete tenant_id=%s matches=%s top_score=%s",
            tenant_id,
            len(matches),
            matches[0].score if matches else 0,
        )
        return matches

    async def find_best_connection(
        self,
        tenant_id: str,
        question: str,
        *,
        preferred_connection_id: str | None = None,
        recent_tables: Sequence[str] = (),
    ) -> ConnectionSuggestion:
        matches = await self.find_matching_tables(
            tenant_id,
            question,
            preferred_connection_id=preferred_connection_id,
            recent_tables=recent_tables,
        )
        if not matches:
            return ConnectionSuggestion(best=None, alternatives=())
        best = matches[0]
        alternatives: list[TableMatch] = []
        seen = {best.connection_id}
        for match in matches[1:]:
            if match.connection_id in seen:
                continue
            seen.add(match.connection_id)
            alternatives.append(match)
            if len(alternatives) == 3:
                break
        return ConnectionSuggestion(best=best, alternatives=tuple(alternatives))
