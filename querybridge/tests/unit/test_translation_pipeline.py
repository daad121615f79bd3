from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from querybridge.core.errors import NotFoundError, TranslationFormatError, ValidationError
from querybridge.domain.models import Translation
from querybridge.domain.schema import SchemaColumn, SchemaTable
from querybridge.persistence.db import SessionLocal
from querybridge.providers.llm.base import Generation
from querybridge.providers.llm.fake import FakeLLMProvider
from querybridge.services.usage import UsageDelta
from querybridge.tests.utils.fakes import (
    CUSTOMERS_TABLE,
    ORDERS_TABLE,
    build_harness,
    member,
    model_response,
    seed_connection,
)


QUESTION = "Show customers from New York with lifetime value over 5000"
NY_SQL = "SELECT * FROM customers WHERE city = 'New York' AND lifetime_value > 5000"

SUBSCRIPTIONS_TABLE = SchemaTable(
    name="subscriptions",
    schema_or_db="billing",
    columns=(
        SchemaColumn(name="id", type="integer", primary_key=True),
        SchemaColumn(name="plan", type="text"),
        SchemaColumn(name="mrr", type="numeric"),
    ),
)


class SlowProvider:
    name = "slow"

    def __init__(self, text: str) -> None:
        self.text = text
        self.calls = 0

    async def generate(self, system_prompt: str, user_prompt: str) -> Generation:
        self.calls += 1
        await asyncio.sleep(0.05)
        return Generation(text=self.text, tokens_used=7)


async def _stored_translations() -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(Translation)))


@pytest.mark.asyncio
async def test_repeated_question_reuses_the_stored_translation() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE, ORDERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))

    first = await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    second = await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    spaced = await harness.pipeline.translate(
        member(), "  Show   customers from New York\nwith lifetime value over 5000 ", connection_id=connection.id
    )

    assert first.cached is False
    assert second.cached is True and spaced.cached is True
    assert first.translation_id == second.translation_id == spaced.translation_id
    assert second.canonical_query == NY_SQL
    assert len(harness.provider.calls) == 1
    assert harness.usage.calls == [("t-acme", UsageDelta(queries=1, tokens=42))]
    assert await _stored_translations() == 1


@pytest.mark.asyncio
async def test_stored_translation_survives_a_cold_cache() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))
    first = await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)

    fresh = build_harness(provider=FakeLLMProvider(model_response("SELECT 1")))
    again = await fresh.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    assert again.translation_id == first.translation_id
    assert again.canonical_query == NY_SQL
    assert again.cached is True
    assert fresh.provider.calls == []


@pytest.mark.asyncio
async def test_context_changes_the_fingerprint() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))
    plain = await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    scoped = await harness.pipeline.translate(
        member(), QUESTION, connection_id=connection.id, context={"recentTables": ["customers"]}
    )
    assert plain.translation_id != scoped.translation_id
    assert len(harness.provider.calls) == 2


@pytest.mark.asyncio
async def test_concurrent_identical_requests_call_the_model_once() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    provider = SlowProvider(model_response(NY_SQL))
    harness = build_harness(provider=provider)

    views = await asyncio.gather(
        *(harness.pipeline.translate(member(), QUESTION, connection_id=connection.id) for _ in range(3))
    )
    assert provider.calls == 1
    assert len({view.translation_id for view in views}) == 1
    assert [view.cached for view in views].count(False) == 1
    assert await _stored_translations() == 1


@pytest.mark.asyncio
async def test_validator_overrides_the_model_safety_claim() -> None:
    connection = await seed_connection("t-acme", engine_type="mongodb", tables=[CUSTOMERS_TABLE])
    unsafe = {"collection": "customers", "aggregate": [{"$match": {}}, {"$out": "stolen"}]}
    harness = build_harness(provider=FakeLLMProvider(model_response(unsafe, engine_type="mongodb")))

    view = await harness.pipeline.translate(member(), "Copy customers elsewhere", connection_id=connection.id)
    assert view.safety_allowed is False
    assert "$out" in view.safety_reason
    assert view.estimated_cost == 0.0


@pytest.mark.asyncio
async def test_write_requests_are_stored_as_refusals() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    refusal = model_response("", allowed=False, reason="Detected write/delete operation. Disallowed.")
    harness = build_harness(provider=FakeLLMProvider(refusal))

    view = await harness.pipeline.translate(member(), "Delete all old records", connection_id=connection.id)
    assert view.safety_allowed is False
    assert view.canonical_query == ""
    stored = await harness.pipeline.get_translation("t-acme", view.translation_id)
    assert stored.safety_reason == "Detected write/delete operation. Disallowed."


@pytest.mark.asyncio
async def test_malformed_model_output_stores_nothing() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider("Sure! Here is your query: SELECT 1"))

    for _ in range(2):
        with pytest.raises(TranslationFormatError):
            await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    assert len(harness.provider.calls) == 2
    assert await _stored_translations() == 0
    assert harness.usage.calls == []


@pytest.mark.asyncio
async def test_translations_are_tenant_scoped() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))
    view = await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)

    with pytest.raises(NotFoundError):
        await harness.pipeline.get_translation("t-other", view.translation_id)
    with pytest.raises(NotFoundError):
        await harness.pipeline.translate(member("t-other"), QUESTION, connection_id=connection.id)


@pytest.mark.asyncio
async def test_connection_is_picked_from_the_schema_when_omitted() -> None:
    shop = await seed_connection("t-acme", name="shop", tables=[CUSTOMERS_TABLE, ORDERS_TABLE])
    await seed_connection("t-acme", name="billing", tables=[SUBSCRIPTIONS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))

    view = await harness.pipeline.translate(member(), QUESTION)
    assert view.connection_id == shop.id

    with pytest.raises(NotFoundError):
        await harness.pipeline.translate(member(), "zzz qqq")


@pytest.mark.asyncio
async def test_unusable_connections_are_rejected() -> None:
    inactive = await seed_connection("t-acme", name="old", status="inactive", tables=[CUSTOMERS_TABLE])
    broken = await seed_connection("t-acme", name="broken", status="error", tables=[CUSTOMERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))

    for connection in (inactive, broken):
        with pytest.raises(ValidationError):
            await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)
    assert harness.provider.calls == []


@pytest.mark.asyncio
async def test_prompt_carries_the_shortlist_but_no_credentials() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE, ORDERS_TABLE])
    harness = build_harness(provider=FakeLLMProvider(model_response(NY_SQL)))
    await harness.pipeline.translate(member(), QUESTION, connection_id=connection.id)

    system_prompt, user_prompt = harness.provider.calls[0]
    assert '"table": "customers"' in system_prompt
    assert "PostgreSQL" in system_prompt
    assert "USER ROLE: member" in system_prompt
    assert "s3cret-pass" not in system_prompt
    assert "db.internal" not in system_prompt
    assert "New York" in user_prompt


@pytest.mark.asyncio
async def test_request_shape_is_validated() -> None:
    connection = await seed_connection("t-acme", tables=[CUSTOMERS_TABLE])
    harness = build_harness()
    with pytest.raises(ValidationError):
        await harness.pipeline.translate(member(), "   ", connection_id=connection.id)
    with pytest.raises(ValidationError):
        await harness.pipeline.translate(
            member(), QUESTION, connection_id=connection.id, context={"unexpected": True}
        )
