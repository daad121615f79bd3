from __future__ import annotations

import asyncio

import pytest

from querybridge.services.cache import InMemoryTTLCache, SingleFlight


class FakeTime:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire_after_their_ttl() -> None:
    clock = FakeTime()
    cache = InMemoryTTLCache(time_source=clock)
    await cache.put("schema:t-a", {"tables": 3}, 60)

    clock.now += 59
    assert await cache.get("schema:t-a") == {"tables": 3}
    clock.now += 1
    assert await cache.get("schema:t-a") is None


@pytest.mark.asyncio
async def test_invalidate_and_overwrite() -> None:
    cache = InMemoryTTLCache()
    await cache.put("k", 1, 60)
    await cache.put("k", 2, 60)
    assert await cache.get("k") == 2
    await cache.invalidate("k")
    await cache.invalidate("missing")
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_full_cache_evicts_expired_then_soonest_to_expire() -> None:
    clock = FakeTime()
    cache = InMemoryTTLCache(time_source=clock, max_entries=2)
    await cache.put("short", "a", 10)
    await cache.put("long", "b", 100)

    await cache.put("third", "c", 50)
    assert await cache.get("short") is None
    assert await cache.get("long") == "b"
    assert await cache.get("third") == "c"


@pytest.mark.asyncio
async def test_single_flight_shares_one_build() -> None:
    flight = SingleFlight()
    builds = 0

    async def build() -> str:
        nonlocal builds
        builds += 1
        await asyncio.sleep(0.02)
        return "value"

    results = await asyncio.gather(*(flight.do("key", build) for _ in range(5)))
    assert results == ["value"] * 5
    assert builds == 1
    assert flight.inflight("key") is False

    assert await flight.do("key", build) == "value"
    assert builds == 2


@pytest.mark.asyncio
async def test_single_flight_propagates_errors_to_every_waiter() -> None:
    flight = SingleFlight()

    async def explode() -> None:
        await asyncio.sleep(0.01)
        raise RuntimeError("build failed")

    results = await asyncio.gather(*(flight.do("key", explode) for _ in range(3)), return_exceptions=True)
    assert all(isinstance(result, RuntimeError) for result in results)
    assert flight.inflight("key") is False
