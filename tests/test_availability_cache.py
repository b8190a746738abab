import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from seat_inventory.schemas.availability import TripCounts
from seat_inventory.services.availability import derive_snapshot
from seat_inventory.services.availability_cache import (
    AvailabilityCache,
    CacheBackend,
    MemoryCacheBackend,
    freshness_band,
)


class UnreachableBackend(CacheBackend):
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value, ttl_seconds):
        raise RedisConnectionError("connection refused")

    async def delete(self, key):
        raise RedisConnectionError("connection refused")


def snapshot_at(now, trip_id=1, booked_count=1):
    return derive_snapshot(TripCounts(trip_id=trip_id, capacity=4, booked_count=booked_count, status="scheduled"), now)


@pytest.fixture
def cache(clock):
    return AvailabilityCache(MemoryCacheBackend(), ttl_seconds=30, clock=clock)


def test_freshness_bands():
    assert freshness_band(0) == "excellent"
    assert freshness_band(9.9) == "excellent"
    assert freshness_band(10) == "good"
    assert freshness_band(29) == "good"
    assert freshness_band(30) == "stale"


@pytest.mark.asyncio
async def test_entry_is_served_until_ttl(cache, clock):
    await cache.put(1, snapshot_at(clock()))

    hit = await cache.get(1)
    assert hit.booked_count == 1
    assert hit.freshness == "excellent"

    clock.advance(15)
    assert (await cache.get(1)).freshness == "good"

    clock.advance(15)
    assert await cache.get(1) is None


@pytest.mark.asyncio
async def test_entries_are_per_trip(cache, clock):
    await cache.put(1, snapshot_at(clock(), trip_id=1))

    assert await cache.get(2) is None
    assert cache.key(2) == "availability:2"


@pytest.mark.asyncio
async def test_invalidate_forces_a_recompute(cache, clock):
    calls = []

    async def compute():
        calls.append(clock())
        return snapshot_at(clock(), booked_count=len(calls))

    first = await cache.get_or_compute(1, compute)
    again = await cache.get_or_compute(1, compute)
    await cache.invalidate(1)
    fresh = await cache.get_or_compute(1, compute)

    assert len(calls) == 2
    assert first.booked_count == again.booked_count == 1
    assert fresh.booked_count == 2
    assert fresh.freshness == "excellent"


@pytest.mark.asyncio
async def test_unreadable_entry_is_a_miss(clock):
    backend = MemoryCacheBackend()
    cache = AvailabilityCache(backend, ttl_seconds=30, clock=clock)
    await backend.set(cache.key(1), "{not json", 30)

    assert await cache.get(1) is None


@pytest.mark.asyncio
async def test_backend_outage_degrades_to_direct_reads(clock):
    cache = AvailabilityCache(UnreachableBackend(), ttl_seconds=30, clock=clock)

    async def compute():
        return snapshot_at(clock(), booked_count=3)

    assert await cache.get(1) is None
    await cache.put(1, snapshot_at(clock()))
    await cache.invalidate(1)
    assert (await cache.get_or_compute(1, compute)).booked_count == 3


@pytest.mark.asyncio
async def test_memory_backend_expires_keys():
    now = [100.0]
    backend = MemoryCacheBackend(clock=lambda: now[0])
    await backend.set("k", "v", 30)

    assert await backend.get("k") == "v"
    now[0] += 30
    assert await backend.get("k") is None
