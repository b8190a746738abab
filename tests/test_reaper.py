import asyncio

import pytest

from seat_inventory.errors import TripNotFound
from seat_inventory.schemas.events import SeatUpdateAction
from seat_inventory.schemas.seat import SeatMap, SeatStatus
from seat_inventory.services.availability_cache import AvailabilityCache
from seat_inventory.services.notifier import SeatUpdateNotifier
from seat_inventory.services.reaper import SeatLockExpiryReaper


@pytest.fixture
def notifier(session_factory, counter, cache_backend, publisher, clock):
    return SeatUpdateNotifier(
        session_factory,
        counter,
        AvailabilityCache(cache_backend, ttl_seconds=30, clock=clock),
        AvailabilityCache(cache_backend, ttl_seconds=30, key_prefix="seat_map", model=SeatMap, clock=clock),
        publisher,
        clock=clock,
    )


@pytest.fixture
def reaper(session_factory, store, notifier, clock):
    return SeatLockExpiryReaper(session_factory, store, notifier, batch_size=100, clock=clock)


async def hold(session_factory, store, trip_id, seat_code, user_id, ttl_seconds):
    async with session_factory() as db:
        async with db.begin():
            await store.hold(db, trip_id, seat_code, user_id, ttl_seconds)


async def seat(session_factory, store, trip_id, seat_code):
    async with session_factory() as db:
        return await store.get(db, trip_id, seat_code)


@pytest.mark.asyncio
async def test_sweep_frees_expired_hold_and_announces_it(reaper, session_factory, store, make_trip, subscribe, clock):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "A1", user_id=1, ttl_seconds=1)
    subscription = await subscribe(trip_id)
    clock.advance(2)

    assert await reaper.sweep() == 1

    state = await seat(session_factory, store, trip_id, "A1")
    assert state.status == SeatStatus.FREE
    assert state.holder_user_id is None
    event = subscription.receive_nowait()
    assert event.action == SeatUpdateAction.EXPIRED
    assert event.seat_code == "A1"
    assert event.actor_user_id == 1
    assert event.snapshot.free_count == 4


@pytest.mark.asyncio
async def test_sweep_is_idempotent(reaper, session_factory, store, make_trip, clock):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "A1", user_id=1, ttl_seconds=1)
    clock.advance(2)

    assert await reaper.sweep() == 1
    assert await reaper.sweep() == 0


@pytest.mark.asyncio
async def test_sweep_leaves_active_holds_alone(reaper, session_factory, store, make_trip, clock):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "A1", user_id=1, ttl_seconds=1)
    await hold(session_factory, store, trip_id, "A2", user_id=2, ttl_seconds=300)
    clock.advance(1)

    assert await reaper.sweep() == 0

    clock.advance(1)
    assert await reaper.sweep() == 1
    assert (await seat(session_factory, store, trip_id, "A2")).status == SeatStatus.HELD


@pytest.mark.asyncio
async def test_failing_seat_does_not_stop_the_sweep(reaper, session_factory, store, make_trip, clock, monkeypatch):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "A1", user_id=1, ttl_seconds=1)
    await hold(session_factory, store, trip_id, "A2", user_id=2, ttl_seconds=1)
    clock.advance(2)

    release_expired = store.release_expired

    async def flaky_release(db, trip_id, seat_code):
        if seat_code == "A1":
            raise RuntimeError("row went away")
        return await release_expired(db, trip_id, seat_code)

    monkeypatch.setattr(store, "release_expired", flaky_release)

    assert await reaper.sweep() == 1
    assert (await seat(session_factory, store, trip_id, "A1")).status == SeatStatus.HELD
    assert (await seat(session_factory, store, trip_id, "A2")).status == SeatStatus.FREE


@pytest.mark.asyncio
async def test_failed_announcement_does_not_stop_the_sweep(
    reaper, notifier, session_factory, store, make_trip, subscribe, clock, monkeypatch
):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "A1", user_id=1, ttl_seconds=1)
    await hold(session_factory, store, trip_id, "A2", user_id=2, ttl_seconds=1)
    subscription = await subscribe(trip_id)
    clock.advance(2)

    seat_changed = notifier.seat_changed

    async def flaky_seat_changed(state, action, actor_user_id=None):
        if state.seat_code == "A1":
            raise TripNotFound(f"trip {state.trip_id} does not exist")
        return await seat_changed(state, action, actor_user_id=actor_user_id)

    monkeypatch.setattr(notifier, "seat_changed", flaky_seat_changed)

    assert await reaper.sweep() == 2
    assert (await seat(session_factory, store, trip_id, "A1")).status == SeatStatus.FREE
    assert (await seat(session_factory, store, trip_id, "A2")).status == SeatStatus.FREE
    event = subscription.receive_nowait()
    assert (event.action, event.seat_code) == (SeatUpdateAction.EXPIRED, "A2")


@pytest.mark.asyncio
async def test_run_forever_sweeps_until_stopped(reaper, session_factory, store, make_trip, clock):
    trip_id = await make_trip()
    await hold(session_factory, store, trip_id, "B1", user_id=1, ttl_seconds=1)
    clock.advance(2)

    stop_event = asyncio.Event()
    task = asyncio.create_task(reaper.run_forever(0.01, stop_event))
    await asyncio.sleep(0.05)
    stop_event.set()
    await asyncio.wait_for(task, timeout=5)

    assert (await seat(session_factory, store, trip_id, "B1")).status == SeatStatus.FREE
