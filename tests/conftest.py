from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from seat_inventory.models import TRIP_STATUS_SCHEDULED, Base, SeatPlan, Trip
from seat_inventory.services.auth import TokenVerifier
from seat_inventory.services.availability import AvailabilityCounter
from seat_inventory.services.availability_cache import MemoryCacheBackend
from seat_inventory.services.publisher import InMemoryPublisher
from seat_inventory.services.seat_lock import SeatLockStore
from seat_inventory.services.seat_map import build_seat_map_service

# 2x2 coach: A1 A2 / B1 B2
COACH_LAYOUT = {
    "rows": [
        {"letter": "A", "seats": {"1": "window", "2": "aisle"}},
        {"letter": "B", "seats": {"1": "window", "2": "aisle"}},
    ]
}


class FrozenClock:
    """Injectable clock that only moves when a test says so."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'seat_inventory.db'}")

    # take the database write lock when a transaction starts, so concurrent
    # transactions serialize the way row locks make them on postgres
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def make_trip(session_factory, clock):
    async def _make(
        capacity=4,
        booked_count=0,
        status=TRIP_STATUS_SCHEDULED,
        departs_in=timedelta(days=1),
        layout=COACH_LAYOUT,
        with_plan=True,
    ):
        async with session_factory() as db:
            async with db.begin():
                plan_id = None
                if with_plan:
                    plan = SeatPlan(name="Coach 2x2", layout=layout)
                    db.add(plan)
                    await db.flush()
                    plan_id = plan.id
                trip = Trip(
                    seat_plan_id=plan_id,
                    capacity=capacity,
                    booked_count=booked_count,
                    status=status,
                    departure_time=clock() + departs_in,
                )
                db.add(trip)
                await db.flush()
                return trip.id

    return _make


@pytest.fixture
def store(clock):
    return SeatLockStore(clock=clock)


@pytest.fixture
def counter(clock):
    return AvailabilityCounter(clock=clock)


@pytest.fixture
def cache_backend():
    return MemoryCacheBackend()


@pytest.fixture
def verifier(clock):
    return TokenVerifier(secret_key="test-secret", algorithm="HS256", clock=clock)


@pytest.fixture
def publisher(verifier):
    return InMemoryPublisher(verifier, buffer_size=10)


@pytest.fixture
def service(session_factory, cache_backend, publisher, clock):
    return build_seat_map_service(
        session_factory,
        cache_backend,
        publisher,
        clock=clock,
        hold_ttl_seconds=300,
        availability_ttl_seconds=30,
        seat_map_ttl_seconds=30,
        max_check_codes=20,
    )


@pytest.fixture
def subscribe(publisher, verifier):
    async def _subscribe(trip_id, user_id=99):
        token = verifier.create_token(trip_id, user_id)
        return await publisher.subscribe(f"seat-updates-{trip_id}", token)

    return _subscribe
