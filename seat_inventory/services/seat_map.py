"""Seat map orchestration: reads go through the caches, writes go through the
store/counter inside one transaction, then caches are evicted and the change
is broadcast.
"""
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seat_inventory.config import settings
from seat_inventory.errors import (
    InvalidSeatRequest,
    SeatInventoryError,
    SeatNotFound,
    SeatPlanNotConfigured,
    ServiceUnavailable,
    TripNotBookable,
    TripNotFound,
)
from seat_inventory.models.models import TRIP_STATUS_SCHEDULED, SeatPlan, Trip
from seat_inventory.schemas.availability import AuditEntry, AvailabilityCheck, AvailabilitySnapshot, TripCounts
from seat_inventory.schemas.events import SeatUpdateAction
from seat_inventory.schemas.seat import (
    PlanSeat,
    SeatCheck,
    SeatDisplayState,
    SeatHold,
    SeatLockState,
    SeatMap,
    SeatStatus,
    SeatView,
    parse_seat_plan,
)
from seat_inventory.services.availability import AvailabilityCounter
from seat_inventory.services.availability_cache import AvailabilityCache, CacheBackend
from seat_inventory.services.notifier import SeatUpdateNotifier
from seat_inventory.services.publisher import Publisher
from seat_inventory.services.reaper import SeatLockExpiryReaper
from seat_inventory.services.seat_lock import SeatLockStore
from seat_inventory.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)

# color, message
SEAT_DISPLAY: Dict[SeatDisplayState, Tuple[str, str]] = {
    SeatDisplayState.BOOKED: ("#dc3545", "Booked"),
    SeatDisplayState.HELD: ("#ffc107", "Temporarily selected"),
    SeatDisplayState.FREE: ("#28a745", "Available"),
}


class SeatMapService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: SeatLockStore,
        counter: AvailabilityCounter,
        notifier: SeatUpdateNotifier,
        reaper: SeatLockExpiryReaper,
        hold_ttl_seconds: int = 300,
        max_check_codes: int = 20,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._store = store
        self._counter = counter
        self._notifier = notifier
        self.reaper = reaper
        self.hold_ttl_seconds = hold_ttl_seconds
        self.max_check_codes = max_check_codes
        self._clock = clock

    # reads

    async def get_seat_map(self, trip_id: int) -> SeatMap:
        async with self._translate_errors("get_seat_map"):
            return await self._notifier.seat_map_cache.get_or_compute(trip_id, lambda: self._build_seat_map(trip_id))

    async def get_availability(self, trip_id: int) -> AvailabilitySnapshot:
        async with self._translate_errors("get_availability"):
            return await self._notifier.snapshot(trip_id)

    async def get_availability_many(self, trip_ids: Iterable[int]) -> Dict[int, AvailabilitySnapshot]:
        """Snapshots for several trips; unknown trips are left out."""
        async with self._translate_errors("get_availability_many"):
            cache = self._notifier.availability_cache
            results: Dict[int, AvailabilitySnapshot] = {}
            missing: List[int] = []
            for trip_id in dict.fromkeys(trip_ids):
                cached = await cache.get(trip_id)
                if cached is not None:
                    results[trip_id] = cached
                else:
                    missing.append(trip_id)
            if missing:
                async with self._session_factory() as db:
                    computed = await self._counter.snapshots(db, missing)
                for trip_id, snapshot in computed.items():
                    snapshot = snapshot.model_copy(update={"freshness": cache.freshness(snapshot.timestamp)})
                    await cache.put(trip_id, snapshot)
                    results[trip_id] = snapshot
            return results

    async def check_availability(self, trip_id: int, seats_requested: int) -> AvailabilityCheck:
        """Can ``seats_requested`` more seats be booked right now?"""
        if seats_requested < 1:
            raise InvalidSeatRequest(f"seats_requested={seats_requested}", public_message="Request at least one seat")
        async with self._translate_errors("check_availability"):
            async with self._session_factory() as db:
                async with db.begin():
                    counts = await self._counter.read(db, trip_id, for_update=True)
                    self._ensure_bookable(counts)
            free_count = counts.capacity - counts.booked_count
            available = free_count >= seats_requested
            return AvailabilityCheck(
                trip_id=trip_id,
                seats_requested=seats_requested,
                free_count=free_count,
                available=available,
                message=(
                    f"{seats_requested} seat(s) available"
                    if available
                    else f"Only {free_count} seat(s) left"
                ),
                timestamp=self._clock(),
            )

    async def check_seats(self, trip_id: int, seat_codes: List[str]) -> Dict[str, SeatCheck]:
        codes = list(dict.fromkeys(seat_codes))
        if not codes:
            raise InvalidSeatRequest("no seat codes given", public_message="Give at least one seat")
        if len(codes) > self.max_check_codes:
            raise InvalidSeatRequest(
                f"{len(codes)} seat codes given",
                public_message=f"At most {self.max_check_codes} seats can be checked at once",
            )
        async with self._translate_errors("check_seats"):
            async with self._session_factory() as db:
                states = await self._store.get_many(db, trip_id, codes)
            now = self._clock()
            return {
                code: SeatCheck(
                    seat_code=code,
                    available=state.is_available(now),
                    status=state.effective_status(now).name,
                    holder_user_id=state.holder_user_id if state.is_hold_active(now) else None,
                    hold_expires_at=state.hold_expires_at if state.is_hold_active(now) else None,
                )
                for code, state in states.items()
            }

    async def booked_count_history(self, trip_id: int, limit: int = 10) -> List[AuditEntry]:
        async with self._translate_errors("booked_count_history"):
            async with self._session_factory() as db:
                return await self._counter.history(db, trip_id, limit=limit)

    # writes

    async def select_seat(self, trip_id: int, seat_code: str, user_id: int) -> SeatHold:
        async with self._translate_errors("select_seat"):
            async with self._session_factory() as db:
                async with db.begin():
                    trip = await self._load_trip(db, trip_id)
                    self._ensure_bookable(self._counter.trip_counts(trip))
                    plan = await self._load_plan(db, trip)
                    if seat_code not in {seat.code for seat in plan}:
                        raise SeatNotFound(f"seat {seat_code} is not in the plan of trip {trip_id}")
                    state = await self._store.hold(db, trip_id, seat_code, user_id, self.hold_ttl_seconds)
        await self._notifier.seat_changed(state, SeatUpdateAction.SELECTED, actor_user_id=user_id)
        logger.info("seat held", extra={"trip_id": trip_id, "seat_code": seat_code, "user_id": user_id})
        return SeatHold(trip_id=trip_id, seat_code=seat_code, user_id=user_id, hold_expires_at=state.hold_expires_at)

    async def release_seat(self, trip_id: int, seat_code: str, user_id: int) -> SeatLockState:
        async with self._translate_errors("release_seat"):
            async with self._session_factory() as db:
                async with db.begin():
                    state = await self._store.release(db, trip_id, seat_code, user_id)
        if state is None:
            return SeatLockState.free(trip_id, seat_code)
        await self._notifier.seat_changed(state, SeatUpdateAction.RELEASED, actor_user_id=user_id)
        return state

    async def confirm_seats(
        self,
        trip_id: int,
        seat_codes: List[str],
        user_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> AvailabilitySnapshot:
        """Book seats and count them against capacity in one transaction."""
        codes = self._distinct_codes(seat_codes)
        async with self._translate_errors("confirm_seats"):
            async with self._session_factory() as db:
                async with db.begin():
                    trip = await self._load_trip(db, trip_id)
                    plan_codes = {seat.code for seat in await self._load_plan(db, trip)}
                    unknown = [code for code in codes if code not in plan_codes]
                    if unknown:
                        raise SeatNotFound(f"seats {', '.join(unknown)} are not in the plan of trip {trip_id}")
                    confirmed = [await self._store.confirm(db, trip_id, code, user_id=user_id) for code in codes]
                    await self._counter.adjust_booked(
                        db, trip_id, len(confirmed), actor_id=actor_id if actor_id is not None else user_id
                    )
        for state in confirmed:
            await self._notifier.seat_changed(state, SeatUpdateAction.CONFIRMED, actor_user_id=user_id)
        return await self.get_availability(trip_id)

    async def cancel_seats(
        self,
        trip_id: int,
        seat_codes: List[str],
        actor_id: Optional[int] = None,
    ) -> AvailabilitySnapshot:
        """Revert booked seats to free and give them back to the trip's capacity."""
        codes = self._distinct_codes(seat_codes)
        async with self._translate_errors("cancel_seats"):
            async with self._session_factory() as db:
                async with db.begin():
                    reverted = []
                    for code in codes:
                        state = await self._store.revert(db, trip_id, code)
                        if state is not None:
                            reverted.append(state)
                    if reverted:
                        await self._counter.adjust_booked(db, trip_id, -len(reverted), actor_id=actor_id)
        for state in reverted:
            await self._notifier.seat_changed(state, SeatUpdateAction.RELEASED, actor_user_id=actor_id)
        return await self.get_availability(trip_id)

    async def reap_expired(self) -> int:
        return await self.reaper.sweep()

    # helpers

    async def _build_seat_map(self, trip_id: int) -> SeatMap:
        async with self._session_factory() as db:
            trip = await self._load_trip(db, trip_id)
            plan_row = await self._load_plan_row(db, trip)
            plan = self._parse_plan(plan_row)
            booked = await self._store.list_by_status(db, trip_id, SeatStatus.BOOKED)
            held = await self._store.list_by_status(db, trip_id, SeatStatus.HELD)

        now = self._clock()
        booked_codes = {lock.seat_code for lock in booked}
        active_holds = {lock.seat_code: lock for lock in held if lock.is_hold_active(now)}
        seats = [self._seat_view(seat, booked_codes, active_holds) for seat in plan]
        return SeatMap(
            trip_id=trip_id,
            seat_plan_id=plan_row.id,
            plan_name=plan_row.name,
            seats=seats,
            total_seats=len(seats),
            free_seats=sum(1 for seat in seats if seat.state == SeatDisplayState.FREE),
            booked_seats=sum(1 for seat in seats if seat.state == SeatDisplayState.BOOKED),
            held_seats=sum(1 for seat in seats if seat.state == SeatDisplayState.HELD),
            timestamp=now,
        )

    @staticmethod
    def _seat_view(seat: PlanSeat, booked_codes, active_holds: Dict[str, SeatLockState]) -> SeatView:
        hold = None
        if seat.code in booked_codes:
            state = SeatDisplayState.BOOKED
        elif seat.code in active_holds:
            state = SeatDisplayState.HELD
            hold = active_holds[seat.code]
        else:
            state = SeatDisplayState.FREE
        color, message = SEAT_DISPLAY[state]
        return SeatView(
            code=seat.code,
            row=seat.row,
            number=seat.number,
            category=seat.category,
            state=state,
            color=color,
            selectable=state == SeatDisplayState.FREE,
            message=message,
            holder_user_id=hold.holder_user_id if hold else None,
            hold_expires_at=hold.hold_expires_at if hold else None,
        )

    async def _load_trip(self, db: AsyncSession, trip_id: int) -> Trip:
        res = await db.execute(sa_select(Trip).where(Trip.id == trip_id))
        trip = res.scalars().first()
        if trip is None:
            raise TripNotFound(f"trip {trip_id} does not exist")
        return trip

    async def _load_plan_row(self, db: AsyncSession, trip: Trip) -> SeatPlan:
        plan = None
        if trip.seat_plan_id is not None:
            res = await db.execute(sa_select(SeatPlan).where(SeatPlan.id == trip.seat_plan_id))
            plan = res.scalars().first()
        if plan is None:
            raise SeatPlanNotConfigured(f"trip {trip.id} has no seat plan")
        return plan

    async def _load_plan(self, db: AsyncSession, trip: Trip) -> List[PlanSeat]:
        return self._parse_plan(await self._load_plan_row(db, trip))

    @staticmethod
    def _parse_plan(plan_row: SeatPlan) -> List[PlanSeat]:
        try:
            return parse_seat_plan(plan_row.layout)
        except (KeyError, ValueError) as exc:
            raise SeatPlanNotConfigured(f"seat plan {plan_row.id} is invalid: {exc}") from exc

    def _ensure_bookable(self, counts: TripCounts) -> None:
        if counts.status != TRIP_STATUS_SCHEDULED:
            raise TripNotBookable(f"trip {counts.trip_id} is {counts.status}")
        if counts.departure_time is not None and counts.departure_time < self._clock():
            raise TripNotBookable(
                f"trip {counts.trip_id} departed at {counts.departure_time}",
                public_message="This trip has already departed",
            )

    @staticmethod
    def _distinct_codes(seat_codes: List[str]) -> List[str]:
        codes = list(dict.fromkeys(seat_codes))
        if not codes:
            raise InvalidSeatRequest("no seat codes given", public_message="Give at least one seat")
        return codes

    @asynccontextmanager
    async def _translate_errors(self, operation: str):
        try:
            yield
        except SeatInventoryError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("database error during %s", operation)
            raise ServiceUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc


def build_seat_map_service(
    session_factory: async_sessionmaker,
    cache_backend: CacheBackend,
    publisher: Publisher,
    clock: Clock = utcnow,
    hold_ttl_seconds: Optional[int] = None,
    availability_ttl_seconds: Optional[int] = None,
    seat_map_ttl_seconds: Optional[int] = None,
    max_check_codes: Optional[int] = None,
    reaper_batch_size: Optional[int] = None,
) -> SeatMapService:
    """Wire a SeatMapService; unset knobs come from settings."""
    store = SeatLockStore(clock=clock)
    counter = AvailabilityCounter(clock=clock)
    availability_cache = AvailabilityCache(
        cache_backend,
        ttl_seconds=availability_ttl_seconds or settings.AVAILABILITY_CACHE_TTL_SECONDS,
        key_prefix="availability",
        model=AvailabilitySnapshot,
        clock=clock,
    )
    seat_map_cache = AvailabilityCache(
        cache_backend,
        ttl_seconds=seat_map_ttl_seconds or settings.SEAT_MAP_CACHE_TTL_SECONDS,
        key_prefix="seat_map",
        model=SeatMap,
        clock=clock,
    )
    notifier = SeatUpdateNotifier(session_factory, counter, availability_cache, seat_map_cache, publisher, clock=clock)
    reaper = SeatLockExpiryReaper(
        session_factory,
        store,
        notifier,
        batch_size=reaper_batch_size or settings.REAPER_BATCH_SIZE,
        clock=clock,
    )
    return SeatMapService(
        session_factory,
        store,
        counter,
        notifier,
        reaper,
        hold_ttl_seconds=hold_ttl_seconds or settings.SEAT_HOLD_TTL_SECONDS,
        max_check_codes=max_check_codes or settings.SEAT_CHECK_MAX_CODES,
        clock=clock,
    )
