"""Per-trip booked-seat counter and the availability figures derived from it."""
import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from fractions import Fraction
from typing import Dict, List, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seat_inventory.errors import CapacityExceeded, NegativeCount, TripNotFound
from seat_inventory.metrics import BOOKED_COUNT_ADJUSTMENTS
from seat_inventory.models.models import Trip
from seat_inventory.schemas.availability import (
    AuditEntry,
    AvailabilityAlert,
    AvailabilitySnapshot,
    TripCounts,
    UrgencyLevel,
)
from seat_inventory.services.audit import list_booked_count_changes, log_booked_count_change
from seat_inventory.timeutils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

CRITICAL_FREE_RATIO = Fraction(1, 10)
URGENT_FREE_RATIO = Fraction(3, 10)

URGENCY_COLORS: Dict[UrgencyLevel, str] = {
    UrgencyLevel.CRITICAL: "#dc3545",
    UrgencyLevel.URGENT: "#ffc107",
    UrgencyLevel.NORMAL: "#28a745",
}


def fill_percentage(capacity: int, booked_count: int) -> float:
    if capacity <= 0:
        return 0.0
    pct = Decimal(booked_count * 100) / Decimal(capacity)
    return float(pct.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def urgency_level(capacity: int, free_count: int) -> UrgencyLevel:
    if capacity <= 0:
        return UrgencyLevel.NORMAL
    ratio = Fraction(free_count, capacity)
    if ratio <= CRITICAL_FREE_RATIO:
        return UrgencyLevel.CRITICAL
    if ratio <= URGENT_FREE_RATIO:
        return UrgencyLevel.URGENT
    return UrgencyLevel.NORMAL


def status_label(free_count: int, fill_pct: float) -> str:
    if free_count <= 0:
        return "FULL"
    if free_count <= 2:
        return "LAST SEATS"
    if fill_pct >= 80:
        return "ALMOST FULL"
    if free_count >= 10:
        return "GOOD AVAILABILITY"
    return "AVAILABLE"


def availability_alerts(free_count: int, fill_pct: float) -> List[AvailabilityAlert]:
    if free_count <= 0:
        return [AvailabilityAlert(kind="danger", message="Trip is full")]
    if free_count <= 2:
        return [AvailabilityAlert(kind="warning", message=f"Only {free_count} seat(s) left!")]
    if fill_pct >= 80:
        return [AvailabilityAlert(kind="info", message="Almost full")]
    return []


def recommendation(free_count: int) -> str:
    if free_count <= 0:
        return "Trip is full - look for another date"
    if free_count <= 2:
        return "Book quickly before the last seats are gone!"
    if free_count <= 5:
        return "Only a few seats left"
    return "Good availability - book any time"


def derive_snapshot(counts: TripCounts, now: datetime) -> AvailabilitySnapshot:
    free_count = counts.capacity - counts.booked_count
    fill_pct = fill_percentage(counts.capacity, counts.booked_count)
    level = urgency_level(counts.capacity, free_count)
    return AvailabilitySnapshot(
        trip_id=counts.trip_id,
        capacity=counts.capacity,
        booked_count=counts.booked_count,
        free_count=free_count,
        fill_percentage=fill_pct,
        free_percentage=round(100 - fill_pct, 1),
        urgency_level=level,
        status_label=status_label(free_count, fill_pct),
        status_color=URGENCY_COLORS[level],
        is_full=free_count <= 0,
        alerts=availability_alerts(free_count, fill_pct),
        recommendation=recommendation(free_count),
        timestamp=now,
    )


class AvailabilityCounter:
    """Capacity / booked-count guard for trips.

    ``adjust_booked`` is the single place the platform changes a trip's booked
    count. It locks the trip row so concurrent reservations serialize, refuses
    to leave ``0 <= booked_count <= capacity`` and appends an audit record.
    Like the seat store it works inside the caller's transaction.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def read(self, db: AsyncSession, trip_id: int, for_update: bool = False) -> TripCounts:
        trip = await self._load_trip(db, trip_id, for_update=for_update)
        return self.trip_counts(trip)

    async def snapshot(self, db: AsyncSession, trip_id: int) -> AvailabilitySnapshot:
        return derive_snapshot(await self.read(db, trip_id), self._clock())

    async def snapshots(self, db: AsyncSession, trip_ids: List[int]) -> Dict[int, AvailabilitySnapshot]:
        if not trip_ids:
            return {}
        res = await db.execute(sa_select(Trip).where(Trip.id.in_(trip_ids)))
        now = self._clock()
        return {trip.id: derive_snapshot(self.trip_counts(trip), now) for trip in res.scalars()}

    async def adjust_booked(
        self,
        db: AsyncSession,
        trip_id: int,
        delta: int,
        actor_id: Optional[int] = None,
        operation_kind: Optional[str] = None,
    ) -> int:
        trip = await self._load_trip(db, trip_id, for_update=True)
        before = trip.booked_count
        after = before + delta
        if after > trip.capacity:
            BOOKED_COUNT_ADJUSTMENTS.labels(result="capacity_exceeded").inc()
            raise CapacityExceeded(
                f"trip {trip_id}: {before}{delta:+d} exceeds capacity {trip.capacity}",
                public_message=f"Only {trip.capacity - before} seat(s) left on this trip",
            )
        if after < 0:
            BOOKED_COUNT_ADJUSTMENTS.labels(result="negative").inc()
            raise NegativeCount(f"trip {trip_id}: {before}{delta:+d} is negative")

        trip.booked_count = after
        await log_booked_count_change(
            db,
            trip_id=trip_id,
            before=before,
            after=after,
            timestamp=self._clock(),
            operation_kind=operation_kind,
            actor_id=actor_id,
        )
        await db.flush()
        BOOKED_COUNT_ADJUSTMENTS.labels(result="success").inc()
        logger.info("booked count adjusted", extra={"trip_id": trip_id, "before": before, "after": after})
        return after

    async def history(self, db: AsyncSession, trip_id: int, limit: int = 10) -> List[AuditEntry]:
        return await list_booked_count_changes(db, trip_id, limit=limit)

    async def _load_trip(self, db: AsyncSession, trip_id: int, for_update: bool = False) -> Trip:
        stmt = sa_select(Trip).where(Trip.id == trip_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await db.execute(stmt)
        trip = res.scalars().first()
        if trip is None:
            raise TripNotFound(f"trip {trip_id} does not exist")
        return trip

    @staticmethod
    def trip_counts(trip: Trip) -> TripCounts:
        return TripCounts(
            trip_id=trip.id,
            capacity=trip.capacity,
            booked_count=trip.booked_count,
            status=trip.status,
            departure_time=as_utc(trip.departure_time),
        )
