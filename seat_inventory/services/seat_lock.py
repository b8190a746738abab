import logging
import time
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from seat_inventory.errors import NotHolder, SeatUnavailable
from seat_inventory.metrics import SEAT_LOCK_ATTEMPTS, SEAT_LOCK_LATENCY
from seat_inventory.models.models import SeatLock
from seat_inventory.schemas.seat import SeatLockState, SeatStatus
from seat_inventory.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class SeatLockStore:
    """Per-seat FREE / HELD / BOOKED state for every trip.

    Storage only: methods run inside the caller's transaction and never commit,
    so a reservation can confirm seats and adjust the booked counter atomically.
    Mutations take a row lock (SELECT ... FOR UPDATE) on the seat first.
    Cache invalidation and event publishing are left to the caller.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock

    async def get(self, db: AsyncSession, trip_id: int, seat_code: str) -> SeatLockState:
        row = await self._select(db, trip_id, seat_code)
        if row is None:
            return SeatLockState.free(trip_id, seat_code)
        return SeatLockState.from_row(row)

    async def get_many(self, db: AsyncSession, trip_id: int, seat_codes: Iterable[str]) -> Dict[str, SeatLockState]:
        codes = list(dict.fromkeys(seat_codes))
        if not codes:
            return {}
        stmt = sa_select(SeatLock).where(SeatLock.trip_id == trip_id, SeatLock.seat_code.in_(codes))
        res = await db.execute(stmt)
        rows = {row.seat_code: row for row in res.scalars()}
        return {
            code: SeatLockState.from_row(rows[code]) if code in rows else SeatLockState.free(trip_id, code)
            for code in codes
        }

    async def hold(self, db: AsyncSession, trip_id: int, seat_code: str, user_id: int, ttl_seconds: int) -> SeatLockState:
        """Hold a free (or expired) seat for ``user_id`` during ``ttl_seconds``."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        start = time.perf_counter()
        row = await self._lock_row(db, trip_id, seat_code)
        now = self._clock()
        if not SeatLockState.from_row(row).is_available(now):
            SEAT_LOCK_ATTEMPTS.labels(operation="hold", result="unavailable").inc()
            raise SeatUnavailable(f"seat {seat_code} on trip {trip_id} is {SeatStatus(row.status).name}")

        row.status = SeatStatus.HELD.value
        row.holder_user_id = user_id
        row.hold_expires_at = now + timedelta(seconds=ttl_seconds)
        await db.flush()
        SEAT_LOCK_ATTEMPTS.labels(operation="hold", result="success").inc()
        SEAT_LOCK_LATENCY.labels(operation="hold").observe(time.perf_counter() - start)
        return SeatLockState.from_row(row)

    async def release(self, db: AsyncSession, trip_id: int, seat_code: str, user_id: int) -> Optional[SeatLockState]:
        """Give a held seat back; None when the seat was already free and nothing changed."""
        row = await self._select(db, trip_id, seat_code, for_update=True)
        if row is None or row.status == SeatStatus.FREE:
            SEAT_LOCK_ATTEMPTS.labels(operation="release", result="noop").inc()
            return None
        if row.status == SeatStatus.BOOKED:
            SEAT_LOCK_ATTEMPTS.labels(operation="release", result="booked").inc()
            raise SeatUnavailable(f"seat {seat_code} on trip {trip_id} is booked")
        if row.holder_user_id != user_id:
            SEAT_LOCK_ATTEMPTS.labels(operation="release", result="not_holder").inc()
            raise NotHolder(f"seat {seat_code} on trip {trip_id} is held by another user")

        self._clear(row)
        await db.flush()
        SEAT_LOCK_ATTEMPTS.labels(operation="release", result="success").inc()
        return SeatLockState.from_row(row)

    async def release_expired(self, db: AsyncSession, trip_id: int, seat_code: str) -> Optional[SeatLockState]:
        """System release of an expired hold; None when the hold was renewed or already gone."""
        row = await self._select(db, trip_id, seat_code, for_update=True)
        if row is None or row.status != SeatStatus.HELD:
            return None
        if SeatLockState.from_row(row).is_hold_active(self._clock()):
            return None
        self._clear(row)
        await db.flush()
        return SeatLockState.from_row(row)

    async def confirm(self, db: AsyncSession, trip_id: int, seat_code: str, user_id: Optional[int] = None) -> SeatLockState:
        """Book a seat that is free or held. With ``user_id``, an active hold must belong to that user."""
        start = time.perf_counter()
        row = await self._lock_row(db, trip_id, seat_code)
        state = SeatLockState.from_row(row)
        if state.status == SeatStatus.BOOKED:
            SEAT_LOCK_ATTEMPTS.labels(operation="confirm", result="unavailable").inc()
            raise SeatUnavailable(f"seat {seat_code} on trip {trip_id} is already booked")
        if user_id is not None and state.is_hold_active(self._clock()) and state.holder_user_id != user_id:
            SEAT_LOCK_ATTEMPTS.labels(operation="confirm", result="not_holder").inc()
            raise NotHolder(f"seat {seat_code} on trip {trip_id} is held by another user")

        row.status = SeatStatus.BOOKED.value
        row.holder_user_id = user_id if user_id is not None else state.holder_user_id
        row.hold_expires_at = None
        await db.flush()
        SEAT_LOCK_ATTEMPTS.labels(operation="confirm", result="success").inc()
        SEAT_LOCK_LATENCY.labels(operation="confirm").observe(time.perf_counter() - start)
        return SeatLockState.from_row(row)

    async def revert(self, db: AsyncSession, trip_id: int, seat_code: str) -> Optional[SeatLockState]:
        """Cancellation path: BOOKED back to FREE. None when the seat was not booked."""
        row = await self._select(db, trip_id, seat_code, for_update=True)
        if row is None or row.status != SeatStatus.BOOKED:
            return None
        self._clear(row)
        await db.flush()
        return SeatLockState.from_row(row)

    async def list_by_status(self, db: AsyncSession, trip_id: int, status: SeatStatus) -> List[SeatLockState]:
        stmt = (
            sa_select(SeatLock)
            .where(SeatLock.trip_id == trip_id, SeatLock.status == int(status))
            .order_by(SeatLock.seat_code)
        )
        res = await db.execute(stmt)
        return [SeatLockState.from_row(row) for row in res.scalars()]

    async def list_expired(self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 500) -> List[SeatLockState]:
        now = now or self._clock()
        stmt = (
            sa_select(SeatLock)
            .where(SeatLock.status == SeatStatus.HELD.value, SeatLock.hold_expires_at < now)
            .order_by(SeatLock.hold_expires_at)
            .limit(limit)
        )
        res = await db.execute(stmt)
        return [SeatLockState.from_row(row) for row in res.scalars()]

    async def _select(self, db: AsyncSession, trip_id: int, seat_code: str, for_update: bool = False) -> Optional[SeatLock]:
        stmt = sa_select(SeatLock).where(SeatLock.trip_id == trip_id, SeatLock.seat_code == seat_code)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await db.execute(stmt)
        return res.scalars().first()

    async def _lock_row(self, db: AsyncSession, trip_id: int, seat_code: str) -> SeatLock:
        """Row-lock the seat, creating it as FREE on first write."""
        row = await self._select(db, trip_id, seat_code, for_update=True)
        if row is not None:
            return row
        try:
            async with db.begin_nested():
                row = SeatLock(trip_id=trip_id, seat_code=seat_code, status=SeatStatus.FREE.value)
                db.add(row)
                await db.flush()
            return row
        except IntegrityError:
            # another transaction inserted it first; wait for its lock
            logger.debug("seat lock row for trip=%s seat=%s created concurrently", trip_id, seat_code)
            row = await self._select(db, trip_id, seat_code, for_update=True)
            if row is None:
                raise
            return row

    @staticmethod
    def _clear(row: SeatLock) -> None:
        row.status = SeatStatus.FREE.value
        row.holder_user_id = None
        row.hold_expires_at = None
