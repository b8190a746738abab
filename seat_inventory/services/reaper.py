import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from seat_inventory.metrics import SEAT_LOCK_REAP_FAILURES, SEAT_LOCKS_REAPED
from seat_inventory.schemas.events import SeatUpdateAction
from seat_inventory.services.notifier import SeatUpdateNotifier
from seat_inventory.services.seat_lock import SeatLockStore
from seat_inventory.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class SeatLockExpiryReaper:
    """Releases holds whose TTL has passed and tells subscribers about it.

    Each seat is released in its own transaction under the seat's row lock, so
    a sweep can run next to client traffic (or another sweep) without races,
    and one failing row does not stop the rest of the batch.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: SeatLockStore,
        notifier: SeatUpdateNotifier,
        batch_size: int = 500,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._store = store
        self._notifier = notifier
        self.batch_size = batch_size
        self._clock = clock

    async def sweep(self) -> int:
        now = self._clock()
        async with self._session_factory() as db:
            expired = await self._store.list_expired(db, now=now, limit=self.batch_size)

        reaped = 0
        for lock in expired:
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        released = await self._store.release_expired(db, lock.trip_id, lock.seat_code)
            except Exception:
                SEAT_LOCK_REAP_FAILURES.inc()
                logger.exception("failed to release expired hold trip=%s seat=%s", lock.trip_id, lock.seat_code)
                continue
            if released is None:
                # renewed or released by someone else since the scan
                continue
            reaped += 1
            SEAT_LOCKS_REAPED.inc()
            try:
                await self._notifier.seat_changed(
                    released, SeatUpdateAction.EXPIRED, actor_user_id=lock.holder_user_id
                )
            except Exception:
                # the hold is already released; only the announcement is lost
                logger.exception("failed to announce expired hold trip=%s seat=%s", lock.trip_id, lock.seat_code)

        if reaped:
            logger.info("released %d expired seat holds", reaped)
        return reaped

    async def run_forever(self, interval_seconds: float, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("seat hold sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
