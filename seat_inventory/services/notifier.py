import logging
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from seat_inventory.schemas.availability import AvailabilitySnapshot
from seat_inventory.schemas.events import SeatUpdateAction, SeatUpdateEvent
from seat_inventory.schemas.seat import SeatLockState
from seat_inventory.services.availability import AvailabilityCounter
from seat_inventory.services.availability_cache import AvailabilityCache
from seat_inventory.services.publisher import Publisher, seat_topic
from seat_inventory.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class SeatUpdateNotifier:
    """Runs after a seat change has committed: evicts the trip's cached
    availability and seat map, then broadcasts the change with a fresh snapshot.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        counter: AvailabilityCounter,
        availability_cache: AvailabilityCache,
        seat_map_cache: AvailabilityCache,
        publisher: Publisher,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._counter = counter
        self.availability_cache = availability_cache
        self.seat_map_cache = seat_map_cache
        self._publisher = publisher
        self._clock = clock

    async def invalidate(self, trip_id: int) -> None:
        await self.availability_cache.invalidate(trip_id)
        await self.seat_map_cache.invalidate(trip_id)

    async def snapshot(self, trip_id: int) -> AvailabilitySnapshot:
        async def _compute():
            async with self._session_factory() as db:
                return await self._counter.snapshot(db, trip_id)

        return await self.availability_cache.get_or_compute(trip_id, _compute)

    async def seat_changed(
        self,
        seat: SeatLockState,
        action: SeatUpdateAction,
        actor_user_id: Optional[int] = None,
    ) -> Optional[SeatUpdateEvent]:
        await self.invalidate(seat.trip_id)
        try:
            snapshot = await self.snapshot(seat.trip_id)
        except SQLAlchemyError:
            logger.exception("could not load availability for trip %s after seat change", seat.trip_id)
            snapshot = None
        event = SeatUpdateEvent(
            action=action,
            trip_id=seat.trip_id,
            seat_code=seat.seat_code,
            actor_user_id=actor_user_id,
            seat=seat,
            snapshot=snapshot,
            timestamp=self._clock(),
        )
        # the change is committed already; a failed broadcast must not undo it
        try:
            await self._publisher.publish(seat_topic(seat.trip_id), event)
        except RedisError:
            logger.exception("failed to publish %s for trip %s seat %s", action.value, seat.trip_id, seat.seat_code)
            return None
        return event
