import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from seat_inventory.metrics import CACHE_BACKEND_ERRORS, CACHE_REQUESTS
from seat_inventory.schemas.availability import AvailabilitySnapshot
from seat_inventory.timeutils import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30
EXCELLENT_AGE_SECONDS = 10
GOOD_AGE_SECONDS = 30

T = TypeVar("T", bound=BaseModel)


class CacheBackend(ABC):
    """Minimal string key/value store with per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError()

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError()


class RedisCacheBackend(CacheBackend):
    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.redis.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)


class MemoryCacheBackend(CacheBackend):
    """Process-local backend for single-instance deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if not entry:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


def freshness_band(age_seconds: float) -> str:
    if age_seconds < EXCELLENT_AGE_SECONDS:
        return "excellent"
    if age_seconds < GOOD_AGE_SECONDS:
        return "good"
    return "stale"


class AvailabilityCache(Generic[T]):
    """Short-TTL read-through cache keyed per trip.

    Cached values are pydantic models with a ``timestamp`` and a ``freshness``
    field. A value older than the TTL is a miss even if the backend still has
    it. Backend failures are logged and treated as misses, so a Redis outage
    degrades to direct reads instead of failing requests.
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = "availability",
        model: Type[T] = AvailabilitySnapshot,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.model = model
        self._clock = clock

    def key(self, trip_id: int) -> str:
        return f"{self.key_prefix}:{trip_id}"

    def freshness(self, timestamp: datetime) -> str:
        return freshness_band((self._clock() - as_utc(timestamp)).total_seconds())

    async def get(self, trip_id: int) -> Optional[T]:
        try:
            raw = await self.backend.get(self.key(trip_id))
        except RedisError:
            CACHE_BACKEND_ERRORS.labels(operation="get").inc()
            logger.warning("cache get failed for %s", self.key(trip_id), exc_info=True)
            return None
        if raw is None:
            CACHE_REQUESTS.labels(cache=self.key_prefix, result="miss").inc()
            return None
        try:
            value = self.model.model_validate_json(raw)
        except ValidationError:
            logger.warning("discarding unreadable cache entry %s", self.key(trip_id))
            CACHE_REQUESTS.labels(cache=self.key_prefix, result="miss").inc()
            return None
        age = (self._clock() - as_utc(value.timestamp)).total_seconds()
        if age >= self.ttl_seconds:
            CACHE_REQUESTS.labels(cache=self.key_prefix, result="expired").inc()
            return None
        CACHE_REQUESTS.labels(cache=self.key_prefix, result="hit").inc()
        return value.model_copy(update={"freshness": freshness_band(age)})

    async def put(self, trip_id: int, value: T, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.backend.set(self.key(trip_id), value.model_dump_json(), ttl_seconds or self.ttl_seconds)
        except RedisError:
            CACHE_BACKEND_ERRORS.labels(operation="set").inc()
            logger.warning("cache put failed for %s", self.key(trip_id), exc_info=True)

    async def invalidate(self, trip_id: int) -> None:
        try:
            await self.backend.delete(self.key(trip_id))
        except RedisError:
            CACHE_BACKEND_ERRORS.labels(operation="delete").inc()
            logger.warning("cache invalidation failed for %s", self.key(trip_id), exc_info=True)

    async def get_or_compute(self, trip_id: int, compute_fn: Callable[[], Awaitable[T]]) -> T:
        cached = await self.get(trip_id)
        if cached is not None:
            return cached
        value = await compute_fn()
        value = value.model_copy(update={"freshness": self.freshness(value.timestamp)})
        await self.put(trip_id, value)
        return value
