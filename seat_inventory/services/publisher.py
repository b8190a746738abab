"""Per-trip fan-out of seat updates to live clients.

Delivery is at-most-once: a subscriber that is not connected when an event is
published never sees it and must re-read the seat map after (re)connecting.
"""
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from anyio import BrokenResourceError, ClosedResourceError, EndOfStream, WouldBlock, create_memory_object_stream
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from redis.asyncio import Redis
from redis.asyncio.client import PubSub

from seat_inventory.config import settings
from seat_inventory.errors import InvalidToken
from seat_inventory.metrics import SEAT_UPDATES_DROPPED, SEAT_UPDATES_PUBLISHED, SUBSCRIPTIONS
from seat_inventory.schemas.events import SeatUpdateEvent, SubscriptionClaims
from seat_inventory.services.auth import TokenVerifier

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "seat-updates-"


def seat_topic(trip_id: int) -> str:
    return f"{TOPIC_PREFIX}{trip_id}"


def trip_id_from_topic(topic: str) -> int:
    if not topic.startswith(TOPIC_PREFIX) or not topic[len(TOPIC_PREFIX):].isdigit():
        raise InvalidToken(f"unknown seat update topic {topic!r}", public_message="Unknown channel")
    return int(topic[len(TOPIC_PREFIX):])


class Subscription(ABC):
    """Stream of events for one admitted subscriber."""

    def __init__(self, topic: str, claims: SubscriptionClaims):
        self.topic = topic
        self.claims = claims

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[SeatUpdateEvent]:
        raise NotImplementedError()

    @abstractmethod
    async def aclose(self) -> None:
        raise NotImplementedError()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


class Publisher(ABC):
    @abstractmethod
    async def publish(self, topic: str, event: SeatUpdateEvent) -> int:
        """Send ``event`` to current subscribers of ``topic``; returns how many received it."""
        raise NotImplementedError()


class Subscriber(ABC):
    @abstractmethod
    async def subscribe(self, topic: str, token: Optional[str]) -> Subscription:
        """Admit a client to ``topic``; raises InvalidToken before any event is sent."""
        raise NotImplementedError()


def _admit(verifier: TokenVerifier, topic: str, token: Optional[str]) -> SubscriptionClaims:
    try:
        claims = verifier.verify(token, trip_id_from_topic(topic))
    except InvalidToken:
        SUBSCRIPTIONS.labels(result="rejected").inc()
        logger.info("seat update subscription rejected", extra={"topic": topic})
        raise
    SUBSCRIPTIONS.labels(result="admitted").inc()
    return claims


class MemorySubscription(Subscription):
    def __init__(
        self,
        topic: str,
        claims: SubscriptionClaims,
        receive_stream: MemoryObjectReceiveStream,
        on_close: Callable[["MemorySubscription"], None],
    ):
        super().__init__(topic, claims)
        self._receive_stream = receive_stream
        self._on_close = on_close

    async def __aiter__(self) -> AsyncIterator[SeatUpdateEvent]:
        while True:
            try:
                yield await self._receive_stream.receive()
            except (EndOfStream, ClosedResourceError):
                return

    async def receive(self) -> SeatUpdateEvent:
        return await self._receive_stream.receive()

    def receive_nowait(self) -> SeatUpdateEvent:
        return self._receive_stream.receive_nowait()

    async def aclose(self) -> None:
        self._on_close(self)
        await self._receive_stream.aclose()


class InMemoryPublisher(Publisher, Subscriber):
    """In-process pub/sub on anyio memory object streams.

    Each subscriber gets a bounded buffer; when it is full the event is
    dropped for that subscriber only.
    """

    def __init__(self, verifier: TokenVerifier, buffer_size: Optional[int] = None):
        self._verifier = verifier
        self._buffer_size = buffer_size or settings.SUBSCRIBER_BUFFER_SIZE
        self._subscribers: Dict[str, List[Tuple[MemorySubscription, MemoryObjectSendStream]]] = {}

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    async def subscribe(self, topic: str, token: Optional[str]) -> MemorySubscription:
        claims = _admit(self._verifier, topic, token)
        send_stream, receive_stream = create_memory_object_stream(max_buffer_size=self._buffer_size)
        subscription = MemorySubscription(topic, claims, receive_stream, self._unsubscribe)
        self._subscribers.setdefault(topic, []).append((subscription, send_stream))
        logger.debug("subscribed to %s (total %d)", topic, self.subscriber_count(topic))
        return subscription

    async def publish(self, topic: str, event: SeatUpdateEvent) -> int:
        delivered = 0
        for subscription, send_stream in list(self._subscribers.get(topic, [])):
            try:
                send_stream.send_nowait(event)
                delivered += 1
            except WouldBlock:
                SEAT_UPDATES_DROPPED.inc()
                logger.warning("dropping %s event for slow subscriber on %s", event.action.value, topic)
            except (BrokenResourceError, ClosedResourceError):
                self._unsubscribe(subscription)
        SEAT_UPDATES_PUBLISHED.labels(action=event.action.value).inc()
        return delivered

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        entries = self._subscribers.get(subscription.topic, [])
        for entry in list(entries):
            if entry[0] is subscription:
                entries.remove(entry)
                entry[1].close()
        if not entries:
            self._subscribers.pop(subscription.topic, None)


class RedisSubscription(Subscription):
    def __init__(self, topic: str, claims: SubscriptionClaims, pubsub: PubSub):
        super().__init__(topic, claims)
        self._pubsub = pubsub

    async def __aiter__(self) -> AsyncIterator[SeatUpdateEvent]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            yield SeatUpdateEvent.model_validate_json(message["data"])

    async def aclose(self) -> None:
        await self._pubsub.unsubscribe(self.topic)
        await self._pubsub.aclose()


class RedisPublisher(Publisher, Subscriber):
    """Redis pub/sub backend; works across service instances."""

    def __init__(self, redis: Redis, verifier: TokenVerifier):
        self.redis = redis
        self._verifier = verifier

    async def publish(self, topic: str, event: SeatUpdateEvent) -> int:
        receivers = await self.redis.publish(topic, event.model_dump_json())
        SEAT_UPDATES_PUBLISHED.labels(action=event.action.value).inc()
        return receivers

    async def subscribe(self, topic: str, token: Optional[str]) -> RedisSubscription:
        claims = _admit(self._verifier, topic, token)
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(topic)
        return RedisSubscription(topic, claims, pubsub)
