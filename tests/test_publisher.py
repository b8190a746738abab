from datetime import timedelta

import pytest
from anyio import WouldBlock

from seat_inventory.errors import InvalidToken
from seat_inventory.schemas.events import SeatUpdateAction, SeatUpdateEvent
from seat_inventory.schemas.seat import SeatLockState, SeatStatus
from seat_inventory.services.auth import TokenVerifier
from seat_inventory.services.publisher import InMemoryPublisher, seat_topic, trip_id_from_topic

TRIP_ID = 7


def seat_event(clock, seat_code="A1", action=SeatUpdateAction.SELECTED):
    return SeatUpdateEvent(
        action=action,
        trip_id=TRIP_ID,
        seat_code=seat_code,
        actor_user_id=1,
        seat=SeatLockState(
            trip_id=TRIP_ID,
            seat_code=seat_code,
            status=SeatStatus.HELD,
            holder_user_id=1,
            hold_expires_at=clock() + timedelta(seconds=300),
        ),
        timestamp=clock(),
    )


def test_topic_round_trip():
    assert seat_topic(TRIP_ID) == "seat-updates-7"
    assert trip_id_from_topic("seat-updates-7") == TRIP_ID
    with pytest.raises(InvalidToken):
        trip_id_from_topic("bookings-7")


@pytest.mark.asyncio
async def test_admitted_subscriber_receives_events(publisher, verifier, clock):
    token = verifier.create_token(TRIP_ID, user_id=42)
    subscription = await publisher.subscribe(seat_topic(TRIP_ID), token)

    delivered = await publisher.publish(seat_topic(TRIP_ID), seat_event(clock))

    assert delivered == 1
    assert subscription.claims.user_id == 42
    event = subscription.receive_nowait()
    assert event.seat_code == "A1"
    assert event.action == SeatUpdateAction.SELECTED
    await subscription.aclose()


@pytest.mark.asyncio
async def test_subscription_iterates_events(publisher, verifier, clock):
    token = verifier.create_token(TRIP_ID, user_id=42)
    async with await publisher.subscribe(seat_topic(TRIP_ID), token) as subscription:
        await publisher.publish(seat_topic(TRIP_ID), seat_event(clock, "A1"))
        await publisher.publish(seat_topic(TRIP_ID), seat_event(clock, "A2", SeatUpdateAction.RELEASED))

        received = []
        async for event in subscription:
            received.append((event.seat_code, event.action))
            if len(received) == 2:
                break

    assert received == [("A1", SeatUpdateAction.SELECTED), ("A2", SeatUpdateAction.RELEASED)]
    assert publisher.subscriber_count(seat_topic(TRIP_ID)) == 0


@pytest.mark.asyncio
async def test_expired_token_is_rejected(publisher, verifier, clock):
    token = verifier.create_token(TRIP_ID, user_id=42, ttl_seconds=60)
    clock.advance(61)

    with pytest.raises(InvalidToken):
        await publisher.subscribe(seat_topic(TRIP_ID), token)
    assert publisher.subscriber_count(seat_topic(TRIP_ID)) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "not-a-jwt"])
async def test_missing_or_malformed_token_is_rejected(publisher, token):
    with pytest.raises(InvalidToken):
        await publisher.subscribe(seat_topic(TRIP_ID), token)


@pytest.mark.asyncio
async def test_token_for_another_trip_is_rejected(publisher, verifier):
    token = verifier.create_token(TRIP_ID + 1, user_id=42)

    with pytest.raises(InvalidToken):
        await publisher.subscribe(seat_topic(TRIP_ID), token)


@pytest.mark.asyncio
async def test_token_signed_with_another_key_is_rejected(publisher, clock):
    forged = TokenVerifier(secret_key="someone-else", clock=clock).create_token(TRIP_ID, user_id=42)

    with pytest.raises(InvalidToken):
        await publisher.subscribe(seat_topic(TRIP_ID), forged)


@pytest.mark.asyncio
async def test_late_subscriber_misses_earlier_events(publisher, verifier, clock):
    assert await publisher.publish(seat_topic(TRIP_ID), seat_event(clock, "A1")) == 0

    subscription = await publisher.subscribe(seat_topic(TRIP_ID), verifier.create_token(TRIP_ID, 42))
    await publisher.publish(seat_topic(TRIP_ID), seat_event(clock, "B2"))

    assert subscription.receive_nowait().seat_code == "B2"
    with pytest.raises(WouldBlock):
        subscription.receive_nowait()


@pytest.mark.asyncio
async def test_full_buffer_drops_events_for_that_subscriber_only(verifier, clock):
    publisher = InMemoryPublisher(verifier, buffer_size=2)
    slow = await publisher.subscribe(seat_topic(TRIP_ID), verifier.create_token(TRIP_ID, 1))
    fast = await publisher.subscribe(seat_topic(TRIP_ID), verifier.create_token(TRIP_ID, 2))

    deliveries = []
    for code in ("A1", "A2", "B1"):
        deliveries.append(await publisher.publish(seat_topic(TRIP_ID), seat_event(clock, code)))
        if code != "B1":
            fast.receive_nowait()

    assert deliveries == [2, 2, 1]
    assert [slow.receive_nowait().seat_code for _ in range(2)] == ["A1", "A2"]
    assert fast.receive_nowait().seat_code == "B1"
