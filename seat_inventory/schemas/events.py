from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from seat_inventory.schemas.availability import AvailabilitySnapshot
from seat_inventory.schemas.seat import SeatLockState


class SeatUpdateAction(str, Enum):
    SELECTED = "selected"
    RELEASED = "released"
    EXPIRED = "expired"
    CONFIRMED = "confirmed"


class SeatUpdateEvent(BaseModel):
    action: SeatUpdateAction
    trip_id: int
    seat_code: str
    actor_user_id: Optional[int] = None
    seat: SeatLockState
    snapshot: Optional[AvailabilitySnapshot] = None
    timestamp: datetime


class SubscriptionClaims(BaseModel):
    trip_id: int
    user_id: int
    exp: int
