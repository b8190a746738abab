from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from seat_inventory.timeutils import as_utc


class SeatStatus(IntEnum):
    BOOKED = 1
    FREE = 2
    HELD = 3


class SeatCategory(str, Enum):
    NORMAL = "normal"
    AISLE = "aisle"
    WINDOW = "window"
    ACCESSIBLE = "accessible"


class SeatDisplayState(str, Enum):
    FREE = "free"
    HELD = "held"
    BOOKED = "booked"


class SeatLockState(BaseModel):
    """Point-in-time view of one seat on one trip.

    Untouched seats are represented by a synthesized FREE value, so reading a
    seat never has to create a row.
    """

    trip_id: int
    seat_code: str
    status: SeatStatus = SeatStatus.FREE
    holder_user_id: Optional[int] = None
    hold_expires_at: Optional[datetime] = None

    @field_validator("hold_expires_at")
    @classmethod
    def _normalize_expiry(cls, value):
        return as_utc(value)

    @classmethod
    def free(cls, trip_id: int, seat_code: str) -> "SeatLockState":
        return cls(trip_id=trip_id, seat_code=seat_code)

    @classmethod
    def from_row(cls, row) -> "SeatLockState":
        return cls(
            trip_id=row.trip_id,
            seat_code=row.seat_code,
            status=SeatStatus(row.status),
            holder_user_id=row.holder_user_id,
            hold_expires_at=row.hold_expires_at,
        )

    def is_hold_active(self, now: datetime) -> bool:
        if self.status != SeatStatus.HELD or self.hold_expires_at is None:
            return False
        return now <= self.hold_expires_at

    def is_available(self, now: datetime) -> bool:
        if self.status == SeatStatus.FREE:
            return True
        return self.status == SeatStatus.HELD and not self.is_hold_active(now)

    def effective_status(self, now: datetime) -> SeatStatus:
        # an expired hold reads as free until the reaper catches up
        if self.status == SeatStatus.HELD and not self.is_hold_active(now):
            return SeatStatus.FREE
        return self.status


class PlanSeat(BaseModel):
    code: str
    row: str
    number: str
    category: SeatCategory = SeatCategory.NORMAL


def parse_seat_plan(layout: Optional[dict]) -> List[PlanSeat]:
    """Flatten a seat plan layout into ordered seats.

    Raises ValueError when two seats share a code or a category is unknown.
    """
    seats: List[PlanSeat] = []
    seen = set()
    for row in (layout or {}).get("rows", []):
        letter = str(row["letter"])
        for number, category in (row.get("seats") or {}).items():
            code = f"{letter}{number}"
            if code in seen:
                raise ValueError(f"duplicate seat code {code} in seat plan")
            seen.add(code)
            seats.append(PlanSeat(code=code, row=letter, number=str(number), category=SeatCategory(category)))
    return seats


class SeatView(BaseModel):
    code: str
    row: str
    number: str
    category: SeatCategory
    state: SeatDisplayState
    color: str
    selectable: bool
    message: str
    holder_user_id: Optional[int] = None
    hold_expires_at: Optional[datetime] = None


class SeatMap(BaseModel):
    trip_id: int
    seat_plan_id: int
    plan_name: Optional[str] = None
    seats: List[SeatView]
    total_seats: int
    free_seats: int
    booked_seats: int
    held_seats: int
    timestamp: datetime
    freshness: Optional[str] = None


class SeatCheck(BaseModel):
    seat_code: str
    available: bool
    status: str = Field(..., description="FREE, HELD or BOOKED")
    holder_user_id: Optional[int] = None
    hold_expires_at: Optional[datetime] = None


class SeatHold(BaseModel):
    trip_id: int
    seat_code: str
    user_id: int
    hold_expires_at: datetime
    message: str = "Seat temporarily held"
