from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class UrgencyLevel(str, Enum):
    CRITICAL = "CRITICAL"
    URGENT = "URGENT"
    NORMAL = "NORMAL"


class TripCounts(BaseModel):
    trip_id: int
    capacity: int
    booked_count: int
    status: str
    departure_time: Optional[datetime] = None


class AvailabilityAlert(BaseModel):
    kind: str
    message: str


class AvailabilitySnapshot(BaseModel):
    trip_id: int
    capacity: int
    booked_count: int
    free_count: int
    fill_percentage: float
    free_percentage: float
    urgency_level: UrgencyLevel
    status_label: str
    status_color: str
    is_full: bool
    alerts: List[AvailabilityAlert] = []
    recommendation: str
    timestamp: datetime
    freshness: Optional[str] = None


class AvailabilityCheck(BaseModel):
    trip_id: int
    seats_requested: int
    free_count: int
    available: bool
    message: str
    timestamp: datetime


class AuditEntry(BaseModel):
    trip_id: int
    before: int
    after: int
    delta: int
    operation_kind: str
    actor_id: Optional[int] = None
    timestamp: datetime
