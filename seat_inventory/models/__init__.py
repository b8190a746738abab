from .models import *

__all__ = [
    "Base",
    "SeatPlan",
    "Trip",
    "SeatLock",
    "BookedCountAudit",
    "TRIP_STATUS_SCHEDULED",
    "TRIP_STATUS_CANCELLED",
]
