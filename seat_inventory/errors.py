"""Error taxonomy for the seat inventory core.

Every error carries a ``public_message`` that is safe to show to a client and
an HTTP-ish ``status_code`` used by the app's exception handler.
"""
from typing import Optional


class SeatInventoryError(Exception):
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, *, public_message: Optional[str] = None):
        self.message = message or self.default_message
        self.public_message = public_message or self.default_message
        super().__init__(self.message)


class SeatUnavailable(SeatInventoryError):
    status_code = 409
    default_message = "This seat is not available"


class NotAuthorized(SeatInventoryError):
    status_code = 403
    default_message = "You are not allowed to change this seat"


class NotHolder(NotAuthorized):
    default_message = "This seat is held by another user"


class CapacityExceeded(SeatInventoryError):
    status_code = 409
    default_message = "Not enough seats left on this trip"


class NegativeCount(SeatInventoryError):
    status_code = 409
    default_message = "Booked seat count cannot be negative"


class TripNotFound(SeatInventoryError):
    status_code = 404
    default_message = "Trip not found"


class SeatNotFound(SeatInventoryError):
    status_code = 404
    default_message = "Seat not found on this trip"


class SeatPlanNotConfigured(SeatInventoryError):
    status_code = 404
    default_message = "No seat plan is configured for this trip"


class TripNotBookable(SeatInventoryError):
    status_code = 409
    default_message = "This trip is not open for booking"


class InvalidSeatRequest(SeatInventoryError):
    status_code = 422
    default_message = "Invalid seat request"


class InvalidToken(SeatInventoryError):
    status_code = 401
    default_message = "Invalid token"


class AuditLogImmutable(SeatInventoryError):
    status_code = 500
    default_message = "Audit records cannot be modified"


class ServiceUnavailable(SeatInventoryError):
    status_code = 503
    default_message = "Seat service temporarily unavailable"
