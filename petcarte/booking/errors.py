"""Error taxonomy shared by the reservation engine and the web layer."""

from __future__ import annotations


class BookingError(RuntimeError):
    """Base class for expected, user-facing failures."""

    status = 400
    code = "booking_error"
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BookingError):
    """Raised when incoming data fails validation."""

    code = "validation_error"
    default_message = "Invalid request"


class Unauthorized(BookingError):
    status = 401
    code = "unauthorized"
    default_message = "Authentication token is missing or invalid"


class Forbidden(BookingError):
    """Raised when a caller touches another tenant's data."""

    status = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action"


class NotFound(BookingError):
    status = 404
    code = "not_found"
    default_message = "Resource not found"


class CapacityExceeded(BookingError):
    code = "capacity_exceeded"
    default_message = "This day is fully booked"


class RoomConflict(BookingError):
    code = "room_conflict"
    default_message = "The room is already booked for the requested period"


class InsufficientTicket(BookingError):
    code = "insufficient_ticket"
    default_message = "No sessions remaining. Please purchase more tickets."


class InvalidToken(BookingError):
    code = "invalid_token"
    default_message = "Invalid QR code"


class StoreMismatch(BookingError):
    code = "store_mismatch"
    default_message = "This QR code belongs to a different store"


class TokenExpired(BookingError):
    code = "token_expired"
    default_message = "QR code has expired"


class InvalidStateTransition(BookingError):
    code = "invalid_state_transition"
    default_message = "Reservation cannot move to the requested state"


class Conflict(BookingError):
    """Raised when the storage layer detects a concurrent write; safe to retry."""

    status = 409
    code = "conflict"
    default_message = "Another request modified this data. Please retry."
