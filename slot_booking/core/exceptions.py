import enum
from typing import Optional


class ErrorCode(str, enum.Enum):
    SLOT_ALREADY_BOOKED = "SLOT_ALREADY_BOOKED"
    SLOT_NOT_FOUND = "SLOT_NOT_FOUND"
    SLOT_ALREADY_EXISTS = "SLOT_ALREADY_EXISTS"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    HOLDER_REQUIRED = "HOLDER_REQUIRED"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    WRITE_CONFLICT = "WRITE_CONFLICT"
    TIMEOUT = "TIMEOUT"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"


DEFAULT_MESSAGES = {
    ErrorCode.SLOT_ALREADY_BOOKED: "This slot is already booked",
    ErrorCode.SLOT_NOT_FOUND: "Slot not found",
    ErrorCode.SLOT_ALREADY_EXISTS: "A slot with the same start and end time exists",
    ErrorCode.BOOKING_NOT_FOUND: "Booking not found or already cancelled",
    ErrorCode.HOLDER_REQUIRED: "Cannot book slot without user",
    ErrorCode.INVALID_STATUS_TRANSITION: "Booking status transition not allowed",
    ErrorCode.WRITE_CONFLICT: "The slot is busy right now, please try again",
    ErrorCode.TIMEOUT: "The reservation took too long, please try again",
    ErrorCode.STORAGE_UNAVAILABLE: "Booking storage is unavailable, please try again",
}


class ReservationError(Exception):
    """Base class for reservation outcomes surfaced to the request layer."""

    status_code = 500
    retryable = False

    def __init__(self, code: ErrorCode, message: Optional[str] = None):
        self.code = code
        self.message = message or DEFAULT_MESSAGES.get(code, code.value)
        super().__init__(f"{code.value}: {self.message}")


class ConflictError(ReservationError):
    """The slot is legitimately taken. Never retried."""

    status_code = 409


class NotFoundError(ReservationError):
    """Slot or booking does not exist in the expected state."""

    status_code = 404


class TransientError(ReservationError):
    """Storage race or outage; the caller may let the user try again."""

    status_code = 503
    retryable = True


class PreconditionViolationError(ReservationError):
    """A ledger invariant would have been broken. Always surfaced."""

    status_code = 500
