from fastapi import HTTPException

from slot_booking.core.config import settings
from slot_booking.core.exceptions import ReservationError, TransientError
from slot_booking.schemas.booking import ErrorDetail


def to_http_exception(exc: ReservationError) -> HTTPException:
    """Translate a reservation outcome into an HTTP error response."""
    headers = None
    if isinstance(exc, TransientError):
        headers = {"Retry-After": str(settings.TRANSIENT_RETRY_AFTER_SECONDS)}

    return HTTPException(
        status_code=exc.status_code,
        detail=ErrorDetail(code=exc.code.value, message=exc.message).model_dump(),
        headers=headers,
    )
