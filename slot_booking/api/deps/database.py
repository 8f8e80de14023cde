from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from slot_booking.core.database import get_db, get_session_factory
from slot_booking.services.reservation import ReservationCoordinator

__all__ = ["get_db", "get_session_factory", "get_reservation_coordinator"]


def get_reservation_coordinator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> ReservationCoordinator:
    """Coordinator bound to the pooled session factory."""
    return ReservationCoordinator(session_factory)
