from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from slot_booking.api.deps.auth import get_current_user, require_admin
from slot_booking.api.deps.database import get_reservation_coordinator
from slot_booking.api.v1.errors import to_http_exception
from slot_booking.core.exceptions import ReservationError
from slot_booking.models.user import User
from slot_booking.schemas.booking import (
    Booking,
    BookingCreate,
    BookingWithSlot,
    BookingWithSlotAndUser,
)
from slot_booking.services.reservation import ReservationCoordinator

router = APIRouter()


@router.post("/", response_model=Booking, status_code=status.HTTP_201_CREATED)
async def book_slot(
    booking_data: BookingCreate,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Claim a slot for the current user."""
    try:
        return await coordinator.claim(booking_data.slot_id, current_user.id)
    except ReservationError as e:
        raise to_http_exception(e)


@router.get("/mine", response_model=List[BookingWithSlot])
async def get_my_bookings(
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Get the current user's bookings, newest first."""
    try:
        return await coordinator.list_bookings(current_user.id)
    except ReservationError as e:
        raise to_http_exception(e)


@router.get("/all", response_model=List[BookingWithSlotAndUser])
async def get_all_bookings(
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(require_admin),
):
    """Get every booking, newest first."""
    try:
        return await coordinator.list_bookings()
    except ReservationError as e:
        raise to_http_exception(e)


@router.put("/{booking_id}/cancel", response_model=Booking)
async def cancel_booking(
    booking_id: UUID,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Cancel one of the current user's confirmed bookings."""
    try:
        return await coordinator.release(booking_id, current_user.id)
    except ReservationError as e:
        raise to_http_exception(e)
