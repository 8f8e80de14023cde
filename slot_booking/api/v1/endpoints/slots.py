from datetime import datetime
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import ValidationError

from slot_booking.api.deps.auth import require_admin
from slot_booking.api.deps.database import get_reservation_coordinator
from slot_booking.api.v1.errors import to_http_exception
from slot_booking.core.exceptions import ReservationError
from slot_booking.models.user import User
from slot_booking.schemas.slot import AvailableSlotQuery, Slot, SlotWindow
from slot_booking.services.reservation import ReservationCoordinator

router = APIRouter()


@router.get("/", response_model=List[Slot])
async def get_available_slots(
    start: datetime = Query(..., description="Earliest slot start time"),
    end: datetime = Query(..., description="Latest slot start time"),
    inclusive_end: bool = Query(
        True, description="Include slots starting exactly at `end`"
    ),
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
):
    """List unbooked slots in a date range, ordered by start time."""
    try:
        query = AvailableSlotQuery(start=start, end=end, inclusive_end=inclusive_end)
    except ValidationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_RANGE", "message": "end must not be before start"},
        )

    try:
        return await coordinator.list_available_slots(query)
    except ReservationError as e:
        raise to_http_exception(e)


@router.post("/", response_model=List[Slot], status_code=status.HTTP_201_CREATED)
async def add_slots(
    windows: List[SlotWindow],
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(require_admin),
):
    """Insert externally generated slot windows as unbooked slots."""
    try:
        return await coordinator.add_slots(windows)
    except ReservationError as e:
        raise to_http_exception(e)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_slot(
    slot_id: UUID,
    coordinator: ReservationCoordinator = Depends(get_reservation_coordinator),
    current_user: User = Depends(require_admin),
):
    """Remove a slot that nobody holds."""
    try:
        await coordinator.delete_slot(slot_id)
    except ReservationError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
