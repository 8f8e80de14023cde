from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

# Import enums from the model to avoid duplication
from slot_booking.models.booking import BookingStatus
from slot_booking.schemas.slot import SlotSummary


class UserSummary(BaseModel):
    id: UUID
    name: str
    email: str

    class Config:
        from_attributes = True


class BookingCreate(BaseModel):
    slot_id: UUID


class Booking(BaseModel):
    id: UUID
    user_id: UUID
    slot_id: Optional[UUID] = None
    status: BookingStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingWithSlot(Booking):
    slot: Optional[SlotSummary] = None

    class Config:
        from_attributes = True


class BookingWithSlotAndUser(BookingWithSlot):
    """Admin view: who holds which slot."""

    user: UserSummary

    class Config:
        from_attributes = True


class ErrorDetail(BaseModel):
    code: str
    message: str
