from fastapi import APIRouter

from slot_booking.api.v1.endpoints import bookings, slots

api_router = APIRouter()

# Slot listing and admin slot management
api_router.include_router(slots.router, prefix="/slots", tags=["slots"])

# Booking claim and cancellation
api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
