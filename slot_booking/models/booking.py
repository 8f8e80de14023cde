import enum
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import relationship

from slot_booking.core.database import Base
from slot_booking.core.exceptions import ErrorCode, PreconditionViolationError
from slot_booking.models.user import utcnow

UQ_BOOKING_USER_SLOT = "uq_bookings_user_slot"
UQ_BOOKING_ACTIVE_SLOT = "uq_bookings_active_slot"


class BookingStatus(enum.Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Booking(Base):
    """A user's claim on a slot. Cancelled rows are kept, never deleted."""

    __tablename__ = "bookings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    slot_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("slots.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Status management
    status = Column(
        String(20), nullable=False, default=BookingStatus.CONFIRMED.value, index=True
    )
    version = Column(Integer, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        # One booking row per user and slot, ever
        UniqueConstraint("user_id", "slot_id", name=UQ_BOOKING_USER_SLOT),
        # At most one confirmed booking per slot
        Index(
            UQ_BOOKING_ACTIVE_SLOT,
            "slot_id",
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
        CheckConstraint(
            "status IN ('confirmed', 'cancelled')", name="ck_bookings_status"
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    user = relationship("User", back_populates="bookings")
    slot = relationship("Slot")

    def can_transition_to(self, new_status: BookingStatus) -> bool:
        """Check if booking can transition to the new status."""
        current = BookingStatus(self.status)

        allowed_transitions = {
            BookingStatus.CONFIRMED: [BookingStatus.CANCELLED],
            BookingStatus.CANCELLED: [],  # Final state
        }

        return new_status in allowed_transitions.get(current, [])

    def transition_to(self, new_status: BookingStatus) -> None:
        if not self.can_transition_to(new_status):
            raise PreconditionViolationError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Cannot transition booking from {self.status} to {new_status.value}",
            )
        self.status = new_status.value

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value

    def __repr__(self):
        return (
            f"<Booking(id={self.id}, user_id={self.user_id}, "
            f"slot_id={self.slot_id}, status='{self.status}')>"
        )
