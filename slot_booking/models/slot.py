import uuid
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import relationship

from slot_booking.core.database import Base
from slot_booking.core.exceptions import ErrorCode, PreconditionViolationError
from slot_booking.models.user import utcnow

UQ_SLOT_WINDOW = "uq_slots_start_end"
CK_SLOT_HOLDER = "ck_slots_holder_matches_booked"


class Slot(Base):
    """Bookable time window.

    ``holder_id`` is set if and only if ``booked`` is true. Every UPDATE is
    conditional on ``version`` so two transactions that read the same row
    cannot both write it.
    """

    __tablename__ = "slots"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)

    # Reservation state
    booked = Column(Boolean, nullable=False, default=False, index=True)
    holder_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    version = Column(Integer, nullable=False)

    # Audit timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("start_time", "end_time", name=UQ_SLOT_WINDOW),
        CheckConstraint("end_time > start_time", name="ck_slots_end_after_start"),
        CheckConstraint(
            "(booked AND holder_id IS NOT NULL) "
            "OR (NOT booked AND holder_id IS NULL)",
            name=CK_SLOT_HOLDER,
        ),
    )

    __mapper_args__ = {"version_id_col": version}

    holder = relationship("User")

    def mark_booked(self, holder_id: Optional[uuid.UUID]) -> None:
        """Flag the slot as booked by ``holder_id``."""
        if not holder_id:
            raise PreconditionViolationError(ErrorCode.HOLDER_REQUIRED)
        self.booked = True
        self.holder_id = holder_id

    def mark_available(self) -> None:
        self.booked = False
        self.holder_id = None

    def check_holder_consistency(self) -> None:
        if self.booked and not self.holder_id:
            raise PreconditionViolationError(ErrorCode.HOLDER_REQUIRED)
        if not self.booked and self.holder_id:
            raise PreconditionViolationError(
                ErrorCode.HOLDER_REQUIRED, "Available slot cannot have a holder"
            )

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def __repr__(self):
        return (
            f"<Slot(id={self.id}, start='{self.start_time}', "
            f"end='{self.end_time}', booked={self.booked})>"
        )


@event.listens_for(Slot, "before_insert")
@event.listens_for(Slot, "before_update")
def _validate_holder_before_write(mapper, connection, target: Slot) -> None:
    target.check_holder_consistency()
