import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship

from slot_booking.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(enum.Enum):
    PATIENT = "patient"
    ADMIN = "admin"


class User(Base):
    """Identity that owns bookings. Credentials live outside this service."""

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    role = Column(String(20), nullable=False, default=UserRole.PATIENT.value)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    bookings = relationship("Booking", back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
