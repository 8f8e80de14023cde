"""Transactional primitives over slot and booking rows.

The ledger is the only code that knows how the storage engine reports
conflicts. Callers receive a :class:`StorageConflict` carrying a named
:class:`ConflictKind` instead of driver exceptions or SQLSTATE codes.
"""

import enum
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import joinedload
from sqlalchemy.orm.exc import StaleDataError

from slot_booking.core.exceptions import ConflictError, ErrorCode, NotFoundError
from slot_booking.models.booking import (
    UQ_BOOKING_ACTIVE_SLOT,
    UQ_BOOKING_USER_SLOT,
    Booking,
    BookingStatus,
)
from slot_booking.models.slot import CK_SLOT_HOLDER, UQ_SLOT_WINDOW, Slot
from slot_booking.schemas.slot import SlotWindow

logger = structlog.get_logger(__name__)


class ConflictKind(str, enum.Enum):
    WRITE_CONFLICT = "write_conflict"
    DUPLICATE_BOOKING = "duplicate_booking"
    DUPLICATE_SLOT = "duplicate_slot"
    HOLDER_MISSING = "holder_missing"
    UNAVAILABLE = "unavailable"


class StorageConflict(Exception):
    """Classified storage failure raised out of a ledger transaction."""

    def __init__(
        self,
        kind: ConflictKind,
        message: str = "",
        constraint: Optional[str] = None,
    ):
        self.kind = kind
        self.constraint = constraint
        super().__init__(message or kind.value)

    @property
    def retryable(self) -> bool:
        return self.kind is ConflictKind.WRITE_CONFLICT


# Constraint name -> (kind, fragment SQLite puts in its error message)
_CONSTRAINT_KINDS = {
    UQ_BOOKING_USER_SLOT: (
        ConflictKind.DUPLICATE_BOOKING,
        "bookings.user_id, bookings.slot_id",
    ),
    UQ_BOOKING_ACTIVE_SLOT: (ConflictKind.WRITE_CONFLICT, "bookings.slot_id"),
    UQ_SLOT_WINDOW: (
        ConflictKind.DUPLICATE_SLOT,
        "slots.start_time, slots.end_time",
    ),
    CK_SLOT_HOLDER: (ConflictKind.HOLDER_MISSING, CK_SLOT_HOLDER),
}

# serialization_failure, deadlock_detected, lock_not_available
_WRITE_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}


def _driver_errors(exc: DBAPIError) -> list:
    orig = exc.orig
    return [e for e in (orig, getattr(orig, "__cause__", None)) if e is not None]


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    for error in _driver_errors(exc):
        code = getattr(error, "sqlstate", None) or getattr(error, "pgcode", None)
        if code:
            return code
    return None


def _violated_constraint(exc: DBAPIError) -> Optional[str]:
    for error in _driver_errors(exc):
        name = getattr(error, "constraint_name", None)
        if name:
            return name

    message = str(exc.orig)
    for name, (_, fragment) in _CONSTRAINT_KINDS.items():
        if name in message or fragment in message:
            return name
    return None


def classify_storage_error(exc: BaseException) -> StorageConflict:
    """Translate a SQLAlchemy/driver failure into a named conflict."""
    if isinstance(exc, StaleDataError):
        return StorageConflict(ConflictKind.WRITE_CONFLICT, str(exc))

    if isinstance(exc, IntegrityError):
        constraint = _violated_constraint(exc)
        if constraint in _CONSTRAINT_KINDS:
            kind, _ = _CONSTRAINT_KINDS[constraint]
            return StorageConflict(kind, str(exc.orig), constraint=constraint)
        return StorageConflict(ConflictKind.UNAVAILABLE, str(exc.orig))

    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return StorageConflict(ConflictKind.UNAVAILABLE, str(exc.orig))
        if _sqlstate(exc) in _WRITE_CONFLICT_SQLSTATES:
            return StorageConflict(ConflictKind.WRITE_CONFLICT, str(exc.orig))
        if isinstance(exc, OperationalError) and "database is locked" in str(
            exc.orig
        ):
            return StorageConflict(ConflictKind.WRITE_CONFLICT, str(exc.orig))
        return StorageConflict(ConflictKind.UNAVAILABLE, str(exc.orig))

    if isinstance(exc, DisconnectionError):
        return StorageConflict(ConflictKind.UNAVAILABLE, str(exc))

    return StorageConflict(ConflictKind.UNAVAILABLE, str(exc))


@asynccontextmanager
async def ledger_transaction(
    session_factory: async_sessionmaker,
) -> AsyncIterator["SlotLedger"]:
    """Open a fresh session and transaction, yielding a ledger bound to it.

    Commits on normal exit and rolls back on error. Storage failures raised
    anywhere inside the block, including at commit, leave as
    :class:`StorageConflict`. Other SQLAlchemy errors are programming
    errors and propagate unchanged.
    """
    try:
        async with session_factory() as session:
            async with session.begin():
                yield SlotLedger(session)
    except (DBAPIError, StaleDataError, DisconnectionError, OSError) as exc:
        conflict = classify_storage_error(exc)
        logger.debug(
            "Ledger transaction failed",
            kind=conflict.kind.value,
            constraint=conflict.constraint,
            error=str(exc),
        )
        raise conflict from exc


class SlotLedger:
    """Read-modify-write operations on slots and bookings.

    A ledger is bound to a session whose transaction is owned by the caller.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_active_booking(self, slot_id: UUID) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(
                and_(
                    Booking.slot_id == slot_id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                )
            )
        )
        return result.scalars().first()

    async def get_slot(self, slot_id: UUID) -> Optional[Slot]:
        result = await self.db.execute(select(Slot).where(Slot.id == slot_id))
        return result.scalar_one_or_none()

    async def claim(self, slot: Slot, user_id: UUID) -> Booking:
        """Write the booking and flip the slot in one flush."""
        slot.mark_booked(user_id)
        booking = Booking(
            user_id=user_id,
            slot_id=slot.id,
            status=BookingStatus.CONFIRMED.value,
        )
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def find_confirmed_booking(
        self, booking_id: UUID, user_id: UUID
    ) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(
                and_(
                    Booking.id == booking_id,
                    Booking.user_id == user_id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                )
            )
        )
        return result.scalar_one_or_none()

    async def release(self, booking: Booking) -> Booking:
        """Cancel the booking and free its slot if the slot still exists."""
        booking.transition_to(BookingStatus.CANCELLED)

        slot = await self.get_slot(booking.slot_id) if booking.slot_id else None
        if slot is not None:
            slot.mark_available()
        else:
            logger.warning(
                "Released booking references a missing slot",
                booking_id=str(booking.id),
                slot_id=str(booking.slot_id),
            )

        await self.db.flush()
        return booking

    async def list_available_slots(
        self, start: datetime, end: datetime, inclusive_end: bool = True
    ) -> list[Slot]:
        upper = Slot.start_time <= end if inclusive_end else Slot.start_time < end
        result = await self.db.execute(
            select(Slot)
            .where(and_(Slot.booked.is_(False), Slot.start_time >= start, upper))
            .order_by(Slot.start_time.asc())
        )
        return list(result.scalars().all())

    async def add_slots(self, windows: Iterable[SlotWindow]) -> list[Slot]:
        slots = [
            Slot(start_time=w.start_time, end_time=w.end_time, booked=False)
            for w in windows
        ]
        self.db.add_all(slots)
        await self.db.flush()
        return slots

    async def delete_slot(self, slot_id: UUID) -> None:
        slot = await self.get_slot(slot_id)
        if slot is None:
            raise NotFoundError(ErrorCode.SLOT_NOT_FOUND)
        if slot.booked:
            raise ConflictError(ErrorCode.SLOT_ALREADY_BOOKED)

        await self.db.delete(slot)
        await self.db.flush()

    async def list_bookings(self, user_id: Optional[UUID] = None) -> list[Booking]:
        query = select(Booking).options(
            joinedload(Booking.slot), joinedload(Booking.user)
        )
        if user_id:
            query = query.where(Booking.user_id == user_id)
        query = query.order_by(Booking.created_at.desc())

        result = await self.db.execute(query)
        return list(result.unique().scalars().all())
