import asyncio
from typing import Awaitable, Callable, Iterable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from slot_booking.core.config import settings
from slot_booking.core.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    PreconditionViolationError,
    ReservationError,
    TransientError,
)
from slot_booking.models.booking import Booking
from slot_booking.models.slot import Slot
from slot_booking.schemas.slot import AvailableSlotQuery, SlotWindow
from slot_booking.services.ledger import (
    ConflictKind,
    StorageConflict,
    ledger_transaction,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _is_write_conflict(exc: BaseException) -> bool:
    return isinstance(exc, StorageConflict) and exc.retryable


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "Transient write conflict, backing off",
        attempt=retry_state.attempt_number,
        sleep_seconds=getattr(retry_state.next_action, "sleep", None),
        kind=getattr(getattr(exc, "kind", None), "value", None),
    )


def surface_conflict(conflict: StorageConflict) -> ReservationError:
    """Map a classified storage failure onto the outcome taxonomy."""
    if conflict.kind is ConflictKind.DUPLICATE_BOOKING:
        return ConflictError(ErrorCode.SLOT_ALREADY_BOOKED)
    if conflict.kind is ConflictKind.DUPLICATE_SLOT:
        return ConflictError(ErrorCode.SLOT_ALREADY_EXISTS)
    if conflict.kind is ConflictKind.HOLDER_MISSING:
        return PreconditionViolationError(ErrorCode.HOLDER_REQUIRED)
    if conflict.kind is ConflictKind.WRITE_CONFLICT:
        return TransientError(ErrorCode.WRITE_CONFLICT)
    return TransientError(ErrorCode.STORAGE_UNAVAILABLE)


class ReservationCoordinator:
    """Claims and releases slots.

    Each attempt runs in its own transaction. Attempts that lose a
    concurrent write are retried with exponential backoff, up to
    ``max_attempts``, and the whole operation is bounded by ``timeout``.
    Business outcomes (already booked, not found) are never retried.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = (
            settings.CLAIM_MAX_ATTEMPTS if max_attempts is None else max_attempts
        )
        self.backoff_base = (
            settings.CLAIM_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        )
        self.timeout = settings.CLAIM_TIMEOUT_SECONDS if timeout is None else timeout

    async def claim(
        self, slot_id: UUID, user_id: UUID, timeout: Optional[float] = None
    ) -> Booking:
        """Atomically book ``slot_id`` for ``user_id``."""
        log = logger.bind(slot_id=str(slot_id), user_id=str(user_id))

        booking = await self._run(
            "claim", lambda: self._claim_once(slot_id, user_id), log, timeout
        )

        log.info("Slot claimed", booking_id=str(booking.id))
        return booking

    async def release(
        self, booking_id: UUID, user_id: UUID, timeout: Optional[float] = None
    ) -> Booking:
        """Cancel a confirmed booking owned by ``user_id`` and free its slot."""
        log = logger.bind(booking_id=str(booking_id), user_id=str(user_id))

        booking = await self._run(
            "release", lambda: self._release_once(booking_id, user_id), log, timeout
        )

        log.info("Booking released", slot_id=str(booking.slot_id))
        return booking

    async def delete_slot(self, slot_id: UUID) -> None:
        """Admin removal of a slot that is not booked."""

        async def _delete_once() -> None:
            async with ledger_transaction(self.session_factory) as ledger:
                await ledger.delete_slot(slot_id)

        await self._run(
            "delete_slot", _delete_once, logger.bind(slot_id=str(slot_id)), None
        )

    async def list_available_slots(self, query: AvailableSlotQuery) -> list[Slot]:
        """Unbooked slots starting inside the window, earliest first.

        Not serialized against claims; a listed slot may be taken before the
        caller tries to claim it.
        """
        try:
            async with ledger_transaction(self.session_factory) as ledger:
                return await ledger.list_available_slots(
                    query.start, query.end, inclusive_end=query.inclusive_end
                )
        except StorageConflict as exc:
            raise surface_conflict(exc) from exc

    async def list_bookings(self, user_id: Optional[UUID] = None) -> list[Booking]:
        try:
            async with ledger_transaction(self.session_factory) as ledger:
                return await ledger.list_bookings(user_id)
        except StorageConflict as exc:
            raise surface_conflict(exc) from exc

    async def add_slots(self, windows: Iterable[SlotWindow]) -> list[Slot]:
        try:
            async with ledger_transaction(self.session_factory) as ledger:
                return await ledger.add_slots(windows)
        except StorageConflict as exc:
            raise surface_conflict(exc) from exc

    async def _claim_once(self, slot_id: UUID, user_id: UUID) -> Booking:
        async with ledger_transaction(self.session_factory) as ledger:
            if await ledger.find_active_booking(slot_id) is not None:
                raise ConflictError(ErrorCode.SLOT_ALREADY_BOOKED)

            slot = await ledger.get_slot(slot_id)
            if slot is None:
                raise NotFoundError(ErrorCode.SLOT_NOT_FOUND)
            if slot.booked:
                raise ConflictError(ErrorCode.SLOT_ALREADY_BOOKED)

            booking = await ledger.claim(slot, user_id)
        return booking

    async def _release_once(self, booking_id: UUID, user_id: UUID) -> Booking:
        async with ledger_transaction(self.session_factory) as ledger:
            booking = await ledger.find_confirmed_booking(booking_id, user_id)
            if booking is None:
                raise NotFoundError(ErrorCode.BOOKING_NOT_FOUND)

            await ledger.release(booking)
        return booking

    async def _run(
        self,
        operation: str,
        attempt_fn: Callable[[], Awaitable[T]],
        log,
        timeout: Optional[float],
    ) -> T:
        timeout = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                self._with_retries(operation, attempt_fn, log), timeout
            )
        except asyncio.TimeoutError:
            log.warning(
                "Reservation deadline exceeded",
                operation=operation,
                timeout_seconds=timeout,
            )
            raise TransientError(ErrorCode.TIMEOUT)

    async def _with_retries(
        self, operation: str, attempt_fn: Callable[[], Awaitable[T]], log
    ) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base),
            retry=retry_if_exception(_is_write_conflict),
            before_sleep=_log_before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await attempt_fn()
        except StorageConflict as exc:
            surfaced = surface_conflict(exc)
            if exc.retryable:
                log.warning(
                    "Write conflict retries exhausted",
                    operation=operation,
                    attempts=self.max_attempts,
                )
            elif isinstance(surfaced, ConflictError):
                log.info(
                    "Reservation rejected by ledger constraint",
                    operation=operation,
                    constraint=exc.constraint,
                )
            else:
                log.error(
                    "Storage failure during reservation",
                    operation=operation,
                    kind=exc.kind.value,
                    constraint=exc.constraint,
                    code=surfaced.code.value,
                )
            raise surfaced from exc
