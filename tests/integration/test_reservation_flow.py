import asyncio
import uuid

import pytest
from sqlalchemy import update

from slot_booking.core.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    PreconditionViolationError,
    TransientError,
)
from slot_booking.models.booking import BookingStatus
from slot_booking.models.slot import CK_SLOT_HOLDER, Slot
from slot_booking.schemas.slot import AvailableSlotQuery, SlotWindow
from slot_booking.services.ledger import (
    ConflictKind,
    StorageConflict,
    ledger_transaction,
)
from slot_booking.services.reservation import surface_conflict
from tests.fixtures.reservation_fixtures import fetch_bookings, fetch_slot, slot_time


async def _assert_ledger_consistent(session_factory, slots):
    """booked is true exactly when a confirmed booking references the slot."""
    confirmed = await fetch_bookings(session_factory, status=BookingStatus.CONFIRMED)
    confirmed_by_slot = {}
    for booking in confirmed:
        assert booking.slot_id not in confirmed_by_slot
        confirmed_by_slot[booking.slot_id] = booking

    for slot in slots:
        stored = await fetch_slot(session_factory, slot.id)
        booking = confirmed_by_slot.get(slot.id)
        assert stored.booked == (booking is not None)
        assert stored.holder_id == (booking.user_id if booking else None)


@pytest.mark.integration
class TestClaim:
    """Claim scenarios against a real database."""

    @pytest.mark.asyncio
    async def test_claim_happy_path(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)

        assert booking.slot_id == morning_slot.id
        assert booking.user_id == patient_a.id
        assert booking.status == BookingStatus.CONFIRMED.value

        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.booked is True
        assert slot.holder_id == patient_a.id

    @pytest.mark.asyncio
    async def test_claim_unknown_slot(self, coordinator, patient_a):
        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.claim(uuid.uuid4(), patient_a.id)

        assert exc_info.value.code == ErrorCode.SLOT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_claim_already_booked_slot(
        self, coordinator, session_factory, morning_slot, patient_a, patient_b
    ):
        await coordinator.claim(morning_slot.id, patient_a.id)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.claim(morning_slot.id, patient_b.id)

        assert exc_info.value.code == ErrorCode.SLOT_ALREADY_BOOKED
        bookings = await fetch_bookings(session_factory, slot_id=morning_slot.id)
        assert len(bookings) == 1

    @pytest.mark.asyncio
    async def test_two_concurrent_claims_one_winner(
        self, coordinator, session_factory, morning_slot, patient_a, patient_b
    ):
        results = await asyncio.gather(
            coordinator.claim(morning_slot.id, patient_a.id),
            coordinator.claim(morning_slot.id, patient_b.id),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConflictError)
        assert losers[0].code == ErrorCode.SLOT_ALREADY_BOOKED

        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.holder_id == winners[0].user_id

    @pytest.mark.asyncio
    async def test_many_concurrent_claims_mutual_exclusion(
        self, coordinator, session_factory, morning_slot, patients
    ):
        results = await asyncio.gather(
            *(coordinator.claim(morning_slot.id, p.id) for p in patients),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == len(patients) - 1
        assert all(isinstance(e, (ConflictError, TransientError)) for e in losers)

        confirmed = await fetch_bookings(
            session_factory, slot_id=morning_slot.id, status=BookingStatus.CONFIRMED
        )
        assert len(confirmed) == 1
        await _assert_ledger_consistent(session_factory, [morning_slot])

    @pytest.mark.asyncio
    async def test_same_user_racing_gets_single_booking(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        results = await asyncio.gather(
            *(coordinator.claim(morning_slot.id, patient_a.id) for _ in range(3)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        bookings = await fetch_bookings(session_factory, slot_id=morning_slot.id)
        assert len(bookings) == 1


@pytest.mark.integration
class TestRelease:
    """Release scenarios against a real database."""

    @pytest.mark.asyncio
    async def test_release_frees_slot(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)

        released = await coordinator.release(booking.id, patient_a.id)

        assert released.id == booking.id
        assert released.status == BookingStatus.CANCELLED.value
        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.booked is False
        assert slot.holder_id is None

    @pytest.mark.asyncio
    async def test_double_release_fails_second_time(
        self, coordinator, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)
        await coordinator.release(booking.id, patient_a.id)

        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.release(booking.id, patient_a.id)

        assert exc_info.value.code == ErrorCode.BOOKING_NOT_FOUND

    @pytest.mark.asyncio
    async def test_release_by_other_user_not_found(
        self, coordinator, session_factory, morning_slot, patient_a, patient_b
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)

        with pytest.raises(NotFoundError):
            await coordinator.release(booking.id, patient_b.id)

        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.booked is True

    @pytest.mark.asyncio
    async def test_release_unknown_booking(self, coordinator, patient_a):
        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.release(uuid.uuid4(), patient_a.id)

        assert exc_info.value.code == ErrorCode.BOOKING_NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_then_reclaim_by_other_user(
        self, coordinator, session_factory, morning_slot, patient_a, patient_b
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)
        await coordinator.release(booking.id, patient_a.id)

        rebooked = await coordinator.claim(morning_slot.id, patient_b.id)

        assert rebooked.user_id == patient_b.id
        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.booked is True
        assert slot.holder_id == patient_b.id

    @pytest.mark.asyncio
    async def test_reclaim_by_same_user_rejected_by_unique_pair(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)
        await coordinator.release(booking.id, patient_a.id)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.claim(morning_slot.id, patient_a.id)

        assert exc_info.value.code == ErrorCode.SLOT_ALREADY_BOOKED
        slot = await fetch_slot(session_factory, morning_slot.id)
        assert slot.booked is False

    @pytest.mark.asyncio
    async def test_concurrent_release_succeeds_once(
        self, coordinator, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)

        results = await asyncio.gather(
            coordinator.release(booking.id, patient_a.id),
            coordinator.release(booking.id, patient_a.id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        failures = [r for r in results if isinstance(r, Exception)]
        assert isinstance(failures[0], (NotFoundError, TransientError))

    @pytest.mark.asyncio
    async def test_release_tolerates_deleted_slot(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        booking = await coordinator.claim(morning_slot.id, patient_a.id)

        async with ledger_transaction(session_factory) as ledger:
            slot = await ledger.get_slot(morning_slot.id)
            await ledger.db.delete(slot)

        released = await coordinator.release(booking.id, patient_a.id)

        assert released.status == BookingStatus.CANCELLED.value


@pytest.mark.integration
class TestLedgerInvariants:
    """Invariant preservation across operation sequences."""

    @pytest.mark.asyncio
    async def test_booked_without_holder_rejected_before_write(
        self, session_factory, morning_slot
    ):
        with pytest.raises(PreconditionViolationError) as exc_info:
            async with ledger_transaction(session_factory) as ledger:
                slot = await ledger.get_slot(morning_slot.id)
                slot.booked = True
                await ledger.db.flush()

        assert exc_info.value.code == ErrorCode.HOLDER_REQUIRED
        stored = await fetch_slot(session_factory, morning_slot.id)
        assert stored.booked is False
        assert stored.holder_id is None

    @pytest.mark.asyncio
    async def test_booked_without_holder_rejected_by_storage(
        self, session_factory, morning_slot
    ):
        """A bulk UPDATE skips mapper hooks; the CHECK constraint still holds."""
        with pytest.raises(StorageConflict) as exc_info:
            async with ledger_transaction(session_factory) as ledger:
                await ledger.db.execute(
                    update(Slot)
                    .where(Slot.id == morning_slot.id)
                    .values(booked=True)
                )

        assert exc_info.value.kind is ConflictKind.HOLDER_MISSING
        assert exc_info.value.constraint == CK_SLOT_HOLDER
        error = surface_conflict(exc_info.value)
        assert isinstance(error, PreconditionViolationError)
        assert error.code == ErrorCode.HOLDER_REQUIRED

        stored = await fetch_slot(session_factory, morning_slot.id)
        assert stored.booked is False

    @pytest.mark.asyncio
    async def test_sequence_keeps_flag_and_bookings_in_sync(
        self, coordinator, session_factory, day_slots, patient_a, patient_b
    ):
        first = await coordinator.claim(day_slots[0].id, patient_a.id)
        await coordinator.claim(day_slots[1].id, patient_b.id)
        await coordinator.claim(day_slots[2].id, patient_a.id)
        await coordinator.release(first.id, patient_a.id)
        await coordinator.claim(day_slots[0].id, patient_b.id)
        with pytest.raises(ConflictError):
            await coordinator.claim(day_slots[1].id, patient_a.id)

        await _assert_ledger_consistent(session_factory, day_slots)


@pytest.mark.integration
class TestSlotInventory:
    """Listing, bulk insertion and admin deletion."""

    @pytest.mark.asyncio
    async def test_list_available_ordered_and_filtered(
        self, coordinator, day_slots, patient_a
    ):
        await coordinator.claim(day_slots[1].id, patient_a.id)

        slots = await coordinator.list_available_slots(
            AvailableSlotQuery(start=slot_time(9), end=slot_time(11))
        )

        ids = [s.id for s in slots]
        assert ids == [day_slots[0].id, day_slots[2].id, day_slots[3].id, day_slots[4].id]

    @pytest.mark.asyncio
    async def test_list_available_half_open_range(self, coordinator, day_slots):
        slots = await coordinator.list_available_slots(
            AvailableSlotQuery(start=slot_time(9), end=slot_time(11), inclusive_end=False)
        )

        assert [s.id for s in slots] == [s.id for s in day_slots[:4]]

    @pytest.mark.asyncio
    async def test_add_slots_rejects_duplicate_window(self, coordinator, morning_slot):
        with pytest.raises(ConflictError) as exc_info:
            await coordinator.add_slots(
                [SlotWindow(start_time=slot_time(9), end_time=slot_time(9, 30))]
            )

        assert exc_info.value.code == ErrorCode.SLOT_ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_add_slots_inserts_unbooked(self, coordinator, session_factory):
        created = await coordinator.add_slots(
            [
                SlotWindow(start_time=slot_time(14), end_time=slot_time(14, 30)),
                SlotWindow(start_time=slot_time(14, 30), end_time=slot_time(15)),
            ]
        )

        assert len(created) == 2
        for slot in created:
            stored = await fetch_slot(session_factory, slot.id)
            assert stored.booked is False
            assert stored.holder_id is None

    @pytest.mark.asyncio
    async def test_delete_unbooked_slot(self, coordinator, session_factory, morning_slot):
        await coordinator.delete_slot(morning_slot.id)

        assert await fetch_slot(session_factory, morning_slot.id) is None

    @pytest.mark.asyncio
    async def test_delete_booked_slot_refused(
        self, coordinator, session_factory, morning_slot, patient_a
    ):
        await coordinator.claim(morning_slot.id, patient_a.id)

        with pytest.raises(ConflictError) as exc_info:
            await coordinator.delete_slot(morning_slot.id)

        assert exc_info.value.code == ErrorCode.SLOT_ALREADY_BOOKED
        assert await fetch_slot(session_factory, morning_slot.id) is not None

    @pytest.mark.asyncio
    async def test_delete_missing_slot(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.delete_slot(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_bookings_for_user(
        self, coordinator, day_slots, patient_a, patient_b
    ):
        await coordinator.claim(day_slots[0].id, patient_a.id)
        await coordinator.claim(day_slots[1].id, patient_b.id)
        await coordinator.claim(day_slots[2].id, patient_a.id)

        mine = await coordinator.list_bookings(patient_a.id)
        everyone = await coordinator.list_bookings()

        assert {b.slot_id for b in mine} == {day_slots[0].id, day_slots[2].id}
        assert len(everyone) == 3
        assert all(b.slot is not None for b in mine)
