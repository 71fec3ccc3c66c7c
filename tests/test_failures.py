import asyncio

import pytest

from conftest import open_slot, student
from database import build_engine
from errors import ActiveBookingError, ErrorKind, StoreUnavailableError
from ledger import (
    ACTIVE_BOOKING_EXISTS, BOOKED, GENERIC_FAILURE, PARTIAL_BOOKING, SLOT_CHANGED, SLOT_UNAVAILABLE, BookingLedger,
)
from schemas import StudentData
from sql_store import SQLStore
from store import MemoryStore


class SlowStore(MemoryStore):
    async def list_slots(self, teacher, **filters):
        await asyncio.sleep(1)
        return await super().list_slots(teacher, **filters)


class DownStore(MemoryStore):
    async def get_slot(self, slot_id):
        raise StoreUnavailableError("De database is niet bereikbaar.")


class BrokenStore(MemoryStore):
    async def find_slot(self, on_date, at_time, teacher):
        raise RuntimeError("driver exploded")


class ClaimFailsStore(MemoryStore):
    async def claim_slot(self, slot_id, student_number, on_commit=None):
        raise StoreUnavailableError("connection reset")


class SlowClaimStore(MemoryStore):
    async def claim_slot(self, slot_id, student_number, on_commit=None):
        await asyncio.sleep(1)
        return await super().claim_slot(slot_id, student_number, on_commit)


class SlowAfterStudentSavedStore(MemoryStore):
    """Commits the student, then stalls before returning."""

    async def upsert_student(self, data, on_commit=None):
        saved = await super().upsert_student(data, on_commit)
        await asyncio.sleep(1)
        return saved


class SlowAfterClaimStore(MemoryStore):
    """Commits the claim, then stalls while re-reading the slot."""

    async def claim_slot(self, slot_id, student_number, on_commit=None):
        booked = await super().claim_slot(slot_id, student_number, on_commit)
        await asyncio.sleep(1)
        return booked


class RereadFailsStore(MemoryStore):
    """Commits the claim, then loses the connection while re-reading the slot."""

    async def claim_slot(self, slot_id, student_number, on_commit=None):
        await super().claim_slot(slot_id, student_number, on_commit)
        raise StoreUnavailableError("connection reset")


class RacingBookingStore(MemoryStore):
    """Lets another student take the slot right after the ledger looked at it."""

    async def get_slot(self, slot_id):
        seen = await super().get_slot(slot_id)
        await super().claim_slot(slot_id, "77777")
        return seen


class RacingToggleStore(MemoryStore):
    """Hides existing slots from the lookup, as if another request created it in between."""

    async def find_slot(self, on_date, at_time, teacher):
        return None


async def test_timeout_is_reported():
    ledger = BookingLedger(SlowStore(), timeout=0.01)
    result = await ledger.list_available_slots("Daemen")
    assert not result.success
    assert result.kind == ErrorKind.TIMEOUT


async def test_per_call_timeout_overrides_default():
    ledger = BookingLedger(SlowStore(), timeout=5)
    result = await ledger.list_slots_for_date("2024-03-10", "Daemen", timeout=0.01)
    assert result.kind == ErrorKind.TIMEOUT


async def test_unreachable_store_is_reported():
    ledger = BookingLedger(DownStore())
    result = await ledger.delete_slot(1)
    assert result.kind == ErrorKind.UNAVAILABLE


async def test_unreachable_database_is_reported():
    engine = build_engine("sqlite+aiosqlite:////nonexistent-dir/booking.db")
    ledger = BookingLedger(SQLStore(engine))
    result = await ledger.list_available_slots("Daemen")
    assert result.kind == ErrorKind.UNAVAILABLE
    await engine.dispose()


async def test_unexpected_errors_become_generic_failure():
    ledger = BookingLedger(BrokenStore())
    result = await ledger.toggle_or_create_slot("2024-03-10", "10:00", "Daemen")
    assert not result.success
    assert result.kind == ErrorKind.CONFLICT
    assert result.message == GENERIC_FAILURE


async def test_claim_failure_after_student_saved_is_partial():
    store = ClaimFailsStore()
    ledger = BookingLedger(store)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert result.message == PARTIAL_BOOKING
    assert "12345" in await store.get_students(["12345"])
    assert (await store.get_slot(slot.id)).available is True


async def test_claim_timeout_after_student_saved_is_partial():
    ledger = BookingLedger(SlowClaimStore(), timeout=0.05)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.kind == ErrorKind.PARTIAL_FAILURE


async def test_timeout_right_after_student_commit_is_partial():
    store = SlowAfterStudentSavedStore()
    ledger = BookingLedger(store, timeout=0.05)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.kind == ErrorKind.PARTIAL_FAILURE
    assert result.message == PARTIAL_BOOKING
    assert "12345" in await store.get_students(["12345"])
    assert (await store.get_slot(slot.id)).available is True


async def test_timeout_after_claim_commit_reports_booking():
    store = SlowAfterClaimStore()
    ledger = BookingLedger(store, timeout=0.05)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.success
    assert result.message == BOOKED
    assert result.data.id == slot.id
    assert result.data.student_number == "12345"
    assert result.data.available is False
    assert (await store.get_slot(slot.id)).student_number == "12345"


async def test_failed_reread_after_claim_commit_reports_booking():
    store = RereadFailsStore()
    ledger = BookingLedger(store)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.success
    assert result.data.student_number == "12345"


async def test_slot_taken_between_check_and_write():
    store = RacingBookingStore()
    ledger = BookingLedger(store)
    slot = await open_slot(ledger)

    result = await ledger.book_slot(slot.id, student())
    assert result.kind == ErrorKind.CONFLICT
    assert result.message == SLOT_UNAVAILABLE
    assert (await store.get_slot(slot.id)).student_number == "77777"


async def test_slot_created_between_lookup_and_insert():
    store = RacingToggleStore()
    ledger = BookingLedger(store)
    first = await ledger.toggle_or_create_slot("2024-03-10", "10:00", "Daemen")
    assert first.success

    second = await ledger.toggle_or_create_slot("2024-03-10", "10:00", "Daemen")
    assert second.kind == ErrorKind.CONFLICT
    assert second.message == SLOT_CHANGED
    assert len(await store.list_slots(first.data.teacher)) == 1


async def test_concurrent_bookings_of_one_slot_only_one_wins():
    ledger = BookingLedger(MemoryStore())
    slot = await open_slot(ledger)

    results = await asyncio.gather(*[
        ledger.book_slot(slot.id, student(student_number=f"1000{i}")) for i in range(5)
    ])
    assert sum(r.success for r in results) == 1
    assert all(r.kind == ErrorKind.CONFLICT for r in results if not r.success)


async def test_conditional_writes_refuse_stale_preconditions(store):
    ledger = BookingLedger(store)
    slot = await open_slot(ledger)

    assert await store.set_availability(slot.id, expected=False) is None
    assert await store.claim_slot(slot.id, "12345") is not None
    assert await store.claim_slot(slot.id, "54321") is None
    assert await store.set_availability(slot.id, expected=False) is None
    assert await store.delete_unbooked(slot.id) is False


async def test_upsert_keeps_one_student_per_number(store):
    await store.upsert_student(StudentData.model_validate(student()))
    updated = await store.upsert_student(StudentData.model_validate(student(name="Sanne Bakker")))

    students = await store.get_students(["12345", "00000"])
    assert list(students) == ["12345"]
    assert students["12345"].id == updated.id
    assert students["12345"].name == "Sanne Bakker"


@pytest.fixture()
async def file_store(tmp_path):
    # pooled connections to one file, so concurrent sessions really overlap
    store = SQLStore(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}"))
    await store.create_schema()
    yield store
    await store.close()


async def _book_twice_at_once(store):
    ledger = BookingLedger(store)
    first = await open_slot(ledger, at_time="10:00")
    second = await open_slot(ledger, at_time="10:30", teacher="Martina")

    results = await asyncio.gather(
        ledger.book_slot(first.id, student()),
        ledger.book_slot(second.id, student()),
    )
    assert sum(r.success for r in results) == 1
    refused = [r for r in results if not r.success][0]
    assert refused.kind == ErrorKind.CONFLICT
    assert refused.message == ACTIVE_BOOKING_EXISTS
    assert len(await store.active_bookings("12345")) == 1


async def test_concurrent_bookings_by_one_student_keep_one_active_in_database(file_store):
    await _book_twice_at_once(file_store)


async def test_concurrent_bookings_by_one_student_keep_one_active_in_memory():
    await _book_twice_at_once(MemoryStore())


async def test_store_refuses_second_active_booking(store):
    ledger = BookingLedger(store)
    first = await open_slot(ledger, at_time="10:00")
    second = await open_slot(ledger, at_time="10:30")

    assert await store.claim_slot(first.id, "12345") is not None
    with pytest.raises(ActiveBookingError):
        await store.claim_slot(second.id, "12345")
    assert (await store.get_slot(second.id)).available is True
