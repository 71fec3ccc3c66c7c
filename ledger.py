import asyncio
import logging
from datetime import date as dt_date, time as dt_time
from typing import List, Mapping, Optional, Union

from pydantic import TypeAdapter, ValidationError

from calendar_export import build_ics
from config import DAY_END_HOUR, DAY_START_HOUR, SLOT_MINUTES
from errors import (
    ActiveBookingError, ConflictError, DuplicateSlotError, ErrorKind, InvalidArgumentError, LedgerError,
    NotFoundError, PartialFailureError,
)
from models import Appointment, SlotRead, Teacher
from schemas import AppointmentUpdate, GridCell, OperationResult, SlotKey, StudentData
from store import SlotStore

logger = logging.getLogger(__name__)

# User-facing messages, shown verbatim by the front end
BOOKED = "Afspraak succesvol ingepland!"
ACTIVE_BOOKING_EXISTS = "Je hebt al een gepland gesprek. Wacht tot dit is afgerond."
SLOT_UNAVAILABLE = "Dit tijdslot is niet (meer) beschikbaar."
SLOT_CREATED = "Tijdslot aangemaakt en geopend."
SLOT_BOOKED_LOCKED = "Kan een geboekt tijdslot niet wijzigen."
SLOT_BOOKED_UNDELETABLE = "Kan een geboekt tijdslot niet verwijderen."
SLOT_CHANGED = "Het tijdslot is intussen gewijzigd. Vernieuw de pagina en probeer het opnieuw."
SLOT_DELETED = "Tijdslot succesvol verwijderd."
SLOT_NOT_FOUND = "Tijdslot niet gevonden."
APPOINTMENT_UPDATED = "Afspraak bijgewerkt."
APPOINTMENT_NOT_FOUND = "Afspraak niet gevonden."
STUDENT_HAS_OTHER_BOOKING = "Deze leerling heeft al een andere geplande afspraak."
NOT_EXPORTABLE = "Alleen geboekte tijdsloten kunnen worden geëxporteerd."
PARTIAL_BOOKING = ("Je gegevens zijn opgeslagen, maar het tijdslot kon niet worden vastgelegd. "
                   "Probeer het opnieuw of neem contact op met je docent.")
TIMED_OUT = "De server reageerde niet op tijd. Probeer het opnieuw."
GENERIC_FAILURE = "Er is een fout opgetreden."
LOADED = "Gegevens opgehaald."

_date_adapter = TypeAdapter(dt_date)


def standard_times() -> List[dt_time]:
    """Half-hour grid offered to teachers, 09:00 up to and including 16:00."""
    times = []
    for hour in range(DAY_START_HOUR, DAY_END_HOUR + 1):
        for minute in range(0, 60, SLOT_MINUTES):
            if hour == DAY_END_HOUR and minute:
                continue
            times.append(dt_time(hour, minute))
    return times


def _validation_message(prefix: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"])
        problems.append(f"{field}: {error['msg']}" if field else error["msg"])
    return f"{prefix}: " + "; ".join(problems)


def _teacher(value) -> Teacher:
    try:
        return Teacher(value)
    except ValueError:
        raise InvalidArgumentError(f"Onbekende docent: {value}") from None


def _date(value) -> dt_date:
    try:
        return _date_adapter.validate_python(value)
    except ValidationError as e:
        raise InvalidArgumentError(_validation_message("Ongeldige datum", e)) from None


def _slot_key(on_date, at_time, teacher) -> SlotKey:
    try:
        return SlotKey.model_validate({"date": on_date, "time": at_time, "teacher": _teacher(teacher)})
    except ValidationError as e:
        raise InvalidArgumentError(_validation_message("Ongeldig tijdslot", e)) from None


def _student_data(value: Union[StudentData, Mapping]) -> StudentData:
    if isinstance(value, StudentData):
        return value
    try:
        return StudentData.model_validate(value)
    except ValidationError as e:
        raise InvalidArgumentError(_validation_message("Ongeldige leerlinggegevens", e)) from None


def _outcome(value: Union[AppointmentUpdate, Mapping]) -> AppointmentUpdate:
    if isinstance(value, AppointmentUpdate):
        return value
    try:
        return AppointmentUpdate.model_validate(value)
    except ValidationError as e:
        raise InvalidArgumentError(_validation_message("Ongeldige afspraakgegevens", e)) from None


class _BookingProgress:
    """Which writes of a booking are known to be committed, updated from the stores' commit hooks."""

    def __init__(self):
        self.student_saved = False
        self.booked: Optional[SlotRead] = None

    def mark_student_saved(self):
        self.student_saved = True

    def mark_claimed(self, slot: SlotRead, student_number: str):
        self.booked = slot.model_copy(update={"student_number": student_number, "available": False,
                                              "present": False, "completed": False})


class BookingLedger:
    """
    Rules for opening, closing, booking and closing out presentation slots.

    Every public operation is a coroutine that returns an OperationResult and
    never raises: rule violations, store failures and timeouts come back as a
    failed result carrying an ErrorKind and a message meant for the end user.
    Nothing is cached between calls; each operation re-reads what it checks.
    """

    def __init__(self, store: SlotStore, timeout: Optional[float] = 5.0, slot_timezone: str = "Europe/Amsterdam"):
        self.store = store
        self.timeout = timeout
        self.slot_timezone = slot_timezone

    async def _run(self, action: str, work, timeout: Optional[float] = None,
                   progress: Optional[_BookingProgress] = None) -> OperationResult:
        limit = self.timeout if timeout is None else timeout
        try:
            message, data = await asyncio.wait_for(work, limit)
        except asyncio.TimeoutError:
            if progress is not None and progress.booked is not None:
                logger.warning("%s timed out after slot %s was booked", action, progress.booked.id)
                return OperationResult.ok(BOOKED, progress.booked)
            if progress is not None and progress.student_saved:
                logger.error("%s timed out after the student record was saved", action)
                return OperationResult.fail(ErrorKind.PARTIAL_FAILURE, PARTIAL_BOOKING)
            logger.warning("%s timed out after %ss", action, limit)
            return OperationResult.fail(ErrorKind.TIMEOUT, TIMED_OUT)
        except LedgerError as e:
            logger.info("%s refused (%s): %s", action, e.kind.value, e.message)
            return OperationResult.fail(e.kind, e.message)
        except Exception:
            logger.exception("%s failed unexpectedly", action)
            return OperationResult.fail(ErrorKind.CONFLICT, GENERIC_FAILURE)
        return OperationResult.ok(message, data)

    # --- Reads ---
    async def list_available_slots(self, teacher, *, timeout: Optional[float] = None) -> OperationResult:
        async def work():
            slots = await self.store.list_slots(_teacher(teacher), available=True)
            return LOADED, slots
        return await self._run("list_available_slots", work(), timeout)

    async def list_appointments(self, teacher, *, timeout: Optional[float] = None) -> OperationResult:
        async def work():
            slots = await self.store.list_slots(_teacher(teacher), available=False, booked=True)
            students = await self.store.get_students(s.student_number for s in slots)
            appointments = []
            for slot in slots:
                student = students.get(slot.student_number)
                if student is None:
                    logger.warning("Slot %s references unknown student %s", slot.id, slot.student_number)
                appointments.append(Appointment(**slot.model_dump(), student=student))
            return LOADED, appointments
        return await self._run("list_appointments", work(), timeout)

    async def list_slots_for_date(self, on_date, teacher, *, timeout: Optional[float] = None) -> OperationResult:
        async def work():
            slots = await self.store.list_slots(_teacher(teacher), on_date=_date(on_date))
            return LOADED, slots
        return await self._run("list_slots_for_date", work(), timeout)

    async def day_grid(self, on_date, teacher, *, timeout: Optional[float] = None) -> OperationResult:
        """One cell per standard time plus any custom time that already holds a slot."""
        async def work():
            slots = await self.store.list_slots(_teacher(teacher), on_date=_date(on_date))
            by_time = {s.time: s for s in slots}
            cells = []
            for at_time in sorted(set(standard_times()) | set(by_time)):
                slot = by_time.get(at_time)
                if slot is None:
                    cells.append(GridCell(time=at_time, status="empty"))
                    continue
                if slot.is_booked:
                    status = "booked"
                else:
                    status = "open" if slot.available else "closed"
                cells.append(GridCell(time=at_time, status=status, slot_id=slot.id))
            return LOADED, cells
        return await self._run("day_grid", work(), timeout)

    # --- Teacher-side mutations ---
    async def toggle_or_create_slot(self, on_date, at_time, teacher, *,
                                    timeout: Optional[float] = None) -> OperationResult:
        async def work():
            key = _slot_key(on_date, at_time, teacher)
            existing = await self.store.find_slot(key.date, key.time, key.teacher)
            if existing is not None:
                if existing.is_booked:
                    raise ConflictError(SLOT_BOOKED_LOCKED)
                updated = await self.store.set_availability(existing.id, expected=existing.available)
                if updated is None:
                    raise ConflictError(SLOT_CHANGED)
                logger.info("Slot %s for %s is now %s", updated.id, key.teacher.value,
                            "open" if updated.available else "closed")
                return f"Tijdslot is nu {'open' if updated.available else 'gesloten'}.", updated

            try:
                created = await self.store.insert_slot(key)
            except DuplicateSlotError:
                raise ConflictError(SLOT_CHANGED) from None
            logger.info("Opened new slot %s: %s %s %s", created.id, key.teacher.value, key.date, key.time)
            return SLOT_CREATED, created
        return await self._run("toggle_or_create_slot", work(), timeout)

    async def _owned_slot(self, slot_id: int, teacher, missing: str) -> SlotRead:
        """The slot, if it exists and (when a teacher is given) belongs to that teacher."""
        slot = await self.store.get_slot(slot_id)
        if slot is None or (teacher is not None and slot.teacher != _teacher(teacher)):
            raise NotFoundError(missing)
        return slot

    async def update_appointment(self, slot_id: int, outcome, *, teacher=None,
                                 timeout: Optional[float] = None) -> OperationResult:
        async def work():
            values = _outcome(outcome)
            if teacher is not None:
                await self._owned_slot(slot_id, teacher, APPOINTMENT_NOT_FOUND)
            try:
                updated = await self.store.update_outcome(slot_id, values)
            except ActiveBookingError:
                raise ConflictError(STUDENT_HAS_OTHER_BOOKING) from None
            if updated is None:
                raise NotFoundError(APPOINTMENT_NOT_FOUND)
            logger.info("Appointment %s updated (present=%s, completed=%s)", slot_id, values.present, values.completed)
            return APPOINTMENT_UPDATED, updated
        return await self._run("update_appointment", work(), timeout)

    async def delete_slot(self, slot_id: int, *, teacher=None, timeout: Optional[float] = None) -> OperationResult:
        async def work():
            slot = await self._owned_slot(slot_id, teacher, SLOT_NOT_FOUND)
            if slot.is_booked:
                raise ConflictError(SLOT_BOOKED_UNDELETABLE)
            if not await self.store.delete_unbooked(slot_id):
                raise ConflictError(SLOT_CHANGED)
            logger.info("Deleted slot %s", slot_id)
            return SLOT_DELETED, None
        return await self._run("delete_slot", work(), timeout)

    # --- Student-side ---
    async def book_slot(self, slot_id: int, student_data, *, timeout: Optional[float] = None) -> OperationResult:
        progress = _BookingProgress()

        async def work():
            student = _student_data(student_data)

            # One uncompleted appointment per student, checked before the slot itself
            if await self.store.active_bookings(student.student_number):
                raise ConflictError(ACTIVE_BOOKING_EXISTS)

            slot = await self.store.get_slot(slot_id)
            if slot is None or not slot.available:
                raise ConflictError(SLOT_UNAVAILABLE)

            try:
                await self.store.upsert_student(student, on_commit=progress.mark_student_saved)
                booked = await self.store.claim_slot(
                    slot_id, student.student_number,
                    on_commit=lambda: progress.mark_claimed(slot, student.student_number),
                )
            except ActiveBookingError:
                # A concurrent booking by the same student got in first
                raise ConflictError(ACTIVE_BOOKING_EXISTS) from None
            except Exception as e:
                if progress.booked is not None:
                    logger.warning("Slot %s was booked but could not be re-read: %s", slot_id, e)
                    booked = progress.booked
                elif progress.student_saved:
                    logger.error("Claiming slot %s for %s failed after the student was saved: %s",
                                 slot_id, student.student_number, e)
                    raise PartialFailureError(PARTIAL_BOOKING) from e
                else:
                    raise
            if booked is None:
                raise ConflictError(SLOT_UNAVAILABLE)
            logger.info("Slot %s booked by student %s", slot_id, student.student_number)
            return BOOKED, booked
        return await self._run("book_slot", work(), timeout, progress)

    async def export_calendar(self, slot_id: int, *, timeout: Optional[float] = None) -> OperationResult:
        async def work():
            slot: Optional[SlotRead] = await self.store.get_slot(slot_id)
            if slot is None:
                raise NotFoundError(SLOT_NOT_FOUND)
            if not slot.is_booked:
                raise ConflictError(NOT_EXPORTABLE)
            return LOADED, build_ics(slot, self.slot_timezone)
        return await self._run("export_calendar", work(), timeout)
