import asyncio
from abc import ABC, abstractmethod
from datetime import date, time
from typing import Callable, Dict, Iterable, List, Optional

from errors import ActiveBookingError, DuplicateSlotError
from models import SlotRead, StudentRead, Teacher
from schemas import AppointmentUpdate, SlotKey, StudentData


class SlotStore(ABC):
    """
    Persistence port consumed by the booking ledger.

    Every mutating method is a single atomic write that re-checks its own
    precondition, so a check made earlier by the ledger cannot be invalidated
    by a concurrent writer without the store noticing. Methods that find their
    precondition no longer holds return None/False instead of writing.

    A student holds at most one uncompleted booking. Writes that would break
    this raise ActiveBookingError, whatever the ledger checked beforehand.

    `on_commit`, where accepted, is called once the write is durable and
    before anything else (such as re-reading the row) can still fail.
    """

    @abstractmethod
    async def list_slots(self, teacher: Teacher, *, on_date: Optional[date] = None,
                         available: Optional[bool] = None, booked: Optional[bool] = None) -> List[SlotRead]:
        ...

    @abstractmethod
    async def get_slot(self, slot_id: int) -> Optional[SlotRead]:
        ...

    @abstractmethod
    async def find_slot(self, on_date: date, at_time: time, teacher: Teacher) -> Optional[SlotRead]:
        ...

    @abstractmethod
    async def active_bookings(self, student_number: str) -> List[SlotRead]:
        """Slots held by this student that are not completed yet."""

    @abstractmethod
    async def insert_slot(self, key: SlotKey) -> SlotRead:
        """Creates an open, unbooked slot. Raises DuplicateSlotError if the natural key is taken."""

    @abstractmethod
    async def set_availability(self, slot_id: int, expected: bool) -> Optional[SlotRead]:
        """Flips `available` only if it still equals `expected` and the slot is unbooked."""

    @abstractmethod
    async def claim_slot(self, slot_id: int, student_number: str,
                         on_commit: Optional[Callable[[], None]] = None) -> Optional[SlotRead]:
        """
        Books the slot only if it is still available and unbooked. Raises
        ActiveBookingError if the student already holds another uncompleted booking.
        """

    @abstractmethod
    async def update_outcome(self, slot_id: int, outcome: AppointmentUpdate) -> Optional[SlotRead]:
        """Raises ActiveBookingError when reopening a booking whose student has moved on."""

    @abstractmethod
    async def delete_unbooked(self, slot_id: int) -> bool:
        ...

    @abstractmethod
    async def upsert_student(self, data: StudentData,
                             on_commit: Optional[Callable[[], None]] = None) -> StudentRead:
        ...

    @abstractmethod
    async def get_students(self, student_numbers: Iterable[str]) -> Dict[str, StudentRead]:
        ...

    async def close(self) -> None:
        return None


class MemoryStore(SlotStore):
    """In-process store. Mutations are serialised with a lock held across check and write."""

    def __init__(self):
        self._slots: Dict[int, SlotRead] = {}
        self._students: Dict[str, StudentRead] = {}
        self._next_slot_id = 1
        self._next_student_id = 1
        self._lock = asyncio.Lock()

    async def list_slots(self, teacher, *, on_date=None, available=None, booked=None):
        found = []
        for slot in self._slots.values():
            if slot.teacher != teacher:
                continue
            if on_date is not None and slot.date != on_date:
                continue
            if available is not None and slot.available != available:
                continue
            if booked is not None and slot.is_booked != booked:
                continue
            found.append(slot.model_copy())
        return sorted(found, key=lambda s: (s.date, s.time))

    async def get_slot(self, slot_id):
        slot = self._slots.get(slot_id)
        return slot.model_copy() if slot else None

    def _lookup(self, on_date, at_time, teacher):
        for slot in self._slots.values():
            if (slot.date, slot.time, slot.teacher) == (on_date, at_time, teacher):
                return slot
        return None

    async def find_slot(self, on_date, at_time, teacher):
        slot = self._lookup(on_date, at_time, teacher)
        return slot.model_copy() if slot else None

    async def active_bookings(self, student_number):
        return [s.model_copy() for s in self._slots.values()
                if s.student_number == student_number and not s.completed]

    async def insert_slot(self, key):
        async with self._lock:
            if self._lookup(key.date, key.time, key.teacher):
                raise DuplicateSlotError(f"{key.teacher.value} {key.date} {key.time}")
            slot = SlotRead(id=self._next_slot_id, date=key.date, time=key.time, teacher=key.teacher,
                            available=True, student_number=None, present=False, notes=None, completed=False)
            self._slots[slot.id] = slot
            self._next_slot_id += 1
            return slot.model_copy()

    async def set_availability(self, slot_id, expected):
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or slot.is_booked or slot.available != expected:
                return None
            slot.available = not expected
            return slot.model_copy()

    def _holds_other_booking(self, student_number, slot_id):
        return any(s.student_number == student_number and not s.completed and s.id != slot_id
                   for s in self._slots.values())

    async def claim_slot(self, slot_id, student_number, on_commit=None):
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or slot.is_booked or not slot.available:
                return None
            if self._holds_other_booking(student_number, slot_id):
                raise ActiveBookingError(student_number)
            slot.student_number = student_number
            slot.available = False
            slot.present = False
            slot.completed = False
            if on_commit:
                on_commit()
            return slot.model_copy()

    async def update_outcome(self, slot_id, outcome):
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                return None
            if (slot.is_booked and slot.completed and not outcome.completed
                    and self._holds_other_booking(slot.student_number, slot_id)):
                raise ActiveBookingError(slot.student_number)
            slot.present = outcome.present
            slot.notes = outcome.notes
            slot.completed = outcome.completed
            return slot.model_copy()

    async def delete_unbooked(self, slot_id):
        async with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None or slot.is_booked:
                return False
            del self._slots[slot_id]
            return True

    async def upsert_student(self, data, on_commit=None):
        async with self._lock:
            student = self._students.get(data.student_number)
            if student is None:
                student = StudentRead(id=self._next_student_id, student_number=data.student_number,
                                      name=data.name, student_class=data.student_class, topic=data.topic)
                self._students[data.student_number] = student
                self._next_student_id += 1
            else:
                student.name = data.name
                student.student_class = data.student_class
                student.topic = data.topic
            if on_commit:
                on_commit()
            return student.model_copy()

    async def get_students(self, student_numbers):
        return {n: self._students[n].model_copy() for n in set(student_numbers) if n in self._students}
