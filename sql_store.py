import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlmodel import select, col
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from database import build_session_factory, init_db
from errors import ActiveBookingError, DuplicateSlotError, StoreUnavailableError
from models import Slot, SlotRead, Student, StudentRead
from store import SlotStore

logger = logging.getLogger(__name__)


class SQLStore(SlotStore):
    """
    Store backed by the `slots` and `students` tables through an async SQLAlchemy engine.

    Conditional writes are expressed as single UPDATE/DELETE statements whose WHERE
    clause repeats the precondition. Slot creation relies on the natural-key unique
    constraint and the one-active-booking-per-student rule on the partial unique
    index `unique_active_booking`, so the database arbitrates concurrent writers.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = build_session_factory(engine)

    async def create_schema(self):
        await init_db(self.engine)

    async def close(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, ConnectionError) as e:
            logger.warning("Database unreachable: %s", e)
            raise StoreUnavailableError("De database is niet bereikbaar.") from e

    async def _fetch_slot(self, session, slot_id: int) -> Optional[SlotRead]:
        slot = await session.get(Slot, slot_id, populate_existing=True)
        return SlotRead.model_validate(slot) if slot else None

    async def list_slots(self, teacher, *, on_date=None, available=None, booked=None):
        statement = select(Slot).where(Slot.teacher == teacher)
        if on_date is not None:
            statement = statement.where(Slot.date == on_date)
        if available is not None:
            statement = statement.where(Slot.available == available)
        if booked is True:
            statement = statement.where(col(Slot.student_number).is_not(None))
        elif booked is False:
            statement = statement.where(col(Slot.student_number).is_(None))
        statement = statement.order_by(Slot.date, Slot.time)

        async with self._session() as session:
            result = await session.execute(statement)
            return [SlotRead.model_validate(s) for s in result.scalars().all()]

    async def get_slot(self, slot_id):
        async with self._session() as session:
            return await self._fetch_slot(session, slot_id)

    async def find_slot(self, on_date, at_time, teacher):
        statement = select(Slot).where(Slot.date == on_date, Slot.time == at_time, Slot.teacher == teacher)
        async with self._session() as session:
            result = await session.execute(statement)
            slot = result.scalars().first()
            return SlotRead.model_validate(slot) if slot else None

    async def active_bookings(self, student_number):
        statement = select(Slot).where(Slot.student_number == student_number, Slot.completed == False)  # noqa: E712
        async with self._session() as session:
            result = await session.execute(statement)
            return [SlotRead.model_validate(s) for s in result.scalars().all()]

    async def insert_slot(self, key):
        new_slot = Slot(date=key.date, time=key.time, teacher=key.teacher, available=True,
                        student_number=None, present=False, notes=None, completed=False)
        async with self._session() as session:
            try:
                session.add(new_slot)
                await session.commit()
                await session.refresh(new_slot)
            except IntegrityError as e:
                # This catches the UniqueConstraint violation on (date, time, teacher)
                await session.rollback()
                raise DuplicateSlotError(f"{key.teacher.value} {key.date} {key.time}") from e
            return SlotRead.model_validate(new_slot)

    async def _conditional_update(self, slot_id, conditions, values, on_commit=None) -> Optional[SlotRead]:
        statement = (
            update(Slot)
            .where(Slot.id == slot_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            try:
                result = await session.execute(statement)
            except IntegrityError as e:
                # Only the unique_active_booking index can reject an UPDATE of slots
                await session.rollback()
                raise ActiveBookingError(f"slot {slot_id}") from e
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            if on_commit:
                on_commit()
            return await self._fetch_slot(session, slot_id)

    async def set_availability(self, slot_id, expected):
        return await self._conditional_update(
            slot_id,
            [Slot.available == expected, col(Slot.student_number).is_(None)],
            {"available": not expected},
        )

    async def claim_slot(self, slot_id, student_number, on_commit=None):
        return await self._conditional_update(
            slot_id,
            [Slot.available == True, col(Slot.student_number).is_(None)],  # noqa: E712
            {"student_number": student_number, "available": False, "present": False, "completed": False},
            on_commit,
        )

    async def update_outcome(self, slot_id, outcome):
        return await self._conditional_update(
            slot_id,
            [],
            {"present": outcome.present, "notes": outcome.notes, "completed": outcome.completed},
        )

    async def delete_unbooked(self, slot_id):
        statement = (
            delete(Slot)
            .where(Slot.id == slot_id, col(Slot.student_number).is_(None))
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount == 1

    async def upsert_student(self, data, on_commit=None):
        statement = select(Student).where(Student.student_number == data.student_number)
        async with self._session() as session:
            for attempt in range(2):
                result = await session.execute(statement)
                student = result.scalars().first()
                if student is None:
                    student = Student(student_number=data.student_number, name=data.name,
                                      student_class=data.student_class, topic=data.topic)
                    session.add(student)
                else:
                    student.name = data.name
                    student.student_class = data.student_class
                    student.topic = data.topic
                try:
                    await session.commit()
                except IntegrityError:
                    # Another booking inserted the same student number first; update that row instead
                    await session.rollback()
                    if attempt:
                        raise
                    continue
                if on_commit:
                    on_commit()
                await session.refresh(student)
                return StudentRead.model_validate(student)

    async def get_students(self, student_numbers):
        numbers = set(student_numbers)
        if not numbers:
            return {}
        statement = select(Student).where(col(Student.student_number).in_(numbers))
        async with self._session() as session:
            result = await session.execute(statement)
            return {s.student_number: StudentRead.model_validate(s) for s in result.scalars().all()}
