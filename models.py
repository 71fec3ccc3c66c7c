from typing import Optional
from datetime import date as dt_date, time as dt_time, datetime, timezone
from enum import Enum
from sqlmodel import SQLModel, Field
from sqlalchemy import DateTime, Index, UniqueConstraint, text


class Teacher(str, Enum):
    DAEMEN = "Daemen"
    MARTINA = "Martina"


class StudentClass(str, Enum):
    GT1 = "4GT1"
    GT2 = "4GT2"
    GT3 = "4GT3"
    GT4 = "4GT4"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Shared field sets (also used as plain DTOs at the store boundary) ---
class SlotBase(SQLModel):
    date: dt_date
    time: dt_time
    teacher: Teacher
    available: bool = True
    student_number: Optional[str] = None
    present: bool = False
    notes: Optional[str] = None
    completed: bool = False

    @property
    def is_booked(self) -> bool:
        return self.student_number is not None


class StudentBase(SQLModel):
    student_number: str
    name: str
    student_class: StudentClass
    topic: str


# --- Tables ---
class Slot(SlotBase, table=True):
    __tablename__ = "slots"
    __table_args__ = (
        # Natural key: one slot per teacher per date/time
        UniqueConstraint("date", "time", "teacher", name="unique_slot_key"),
        # At most one uncompleted booking per student
        Index(
            "unique_active_booking",
            "student_number",
            unique=True,
            sqlite_where=text("student_number IS NOT NULL AND completed = 0"),
            postgresql_where=text("student_number IS NOT NULL AND completed = false"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    date: dt_date = Field(index=True)
    teacher: Teacher = Field(index=True)
    student_number: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


class Student(StudentBase, table=True):
    __tablename__ = "students"

    id: Optional[int] = Field(default=None, primary_key=True)
    student_number: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))


# --- Read models returned by the stores ---
class SlotRead(SlotBase):
    id: int


class StudentRead(StudentBase):
    id: int


class Appointment(SlotRead):
    # None when the slot references a student record that no longer exists
    student: Optional[StudentRead] = None
