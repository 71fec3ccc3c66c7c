from datetime import date as dt_date, time as dt_time
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import SLOT_MINUTES
from errors import ErrorKind
from models import StudentClass, Teacher

T = TypeVar("T")


# Pydantic Schemas for Request/Response
class StudentData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(min_length=2)
    student_number: str = Field(pattern=r"^\d{4,6}$")
    student_class: StudentClass = Field(alias="class")
    topic: str = Field(min_length=5, max_length=100)


class SlotKey(BaseModel):
    date: dt_date
    time: dt_time
    teacher: Teacher

    @field_validator("time")
    @classmethod
    def on_slot_grid(cls, value: dt_time) -> dt_time:
        if value.minute % SLOT_MINUTES or value.second or value.microsecond:
            raise ValueError(f"time must fall on a {SLOT_MINUTES}-minute boundary")
        return value


class SlotToggle(BaseModel):
    date: dt_date
    time: dt_time


class AppointmentUpdate(BaseModel):
    present: bool
    notes: Optional[str] = None
    completed: bool


class GridCell(BaseModel):
    time: dt_time
    status: str  # empty | open | closed | booked
    slot_id: Optional[int] = None


class OperationResult(BaseModel, Generic[T]):
    success: bool
    message: str
    kind: Optional[ErrorKind] = None
    data: Optional[T] = None

    @classmethod
    def ok(cls, message: str, data=None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "OperationResult":
        return cls(success=False, kind=kind, message=message)


class ErrorDetail(BaseModel):
    kind: ErrorKind
    message: str
