# Custom exceptions used by the booking ledger and its stores.
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    PARTIAL_FAILURE = "partial_failure"


class LedgerError(Exception):
    """
    Base class for rule violations and store failures raised inside the ledger.
    Carries the kind reported to callers and the message shown to the user.
    """
    kind = ErrorKind.CONFLICT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgumentError(LedgerError):
    """Malformed input: unknown teacher, bad date or time, student data failing validation."""
    kind = ErrorKind.INVALID_ARGUMENT


class ConflictError(LedgerError):
    """
    A business rule refused the change. Raised when:
        1. A booked slot is toggled or deleted
        2. A slot is booked twice
        3. A student with an uncompleted booking books again
        4. A concurrent writer changed the slot between check and write
    """
    kind = ErrorKind.CONFLICT


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND


class StoreUnavailableError(LedgerError):
    """The persistence backend could not be reached."""
    kind = ErrorKind.UNAVAILABLE


class PartialFailureError(LedgerError):
    """A multi-step write failed after its first step was committed."""
    kind = ErrorKind.PARTIAL_FAILURE


class DuplicateSlotError(Exception):
    """
    Raised by a store when an insert collides with the (date, time, teacher) natural key.
    Stays internal to the ledger, which reports it as a conflict.
    """


class ActiveBookingError(Exception):
    """
    Raised by a store when a write would give a student a second uncompleted booking.
    Stays internal to the ledger, which reports it as a conflict.
    """
