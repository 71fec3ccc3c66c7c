import logging
import secrets
from datetime import date
from typing import List

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from config import configure_logging, settings
from database import build_engine
from errors import ErrorKind
from ledger import BookingLedger
from models import Appointment, SlotRead, StudentClass, Teacher
from schemas import AppointmentUpdate, ErrorDetail, GridCell, OperationResult, SlotToggle, StudentData
from sql_store import SQLStore
from store import MemoryStore

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Presentation Slot Booking")

STATUS_BY_KIND = {
    ErrorKind.INVALID_ARGUMENT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.PARTIAL_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


@app.on_event("startup")
async def on_startup():
    if settings.store_backend == "memory":
        store = MemoryStore()
    else:
        store = SQLStore(build_engine())
        await store.create_schema()
    app.state.ledger = BookingLedger(store, timeout=settings.ledger_timeout, slot_timezone=settings.slot_timezone)
    logger.info("Booking ledger started with %s store", settings.store_backend)


@app.on_event("shutdown")
async def on_shutdown():
    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        await ledger.store.close()


def get_ledger(request: Request) -> BookingLedger:
    return request.app.state.ledger


def require_teacher(teacher: str, x_teacher_token: str = Header(default="")) -> str:
    """Checks the identity token issued to the teacher. Disabled when no tokens are configured."""
    if not settings.teacher_tokens:
        return teacher
    expected = settings.teacher_tokens.get(teacher)
    if not expected or not secrets.compare_digest(expected, x_teacher_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid teacher token",
        )
    return teacher


def _unwrap(result: OperationResult) -> OperationResult:
    if not result.success:
        raise HTTPException(
            status_code=STATUS_BY_KIND.get(result.kind, status.HTTP_409_CONFLICT),
            detail=ErrorDetail(kind=result.kind, message=result.message).model_dump(mode="json"),
        )
    return result


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body")
        problems.append(f"{field}: {error['msg']}" if field else error["msg"])
    detail = ErrorDetail(kind=ErrorKind.INVALID_ARGUMENT, message="; ".join(problems))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail.model_dump(mode="json")})


# --- Reference data ---
@app.get("/teachers", response_model=List[str])
async def list_teachers():
    return [t.value for t in Teacher]


@app.get("/classes", response_model=List[str])
async def list_classes():
    return [c.value for c in StudentClass]


# --- Student-facing ---
@app.get("/teachers/{teacher}/slots", response_model=OperationResult[List[SlotRead]])
async def available_slots(teacher: str, ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.list_available_slots(teacher))


@app.post("/slots/{slot_id}/book", status_code=status.HTTP_201_CREATED, response_model=OperationResult[SlotRead])
async def book_slot(slot_id: int, student: StudentData, ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.book_slot(slot_id, student))


@app.get("/slots/{slot_id}/calendar.ics")
async def slot_calendar(slot_id: int, ledger: BookingLedger = Depends(get_ledger)):
    result = _unwrap(await ledger.export_calendar(slot_id))
    return Response(
        content=result.data,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="afspraak.ics"'},
    )


# --- Teacher-facing (token gated) ---
@app.get("/manage/{teacher}/slots", response_model=OperationResult[List[SlotRead]])
async def slots_for_date(target_date: date, teacher: str = Depends(require_teacher),
                         ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.list_slots_for_date(target_date, teacher))


@app.get("/manage/{teacher}/grid", response_model=OperationResult[List[GridCell]])
async def day_grid(target_date: date, teacher: str = Depends(require_teacher),
                   ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.day_grid(target_date, teacher))


@app.post("/manage/{teacher}/slots/toggle", response_model=OperationResult[SlotRead])
async def toggle_slot(toggle: SlotToggle, teacher: str = Depends(require_teacher),
                      ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.toggle_or_create_slot(toggle.date, toggle.time, teacher))


@app.delete("/manage/{teacher}/slots/{slot_id}", response_model=OperationResult[None])
async def delete_slot(slot_id: int, teacher: str = Depends(require_teacher),
                      ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.delete_slot(slot_id, teacher=teacher))


@app.get("/manage/{teacher}/appointments", response_model=OperationResult[List[Appointment]])
async def appointments(teacher: str = Depends(require_teacher), ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.list_appointments(teacher))


@app.patch("/manage/{teacher}/appointments/{slot_id}", response_model=OperationResult[SlotRead])
async def update_appointment(slot_id: int, outcome: AppointmentUpdate, teacher: str = Depends(require_teacher),
                             ledger: BookingLedger = Depends(get_ledger)):
    return _unwrap(await ledger.update_appointment(slot_id, outcome, teacher=teacher))


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
