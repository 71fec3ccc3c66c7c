import pytest
from sqlalchemy.pool import StaticPool

from database import build_engine
from ledger import BookingLedger
from sql_store import SQLStore
from store import MemoryStore

STUDENT = {
    "name": "Sanne de Vries",
    "student_number": "12345",
    "class": "4GT2",
    "topic": "Duurzame energie in huis",
}


def student(**overrides):
    data = dict(STUDENT)
    data.update(overrides)
    return data


async def make_store(kind):
    if kind == "memory":
        return MemoryStore()
    # one shared connection so the in-memory database survives between sessions
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    store = SQLStore(engine)
    await store.create_schema()
    return store


@pytest.fixture(params=["memory", "sql"])
async def store(request):
    s = await make_store(request.param)
    yield s
    await s.close()


@pytest.fixture()
async def ledger(store):
    return BookingLedger(store, timeout=5)


async def open_slot(ledger, on_date="2024-03-10", at_time="10:00", teacher="Daemen"):
    result = await ledger.toggle_or_create_slot(on_date, at_time, teacher)
    assert result.success, result.message
    return result.data
