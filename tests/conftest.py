import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from rocket_crash.db import BalanceLedger, build_engine, init_db
from rocket_crash.engine import CrashGameEngine, FixedCrashPoint

START = 1_700_000_000.0


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def ledger(anyio_backend):
    db_engine = build_engine("sqlite+aiosqlite://", echo=False)
    await init_db(db_engine)
    yield BalanceLedger(async_sessionmaker(bind=db_engine, expire_on_commit=False))
    await db_engine.dispose()


@pytest.fixture
def engine(ledger, clock):
    return CrashGameEngine(
        ledger,
        clock=clock,
        sampler=FixedCrashPoint("3.00"),
        betting_window=7.0,
        crash_display=4.5,
    )
