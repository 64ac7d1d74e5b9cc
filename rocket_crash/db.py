# db.py
"""
Balance Ledger – Database Layer

Responsibilities:
- Async database engine & session lifecycle
- Lazily created user accounts holding two currencies (ton, stars)
- Ledger-safe balance management (Decimal arithmetic, never negative)
- A single ledger lock serializing every balance mutation

Alignment with Engine:
- Uses Decimal for all financial values, quantized to 2 places
- The round engine debits/credits through BalanceLedger while holding its own
  lock (lock order is always engine -> ledger)
- In-memory SQLite by default: balances live as long as the process does
"""

from __future__ import annotations

import os
import enum
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Mapping, Optional, Any

from sqlalchemy import (
    String,
    DateTime,
    Integer,
    func,
    Numeric,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from rocket_crash.utils import MAX_AMOUNT, quantize_money, to_decimal

logger = logging.getLogger("rocket_crash.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite://")

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")

# Balances for users created on first reference
STARTING_TON = Decimal(os.getenv("STARTING_TON", "0.00"))
STARTING_STARS = Decimal(os.getenv("STARTING_STARS", "0.00"))

DEMO_USER_ID = "demo-user"
DEMO_USER_NAME = "Player One"
DEMO_TON = Decimal("25.00")
DEMO_STARS = Decimal("1500.00")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS & EXCEPTIONS
# =====================================================

class Currency(str, enum.Enum):
    TON = "ton"
    STARS = "stars"

    @classmethod
    def parse(cls, value: Any) -> Optional["Currency"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class LedgerError(ValueError):
    """Invalid ledger operation"""
    code = "invalid_ledger_operation"


class InsufficientBalanceError(LedgerError):
    """Operation would make a balance negative"""
    code = "insufficient_balance"


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Client-facing identifier (e.g. "demo-user" or a Telegram id)
    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(128), nullable=False)

    # PRECISION: 18 digits total, 2 after decimal.
    ton: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_TON,
    )

    stars: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_STARS,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def balance_of(self, currency: Currency) -> Decimal:
        return Decimal(getattr(self, currency.value))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.external_id,
            "name": self.name,
            "ton": float(self.ton),
            "stars": float(self.stars),
        }


# =====================================================
# ENGINE & SESSION
# =====================================================

def build_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    """
    In-memory SQLite needs one shared connection, otherwise every
    session would see its own empty database.
    """
    if url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


# =====================================================
# INIT
# =====================================================

async def init_db(
    db_engine: AsyncEngine = engine,
    seed_demo: bool = True,
) -> None:
    """
    Creates all tables and the demo account. Safe to run on every startup.
    """
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if not seed_demo:
        return

    sessions = async_sessionmaker(bind=db_engine, expire_on_commit=False)
    async with sessions() as session:
        result = await session.execute(
            select(User).where(User.external_id == DEMO_USER_ID)
        )
        if result.scalar_one_or_none() is None:
            session.add(User(
                external_id=DEMO_USER_ID,
                name=DEMO_USER_NAME,
                ton=DEMO_TON,
                stars=DEMO_STARS,
            ))
            await session.commit()
            logger.info(f"Seeded demo account '{DEMO_USER_ID}'")


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    external_id: str,
) -> User:
    """
    Fetches a user or creates one with the starting balances.
    """
    if not external_id:
        raise LedgerError("Invalid user id")

    result = await session.execute(
        select(User).where(User.external_id == external_id)
    )
    user = result.scalar_one_or_none()

    if user:
        return user

    new_user = User(
        external_id=external_id,
        name=f"Player {external_id}",
        ton=STARTING_TON,
        stars=STARTING_STARS,
    )
    session.add(new_user)

    try:
        await session.commit()
        await session.refresh(new_user)
        return new_user
    except IntegrityError:
        # Created in parallel by another session
        await session.rollback()
        return await get_or_create_user(session, external_id)


async def apply_transaction(
    session: AsyncSession,
    external_id: str,
    deltas: Mapping[Currency, Decimal],
) -> User:
    """
    Atomic multi-currency balance update.

    Every delta is quantized and checked before any column is touched,
    so a rejected update leaves all balances as they were.
    """
    user = await get_or_create_user(session, external_id)

    # Lock the user row (Postgres/MySQL; a no-op on SQLite)
    result = await session.execute(
        select(User).where(User.id == user.id).with_for_update()
    )
    user_locked = result.scalar_one()

    new_balances: Dict[Currency, Decimal] = {}
    for currency, amount in deltas.items():
        new_balance = quantize_money(user_locked.balance_of(currency) + quantize_money(amount))
        if new_balance < 0:
            await session.rollback()
            raise InsufficientBalanceError(f"Insufficient {currency.value} balance")
        if new_balance > MAX_AMOUNT:
            await session.rollback()
            raise LedgerError(f"{currency.value} balance limit exceeded")
        new_balances[currency] = new_balance

    for currency, new_balance in new_balances.items():
        setattr(user_locked, currency.value, new_balance)
    user_locked.updated_at = datetime.now()

    await session.commit()
    await session.refresh(user_locked)

    return user_locked


# =====================================================
# LEDGER
# =====================================================

class BalanceLedger:
    """
    Two-currency balance ledger.
    Every mutation is serialized through one asyncio lock.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._sessions = session_factory
        self._lock = asyncio.Lock()

    async def get_user(self, external_id: str) -> Dict[str, Any]:
        async with self._lock, self._sessions() as session:
            user = await get_or_create_user(session, external_id)
            return user.to_dict()

    async def balance(self, external_id: str, currency: Currency) -> Decimal:
        async with self._lock, self._sessions() as session:
            user = await get_or_create_user(session, external_id)
            return user.balance_of(currency)

    async def _apply(
        self,
        external_id: str,
        deltas: Mapping[Currency, Decimal],
    ) -> Dict[str, Any]:
        async with self._lock, self._sessions() as session:
            user = await apply_transaction(session, external_id, deltas)
            return user.to_dict()

    async def debit(self, external_id: str, currency: Currency, amount: Decimal) -> Dict[str, Any]:
        """
        Deducts money (placing a bet). Raises InsufficientBalanceError.
        """
        return await self._apply(external_id, {currency: -abs(amount)})

    async def credit(self, external_id: str, currency: Currency, amount: Decimal) -> Dict[str, Any]:
        """
        Adds money (cashing out).
        """
        return await self._apply(external_id, {currency: abs(amount)})

    async def top_up(self, external_id: str, currency: Any, amount: Any) -> Dict[str, Any]:
        cur = Currency.parse(currency)
        value = to_decimal(amount)
        if not external_id or cur is None or value is None or value <= 0:
            raise LedgerError("Check the top-up parameters")

        user = await self.credit(external_id, cur, value)
        logger.info(f"Top-up {external_id}: +{quantize_money(value)} {cur.value}")
        return user

    async def grant(self, external_id: str, ton: Any = 0, stars: Any = 0) -> Dict[str, Any]:
        """
        Admin grant. Amounts may be negative (a correction) as long as the
        resulting balances stay non-negative.
        """
        ton_value = to_decimal(ton)
        stars_value = to_decimal(stars)
        if not external_id or ton_value is None or stars_value is None:
            raise LedgerError("Invalid grant values")

        user = await self._apply(external_id, {
            Currency.TON: ton_value,
            Currency.STARS: stars_value,
        })
        logger.info(f"Admin grant {external_id}: ton {ton_value:+} stars {stars_value:+}")
        return user
