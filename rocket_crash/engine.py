# engine.py
"""
Rocket Crash Round Engine

Responsibilities:
- Round Clock: pure time -> multiplier curve and crash point sampling
- Shared round state machine (BETTING -> RUNNING -> CRASHED -> next round)
- Per-round bet ledger with the bet / cashout protocol
- One asyncio lock around every "settle + act" sequence

There is no game loop. Phase changes are derived from stored timestamps by
settle(), which every request runs before it reads or writes the round.
"""

from __future__ import annotations

import os
import time
import random
import secrets
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, getcontext
from typing import Callable, Dict, Optional, Any, Union

from rocket_crash.db import BalanceLedger, Currency, InsufficientBalanceError
from rocket_crash.utils import (
    generate_round_id,
    quantize_money,
    quantize_multiplier,
    seconds_left,
    to_decimal,
    format_multiplier,
)

# Ensure high precision for internal calculations
getcontext().prec = 50

logger = logging.getLogger("rocket_crash.engine")

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- FLIGHT CURVE ---
    # Multiplier = 1 + LINEAR * t + QUADRATIC * t^2  (t in seconds)
    MULTIPLIER_LINEAR = Decimal("0.14")
    MULTIPLIER_QUADRATIC = Decimal("0.075")

    # --- CRASH POINT ---
    # point = BASE + (1 / (1 - r) - 1) * SCALE, r uniform in [0, 1)
    CRASH_BASE = 1.25
    CRASH_SCALE = 0.85
    MIN_CRASH = Decimal("1.25")
    MAX_CRASH = Decimal("22.00")

    # --- TIMING ---
    BETTING_WINDOW_SEC = float(os.getenv("BETTING_WINDOW_SEC", "7.0"))
    CRASH_DISPLAY_SEC = float(os.getenv("CRASH_DISPLAY_SEC", "4.5"))

# =========================
# ENUMS & EXCEPTIONS
# =========================

class RoundPhase(str, Enum):
    BETTING = "betting"
    RUNNING = "running"
    CRASHED = "crashed"

class EngineError(Exception):
    """Base engine error"""
    code = "engine_error"

class BetError(EngineError):
    """Invalid bet parameters"""
    code = "invalid_bet"

class InvalidBetError(BetError):
    """Stake or currency rejected before touching the round"""

class StateError(EngineError):
    """Action conflicts with the authoritative round state"""
    code = "state_conflict"

class BettingClosedError(StateError):
    code = "betting_closed"

class RoundMismatchError(StateError):
    code = "round_mismatch"

class DuplicateBetError(StateError):
    code = "duplicate_bet"

class NoActiveBetError(StateError):
    code = "no_active_bet"

class AlreadyCashedOutError(StateError):
    code = "already_cashed_out"

class CashoutUnavailableError(StateError):
    code = "cashout_unavailable"

class CashoutTooLateError(StateError):
    code = "cashout_too_late"

class InsufficientFundsError(EngineError):
    """Balance too low for the stake"""
    code = "insufficient_funds"

# =========================
# ROUND CLOCK
# =========================

def multiplier_at(elapsed_seconds: Union[float, Decimal]) -> Decimal:
    """
    Pure function: seconds of flight -> multiplier, rounded to 2 places.
    Negative elapsed time is treated as 0.
    """
    t = elapsed_seconds if isinstance(elapsed_seconds, Decimal) else Decimal(str(elapsed_seconds))
    if t <= 0:
        return Decimal("1.00")

    value = 1 + GameConfig.MULTIPLIER_LINEAR * t + GameConfig.MULTIPLIER_QUADRATIC * t * t
    return quantize_multiplier(value)


class CrashPointSampler:
    """
    Draws the crash point of a round.

    Heavy-tailed: most rounds crash low, a few fly far. The result is always
    within [MIN_CRASH, MAX_CRASH].

    Pass `seed` (or a ready `rng`) for reproducible sequences; the default
    source is the OS random generator.
    """

    def __init__(self, seed: Optional[int] = None, rng: Optional[random.Random] = None) -> None:
        if rng is None:
            rng = random.Random(seed) if seed is not None else secrets.SystemRandom()
        self._rng = rng

    def sample(self) -> Decimal:
        r = self._rng.random()  # [0.0, 1.0)
        point = GameConfig.CRASH_BASE + (1.0 / (1.0 - r) - 1.0) * GameConfig.CRASH_SCALE
        return max(GameConfig.MIN_CRASH, min(quantize_multiplier(point), GameConfig.MAX_CRASH))


class FixedCrashPoint:
    """Sampler that always returns the same crash point."""

    def __init__(self, value: Union[float, str, Decimal]) -> None:
        self._value = quantize_multiplier(value)

    def sample(self) -> Decimal:
        return self._value

# =========================
# DOMAIN MODELS
# =========================

@dataclass
class Bet:
    user_id: str
    stake: Decimal
    currency: Currency

    # Outcome
    cashed_out: bool = False
    win: Decimal = Decimal("0.00")

@dataclass
class GameRound:
    round_id: str
    crash_point: Decimal
    created_at: float
    betting_window: float

    # Set once by settle(), never cleared
    started_at: Optional[float] = None
    crashed_at: Optional[float] = None

    bets: Dict[str, Bet] = field(default_factory=dict)

    @property
    def phase(self) -> RoundPhase:
        if self.started_at is None:
            return RoundPhase.BETTING
        if self.crashed_at is None:
            return RoundPhase.RUNNING
        return RoundPhase.CRASHED

@dataclass(frozen=True)
class RoundSnapshot:
    round_id: str
    phase: RoundPhase
    multiplier: Decimal
    seconds_to_start: Optional[float] = None
    seconds_to_next: Optional[float] = None
    crash_point: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.round_id,
            "phase": self.phase.value,
            "multiplier": float(self.multiplier),
        }
        if self.seconds_to_start is not None:
            data["seconds_to_start"] = self.seconds_to_start
        if self.seconds_to_next is not None:
            data["seconds_to_next"] = self.seconds_to_next
        if self.crash_point is not None:
            data["crash_point"] = float(self.crash_point)
        return data

# =========================
# ENGINE CLASS
# =========================

class CrashGameEngine:
    """
    Owns the single shared round.

    Callers never get a reference to the round itself; every public method
    takes the lock, settles the round at the current clock reading and then
    acts on that view.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        *,
        clock: Callable[[], float] = time.time,
        sampler: Optional[Any] = None,
        betting_window: float = GameConfig.BETTING_WINDOW_SEC,
        crash_display: float = GameConfig.CRASH_DISPLAY_SEC,
    ) -> None:
        self._lock = asyncio.Lock()
        self._ledger = ledger
        self._clock = clock
        self._sampler = sampler if sampler is not None else CrashPointSampler()
        self._betting_window = betting_window
        self._crash_display = crash_display
        self._round = self._new_round(self._clock())

    # =====================================================
    # ROUND LIFECYCLE (caller holds the lock)
    # =====================================================

    def _new_round(self, now: float) -> GameRound:
        rnd = GameRound(
            round_id=generate_round_id(now),
            crash_point=self._sampler.sample(),
            created_at=now,
            betting_window=self._betting_window,
        )
        logger.info(f"Round {rnd.round_id} open for bets ({self._betting_window:.1f}s)")
        return rnd

    def _settle(self, now: float) -> GameRound:
        """
        Advance the current round to what `now` implies.
        The three steps run in order, so one pass reaches the fixed point.
        """
        rnd = self._round

        # 1. Betting window over: flight starts exactly when the window ends
        if rnd.started_at is None and now - rnd.created_at >= rnd.betting_window:
            rnd.started_at = rnd.created_at + rnd.betting_window
            logger.debug(f"Round {rnd.round_id} took off ({len(rnd.bets)} bets)")

        # 2. Curve reached the crash point
        if rnd.started_at is not None and rnd.crashed_at is None:
            if multiplier_at(now - rnd.started_at) >= rnd.crash_point:
                rnd.crashed_at = now
                logger.info(f"Round {rnd.round_id} crashed at {format_multiplier(rnd.crash_point)}")

        # 3. Crash shown long enough: roll over
        if rnd.crashed_at is not None and now - rnd.crashed_at >= self._crash_display:
            self._round = self._new_round(now)

        return self._round

    def _snapshot(self, rnd: GameRound, now: float) -> RoundSnapshot:
        if rnd.phase is RoundPhase.BETTING:
            return RoundSnapshot(
                round_id=rnd.round_id,
                phase=RoundPhase.BETTING,
                multiplier=Decimal("1.00"),
                seconds_to_start=seconds_left(rnd.betting_window, now - rnd.created_at),
            )

        if rnd.phase is RoundPhase.CRASHED:
            return RoundSnapshot(
                round_id=rnd.round_id,
                phase=RoundPhase.CRASHED,
                multiplier=rnd.crash_point,
                crash_point=rnd.crash_point,
                seconds_to_next=seconds_left(self._crash_display, now - rnd.crashed_at),
            )

        return RoundSnapshot(
            round_id=rnd.round_id,
            phase=RoundPhase.RUNNING,
            multiplier=multiplier_at(now - rnd.started_at),
        )

    # =====================================================
    # READ API
    # =====================================================

    async def settle(self) -> RoundPhase:
        """Idempotent. Returns the phase after settling."""
        async with self._lock:
            return self._settle(self._clock()).phase

    async def snapshot(self) -> RoundSnapshot:
        async with self._lock:
            now = self._clock()
            return self._snapshot(self._settle(now), now)

    async def bet_status(self, user_id: str) -> Dict[str, Any]:
        """
        Whether the user holds a live bet in the current round and what it
        would pay at the current multiplier.
        """
        async with self._lock:
            now = self._clock()
            rnd = self._settle(now)
            bet = rnd.bets.get(user_id)

            if bet is None or bet.cashed_out or rnd.phase is RoundPhase.CRASHED:
                return {"active": False, "round_id": rnd.round_id}

            snap = self._snapshot(rnd, now)
            return {
                "active": True,
                "round_id": rnd.round_id,
                "currency": bet.currency.value,
                "stake": float(bet.stake),
                "potential_win": float(quantize_money(bet.stake * snap.multiplier)),
            }

    # =====================================================
    # BETTING ACTIONS
    # =====================================================

    async def place_bet(
        self,
        user_id: str,
        stake: Any,
        currency: Any,
        round_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Debit the stake and register the bet for the current round.
        Returns {"round_id", "balance"}.
        """
        amount = to_decimal(stake)
        cur = Currency.parse(currency)
        if not user_id:
            raise InvalidBetError("Invalid user id")
        if amount is None or cur is None:
            raise InvalidBetError("Invalid stake or currency")

        amount = quantize_money(amount)
        if amount <= 0:
            raise InvalidBetError("Stake must be positive")

        async with self._lock:
            rnd = self._settle(self._clock())

            if rnd.started_at is not None:
                raise BettingClosedError("Betting for this round is closed")

            if round_id and round_id != rnd.round_id:
                raise RoundMismatchError("The round has changed, refresh the screen")

            if user_id in rnd.bets:
                raise DuplicateBetError("Bet for this round already placed")

            try:
                balance = await self._ledger.debit(user_id, cur, amount)
            except InsufficientBalanceError as exc:
                raise InsufficientFundsError("Insufficient funds") from exc

            rnd.bets[user_id] = Bet(
                user_id=user_id,
                stake=amount,
                currency=cur,
            )
            logger.info(f"Bet {user_id}: {amount} {cur.value} on {rnd.round_id}")

            return {"round_id": rnd.round_id, "balance": balance}

    async def cashout(self, user_id: str, round_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Lock in the multiplier of this instant.
        The payout multiplier is always the server's own time-derived value.
        Returns {"win", "multiplier", "currency", "balance"}.
        """
        async with self._lock:
            now = self._clock()
            # Evaluates multiplier_at(now) against the crash point and
            # records the crash before any eligibility check below.
            rnd = self._settle(now)

            if round_id and round_id != rnd.round_id:
                raise RoundMismatchError("That round is already over")

            bet = rnd.bets.get(user_id)
            if bet is None:
                raise NoActiveBetError("No active bet found")

            if bet.cashed_out:
                raise AlreadyCashedOutError("Bet already cashed out")

            if rnd.started_at is None:
                raise CashoutUnavailableError("Cashout is not available before take-off")

            if rnd.crashed_at is not None:
                raise CashoutTooLateError("Too late, the rocket already crashed")

            multiplier = multiplier_at(now - rnd.started_at)
            win = quantize_money(bet.stake * multiplier)

            balance = await self._ledger.credit(user_id, bet.currency, win)

            bet.cashed_out = True
            bet.win = win
            logger.info(
                f"Cashout {user_id}: {format_multiplier(multiplier)} -> {win} {bet.currency.value}"
            )

            return {
                "win": float(win),
                "multiplier": float(multiplier),
                "currency": bet.currency.value,
                "balance": balance,
            }
