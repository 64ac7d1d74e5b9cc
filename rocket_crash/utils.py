# utils.py
"""
Utility functions for the Rocket Crash round engine

Includes:
- Decimal helpers for money and multipliers (fixed 2-place precision)
- Round id generation
- Constant-time secret comparison for the admin key
- Display formatting
"""

from __future__ import annotations

import hmac
import logging
import math
import secrets
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union, Optional

logger = logging.getLogger("rocket_crash.utils")

NumberType = Union[float, Decimal, int, str]

CENT = Decimal("0.01")

# Largest value a Numeric(18, 2) column holds
MAX_AMOUNT = Decimal("9999999999999999.99")

# =========================
# DECIMAL HELPERS
# =========================

def to_decimal(value: NumberType) -> Optional[Decimal]:
    """
    Convert API input to Decimal.
    Returns None for anything that is not a finite number within
    +/- MAX_AMOUNT.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.debug(f"Rejected non-numeric input: {value!r}")
        return None
    if not result.is_finite() or abs(result) > MAX_AMOUNT:
        return None
    return result


def quantize_money(amount: NumberType) -> Decimal:
    """
    Round a monetary amount to 2 decimals (half-up).
    Every balance, stake and win goes through here before it is stored.
    """
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_multiplier(mult: NumberType) -> Decimal:
    """Multipliers share the money precision."""
    return quantize_money(mult)


# =========================
# IDS & SECRETS
# =========================

def generate_unique_id(length: int = 3) -> str:
    """
    Generate a short random hex suffix.
    """
    return secrets.token_hex(length)


def generate_round_id(created_at: float) -> str:
    """
    Round ids sort by creation time: 'r-<epoch ms>-<random hex>'.
    """
    return f"r-{int(created_at * 1000):013d}-{generate_unique_id()}"


def secure_compare(provided: Optional[str], expected: str) -> bool:
    """
    Constant-time string comparison (prevents timing attacks on the admin key).
    """
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


# =========================
# FORMATTING
# =========================

def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def seconds_left(total: float, elapsed: float) -> float:
    """Countdown in seconds, one decimal, never negative."""
    return round(max(total - elapsed, 0.0), 1)
