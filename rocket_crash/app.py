# app.py
"""
Rocket Crash – HTTP Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Thin handlers over the round engine and the balance ledger
- Error taxonomy -> HTTP status mapping

Integration:
- Uses engine.py (shared round, settle-then-act under one lock)
- Uses db.py (two-currency balance ledger)
"""

from __future__ import annotations

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from rocket_crash.engine import (
    CrashGameEngine,
    EngineError,
    StateError,
    BetError,
    InsufficientFundsError,
)
from rocket_crash.db import (
    AsyncSessionLocal,
    BalanceLedger,
    LedgerError,
    init_db,
)
from rocket_crash.utils import secure_compare

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("rocket_crash.app")

ADMIN_KEY = os.getenv("ADMIN_KEY", "super-admin-key")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

# Stake, amount and currency are range-checked by the engine/ledger so that
# each rejection reports its own error code.

class BetRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    stake: Union[float, str]
    currency: str
    round_id: Optional[str] = None

class CashoutRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    round_id: Optional[str] = None

class TopUpRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    currency: str
    amount: Union[float, str]

class GrantRequest(BaseModel):
    admin_key: str = ""
    user_id: str = Field(..., min_length=1)
    ton: Union[float, str] = 0
    stars: Union[float, str] = 0

# =====================================================
# LIFECYCLE
# =====================================================

ledger = BalanceLedger(AsyncSessionLocal)
engine = CrashGameEngine(ledger)


def get_ledger() -> BalanceLedger:
    return ledger


def get_engine() -> CrashGameEngine:
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages startup and shutdown events.
    """
    logger.info("Startup: Initializing balance ledger...")
    await init_db()

    yield

    logger.info("Shutdown: Cleaning up...")

# =====================================================
# APP INIT
# =====================================================

app = FastAPI(
    title="Rocket Crash API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =====================================================
# ERROR HANDLERS
# =====================================================

def _error_response(status_code: int, title: str, exc: Exception) -> JSONResponse:
    logger.warning(f"{title}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": title,
            "code": getattr(exc, "code", "error"),
            "detail": str(exc),
        },
    )

@app.exception_handler(StateError)
async def state_error_handler(_, exc: StateError):
    return _error_response(status.HTTP_409_CONFLICT, "Game State Conflict", exc)

@app.exception_handler(BetError)
async def bet_error_handler(_, exc: BetError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "Invalid Bet", exc)

@app.exception_handler(InsufficientFundsError)
async def funds_error_handler(_, exc: InsufficientFundsError):
    return _error_response(status.HTTP_402_PAYMENT_REQUIRED, "Insufficient Funds", exc)

@app.exception_handler(EngineError)
async def engine_error_handler(_, exc: EngineError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "Engine Error", exc)

@app.exception_handler(LedgerError)
async def ledger_error_handler(_, exc: LedgerError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "Ledger Error", exc)

@app.exception_handler(RequestValidationError)
async def request_error_handler(_, exc: RequestValidationError):
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    logger.warning(f"Malformed request: {detail}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Malformed Request", "code": "invalid_request", "detail": detail},
    )

# =====================================================
# API – USER
# =====================================================

@app.get("/api/users/{user_id}")
async def api_user(user_id: str, ledger: BalanceLedger = Depends(get_ledger)):
    """
    Fetch (or lazily create) a user with both balances.
    """
    return await ledger.get_user(user_id)


@app.post("/api/topup")
async def api_topup(payload: TopUpRequest, ledger: BalanceLedger = Depends(get_ledger)):
    user = await ledger.top_up(payload.user_id, payload.currency, payload.amount)
    return {"ok": True, "balance": user}


@app.post("/api/admin/grant")
async def api_admin_grant(payload: GrantRequest, ledger: BalanceLedger = Depends(get_ledger)):
    if not secure_compare(payload.admin_key, ADMIN_KEY):
        logger.warning(f"Rejected admin grant for {payload.user_id}: bad key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin key")

    user = await ledger.grant(payload.user_id, ton=payload.ton, stars=payload.stars)
    return {"ok": True, "balance": user}

# =====================================================
# API – GAME
# =====================================================

@app.get("/api/game/round")
async def api_round(engine: CrashGameEngine = Depends(get_engine)):
    """
    Polling endpoint for the shared round.
    """
    snapshot = await engine.snapshot()
    return snapshot.to_dict()


@app.post("/api/game/bet")
async def api_place_bet(payload: BetRequest, engine: CrashGameEngine = Depends(get_engine)):
    """
    Debit + bet registration happen atomically inside the engine.
    """
    return await engine.place_bet(
        user_id=payload.user_id,
        stake=payload.stake,
        currency=payload.currency,
        round_id=payload.round_id,
    )


@app.post("/api/game/cashout")
async def api_cashout(payload: CashoutRequest, engine: CrashGameEngine = Depends(get_engine)):
    """
    Engine is the authority on the payout multiplier.
    """
    return await engine.cashout(user_id=payload.user_id, round_id=payload.round_id)


@app.get("/api/game/bet/{user_id}")
async def api_bet_status(user_id: str, engine: CrashGameEngine = Depends(get_engine)):
    return await engine.bet_status(user_id)
