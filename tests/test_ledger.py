from decimal import Decimal

import pytest

from rocket_crash.db import Currency, InsufficientBalanceError, LedgerError
from rocket_crash.utils import MAX_AMOUNT

pytestmark = pytest.mark.anyio


async def test_users_are_created_lazily(ledger):
    user = await ledger.get_user("u-new")

    assert user == {"id": "u-new", "name": "Player u-new", "ton": 0.0, "stars": 0.0}


async def test_demo_user_is_seeded(ledger):
    user = await ledger.get_user("demo-user")

    assert user["name"] == "Player One"
    assert user["ton"] == 25.0
    assert user["stars"] == 1500.0


async def test_top_up_rounds_to_cents(ledger):
    user = await ledger.top_up("u-top", "ton", 5.555)

    assert user["ton"] == 5.56
    assert await ledger.balance("u-top", Currency.TON) == Decimal("5.56")


@pytest.mark.parametrize(
    "currency,amount",
    [("usd", 5), ("ton", 0), ("ton", -3), ("stars", float("nan")), ("ton", "lots"), ("ton", 1e60)],
)
async def test_top_up_rejects_bad_input(ledger, currency, amount):
    with pytest.raises(LedgerError):
        await ledger.top_up("u-bad", currency, amount)


async def test_debit_never_goes_negative(ledger):
    await ledger.top_up("u-debit", "stars", 10)

    with pytest.raises(InsufficientBalanceError):
        await ledger.debit("u-debit", Currency.STARS, Decimal("10.01"))
    assert await ledger.balance("u-debit", Currency.STARS) == Decimal("10.00")

    user = await ledger.debit("u-debit", Currency.STARS, Decimal("10"))
    assert user["stars"] == 0.0


async def test_grant_both_currencies(ledger):
    user = await ledger.grant("u-grant", ton=5, stars=50)

    assert user["ton"] == 5.0
    assert user["stars"] == 50.0


async def test_grant_is_all_or_nothing(ledger):
    await ledger.grant("u-partial", ton=5, stars=5)

    with pytest.raises(InsufficientBalanceError):
        await ledger.grant("u-partial", ton=1, stars=-6)

    user = await ledger.get_user("u-partial")
    assert user["ton"] == 5.0
    assert user["stars"] == 5.0


async def test_grant_rejects_non_numeric(ledger):
    with pytest.raises(LedgerError):
        await ledger.grant("u-grant", ton="many")


async def test_empty_user_id_is_rejected(ledger):
    with pytest.raises(LedgerError):
        await ledger.get_user("")


async def test_grant_rejects_oversized_amounts(ledger):
    with pytest.raises(LedgerError):
        await ledger.grant("u-huge", ton=1e60)

    user = await ledger.get_user("u-huge")
    assert user["ton"] == 0.0


async def test_balance_cannot_exceed_column_limit(ledger):
    with pytest.raises(LedgerError):
        await ledger.credit("demo-user", Currency.TON, MAX_AMOUNT)

    assert await ledger.balance("demo-user", Currency.TON) == Decimal("25.00")
