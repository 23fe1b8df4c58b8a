"""
Tests for the player-facing cashout flow.
"""

import pytest

from minetoearn.core.config import settings
from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import InsufficientDiamondsError, RateLimitError
from minetoearn.models.cashout import RoundStatus
from minetoearn.services.cashout.payment_rail import SimulatedPaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.cashout.service import QUEUED_MESSAGE, CashoutService
from minetoearn.services.rate_limiter import InMemoryRateLimiter

from conftest import START, WALLET, Clock, create_player, get_player, set_global_setting


class BrokenRail(SimulatedPaymentRail):
    async def get_treasury_balance(self):
        raise RuntimeError("rail misconfigured")


class BrokenSessionFactory:
    """Lets the submission through, then fails every later transaction."""

    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls > 1:
            raise RuntimeError("database unavailable")
        return get_async_session()


@pytest.fixture
async def player(database):
    await set_global_setting("cashout_pool_mode", "exchange_rate")
    await create_player("p1", diamonds=150)


def service(rail, **kwargs):
    kwargs.setdefault("immediate_settlement", True)
    return CashoutService(rail, clock=Clock(START), **kwargs)


async def test_immediate_settlement_pays(player):
    rail = SimulatedPaymentRail()

    response = await service(rail).request_cashout("p1", 100)

    assert response["request"]["diamonds_submitted"] == 100
    assert response["round"]["status"] == RoundStatus.OPEN.value
    assert response["settlement"] == {
        "finalized": True, "executed": True, "refunded": False, "message": "Cashout paid"
    }
    assert rail.transfers[0][0] == WALLET
    assert rail.transfers[0][1] == pytest.approx(7)
    assert (await get_player("p1")).diamond_balance == 50

    async with get_async_session() as db:
        cashout_round = await CashoutRoundManager(db).get_round(response["round"]["id"])
    assert cashout_round.status == RoundStatus.PAID.value


async def test_immediate_settlement_refunds(player):
    rail = SimulatedPaymentRail(rejected_addresses={WALLET})

    response = await service(rail).request_cashout("p1", 100)

    assert response["settlement"]["refunded"] is True
    assert response["settlement"]["message"] == "Cashout could not be paid, diamonds were refunded"
    assert (await get_player("p1")).diamond_balance == 150


async def test_deferred_settlement_queues(player):
    rail = SimulatedPaymentRail()

    response = await service(rail, immediate_settlement=False).request_cashout("p1", 100)

    assert response["settlement"]["message"] == QUEUED_MESSAGE
    assert response["settlement"]["finalized"] is False
    assert rail.transfers == []
    assert (await get_player("p1")).diamond_balance == 50

    async with get_async_session() as db:
        cashout_round = await CashoutRoundManager(db).get_current_round(START)
    assert cashout_round.signaled_at == START


async def test_auto_finalize_disabled_queues(player):
    await set_global_setting("cashout_auto_finalize_enabled", "false")

    response = await service(SimulatedPaymentRail()).request_cashout("p1", 100)

    assert response["settlement"]["message"] == QUEUED_MESSAGE


async def test_submission_errors_propagate(player):
    with pytest.raises(InsufficientDiamondsError):
        await service(SimulatedPaymentRail()).request_cashout("p1", 200)
    assert (await get_player("p1")).diamond_balance == 150


async def test_rail_errors_leave_payout_queued_for_retry(player):
    response = await service(BrokenRail()).request_cashout("p1", 100)

    assert response["settlement"]["finalized"] is True
    assert response["settlement"]["executed"] is True
    assert response["settlement"]["message"] == QUEUED_MESSAGE
    assert (await get_player("p1")).diamond_balance == 50


async def test_settlement_errors_leave_request_queued(player):
    cashouts = service(SimulatedPaymentRail(), session_factory=BrokenSessionFactory())

    response = await cashouts.request_cashout("p1", 100)

    assert response["settlement"] == {
        "finalized": False, "executed": False, "refunded": False, "message": QUEUED_MESSAGE
    }
    assert (await get_player("p1")).diamond_balance == 50


async def test_cashout_rate_limit(player, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit_enabled", True)
    monkeypatch.setattr(settings, "rate_limit_cashouts", 1)
    limiter = InMemoryRateLimiter()
    cashouts = service(SimulatedPaymentRail(), rate_limiter=limiter, immediate_settlement=False)

    await cashouts.request_cashout("p1", 100)
    with pytest.raises(RateLimitError):
        await cashouts.request_cashout("p1", 100)
