"""
Tests for cashout reconciliation.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import RoundNotFoundError
from minetoearn.models.cashout import CashoutPayout, PayoutStatus, RoundStatus
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import resolve_config

from conftest import START, OTHER_WALLET, create_player


EXCHANGE = resolve_config(setting_rows={"cashout_pool_mode": "exchange_rate"})


async def closed_round(*players):
    """Submit 100 diamonds for each player and finalize the round."""
    async with get_async_session() as db:
        manager = CashoutRoundManager(db)
        for player_id in players:
            _, cashout_round = await manager.submit_request(player_id, 100, EXCHANGE, START)
        await manager.finalize_round(cashout_round.id, EXCHANGE, START + timedelta(minutes=5))
    return cashout_round.id


async def set_payouts(round_id, **values):
    async with get_async_session() as db:
        await db.execute(
            update(CashoutPayout).where(CashoutPayout.round_id == round_id).values(**values)
        )


async def reconcile(now=START + timedelta(minutes=5), **kwargs):
    async with get_async_session() as db:
        return await CashoutRoundManager(db).reconcile(now, **kwargs)


@pytest.fixture
async def players(database):
    await create_player("p1", diamonds=500)
    await create_player("p2", diamonds=500, wallet=OTHER_WALLET)


async def test_open_round_reported_as_awaiting(players):
    async with get_async_session() as db:
        _, cashout_round = await CashoutRoundManager(db).submit_request("p1", 100, EXCHANGE, START)

    report = await reconcile()

    assert report.open_rounds_awaiting_finalization == [cashout_round.id]
    assert report.ok


async def test_consistent_paid_round_is_completed(players):
    round_id = await closed_round("p1", "p2")
    await set_payouts(round_id, status=PayoutStatus.PAID.value, tx_reference="tx")

    report = await reconcile()
    assert report.ok
    assert report.closed_rounds_ready == [round_id]
    assert report.completed_rounds == []

    healed = await reconcile(auto_heal=True)
    assert healed.completed_rounds == [round_id]
    async with get_async_session() as db:
        assert (await CashoutRoundManager(db).get_round(round_id)).status == RoundStatus.PAID.value


async def test_diamond_mismatch(players):
    round_id = await closed_round("p1", "p2")
    async with get_async_session() as db:
        payout_id = (await db.execute(
            select(CashoutPayout.id).where(CashoutPayout.round_id == round_id).limit(1)
        )).scalar_one()
        await db.execute(
            update(CashoutPayout).where(CashoutPayout.id == payout_id).values(diamonds_burned=150)
        )

    report = await reconcile()

    assert not report.ok
    assert report.diamond_mismatches == [
        {"round_id": round_id, "request_diamonds": 200, "payout_diamonds": 250}
    ]


async def test_refund_without_request_refund(players):
    round_id = await closed_round("p1")
    await set_payouts(round_id, status=PayoutStatus.REFUNDED.value)

    report = await reconcile()

    assert not report.ok
    assert report.refund_mismatches[0]["round_id"] == round_id
    assert report.to_dict()["ok"] is False


async def test_proper_refund_is_consistent(players):
    round_id = await closed_round("p1", "p2")
    async with get_async_session() as db:
        payout_id = (await db.execute(
            select(CashoutPayout.id).where(CashoutPayout.player_id == "p1")
        )).scalar_one()
        await CashoutRoundManager(db).refund_payout(payout_id, "manual")

    report = await reconcile()

    assert report.ok
    assert report.diamond_mismatches == []


async def test_stuck_processing_payout(players):
    round_id = await closed_round("p1")
    await set_payouts(round_id, status=PayoutStatus.PROCESSING.value, updated_at=START)

    fresh = await reconcile(now=START + timedelta(minutes=10))
    assert fresh.ok

    stuck = await reconcile(now=START + timedelta(minutes=20))
    assert not stuck.ok
    assert stuck.stuck_processing[0]["round_id"] == round_id
    assert stuck.closed_rounds_ready == []


async def test_unknown_round(database):
    with pytest.raises(RoundNotFoundError):
        await reconcile(round_id=999)
