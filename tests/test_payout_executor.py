"""
Tests for the payout executor.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import RoundStateError, TransferOutcomeUnknownError
from minetoearn.models.cashout import CashoutPayout, CashoutRequest, PayoutStatus, RoundStatus
from minetoearn.services.cashout.executor import PayoutExecutor
from minetoearn.services.cashout.payment_rail import SimulatedPaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import resolve_config

from conftest import START, OTHER_WALLET, WALLET, Clock, create_player, get_player


EXCHANGE = resolve_config(setting_rows={"cashout_pool_mode": "exchange_rate"})


class SlowRail(SimulatedPaymentRail):
    def __init__(self, delay=0.05, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def transfer(self, to_address, amount, reference):
        await asyncio.sleep(self.delay)
        return await super().transfer(to_address, amount, reference)


class SentButSlowRail(SimulatedPaymentRail):
    """Delivers the transfer, then answers too late."""

    async def transfer(self, to_address, amount, reference):
        result = await super().transfer(to_address, amount, reference)
        await asyncio.sleep(1)
        return result


class CrashingRail(SimulatedPaymentRail):
    async def transfer(self, to_address, amount, reference):
        if to_address == WALLET:
            raise ConnectionResetError("socket reset")
        return await super().transfer(to_address, amount, reference)


class UnconfirmedRail(SimulatedPaymentRail):
    async def transfer(self, to_address, amount, reference):
        raise TransferOutcomeUnknownError("no transaction reference", {"reference": reference})


class FlakyTreasuryRail(SimulatedPaymentRail):
    """Balance lookup crashes once, then works."""

    def __init__(self):
        super().__init__()
        self.crashed = False

    async def get_treasury_balance(self):
        if not self.crashed:
            self.crashed = True
            raise RuntimeError("treasury client not ready")
        return await super().get_treasury_balance()


class InterferingRail(SimulatedPaymentRail):
    """Moves the payout out of processing while the transfer is in flight."""

    async def transfer(self, to_address, amount, reference):
        async with get_async_session() as db:
            await db.execute(update(CashoutPayout).values(status=PayoutStatus.FAILED.value))
        return await super().transfer(to_address, amount, reference)


async def closed_round(players, config=EXCHANGE):
    async with get_async_session() as db:
        manager = CashoutRoundManager(db)
        for player_id in players:
            _, cashout_round = await manager.submit_request(player_id, 100, config, START)
        await manager.finalize_round(cashout_round.id, config, START + timedelta(minutes=5))
    return cashout_round.id


async def payouts_for(round_id):
    async with get_async_session() as db:
        result = await db.execute(
            select(CashoutPayout).where(CashoutPayout.round_id == round_id).order_by(CashoutPayout.id)
        )
        return list(result.scalars().all())


async def round_status(round_id):
    async with get_async_session() as db:
        return (await CashoutRoundManager(db).get_round(round_id)).status


def executor(rail, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("transfer_timeout", 5)
    return PayoutExecutor(rail, clock=Clock(START + timedelta(minutes=6)), **kwargs)


@pytest.fixture
async def players(database):
    await create_player("p1", diamonds=500)
    await create_player("p2", diamonds=500, wallet=OTHER_WALLET)


async def test_pays_every_payout_and_completes(players):
    round_id = await closed_round(["p1", "p2"])
    rail = SimulatedPaymentRail(treasury_balance=100)

    report = await executor(rail).execute_round(round_id)

    assert report.claimed == 2
    assert report.paid == 2
    assert report.completed is True

    payouts = await payouts_for(round_id)
    assert [p.status for p in payouts] == ["paid", "paid"]
    assert all(p.attempt_count == 1 for p in payouts)
    assert [t[2] for t in rail.transfers] == [f"cashout-{round_id}-{p.id}" for p in payouts]
    assert {t[0] for t in rail.transfers} == {WALLET, OTHER_WALLET}
    assert [p.tx_reference for p in payouts] == [t[3] for t in rail.transfers]
    assert rail.treasury_balance == pytest.approx(86)
    assert await round_status(round_id) == RoundStatus.PAID.value

    async with get_async_session() as db:
        statuses = (await db.execute(select(CashoutRequest.status))).scalars().all()
    assert set(statuses) == {"paid"}


async def test_invalid_address_is_refunded(database):
    await create_player("p1", diamonds=500, wallet=None)
    round_id = await closed_round(["p1"])
    rail = SimulatedPaymentRail()

    report = await executor(rail).execute_round(round_id)

    assert report.refunded == 1
    assert report.outcomes[0]["reason"] == "invalid_address"
    assert rail.transfers == []
    assert (await get_player("p1")).diamond_balance == 500
    assert await round_status(round_id) == RoundStatus.PAID.value


async def test_zero_amount_is_refunded(players):
    round_id = await closed_round(["p1"], config=resolve_config())

    report = await executor(SimulatedPaymentRail()).execute_round(round_id)

    assert report.outcomes[0]["reason"] == "zero_amount"
    assert (await get_player("p1")).diamond_balance == 500


async def test_insufficient_treasury_is_refunded(players):
    round_id = await closed_round(["p1"])
    rail = SimulatedPaymentRail(treasury_balance=1)

    report = await executor(rail).execute_round(round_id)

    assert report.outcomes[0]["reason"] == "insufficient_treasury"
    assert rail.transfers == []
    assert (await payouts_for(round_id))[0].status == PayoutStatus.REFUNDED.value


async def test_rejected_transfer_is_refunded(players):
    round_id = await closed_round(["p1", "p2"])
    rail = SimulatedPaymentRail(rejected_addresses={OTHER_WALLET})

    report = await executor(rail).execute_round(round_id)

    assert report.paid == 1
    assert report.refunded == 1
    assert report.completed is True
    assert (await get_player("p2")).diamond_balance == 500
    assert (await get_player("p1")).diamond_balance == 400


async def test_retryable_failure_until_attempts_run_out(players):
    round_id = await closed_round(["p1"])
    rail = SimulatedPaymentRail(unavailable_addresses={WALLET})
    run = executor(rail)

    for attempt in (1, 2):
        report = await run.execute_round(round_id)
        assert report.failed == 1
        assert report.completed is False
        payout = (await payouts_for(round_id))[0]
        assert payout.status == PayoutStatus.FAILED.value
        assert payout.attempt_count == attempt
        assert (await get_player("p1")).diamond_balance == 400

    final = await run.execute_round(round_id)

    assert final.refunded == 1
    assert final.outcomes[0]["reason"] == "max_attempts"
    assert final.completed is True
    assert (await get_player("p1")).diamond_balance == 500


async def test_failed_payouts_skipped_without_retry(players):
    round_id = await closed_round(["p1"])
    run = executor(SimulatedPaymentRail(unavailable_addresses={WALLET}))
    await run.execute_round(round_id)

    report = await run.execute_round(round_id, retry_failed=False)

    assert report.claimed == 0
    assert (await payouts_for(round_id))[0].attempt_count == 1


async def test_timed_out_transfer_is_left_for_reconciliation(players):
    round_id = await closed_round(["p1"])
    rail = SentButSlowRail()
    run = executor(rail, transfer_timeout=0.05, max_attempts=2)

    first = await run.execute_round(round_id)
    second = await run.execute_round(round_id)

    assert first.ambiguous == 1
    assert first.completed is False
    assert second.claimed == 0
    assert len(rail.transfers) == 1
    payout = (await payouts_for(round_id))[0]
    assert payout.status == PayoutStatus.PROCESSING.value
    assert (await get_player("p1")).diamond_balance == 400


async def test_unconfirmed_transfer_is_never_refunded(players):
    round_id = await closed_round(["p1"])

    report = await executor(UnconfirmedRail(), max_attempts=1).execute_round(round_id)

    assert report.ambiguous == 1
    assert report.refunded == 0
    assert (await payouts_for(round_id))[0].status == PayoutStatus.PROCESSING.value
    assert (await get_player("p1")).diamond_balance == 400


async def test_unexpected_rail_error_does_not_block_the_round(players):
    round_id = await closed_round(["p1", "p2"])
    rail = CrashingRail()

    report = await executor(rail).execute_round(round_id)

    assert report.ambiguous == 1
    assert report.paid == 1
    assert [t[0] for t in rail.transfers] == [OTHER_WALLET]
    statuses = {p.player_id: p.status for p in await payouts_for(round_id)}
    assert statuses == {"p1": PayoutStatus.PROCESSING.value, "p2": PayoutStatus.PAID.value}


async def test_error_before_transfer_is_retried(players):
    round_id = await closed_round(["p1"])
    run = executor(FlakyTreasuryRail())

    first = await run.execute_round(round_id)
    assert first.failed == 1
    assert (await payouts_for(round_id))[0].status == PayoutStatus.FAILED.value

    second = await run.execute_round(round_id)
    assert second.paid == 1
    assert second.completed is True


async def test_lost_status_write_is_ambiguous(players):
    round_id = await closed_round(["p1"])
    rail = InterferingRail()

    report = await executor(rail).execute_round(round_id)

    assert report.ambiguous == 1
    assert report.outcomes[0]["tx_reference"] == rail.transfers[0][3]
    assert report.completed is False


async def test_open_round_cannot_be_executed(players):
    async with get_async_session() as db:
        _, cashout_round = await CashoutRoundManager(db).submit_request("p1", 100, EXCHANGE, START)

    with pytest.raises(RoundStateError):
        await executor(SimulatedPaymentRail()).execute_round(cashout_round.id)


async def test_paid_round_is_a_no_op(players):
    round_id = await closed_round(["p1"])
    rail = SimulatedPaymentRail()
    await executor(rail).execute_round(round_id)

    report = await executor(rail).execute_round(round_id)

    assert report.claimed == 0
    assert len(rail.transfers) == 1


async def test_small_batches_cover_the_round(database):
    for index in range(5):
        await create_player(f"p{index}", diamonds=100, wallet="0x" + f"{index:02d}" * 20)
    round_id = await closed_round([f"p{index}" for index in range(5)])
    rail = SimulatedPaymentRail()

    report = await executor(rail).execute_round(round_id, batch_size=2)

    assert report.paid == 5
    assert report.completed is True
    assert len({t[2] for t in rail.transfers}) == 5
