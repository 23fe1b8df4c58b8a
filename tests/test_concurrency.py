"""
Overlapping writers against a file-backed database, where every session holds
its own connection.
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select

from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import MineToEarnException
from minetoearn.models.cashout import CashoutPayout, RoundStatus
from minetoearn.services.cashout.executor import PayoutExecutor
from minetoearn.services.cashout.payment_rail import SimulatedPaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import resolve_config
from minetoearn.services.ledger import PlayerLedger

from conftest import START, Clock, create_player, get_machines, get_player


CAPACITY = resolve_config().capacity_for("mini", 1)
EXCHANGE = resolve_config(setting_rows={"cashout_pool_mode": "exchange_rate"})


class SlowRail(SimulatedPaymentRail):
    async def transfer(self, to_address, amount, reference):
        await asyncio.sleep(0.05)
        return await super().transfer(to_address, amount, reference)


async def fuel(machine_id, amount=None):
    async with get_async_session() as db:
        return await PlayerLedger(db).fuel_machine("p1", machine_id, amount, CAPACITY)


def assert_domain_errors(results):
    for result in results:
        if isinstance(result, Exception):
            assert isinstance(result, MineToEarnException), repr(result)


async def test_concurrent_fuels_never_overfill(file_database):
    await create_player("p1", oil=1000)
    machine_id = (await get_machines("p1"))[0].id

    results = await asyncio.gather(fuel(machine_id), fuel(machine_id), return_exceptions=True)

    assert_domain_errors(results)
    machine = (await get_machines("p1"))[0]
    player = await get_player("p1")
    assert machine.fuel_oil <= CAPACITY
    assert player.oil_balance >= 0
    assert player.oil_balance + machine.fuel_oil == 1000


async def test_concurrent_fuels_never_overdraw(file_database):
    await create_player("p1", oil=CAPACITY)
    async with get_async_session() as db:
        await PlayerLedger(db).grant_machine("p1", "mini", "second-mini")
    machines = [m.id for m in await get_machines("p1")]

    results = await asyncio.gather(*(fuel(m) for m in machines), return_exceptions=True)

    assert_domain_errors(results)
    player = await get_player("p1")
    total_fuel = sum(m.fuel_oil for m in await get_machines("p1"))
    assert player.oil_balance >= 0
    assert player.oil_balance + total_fuel == CAPACITY


async def test_overlapping_executions_pay_each_payout_once(file_database):
    players = ["p1", "p2", "p3"]
    for index, player_id in enumerate(players):
        await create_player(player_id, diamonds=100, wallet="0x" + f"{index + 1:02d}" * 20)
    async with get_async_session() as db:
        manager = CashoutRoundManager(db)
        for player_id in players:
            _, cashout_round = await manager.submit_request(player_id, 100, EXCHANGE, START)
        await manager.finalize_round(cashout_round.id, EXCHANGE, START + timedelta(minutes=5))
    round_id = cashout_round.id

    rail = SlowRail()
    clock = Clock(START + timedelta(minutes=6))
    reports = await asyncio.gather(
        PayoutExecutor(rail, max_attempts=3, transfer_timeout=5, clock=clock).execute_round(round_id),
        PayoutExecutor(rail, max_attempts=3, transfer_timeout=5, clock=clock).execute_round(round_id),
    )

    references = [t[2] for t in rail.transfers]
    assert len(references) == 3
    assert len(set(references)) == 3
    assert sum(r.paid for r in reports) == 3
    assert sum(r.claimed for r in reports) == 3
    async with get_async_session() as db:
        statuses = (await db.execute(
            select(CashoutPayout.status).where(CashoutPayout.round_id == round_id)
        )).scalars().all()
        assert set(statuses) == {"paid"}
        assert (await CashoutRoundManager(db).get_round(round_id)).status == RoundStatus.PAID.value
