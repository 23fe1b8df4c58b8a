"""
Tests for the player ledger mutators.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import (
    AlreadyClaimedTodayError,
    InsufficientDiamondsError,
    InsufficientFuelError,
    InsufficientFundsError,
    InsufficientMineralsError,
    InvalidAmountError,
    MachineNotFoundError,
    MaxLevelReachedError,
    PlayerNotFoundError,
)
from minetoearn.models.player import PlayerMineral
from minetoearn.services.game_config import resolve_config
from minetoearn.services.ledger import PlayerLedger

from conftest import (
    START, OTHER_WALLET, WALLET, create_player, get_machines, get_player, starter_machine
)


async def _give_minerals(player_id, mineral_id, amount):
    async with get_async_session() as db:
        await db.execute(
            update(PlayerMineral)
            .where(PlayerMineral.player_id == player_id, PlayerMineral.mineral_id == mineral_id)
            .values(amount=amount)
        )


async def test_new_player_gets_starter_machine_and_mineral_rows(database, config):
    await create_player("p1")

    machines = await get_machines("p1")
    assert [m.machine_type for m in machines] == ["mini"]
    assert machines[0].level == 1
    assert machines[0].fuel_oil == 0
    assert machines[0].is_active is False

    async with get_async_session() as db:
        minerals = await PlayerLedger(db).get_minerals("p1")
    assert minerals == {"bronze": 0, "silver": 0, "gold": 0, "iron": 0}

    player = await get_player("p1")
    assert player.wallet_address == WALLET
    assert player.daily_diamond_reset_at == START


async def test_ensure_player_is_idempotent(database, config):
    async with get_async_session() as db:
        await PlayerLedger(db).ensure_player("p1", config, now=START)
    async with get_async_session() as db:
        await PlayerLedger(db).ensure_player("p1", config, now=START, wallet_address=OTHER_WALLET)

    assert len(await get_machines("p1")) == 1
    assert (await get_player("p1")).wallet_address == OTHER_WALLET


async def test_welcome_bonus_credited_once(database):
    config = resolve_config(setting_rows={"welcome_bonus_oil": "25"})

    for _ in range(2):
        async with get_async_session() as db:
            await PlayerLedger(db).ensure_player("p1", config, now=START)

    assert (await get_player("p1")).oil_balance == 25


async def test_unknown_player(database):
    with pytest.raises(PlayerNotFoundError):
        await get_player("ghost")


async def test_fuel_fills_tank_from_balance(database, config):
    await create_player("p1", oil=500)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        result = await PlayerLedger(db).fuel_machine("p1", machine.id, None, 144)

    assert result.filled == 144
    assert (await get_player("p1")).oil_balance == 356
    assert (await starter_machine("p1")).fuel_oil == 144


async def test_fuel_clamped_to_whole_balance(database, config):
    await create_player("p1", oil=50.7)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        result = await PlayerLedger(db).fuel_machine("p1", machine.id, 100, 144)

    assert result.filled == 50
    assert (await get_player("p1")).oil_balance == pytest.approx(0.7)
    assert (await starter_machine("p1")).fuel_oil == 50


async def test_fuel_rejects_full_tank(database, config):
    await create_player("p1", oil=500)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        await PlayerLedger(db).fuel_machine("p1", machine.id, None, 144)

    with pytest.raises(InvalidAmountError):
        async with get_async_session() as db:
            await PlayerLedger(db).fuel_machine("p1", machine.id, 10, 144)
    assert (await get_player("p1")).oil_balance == 356


async def test_fuel_without_oil(database, config):
    await create_player("p1", oil=0.5)
    machine = await starter_machine("p1")

    with pytest.raises(InsufficientFundsError):
        async with get_async_session() as db:
            await PlayerLedger(db).fuel_machine("p1", machine.id, 10, 144)


@pytest.mark.parametrize("amount", [0, -5, "lots", float("nan")])
async def test_fuel_rejects_bad_amount(database, config, amount):
    await create_player("p1", oil=100)
    machine = await starter_machine("p1")

    with pytest.raises(InvalidAmountError):
        async with get_async_session() as db:
            await PlayerLedger(db).fuel_machine("p1", machine.id, amount, 144)


async def test_sequential_fuels_never_overdraw(database, config):
    await create_player("p1", oil=100)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        await PlayerLedger(db).fuel_machine("p1", machine.id, 80, 144)
    async with get_async_session() as db:
        second = await PlayerLedger(db).fuel_machine("p1", machine.id, 80, 144)

    assert second.filled == 20
    assert (await get_player("p1")).oil_balance == 0
    assert (await starter_machine("p1")).fuel_oil == 100


async def test_upgrade_spends_oil(database, config):
    await create_player("p1", oil=1500)
    machine = await starter_machine("p1")
    cost = config.upgrade_cost_for("mini", 1)

    async with get_async_session() as db:
        result = await PlayerLedger(db).upgrade_machine("p1", machine.id, cost, 10)

    assert result.new_level == 2
    assert result.oil_spent == 1000
    assert (await get_player("p1")).oil_balance == 500
    assert (await starter_machine("p1")).level == 2

    with pytest.raises(InsufficientFundsError):
        async with get_async_session() as db:
            await PlayerLedger(db).upgrade_machine(
                "p1", machine.id, config.upgrade_cost_for("mini", 2), 10
            )
    assert (await starter_machine("p1")).level == 2
    assert (await get_player("p1")).oil_balance == 500


async def test_upgrade_at_max_level(database, config):
    await create_player("p1", oil=5000)
    machine = await starter_machine("p1")

    with pytest.raises(MaxLevelReachedError):
        async with get_async_session() as db:
            await PlayerLedger(db).upgrade_machine("p1", machine.id, 100, 1)
    assert (await get_player("p1")).oil_balance == 5000


async def test_exchange_minerals(database, config):
    await create_player("p1", oil=1)
    await _give_minerals("p1", "gold", 7)

    async with get_async_session() as db:
        result = await PlayerLedger(db).exchange_minerals("p1", "gold", 3, 10)

    assert result.oil_gained == 30
    assert (await get_player("p1")).oil_balance == 31
    async with get_async_session() as db:
        assert (await PlayerLedger(db).get_minerals("p1"))["gold"] == 4


async def test_exchange_more_than_held(database, config):
    await create_player("p1")
    await _give_minerals("p1", "bronze", 2)

    with pytest.raises(InsufficientMineralsError) as exc_info:
        async with get_async_session() as db:
            await PlayerLedger(db).exchange_minerals("p1", "bronze", 3, 2)
    assert exc_info.value.details["available"] == 2


@pytest.mark.parametrize("amount", [1.5, 0, 2_000_000])
async def test_exchange_rejects_bad_amount(database, config, amount):
    await create_player("p1")
    await _give_minerals("p1", "bronze", 10)

    with pytest.raises(InvalidAmountError):
        async with get_async_session() as db:
            await PlayerLedger(db).exchange_minerals("p1", "bronze", amount, 2)


async def test_daily_reward_once_per_24h(database, config):
    await create_player("p1")

    async with get_async_session() as db:
        await PlayerLedger(db).claim_daily_reward("p1", 5, START)

    with pytest.raises(AlreadyClaimedTodayError) as exc_info:
        async with get_async_session() as db:
            await PlayerLedger(db).claim_daily_reward("p1", 5, START + timedelta(hours=23))
    assert exc_info.value.details["next_claim_at"] == (START + timedelta(days=1)).isoformat()

    async with get_async_session() as db:
        await PlayerLedger(db).claim_daily_reward("p1", 5, START + timedelta(hours=24))

    assert (await get_player("p1")).oil_balance == 10


async def test_discard_machine(database, config):
    await create_player("p1")
    await create_player("p2", wallet=OTHER_WALLET)
    machine = await starter_machine("p1")

    with pytest.raises(MachineNotFoundError):
        async with get_async_session() as db:
            await PlayerLedger(db).discard_machine("p2", machine.id)

    async with get_async_session() as db:
        await PlayerLedger(db).discard_machine("p1", machine.id)
    assert await get_machines("p1") == []

    with pytest.raises(MachineNotFoundError):
        async with get_async_session() as db:
            await PlayerLedger(db).discard_machine("p1", machine.id)


async def test_start_and_stop_machine(database, config):
    await create_player("p1", oil=10)
    machine = await starter_machine("p1")

    with pytest.raises(InsufficientFuelError):
        async with get_async_session() as db:
            await PlayerLedger(db).start_machine("p1", machine.id, START)

    async with get_async_session() as db:
        ledger = PlayerLedger(db)
        await ledger.fuel_machine("p1", machine.id, 10, 144)
        assert await ledger.start_machine("p1", machine.id, START) is True
    async with get_async_session() as db:
        assert await PlayerLedger(db).start_machine("p1", machine.id, START) is False

    started = await starter_machine("p1")
    assert started.is_active is True
    assert started.last_processed_at == START

    async with get_async_session() as db:
        await PlayerLedger(db).stop_machine("p1", machine.id, START + timedelta(hours=1))
    assert (await starter_machine("p1")).is_active is False


async def test_diamond_debit_guard(database, config):
    await create_player("p1", diamonds=10)

    with pytest.raises(InsufficientDiamondsError):
        async with get_async_session() as db:
            await PlayerLedger(db).debit_diamonds("p1", 11)

    async with get_async_session() as db:
        ledger = PlayerLedger(db)
        await ledger.debit_diamonds("p1", 10)
        await ledger.credit_diamonds("p1", 3)

    assert (await get_player("p1")).diamond_balance == 3


async def test_grant_machine_is_idempotent(database, config):
    await create_player("p1")

    for _ in range(2):
        async with get_async_session() as db:
            await PlayerLedger(db).grant_machine("p1", "heavy", "purchase-1")

    machines = await get_machines("p1")
    assert sorted(m.id for m in machines if m.machine_type == "heavy") == ["purchase-1"]
    assert len(machines) == 2
