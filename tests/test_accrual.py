"""
Tests for offline accrual and the per-player accrual pass.
"""

from datetime import timedelta

import pytest

from minetoearn.core.database import get_async_session
from minetoearn.services.game_config import resolve_config
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.mining.accrual import AccrualInput, accrue_machine
from minetoearn.services.mining.processor import MiningProcessor

from conftest import START, FixedRandom, create_player, get_player, starter_machine


def _replay(config, fuel, checkpoints):
    """Accrue a mini machine across the given times, carrying state forward."""
    state = AccrualInput("mini", 1, fuel, START)
    total = 0
    for now in checkpoints:
        result = accrue_machine(state, config, now)
        total += result.actions_completed
        state = AccrualInput(
            "mini", 1, result.new_fuel, result.new_last_processed_at, result.new_remainder
        )
    return total, state


def test_polling_frequency_does_not_change_output(config):
    end = START + timedelta(hours=10)
    once, once_state = _replay(config, 144, [end])

    minutes = [7, 11, 13, 19, 23, 31, 41, 59, 61, 97, 113, 131]
    irregular = []
    now = START
    for step in minutes * 2:
        now = now + timedelta(minutes=step)
        if now >= end:
            break
        irregular.append(now)
    irregular.append(end)
    many, many_state = _replay(config, 144, irregular)

    assert once == 30
    assert many == once
    assert many_state.fuel == pytest.approx(once_state.fuel)
    assert many_state.fuel == pytest.approx(84)
    assert many_state.last_processed_at == end


def test_fractional_progress_is_carried(config):
    # 3 actions per hour: 20 minutes is exactly one action, 10 minutes half of one
    first = accrue_machine(AccrualInput("mini", 1, 144, START), config, START + timedelta(minutes=10))
    assert first.actions_completed == 0
    assert first.new_remainder == pytest.approx(0.5)

    second = accrue_machine(
        AccrualInput("mini", 1, first.new_fuel, first.new_last_processed_at, first.new_remainder),
        config,
        START + timedelta(minutes=20),
    )
    assert second.actions_completed == 1
    assert second.new_remainder == pytest.approx(0.0, abs=1e-6)


def test_checkpoint_only_moves_by_fuelled_time(config):
    # burn 6/h with 3 oil lasts 30 minutes
    result = accrue_machine(AccrualInput("mini", 1, 3, START), config, START + timedelta(hours=2))

    assert result.actions_completed == 1
    assert result.new_remainder == pytest.approx(0.5)
    assert result.new_fuel == 0
    assert result.still_active is False
    assert result.new_last_processed_at == START + timedelta(minutes=30)
    assert result.hours_credited == pytest.approx(0.5)


def test_fuel_exhausted_exactly_at_now():
    config = resolve_config(tier_rows=[{
        "machine_type": "drill", "name": "Drill", "cost_oil": 10,
        "speed_actions_per_hour": 10, "oil_burn_per_hour": 5, "tank_capacity": 100,
    }])

    result = accrue_machine(AccrualInput("drill", 1, 2.5, START), config, START + timedelta(minutes=30))

    assert result.actions_completed == 5
    assert result.new_fuel == 0
    assert result.still_active is False
    assert result.new_last_processed_at == START + timedelta(minutes=30)


def test_empty_tank_keeps_checkpoint(config):
    result = accrue_machine(AccrualInput("mini", 1, 0, START, 0.25), config, START + timedelta(hours=5))

    assert result.actions_completed == 0
    assert result.still_active is False
    assert result.new_last_processed_at == START
    assert result.new_remainder == 0.25


def test_no_time_elapsed_is_a_no_op(config):
    result = accrue_machine(AccrualInput("mini", 1, 50, START), config, START)

    assert result.actions_completed == 0
    assert result.new_fuel == 50
    assert result.still_active is True
    assert result.changed is False


def test_missing_checkpoint_starts_at_now(config):
    now = START + timedelta(hours=3)
    result = accrue_machine(AccrualInput("mini", 1, 50, None), config, now)

    assert result.actions_completed == 0
    assert result.new_last_processed_at == now
    assert result.new_fuel == 50


def test_zero_burn_runs_without_fuel():
    config = resolve_config(tier_rows=[{
        "machine_type": "free", "cost_oil": 0,
        "speed_actions_per_hour": 2, "oil_burn_per_hour": 0, "tank_capacity": 10,
    }])

    result = accrue_machine(AccrualInput("free", 1, 0, START), config, START + timedelta(hours=4))

    assert result.actions_completed == 8
    assert result.still_active is True


def test_level_scales_speed_and_burn(config):
    # level 3 mini: 3.6 actions/h, 7.2 oil/h
    result = accrue_machine(AccrualInput("mini", 3, 100, START), config, START + timedelta(hours=5))

    assert result.actions_completed == 18
    assert result.new_fuel == pytest.approx(64)


async def test_processor_credits_rewards(database, config):
    await create_player("p1", oil=100)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        ledger = PlayerLedger(db)
        await ledger.fuel_machine("p1", machine.id, None, config.capacity_for("mini", 1))
        await ledger.start_machine("p1", machine.id, START)

    async with get_async_session() as db:
        summary = await MiningProcessor(PlayerLedger(db), rng=FixedRandom(0.0)).process_player(
            "p1", config, START + timedelta(hours=2)
        )

    assert summary.machines_processed == 1
    assert summary.rewards.actions == 6
    assert summary.rewards.diamonds == 1
    assert summary.rewards.overflow_diamonds == 5

    player = await get_player("p1")
    assert player.diamond_balance == 1
    assert player.daily_diamond_count == 1
    assert player.oil_balance == pytest.approx(250)

    async with get_async_session() as db:
        minerals = await PlayerLedger(db).get_minerals("p1")
    assert minerals == {"bronze": 6, "silver": 6, "gold": 6, "iron": 6}

    machine = await starter_machine("p1")
    assert machine.fuel_oil == pytest.approx(88)
    assert machine.last_processed_at == START + timedelta(hours=2)
    assert machine.is_active is True


async def test_processor_deactivates_dry_machine(database, config):
    await create_player("p1", oil=6)
    machine = await starter_machine("p1")

    async with get_async_session() as db:
        ledger = PlayerLedger(db)
        await ledger.fuel_machine("p1", machine.id, 6, config.capacity_for("mini", 1))
        await ledger.start_machine("p1", machine.id, START)

    async with get_async_session() as db:
        summary = await MiningProcessor(PlayerLedger(db), rng=FixedRandom(0.99)).process_player(
            "p1", config, START + timedelta(hours=3)
        )

    assert summary.machines_deactivated == [machine.id]
    assert summary.rewards.actions == 3

    machine = await starter_machine("p1")
    assert machine.is_active is False
    assert machine.fuel_oil == 0
    assert machine.last_processed_at == START + timedelta(hours=1)


async def test_processor_resets_daily_window(database, config):
    await create_player("p1")

    async with get_async_session() as db:
        summary = await MiningProcessor(PlayerLedger(db)).process_player(
            "p1", config, START + timedelta(days=1, hours=1)
        )

    assert summary.daily_window_reset is True
    player = await get_player("p1")
    assert player.daily_diamond_reset_at == START + timedelta(days=1, hours=1)
    assert player.daily_diamond_count == 0
