"""
Tests for the reward resolver and the daily diamond window.
"""

from datetime import timedelta

import pytest

from minetoearn.services.game_config import resolve_config
from minetoearn.services.mining.rewards import RewardOutcome, resolve_rewards, roll_daily_window

from conftest import START, FixedRandom, ScriptedRandom


def test_every_draw_hits(config):
    outcome = resolve_rewards(3, config, daily_count=0, rng=FixedRandom(0.0))

    assert outcome.minerals == {"bronze": 3, "silver": 3, "gold": 3, "iron": 3}
    assert outcome.diamonds == 1
    assert outcome.daily_count == 1
    assert outcome.overflow_diamonds == 2
    assert outcome.overflow_oil == 100


def test_overflow_dropped_without_oil_value():
    config = resolve_config(setting_rows={"excess_diamond_oil_value": "0"})

    outcome = resolve_rewards(3, config, daily_count=0, rng=FixedRandom(0.0))

    assert outcome.diamonds == 1
    assert outcome.overflow_diamonds == 2
    assert outcome.overflow_oil == 0


def test_nothing_drops_on_high_draws(config):
    outcome = resolve_rewards(10, config, daily_count=0, rng=FixedRandom(0.99))

    assert outcome.is_empty
    assert outcome.actions == 10
    assert outcome.daily_count == 0


def test_one_draw_per_mineral_then_diamond(config):
    # bronze, silver, gold, iron, diamond
    rng = ScriptedRandom([0.3, 0.3, 0.1, 0.3, 0.5])

    outcome = resolve_rewards(1, config, daily_count=0, rng=rng)

    assert rng.calls == 5
    assert outcome.minerals == {"bronze": 1, "silver": 0, "gold": 1, "iron": 0}
    assert outcome.diamonds == 0


def test_cap_already_reached(config):
    outcome = resolve_rewards(1, config, daily_count=1, rng=FixedRandom(0.0))

    assert outcome.diamonds == 0
    assert outcome.overflow_diamonds == 1
    assert outcome.overflow_oil == 50
    assert outcome.daily_count == 1


def test_higher_cap_credits_more():
    config = resolve_config(setting_rows={"daily_diamond_cap": "100", "diamond_drop_rate": "0.1"})
    # diamond roll is every fifth draw
    rng = ScriptedRandom([0.9, 0.9, 0.9, 0.9, 0.05] * 4)

    outcome = resolve_rewards(4, config, daily_count=0, rng=rng)

    assert outcome.diamonds == 4
    assert outcome.overflow_diamonds == 0


def test_zero_actions(config):
    outcome = resolve_rewards(0, config, daily_count=0, rng=FixedRandom(0.0))

    assert outcome.is_empty
    assert outcome.actions == 0


def test_absorb_sums_outcomes():
    total = RewardOutcome(actions=2, minerals={"bronze": 1}, diamonds=1, daily_count=1)
    total.absorb(RewardOutcome(
        actions=3, minerals={"bronze": 2, "gold": 1}, overflow_diamonds=1, overflow_oil=50, daily_count=1
    ))

    assert total.actions == 5
    assert total.minerals == {"bronze": 3, "gold": 1}
    assert total.overflow_oil == 50
    assert total.daily_count == 1


@pytest.mark.parametrize("elapsed, reset", [
    (timedelta(hours=23, minutes=59), False),
    (timedelta(hours=24), True),
    (timedelta(days=3), True),
])
def test_daily_window_rolls_after_24h(elapsed, reset):
    window = roll_daily_window(1, START, START + elapsed)

    assert window.was_reset is reset
    assert window.count == (0 if reset else 1)
    assert window.reset_at == (START + elapsed if reset else START)
