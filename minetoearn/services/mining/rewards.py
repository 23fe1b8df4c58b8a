"""
Reward resolver.

Each mining action rolls one Bernoulli draw per mineral and one for the
diamond. Diamonds above the daily cap are converted to oil when an overflow
value is configured and dropped otherwise. Draws are per action so the
distribution is the same whatever the polling interval.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Protocol

from minetoearn.services.game_config import GameConfig
from minetoearn.utils.timeutils import DAY


class RandomSource(Protocol):
    def random(self) -> float: ...


# Shared default; callers that need reproducible draws pass their own
_system_rng = random.SystemRandom()


@dataclass(frozen=True)
class DailyWindow:
    count: int
    reset_at: datetime
    was_reset: bool = False


def roll_daily_window(count: int, reset_at: datetime, now: datetime) -> DailyWindow:
    """Start a new 24h diamond window when the current one has expired."""
    if reset_at is None or now - reset_at >= DAY:
        return DailyWindow(count=0, reset_at=now, was_reset=True)
    return DailyWindow(count=count, reset_at=reset_at)


@dataclass
class RewardOutcome:
    actions: int = 0
    minerals: Dict[str, int] = field(default_factory=dict)
    diamonds: int = 0
    overflow_diamonds: int = 0
    overflow_oil: float = 0.0
    daily_count: int = 0

    @property
    def is_empty(self) -> bool:
        return (
            not any(self.minerals.values())
            and self.diamonds == 0
            and self.overflow_oil == 0
        )

    def absorb(self, other: "RewardOutcome") -> None:
        """Add another machine's outcome; its daily count is the newer one."""
        self.actions += other.actions
        for mineral_id, amount in other.minerals.items():
            self.minerals[mineral_id] = self.minerals.get(mineral_id, 0) + amount
        self.diamonds += other.diamonds
        self.overflow_diamonds += other.overflow_diamonds
        self.overflow_oil += other.overflow_oil
        self.daily_count = other.daily_count


def resolve_rewards(
    actions: int,
    config: GameConfig,
    daily_count: int,
    rng: RandomSource = _system_rng,
) -> RewardOutcome:
    """
    Roll drops for ``actions`` mining actions.

    Args:
        actions: number of whole actions completed
        config: resolved configuration snapshot
        daily_count: diamonds already credited in the current daily window
        rng: source of uniform floats in [0, 1)

    Returns:
        Mineral and diamond gains, overflow oil and the updated daily count
    """
    minerals: Mapping = config.minerals
    outcome = RewardOutcome(
        actions=max(0, actions),
        minerals={mineral_id: 0 for mineral_id in minerals},
        daily_count=daily_count,
    )
    cap = config.diamonds.daily_cap_per_user
    overflow_value = config.diamonds.excess_diamond_oil_value
    diamond_rate = config.diamonds.drop_rate_per_action

    for _ in range(outcome.actions):
        for mineral in minerals.values():
            if rng.random() < mineral.drop_rate:
                outcome.minerals[mineral.mineral_id] += 1

        if rng.random() < diamond_rate:
            if outcome.daily_count < cap:
                outcome.diamonds += 1
                outcome.daily_count += 1
            else:
                outcome.overflow_diamonds += 1
                if overflow_value > 0:
                    outcome.overflow_oil += overflow_value

    return outcome
