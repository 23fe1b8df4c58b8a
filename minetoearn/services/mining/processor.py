"""
Accrual pass for one player: config snapshot -> accrual -> rewards -> ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from minetoearn.core.logging import get_logger
from minetoearn.services.game_config import GameConfig
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.mining.accrual import AccrualInput, accrue_machine
from minetoearn.services.mining.rewards import (
    RandomSource, RewardOutcome, resolve_rewards, roll_daily_window
)


logger = get_logger(__name__)


@dataclass
class AccrualSummary:
    """What one pass produced, for logging and API responses."""
    player_id: str
    machines_processed: int = 0
    machines_deactivated: List[str] = field(default_factory=list)
    rewards: RewardOutcome = field(default_factory=RewardOutcome)
    daily_window_reset: bool = False

    def to_dict(self) -> dict:
        return {
            "machines_processed": self.machines_processed,
            "machines_deactivated": list(self.machines_deactivated),
            "actions": self.rewards.actions,
            "minerals": {k: v for k, v in self.rewards.minerals.items() if v},
            "diamonds": self.rewards.diamonds,
            "overflow_diamonds": self.rewards.overflow_diamonds,
            "overflow_oil": self.rewards.overflow_oil,
        }


class MiningProcessor:
    """Runs the accrual engine and reward resolver for a player's machines."""

    def __init__(self, ledger: PlayerLedger, rng: Optional[RandomSource] = None):
        self.ledger = ledger
        self.rng = rng
        self.logger = logger.bind(service="mining_processor")

    async def process_player(
        self,
        player_id: str,
        config: GameConfig,
        now: datetime,
    ) -> AccrualSummary:
        """
        Bring every active machine of the player up to ``now``.

        The player row is locked first and machine rows second, the same order
        every mutator uses.
        """
        player = await self.ledger.get_player(player_id, lock=True)
        machines = await self.ledger.list_machines(player_id, active_only=True, lock=True)

        window = roll_daily_window(player.daily_diamond_count, player.daily_diamond_reset_at, now)
        summary = AccrualSummary(player_id=player_id, daily_window_reset=window.was_reset)
        summary.rewards.daily_count = window.count

        machine_results = []
        for machine in machines:
            if machine.machine_type not in config.machines:
                self.logger.warning(
                    "Skipping machine with unknown tier",
                    machine_id=machine.id,
                    machine_type=machine.machine_type
                )
                continue

            result = accrue_machine(
                AccrualInput(
                    machine_type=machine.machine_type,
                    level=machine.level,
                    fuel=machine.fuel_oil,
                    last_processed_at=machine.last_processed_at,
                    action_remainder=machine.action_remainder,
                ),
                config,
                now,
            )
            if (
                result.new_last_processed_at == machine.last_processed_at
                and result.still_active
            ):
                continue

            machine_results.append((machine, result))
            summary.machines_processed += 1
            if not result.still_active:
                summary.machines_deactivated.append(machine.id)

            if result.actions_completed:
                kwargs = {"rng": self.rng} if self.rng is not None else {}
                outcome = resolve_rewards(
                    result.actions_completed,
                    config,
                    summary.rewards.daily_count,
                    **kwargs,
                )
                summary.rewards.absorb(outcome)

        if machine_results or window.was_reset:
            await self.ledger.apply_accrual(player, machine_results, summary.rewards, window)

        if summary.rewards.actions:
            self.logger.info(
                "Accrual applied",
                player_id=player_id,
                **summary.to_dict()
            )
        return summary
