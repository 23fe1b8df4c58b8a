"""
Offline accrual engine.

Replays the wall-clock time since a machine's checkpoint into whole mining
actions. The checkpoint only moves forward by the hours that were actually
fuelled, and the fractional part of an action is carried to the next run, so
polling frequency never changes the total output.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from minetoearn.services.game_config import GameConfig
from minetoearn.utils.timeutils import hours_between


# Float sums such as 0.1 * 10 may land a hair below the integer
ACTION_EPSILON = 1e-9


@dataclass(frozen=True)
class AccrualInput:
    machine_type: str
    level: int
    fuel: float
    last_processed_at: Optional[datetime]
    action_remainder: float = 0.0


@dataclass(frozen=True)
class AccrualResult:
    actions_completed: int
    new_fuel: float
    new_last_processed_at: datetime
    new_remainder: float
    still_active: bool
    hours_credited: float = 0.0

    @property
    def changed(self) -> bool:
        return self.hours_credited > 0 or not self.still_active


def _split_progress(total: float):
    actions = math.floor(total + ACTION_EPSILON)
    return int(actions), max(0.0, total - actions)


def accrue_machine(machine: AccrualInput, config: GameConfig, now: datetime) -> AccrualResult:
    """
    Compute production for one active machine between its checkpoint and now.

    The function is pure: the same inputs always give the same result.

    Args:
        machine: machine state before accrual
        config: resolved configuration snapshot
        now: current time (naive UTC)

    Returns:
        Actions completed and the machine's new fuel, checkpoint, remainder
        and activity flag
    """
    if machine.last_processed_at is None:
        return AccrualResult(
            actions_completed=0,
            new_fuel=machine.fuel,
            new_last_processed_at=now,
            new_remainder=machine.action_remainder,
            still_active=True,
        )

    elapsed_hours = hours_between(machine.last_processed_at, now)
    if elapsed_hours <= 0:
        return AccrualResult(
            actions_completed=0,
            new_fuel=machine.fuel,
            new_last_processed_at=machine.last_processed_at,
            new_remainder=machine.action_remainder,
            still_active=True,
        )

    speed = config.speed_for(machine.machine_type, machine.level)
    burn = config.burn_for(machine.machine_type, machine.level)

    fuel_limited = False
    if burn > 0:
        max_hours_by_fuel = max(0.0, machine.fuel) / burn
        if max_hours_by_fuel <= elapsed_hours:
            effective_hours = max_hours_by_fuel
            fuel_limited = True
        else:
            effective_hours = elapsed_hours
    else:
        effective_hours = elapsed_hours

    if effective_hours <= 0:
        # Out of fuel: stop here and keep the checkpoint for the next refuel
        return AccrualResult(
            actions_completed=0,
            new_fuel=0.0,
            new_last_processed_at=machine.last_processed_at,
            new_remainder=machine.action_remainder,
            still_active=False,
        )

    if fuel_limited:
        fuel_remaining = 0.0
    else:
        fuel_remaining = max(0.0, machine.fuel - effective_hours * burn)

    actions, remainder = _split_progress(machine.action_remainder + effective_hours * speed)

    return AccrualResult(
        actions_completed=actions,
        new_fuel=fuel_remaining,
        new_last_processed_at=machine.last_processed_at + timedelta(hours=effective_hours),
        new_remainder=remainder,
        still_active=burn <= 0 or fuel_remaining > 0,
        hours_credited=effective_hours,
    )
