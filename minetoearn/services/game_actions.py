"""
Game action surface: ``get_state`` and ``perform_action``.

Every call resolves a fresh config snapshot, runs the accrual pass and then
applies at most one mutation, all in the caller's session so the whole request
commits or rolls back together.
"""

from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.config import settings
from minetoearn.core.exceptions import (
    ConfigurationError, UnknownActionError, ValidationError
)
from minetoearn.core.logging import get_logger
from minetoearn.models.machine import Machine
from minetoearn.models.player import PlayerState
from minetoearn.services.game_config import ConfigRepository, GameConfig
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.mining.processor import MiningProcessor
from minetoearn.services.mining.rewards import RandomSource
from minetoearn.services.rate_limiter import RateLimiter
from minetoearn.utils.timeutils import DAY, utc_now


logger = get_logger(__name__)


class GameAction(str, Enum):
    """Player actions accepted by ``perform_action``."""
    FUEL_MACHINE = "fuel_machine"
    START_MACHINE = "start_machine"
    STOP_MACHINE = "stop_machine"
    UPGRADE_MACHINE = "upgrade_machine"
    EXCHANGE_MINERALS = "exchange_minerals"
    CLAIM_DAILY_REWARD = "claim_daily_reward"
    DISCARD_MACHINE = "discard_machine"

    @classmethod
    def parse(cls, value: str) -> "GameAction":
        try:
            return cls(value)
        except ValueError:
            raise UnknownActionError(value)


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing field: {key}", {"field": key})
    return value


def serialize_machine(machine: Machine, config: GameConfig) -> Dict[str, Any]:
    data = machine.to_dict()
    tier = config.machines.get(machine.machine_type)
    if tier is not None:
        data.update(
            tank_capacity=config.capacity_for(machine.machine_type, machine.level),
            speed_actions_per_hour=config.speed_for(machine.machine_type, machine.level),
            oil_burn_per_hour=config.burn_for(machine.machine_type, machine.level),
            max_level=tier.max_level,
            upgrade_cost=(
                config.upgrade_cost_for(machine.machine_type, machine.level)
                if machine.level < tier.max_level else None
            ),
        )
    return data


def serialize_player(
    state: PlayerState,
    minerals: Dict[str, int],
    config: GameConfig,
) -> Dict[str, Any]:
    data = state.to_dict()
    data["minerals"] = dict(minerals)
    data["max_slots"] = state.max_slots(config.slots.base_slots, config.slots.max_total_slots)
    data["next_daily_claim_at"] = (
        (state.last_daily_claim_at + DAY).isoformat() if state.last_daily_claim_at else None
    )
    return data


class GameService:
    """Entry point for state reads and player actions."""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: Optional[RateLimiter] = None,
        rng: Optional[RandomSource] = None,
        clock: Callable = utc_now,
    ):
        self.db = db
        self.ledger = PlayerLedger(db)
        self.processor = MiningProcessor(self.ledger, rng=rng)
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.logger = logger.bind(service="game_service")

    async def _prepare(self, player_id: str):
        now = self.clock()
        config = await ConfigRepository(self.db).load()
        await self.ledger.ensure_player(player_id, config, now=now)
        summary = await self.processor.process_player(player_id, config, now)
        return config, now, summary

    async def _snapshot(self, player_id: str, config: GameConfig) -> Dict[str, Any]:
        state = await self.ledger.get_player(player_id)
        minerals = await self.ledger.get_minerals(player_id)
        machines = await self.ledger.list_machines(player_id)
        return {
            "player_state": serialize_player(state, minerals, config),
            "machines": [serialize_machine(m, config) for m in machines],
        }

    async def get_state(self, player_id: str) -> Dict[str, Any]:
        """Run an accrual pass and return config, player state and machines."""
        config, _, summary = await self._prepare(player_id)
        snapshot = await self._snapshot(player_id, config)
        return {
            "config": config.to_dict(),
            **snapshot,
            "accrual": summary.to_dict(),
        }

    async def perform_action(
        self,
        player_id: str,
        action: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Apply one player action after bringing accrual up to date.

        Raises:
            UnknownActionError, ValidationError, InsufficientResourceError,
            MachineNotFoundError, MaxLevelReachedError, RateLimitError
        """
        kind = GameAction.parse(action) if not isinstance(action, GameAction) else action
        payload = payload or {}

        if self.rate_limiter is not None:
            await self.rate_limiter.check(
                player_id, "game_action", settings.rate_limit_actions, settings.rate_limit_window
            )

        config, now, summary = await self._prepare(player_id)
        handler = getattr(self, ACTION_HANDLERS[kind])
        result = await handler(player_id, payload, config, now)

        self.logger.info("Action performed", player_id=player_id, action=kind.value, **result)
        snapshot = await self._snapshot(player_id, config)
        return {
            "action": kind.value,
            "result": result,
            **snapshot,
            "accrual": summary.to_dict(),
        }

    # Handlers: (player_id, payload, config, now) -> result dict

    async def _fuel_machine(self, player_id, payload, config, now) -> Dict[str, Any]:
        machine_id = _require_str(payload, "machine_id")
        machine = await self.ledger.get_machine(player_id, machine_id)
        capacity = config.capacity_for(machine.machine_type, machine.level)
        fuel = await self.ledger.fuel_machine(player_id, machine_id, payload.get("amount"), capacity)
        return {"machine_id": machine_id, "filled": fuel.filled}

    async def _start_machine(self, player_id, payload, config, now) -> Dict[str, Any]:
        machine_id = _require_str(payload, "machine_id")
        started = await self.ledger.start_machine(player_id, machine_id, now)
        return {"machine_id": machine_id, "started": started}

    async def _stop_machine(self, player_id, payload, config, now) -> Dict[str, Any]:
        machine_id = _require_str(payload, "machine_id")
        await self.ledger.stop_machine(player_id, machine_id, now)
        return {"machine_id": machine_id, "stopped": True}

    async def _upgrade_machine(self, player_id, payload, config, now) -> Dict[str, Any]:
        machine_id = _require_str(payload, "machine_id")
        machine = await self.ledger.get_machine(player_id, machine_id)
        tier = config.tier(machine.machine_type)
        cost = config.upgrade_cost_for(machine.machine_type, machine.level)
        upgrade = await self.ledger.upgrade_machine(player_id, machine_id, cost, tier.max_level)
        return {"machine_id": machine_id, "new_level": upgrade.new_level, "cost": upgrade.oil_spent}

    async def _exchange_minerals(self, player_id, payload, config, now) -> Dict[str, Any]:
        mineral = config.mineral(_require_str(payload, "mineral"))
        exchange = await self.ledger.exchange_minerals(
            player_id, mineral.mineral_id, payload.get("amount"), mineral.oil_value
        )
        return {
            "mineral": exchange.mineral_id,
            "amount": exchange.amount,
            "oil_gained": exchange.oil_gained,
        }

    async def _claim_daily_reward(self, player_id, payload, config, now) -> Dict[str, Any]:
        amount = await self.ledger.claim_daily_reward(
            player_id, config.rewards.daily_oil_reward, now
        )
        return {"oil_gained": amount}

    async def _discard_machine(self, player_id, payload, config, now) -> Dict[str, Any]:
        machine_id = _require_str(payload, "machine_id")
        await self.ledger.discard_machine(player_id, machine_id)
        return {"machine_id": machine_id, "discarded": True}


ACTION_HANDLERS: Dict[GameAction, str] = {
    GameAction.FUEL_MACHINE: "_fuel_machine",
    GameAction.START_MACHINE: "_start_machine",
    GameAction.STOP_MACHINE: "_stop_machine",
    GameAction.UPGRADE_MACHINE: "_upgrade_machine",
    GameAction.EXCHANGE_MINERALS: "_exchange_minerals",
    GameAction.CLAIM_DAILY_REWARD: "_claim_daily_reward",
    GameAction.DISCARD_MACHINE: "_discard_machine",
}


def _check_handlers() -> None:
    missing = [a.value for a in GameAction if not callable(getattr(GameService, ACTION_HANDLERS.get(a, ""), None))]
    if missing:
        raise ConfigurationError("Game actions without a handler", {"actions": missing})


_check_handlers()
