"""
Player ledger - the authoritative store of player balances and machines.

Every mutator is a conditional UPDATE (``... WHERE balance >= :amount``) whose
row count is checked, so a balance can never go negative even when two
requests for the same player race. Rows are additionally locked with
``SELECT ... FOR UPDATE`` where the dialect supports it. All mutators run
inside the caller's session; the surrounding ``get_async_session`` block
commits them together or rolls all of them back.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.exceptions import (
    AlreadyClaimedTodayError,
    ConcurrencyConflictError,
    InsufficientDiamondsError,
    InsufficientFuelError,
    InsufficientFundsError,
    InsufficientMineralsError,
    InvalidAmountError,
    MachineNotFoundError,
    MaxLevelReachedError,
    PlayerNotFoundError,
)
from minetoearn.core.logging import get_logger
from minetoearn.models.machine import Machine
from minetoearn.models.player import PlayerState, PlayerMineral
from minetoearn.services.game_config import GameConfig
from minetoearn.services.mining.accrual import AccrualResult
from minetoearn.services.mining.rewards import DailyWindow, RewardOutcome
from minetoearn.utils.timeutils import DAY, utc_now


logger = get_logger(__name__)

MAX_EXCHANGE_AMOUNT = 1_000_000
STARTER_MACHINE_TYPE = "mini"
# Slack for float sums when comparing fuel against capacity
CAPACITY_TOLERANCE = 1e-9


@dataclass(frozen=True)
class FuelResult:
    machine_id: str
    filled: float
    oil_spent: float


@dataclass(frozen=True)
class UpgradeResult:
    machine_id: str
    new_level: int
    oil_spent: float


@dataclass(frozen=True)
class ExchangeResult:
    mineral_id: str
    amount: int
    oil_gained: float


def _validate_positive(value, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidAmountError(f"{field} must be a number", {field: value})
    if not math.isfinite(number) or number <= 0:
        raise InvalidAmountError(f"{field} must be greater than zero", {field: value})
    return number


class PlayerLedger:
    """Atomic balance mutators for one database session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="player_ledger")

    async def _execute(self, statement) -> int:
        result = await self.db.execute(
            statement.execution_options(synchronize_session=False)
        )
        return result.rowcount

    # Reads

    async def get_player(self, player_id: str, lock: bool = False) -> PlayerState:
        query = select(PlayerState).where(PlayerState.player_id == player_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        state = result.scalar_one_or_none()
        if state is None:
            raise PlayerNotFoundError(player_id)
        return state

    async def get_minerals(self, player_id: str) -> Dict[str, int]:
        result = await self.db.execute(
            select(PlayerMineral)
            .where(PlayerMineral.player_id == player_id)
            .execution_options(populate_existing=True)
        )
        return PlayerMineral.as_map(result.scalars().all())

    async def list_machines(
        self,
        player_id: str,
        active_only: bool = False,
        lock: bool = False
    ) -> List[Machine]:
        query = select(Machine).where(Machine.player_id == player_id)
        if active_only:
            query = query.where(Machine.is_active.is_(True))
        if lock:
            query = query.with_for_update()
        query = query.order_by(Machine.created_at, Machine.id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_machine(self, player_id: str, machine_id: str, lock: bool = True) -> Machine:
        query = select(Machine).where(
            and_(Machine.id == machine_id, Machine.player_id == player_id)
        )
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        machine = result.scalar_one_or_none()
        if machine is None:
            raise MachineNotFoundError(machine_id)
        return machine

    async def count_machines(self, player_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(Machine).where(Machine.player_id == player_id)
        )
        return int(result.scalar_one())

    # Player lifecycle

    async def ensure_player(
        self,
        player_id: str,
        config: GameConfig,
        now: Optional[datetime] = None,
        wallet_address: Optional[str] = None,
    ) -> PlayerState:
        """
        Return the player's state, creating it on first sight.

        A new player receives the welcome bonus oil, one row per configured
        mineral and a free starter machine. Minerals added to the config later
        get their rows on the next call.
        """
        now = now or utc_now()
        state = await self.db.get(PlayerState, player_id)

        if state is None:
            state = PlayerState(
                player_id=player_id,
                wallet_address=wallet_address,
                oil_balance=max(0.0, config.rewards.welcome_bonus_oil),
                diamond_balance=0,
                daily_diamond_count=0,
                daily_diamond_reset_at=now,
                purchased_slots=0,
            )
            self.db.add(state)
            try:
                await self.db.flush()
            except IntegrityError:
                raise ConcurrencyConflictError(
                    "Player was created concurrently",
                    {"player_id": player_id}
                )
            if STARTER_MACHINE_TYPE in config.machines:
                self.db.add(Machine.create_for_player(player_id, STARTER_MACHINE_TYPE))
                await self.db.flush()
            self.logger.info(
                "Player created",
                player_id=player_id,
                welcome_bonus=state.oil_balance
            )
        elif wallet_address and state.wallet_address != wallet_address:
            state.wallet_address = wallet_address
            await self.db.flush()

        await self._ensure_mineral_rows(player_id, config.minerals.keys())
        return state

    async def _ensure_mineral_rows(self, player_id: str, mineral_ids: Iterable[str]) -> None:
        existing = await self.get_minerals(player_id)
        missing = [m for m in mineral_ids if m not in existing]
        if not missing:
            return
        for mineral_id in missing:
            self.db.add(PlayerMineral(player_id=player_id, mineral_id=mineral_id, amount=0))
        try:
            await self.db.flush()
        except IntegrityError:
            raise ConcurrencyConflictError(
                "Mineral rows were created concurrently",
                {"player_id": player_id}
            )

    async def set_wallet_address(self, player_id: str, wallet_address: str) -> None:
        updated = await self._execute(
            update(PlayerState)
            .where(PlayerState.player_id == player_id)
            .values(wallet_address=wallet_address)
        )
        if not updated:
            raise PlayerNotFoundError(player_id)

    # Accrual

    async def apply_accrual(
        self,
        player: PlayerState,
        machine_results: Sequence[Tuple[Machine, AccrualResult]],
        rewards: RewardOutcome,
        window: DailyWindow,
    ) -> None:
        """
        Persist one accrual pass.

        Each machine row and the player's daily window are compare-and-set
        against the values the pass was computed from; if any of them moved,
        ConcurrencyConflictError aborts the pass before anything is credited.
        """
        for machine, result in machine_results:
            checkpoint_matches = (
                Machine.last_processed_at.is_(None)
                if machine.last_processed_at is None
                else Machine.last_processed_at == machine.last_processed_at
            )
            updated = await self._execute(
                update(Machine)
                .where(
                    and_(
                        Machine.id == machine.id,
                        checkpoint_matches,
                        Machine.fuel_oil == machine.fuel_oil,
                        Machine.level == machine.level,
                    )
                )
                .values(
                    fuel_oil=result.new_fuel,
                    last_processed_at=result.new_last_processed_at,
                    action_remainder=result.new_remainder,
                    is_active=result.still_active,
                )
            )
            if not updated:
                raise ConcurrencyConflictError(
                    "Machine changed during accrual",
                    {"machine_id": machine.id}
                )

        window_changed = (
            window.count != player.daily_diamond_count
            or window.reset_at != player.daily_diamond_reset_at
        )
        if rewards.diamonds or rewards.overflow_oil or window_changed:
            updated = await self._execute(
                update(PlayerState)
                .where(
                    and_(
                        PlayerState.player_id == player.player_id,
                        PlayerState.daily_diamond_count == player.daily_diamond_count,
                        PlayerState.daily_diamond_reset_at == player.daily_diamond_reset_at,
                    )
                )
                .values(
                    diamond_balance=PlayerState.diamond_balance + rewards.diamonds,
                    oil_balance=PlayerState.oil_balance + rewards.overflow_oil,
                    daily_diamond_count=rewards.daily_count,
                    daily_diamond_reset_at=window.reset_at,
                )
            )
            if not updated:
                raise ConcurrencyConflictError(
                    "Daily diamond window changed during accrual",
                    {"player_id": player.player_id}
                )

        for mineral_id, amount in rewards.minerals.items():
            if amount:
                await self._credit_mineral(player.player_id, mineral_id, amount)

    async def _credit_mineral(self, player_id: str, mineral_id: str, amount: int) -> None:
        updated = await self._execute(
            update(PlayerMineral)
            .where(
                and_(
                    PlayerMineral.player_id == player_id,
                    PlayerMineral.mineral_id == mineral_id,
                )
            )
            .values(amount=PlayerMineral.amount + amount)
        )
        if not updated:
            self.db.add(PlayerMineral(player_id=player_id, mineral_id=mineral_id, amount=amount))
            await self.db.flush()

    # Spend / earn mutators

    async def fuel_machine(
        self,
        player_id: str,
        machine_id: str,
        amount: Optional[float],
        max_capacity: float,
    ) -> FuelResult:
        """
        Move oil from the player's balance into a machine's tank.

        The fill is ``min(requested, floor(balance), capacity - fuel)``; when
        ``amount`` is None the tank is filled as far as the balance allows.
        """
        machine = await self.get_machine(player_id, machine_id, lock=True)
        state = await self.get_player(player_id, lock=True)

        space = max_capacity - machine.fuel_oil
        if space <= CAPACITY_TOLERANCE:
            raise InvalidAmountError("Tank is already full", {"machine_id": machine_id})

        requested = space if amount is None else _validate_positive(amount, "amount")
        fill = min(requested, math.floor(state.oil_balance), space)
        if fill <= 0:
            raise InsufficientFundsError(min(requested, space), state.oil_balance)

        debited = await self._execute(
            update(PlayerState)
            .where(
                and_(
                    PlayerState.player_id == player_id,
                    PlayerState.oil_balance >= fill,
                )
            )
            .values(oil_balance=PlayerState.oil_balance - fill)
        )
        if not debited:
            current = await self.get_player(player_id)
            raise InsufficientFundsError(fill, current.oil_balance)

        credited = await self._execute(
            update(Machine)
            .where(
                and_(
                    Machine.id == machine_id,
                    Machine.player_id == player_id,
                    Machine.fuel_oil + fill <= max_capacity + CAPACITY_TOLERANCE,
                )
            )
            .values(fuel_oil=Machine.fuel_oil + fill)
        )
        if not credited:
            raise ConcurrencyConflictError(
                "Tank changed while fuelling",
                {"machine_id": machine_id}
            )

        self.logger.info("Machine fuelled", player_id=player_id, machine_id=machine_id, filled=fill)
        return FuelResult(machine_id=machine_id, filled=fill, oil_spent=fill)

    async def upgrade_machine(
        self,
        player_id: str,
        machine_id: str,
        cost: float,
        max_level: int,
    ) -> UpgradeResult:
        machine = await self.get_machine(player_id, machine_id, lock=True)
        if machine.level >= max_level:
            raise MaxLevelReachedError(machine_id, max_level)

        cost = max(0.0, float(cost))
        debited = await self._execute(
            update(PlayerState)
            .where(
                and_(
                    PlayerState.player_id == player_id,
                    PlayerState.oil_balance >= cost,
                )
            )
            .values(oil_balance=PlayerState.oil_balance - cost)
        )
        if not debited:
            current = await self.get_player(player_id)
            raise InsufficientFundsError(cost, current.oil_balance)

        upgraded = await self._execute(
            update(Machine)
            .where(
                and_(
                    Machine.id == machine_id,
                    Machine.player_id == player_id,
                    Machine.level == machine.level,
                    Machine.level < max_level,
                )
            )
            .values(level=Machine.level + 1)
        )
        if not upgraded:
            raise ConcurrencyConflictError(
                "Machine level changed while upgrading",
                {"machine_id": machine_id}
            )

        self.logger.info(
            "Machine upgraded",
            player_id=player_id,
            machine_id=machine_id,
            new_level=machine.level + 1,
            cost=cost
        )
        return UpgradeResult(machine_id=machine_id, new_level=machine.level + 1, oil_spent=cost)

    async def exchange_minerals(
        self,
        player_id: str,
        mineral_id: str,
        amount,
        oil_value_per_unit: float,
    ) -> ExchangeResult:
        number = _validate_positive(amount, "amount")
        if number != int(number):
            raise InvalidAmountError("amount must be a whole number", {"amount": amount})
        units = int(number)
        if units > MAX_EXCHANGE_AMOUNT:
            raise InvalidAmountError(
                f"amount must not exceed {MAX_EXCHANGE_AMOUNT}",
                {"amount": units}
            )

        debited = await self._execute(
            update(PlayerMineral)
            .where(
                and_(
                    PlayerMineral.player_id == player_id,
                    PlayerMineral.mineral_id == mineral_id,
                    PlayerMineral.amount >= units,
                )
            )
            .values(amount=PlayerMineral.amount - units)
        )
        if not debited:
            available = (await self.get_minerals(player_id)).get(mineral_id, 0)
            raise InsufficientMineralsError(mineral_id, units, available)

        oil_gained = units * oil_value_per_unit
        await self.credit_oil(player_id, oil_gained)

        self.logger.info(
            "Minerals exchanged",
            player_id=player_id,
            mineral=mineral_id,
            amount=units,
            oil_gained=oil_gained
        )
        return ExchangeResult(mineral_id=mineral_id, amount=units, oil_gained=oil_gained)

    async def claim_daily_reward(self, player_id: str, amount: float, now: datetime) -> float:
        claimed = await self._execute(
            update(PlayerState)
            .where(
                and_(
                    PlayerState.player_id == player_id,
                    or_(
                        PlayerState.last_daily_claim_at.is_(None),
                        PlayerState.last_daily_claim_at <= now - DAY,
                    ),
                )
            )
            .values(
                oil_balance=PlayerState.oil_balance + amount,
                last_daily_claim_at=now,
            )
        )
        if not claimed:
            state = await self.get_player(player_id)
            raise AlreadyClaimedTodayError((state.last_daily_claim_at + DAY).isoformat())

        self.logger.info("Daily reward claimed", player_id=player_id, amount=amount)
        return amount

    async def discard_machine(self, player_id: str, machine_id: str) -> None:
        deleted = await self._execute(
            delete(Machine).where(
                and_(Machine.id == machine_id, Machine.player_id == player_id)
            )
        )
        if not deleted:
            raise MachineNotFoundError(machine_id)
        self.logger.info("Machine discarded", player_id=player_id, machine_id=machine_id)

    async def start_machine(self, player_id: str, machine_id: str, now: datetime) -> bool:
        """Activate a fuelled machine. Returns False when it was already running."""
        started = await self._execute(
            update(Machine)
            .where(
                and_(
                    Machine.id == machine_id,
                    Machine.player_id == player_id,
                    Machine.is_active.is_(False),
                    Machine.fuel_oil > 0,
                )
            )
            .values(is_active=True, last_processed_at=now)
        )
        if started:
            return True

        machine = await self.get_machine(player_id, machine_id, lock=False)
        if machine.is_active:
            return False
        raise InsufficientFuelError(machine_id)

    async def stop_machine(self, player_id: str, machine_id: str, now: datetime) -> None:
        stopped = await self._execute(
            update(Machine)
            .where(and_(Machine.id == machine_id, Machine.player_id == player_id))
            .values(is_active=False, last_processed_at=now)
        )
        if not stopped:
            raise MachineNotFoundError(machine_id)

    async def credit_oil(self, player_id: str, amount: float) -> None:
        if amount <= 0:
            return
        updated = await self._execute(
            update(PlayerState)
            .where(PlayerState.player_id == player_id)
            .values(oil_balance=PlayerState.oil_balance + amount)
        )
        if not updated:
            raise PlayerNotFoundError(player_id)

    async def debit_diamonds(self, player_id: str, diamonds: int) -> None:
        debited = await self._execute(
            update(PlayerState)
            .where(
                and_(
                    PlayerState.player_id == player_id,
                    PlayerState.diamond_balance >= diamonds,
                )
            )
            .values(diamond_balance=PlayerState.diamond_balance - diamonds)
        )
        if not debited:
            state = await self.get_player(player_id)
            raise InsufficientDiamondsError(diamonds, state.diamond_balance)

    async def credit_diamonds(self, player_id: str, diamonds: int) -> None:
        if diamonds <= 0:
            return
        updated = await self._execute(
            update(PlayerState)
            .where(PlayerState.player_id == player_id)
            .values(diamond_balance=PlayerState.diamond_balance + diamonds)
        )
        if not updated:
            raise PlayerNotFoundError(player_id)

    async def grant_machine(self, player_id: str, machine_type: str, machine_id: str) -> Machine:
        """Create a machine keyed by ``machine_id``; repeated grants return the same row."""
        existing = await self.db.get(Machine, machine_id)
        if existing is not None:
            return existing

        machine = Machine.create_for_player(player_id, machine_type, machine_id=machine_id)
        self.db.add(machine)
        try:
            await self.db.flush()
        except IntegrityError:
            raise ConcurrencyConflictError(
                "Machine was granted concurrently",
                {"machine_id": machine_id}
            )
        self.logger.info("Machine granted", player_id=player_id, machine_id=machine_id, type=machine_type)
        return machine

    async def add_slots(self, player_id: str, slots: int, max_purchased: int) -> None:
        updated = await self._execute(
            update(PlayerState)
            .where(
                and_(
                    PlayerState.player_id == player_id,
                    PlayerState.purchased_slots + slots <= max_purchased,
                )
            )
            .values(purchased_slots=PlayerState.purchased_slots + slots)
        )
        if not updated:
            raise ConcurrencyConflictError(
                "Slot count changed while adding slots",
                {"player_id": player_id, "slots": slots}
            )
