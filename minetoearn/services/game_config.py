"""
Game configuration resolver.

``resolve_config`` is a pure function that merges the versioned base document
with live override rows (machine tiers, minerals, global settings) into one
immutable ``GameConfig`` snapshot. ``ConfigRepository`` loads those rows and
calls it once per unit of work; a snapshot is never mutated after creation.
"""

import copy
import math
from dataclasses import dataclass, asdict
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.exceptions import ConfigurationError, ValidationError
from minetoearn.core.logging import get_logger
from minetoearn.models.game_config import (
    GameConfigRecord, MachineTierOverride, MineralOverride, GlobalSetting
)


logger = get_logger(__name__)

CURRENT_CONFIG_KEY = "current"

POOL_MODES = ("revenue_bounded", "exchange_rate", "revenue_share")

DEFAULT_BASE_CONFIG: Dict[str, Any] = {
    "pricing": {
        "oil_per_wld": 1000,
        "oil_per_usdc": 1000,
        "usdc_to_wld_rate": 1,
    },
    "machines": {
        "mini": {
            "name": "Mini Machine",
            "cost_oil": 1000, "cost_wld": 0.1,
            "speed_actions_per_hour": 3, "oil_burn_per_hour": 6,
            "tank_capacity": 144, "max_level": 10,
        },
        "light": {
            "name": "Light Machine",
            "cost_oil": 5000, "cost_wld": 0.5,
            "speed_actions_per_hour": 15, "oil_burn_per_hour": 30,
            "tank_capacity": 720, "max_level": 10,
        },
        "heavy": {
            "name": "Heavy Machine",
            "cost_oil": 20000, "cost_wld": 2.0,
            "speed_actions_per_hour": 60, "oil_burn_per_hour": 120,
            "tank_capacity": 2880, "max_level": 10,
        },
        "mega": {
            "name": "Mega Machine",
            "cost_oil": 100000, "cost_wld": 10.0,
            "speed_actions_per_hour": 300, "oil_burn_per_hour": 580,
            "tank_capacity": 13920, "max_level": 10,
        },
    },
    "minerals": {
        "bronze": {"name": "Bronze", "drop_rate": 0.40, "oil_value": 2},
        "silver": {"name": "Silver", "drop_rate": 0.25, "oil_value": 5},
        "gold": {"name": "Gold", "drop_rate": 0.18, "oil_value": 10},
        "iron": {"name": "Iron", "drop_rate": 0.15, "oil_value": 8},
    },
    "diamond_drop_rate": 0.02,
    "progression": {
        "speed_multiplier_per_level": 0.10,
        "burn_multiplier_per_level": 0.10,
        "capacity_multiplier_per_level": 0.10,
        "upgrade_cost_multiplier": 0.50,
    },
    "diamond_controls": {
        "daily_cap_per_user": 1,
        "excess_diamond_oil_value": 50,
    },
    "cashout": {
        "enabled": True,
        "minimum_diamonds_required": 100,
        "tax_rate_percent": 30,
        "diamond_wld_exchange_rate": 0.1,
        "pool_mode": "revenue_bounded",
        "auto_finalize_enabled": True,
        "finalize_interval_seconds": 120,
        "execute_batch_size": 25,
    },
    "treasury": {
        "payout_percentage": 0.5,
    },
    "rewards": {
        "daily_oil_reward": 5,
        "welcome_bonus_oil": 0,
    },
    "slots": {
        "base_slots": 10,
        "slot_pack_size": 5,
        "slot_pack_price_wld": 1,
        "max_total_slots": 30,
    },
}


@dataclass(frozen=True)
class MachineTier:
    machine_type: str
    name: str
    cost_oil: float
    cost_wld: float
    speed_actions_per_hour: float
    oil_burn_per_hour: float
    tank_capacity: float
    max_level: int


@dataclass(frozen=True)
class Mineral:
    mineral_id: str
    name: str
    drop_rate: float
    oil_value: float


@dataclass(frozen=True)
class Pricing:
    oil_per_wld: float
    oil_per_usdc: float
    usdc_to_wld_rate: float


@dataclass(frozen=True)
class Progression:
    speed_multiplier_per_level: float
    burn_multiplier_per_level: float
    capacity_multiplier_per_level: float
    upgrade_cost_multiplier: float


@dataclass(frozen=True)
class DiamondControls:
    drop_rate_per_action: float
    daily_cap_per_user: int
    excess_diamond_oil_value: float


@dataclass(frozen=True)
class CashoutTerms:
    enabled: bool
    minimum_diamonds_required: int
    tax_rate_percent: float
    diamond_wld_exchange_rate: float
    pool_mode: str
    auto_finalize_enabled: bool
    finalize_interval_seconds: int
    execute_batch_size: int

    @property
    def tax_rate(self) -> float:
        """Tax as a fraction clamped to [0, 1]."""
        return min(max(self.tax_rate_percent / 100.0, 0.0), 1.0)


@dataclass(frozen=True)
class Treasury:
    payout_percentage: float


@dataclass(frozen=True)
class Rewards:
    daily_oil_reward: float
    welcome_bonus_oil: float


@dataclass(frozen=True)
class Slots:
    base_slots: int
    slot_pack_size: int
    slot_pack_price_wld: float
    max_total_slots: int


def _level_factor(level: int, multiplier: float) -> float:
    return 1 + max(0, level - 1) * multiplier


@dataclass(frozen=True)
class GameConfig:
    """Immutable configuration snapshot used for one unit of work."""

    version: int
    pricing: Pricing
    machines: Mapping[str, MachineTier]
    minerals: Mapping[str, Mineral]
    diamonds: DiamondControls
    progression: Progression
    cashout: CashoutTerms
    treasury: Treasury
    rewards: Rewards
    slots: Slots

    def tier(self, machine_type: str) -> MachineTier:
        tier = self.machines.get(machine_type)
        if tier is None:
            raise ValidationError(
                f"Unknown machine type: {machine_type}",
                {"machine_type": machine_type}
            )
        return tier

    def mineral(self, mineral_id: str) -> Mineral:
        mineral = self.minerals.get(mineral_id)
        if mineral is None:
            raise ValidationError(
                f"Unknown mineral: {mineral_id}",
                {"mineral": mineral_id}
            )
        return mineral

    def speed_for(self, machine_type: str, level: int) -> float:
        """Mining actions per hour at ``level``."""
        return self.tier(machine_type).speed_actions_per_hour * _level_factor(
            level, self.progression.speed_multiplier_per_level
        )

    def burn_for(self, machine_type: str, level: int) -> float:
        """Oil burned per hour at ``level``."""
        return self.tier(machine_type).oil_burn_per_hour * _level_factor(
            level, self.progression.burn_multiplier_per_level
        )

    def capacity_for(self, machine_type: str, level: int) -> float:
        return self.tier(machine_type).tank_capacity * _level_factor(
            level, self.progression.capacity_multiplier_per_level
        )

    def upgrade_cost_for(self, machine_type: str, level: int) -> int:
        """Oil needed to go from ``level`` to ``level + 1``."""
        return math.floor(self.tier(machine_type).cost_oil * _level_factor(
            level, self.progression.upgrade_cost_multiplier
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "pricing": asdict(self.pricing),
            "machines": {k: asdict(v) for k, v in self.machines.items()},
            "minerals": {k: asdict(v) for k, v in self.minerals.items()},
            "diamonds": asdict(self.diamonds),
            "progression": asdict(self.progression),
            "cashout": asdict(self.cashout),
            "treasury": asdict(self.treasury),
            "rewards": asdict(self.rewards),
            "slots": asdict(self.slots),
        }


def _parse_bool(value: str) -> bool:
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_pool_mode(value: str) -> str:
    if value not in POOL_MODES:
        raise ValueError(f"pool mode must be one of {POOL_MODES}")
    return value


# setting key -> (path into the base document, parser)
GLOBAL_SETTING_KEYS: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "diamond_drop_rate": (("diamond_drop_rate",), float),
    "upgrade_cost_multiplier": (("progression", "upgrade_cost_multiplier"), float),
    "daily_diamond_cap": (("diamond_controls", "daily_cap_per_user"), int),
    "excess_diamond_oil_value": (("diamond_controls", "excess_diamond_oil_value"), float),
    "oil_per_wld": (("pricing", "oil_per_wld"), float),
    "oil_per_usdc": (("pricing", "oil_per_usdc"), float),
    "payout_percentage": (("treasury", "payout_percentage"), float),
    "daily_oil_reward": (("rewards", "daily_oil_reward"), float),
    "welcome_bonus_oil": (("rewards", "welcome_bonus_oil"), float),
    "diamond_wld_exchange_rate": (("cashout", "diamond_wld_exchange_rate"), float),
    "cashout_tax_rate_percent": (("cashout", "tax_rate_percent"), float),
    "cashout_minimum_diamonds": (("cashout", "minimum_diamonds_required"), int),
    "cashout_enabled": (("cashout", "enabled"), _parse_bool),
    "cashout_pool_mode": (("cashout", "pool_mode"), _parse_pool_mode),
    "cashout_auto_finalize_enabled": (("cashout", "auto_finalize_enabled"), _parse_bool),
    "cashout_finalize_interval_seconds": (("cashout", "finalize_interval_seconds"), int),
    "cashout_execute_batch_size": (("cashout", "execute_batch_size"), int),
}


def parse_global_setting(key: str, value: str) -> Any:
    """Parse one override value, raising ConfigurationError when invalid."""
    if key not in GLOBAL_SETTING_KEYS:
        raise ConfigurationError(f"Unknown global setting: {key}", {"key": key})
    _, parser = GLOBAL_SETTING_KEYS[key]
    try:
        return parser(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {key}: {value!r}",
            {"key": key, "value": value, "error": str(e)}
        )


def _set_path(document: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    node = document
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def _row_value(row: Any, name: str, default: Any = None) -> Any:
    if isinstance(row, Mapping):
        return row.get(name, default)
    return getattr(row, name, default)


def _build_snapshot(document: Dict[str, Any], version: int) -> GameConfig:
    try:
        machines = {
            key: MachineTier(
                machine_type=key,
                name=str(tier.get("name", key)),
                cost_oil=float(tier["cost_oil"]),
                cost_wld=float(tier.get("cost_wld", 0)),
                speed_actions_per_hour=float(tier["speed_actions_per_hour"]),
                oil_burn_per_hour=float(tier["oil_burn_per_hour"]),
                tank_capacity=float(tier["tank_capacity"]),
                max_level=int(tier.get("max_level", 10)),
            )
            for key, tier in document["machines"].items()
        }
        minerals = {
            key: Mineral(
                mineral_id=key,
                name=str(mineral.get("name", key)),
                drop_rate=float(mineral["drop_rate"]),
                oil_value=float(mineral["oil_value"]),
            )
            for key, mineral in document["minerals"].items()
        }
        pricing = document["pricing"]
        progression = document["progression"]
        controls = document["diamond_controls"]
        cashout = document["cashout"]
        slots = document["slots"]

        return GameConfig(
            version=version,
            pricing=Pricing(
                oil_per_wld=float(pricing["oil_per_wld"]),
                oil_per_usdc=float(pricing["oil_per_usdc"]),
                usdc_to_wld_rate=float(pricing.get("usdc_to_wld_rate", 1)),
            ),
            machines=MappingProxyType(machines),
            minerals=MappingProxyType(minerals),
            diamonds=DiamondControls(
                drop_rate_per_action=float(document["diamond_drop_rate"]),
                daily_cap_per_user=int(controls["daily_cap_per_user"]),
                excess_diamond_oil_value=float(controls.get("excess_diamond_oil_value", 0)),
            ),
            progression=Progression(
                speed_multiplier_per_level=float(progression["speed_multiplier_per_level"]),
                burn_multiplier_per_level=float(progression["burn_multiplier_per_level"]),
                capacity_multiplier_per_level=float(progression["capacity_multiplier_per_level"]),
                upgrade_cost_multiplier=float(progression["upgrade_cost_multiplier"]),
            ),
            cashout=CashoutTerms(
                enabled=bool(cashout["enabled"]),
                minimum_diamonds_required=int(cashout["minimum_diamonds_required"]),
                tax_rate_percent=float(cashout.get("tax_rate_percent", 30)),
                diamond_wld_exchange_rate=float(cashout["diamond_wld_exchange_rate"]),
                pool_mode=_parse_pool_mode(cashout.get("pool_mode", "revenue_bounded")),
                auto_finalize_enabled=bool(cashout.get("auto_finalize_enabled", True)),
                finalize_interval_seconds=int(cashout.get("finalize_interval_seconds", 120)),
                execute_batch_size=max(1, int(cashout.get("execute_batch_size", 25))),
            ),
            treasury=Treasury(
                payout_percentage=float(document["treasury"]["payout_percentage"]),
            ),
            rewards=Rewards(
                daily_oil_reward=float(document["rewards"]["daily_oil_reward"]),
                welcome_bonus_oil=float(document["rewards"].get("welcome_bonus_oil", 0)),
            ),
            slots=Slots(
                base_slots=int(slots["base_slots"]),
                slot_pack_size=int(slots["slot_pack_size"]),
                slot_pack_price_wld=float(slots["slot_pack_price_wld"]),
                max_total_slots=int(slots["max_total_slots"]),
            ),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError("Game config document is invalid", {"error": repr(e)})


def resolve_config(
    base: Optional[Mapping[str, Any]] = None,
    tier_rows: Iterable[Any] = (),
    mineral_rows: Iterable[Any] = (),
    setting_rows: Optional[Mapping[str, str]] = None,
    version: int = 1,
) -> GameConfig:
    """
    Merge the base document with override rows into a GameConfig.

    Args:
        base: base config document; ``DEFAULT_BASE_CONFIG`` when omitted
        tier_rows: machine tier rows; enabled rows replace the tier of the
            same key, disabled rows remove it
        mineral_rows: mineral rows with the same replace/remove semantics
        setting_rows: global setting overrides keyed by setting name
        version: version of the base document

    Returns:
        Immutable configuration snapshot

    Raises:
        ConfigurationError: when the merged document or an override is invalid
    """
    document = copy.deepcopy(dict(base if base is not None else DEFAULT_BASE_CONFIG))
    for section, defaults in DEFAULT_BASE_CONFIG.items():
        if isinstance(defaults, dict) and section not in ("machines", "minerals"):
            merged = copy.deepcopy(defaults)
            merged.update(document.get(section) or {})
            document[section] = merged
        else:
            document.setdefault(section, copy.deepcopy(defaults))

    for row in tier_rows:
        key = _row_value(row, "machine_type")
        if not _row_value(row, "is_enabled", True):
            document["machines"].pop(key, None)
            continue
        document["machines"][key] = {
            "name": _row_value(row, "name", key),
            "cost_oil": _row_value(row, "cost_oil"),
            "cost_wld": _row_value(row, "cost_wld", 0),
            "speed_actions_per_hour": _row_value(row, "speed_actions_per_hour"),
            "oil_burn_per_hour": _row_value(row, "oil_burn_per_hour"),
            "tank_capacity": _row_value(row, "tank_capacity"),
            "max_level": _row_value(row, "max_level", 10),
        }

    for row in mineral_rows:
        key = _row_value(row, "mineral_id")
        if not _row_value(row, "is_enabled", True):
            document["minerals"].pop(key, None)
            continue
        document["minerals"][key] = {
            "name": _row_value(row, "name", key),
            "drop_rate": _row_value(row, "drop_rate"),
            "oil_value": _row_value(row, "oil_value"),
        }

    for key, raw in (setting_rows or {}).items():
        if key not in GLOBAL_SETTING_KEYS:
            logger.warning("Ignoring unknown global setting", key=key)
            continue
        path, _ = GLOBAL_SETTING_KEYS[key]
        _set_path(document, path, parse_global_setting(key, raw))

    return _build_snapshot(document, version)


class ConfigRepository:
    """Loads the persisted config rows and resolves a snapshot."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="config_repository")

    async def load(self) -> GameConfig:
        record = await self.db.get(GameConfigRecord, CURRENT_CONFIG_KEY)
        tiers = (await self.db.execute(select(MachineTierOverride))).scalars().all()
        minerals = (await self.db.execute(select(MineralOverride))).scalars().all()
        settings_rows = (await self.db.execute(select(GlobalSetting))).scalars().all()

        return resolve_config(
            base=record.value if record else None,
            tier_rows=tiers,
            mineral_rows=minerals,
            setting_rows={row.key: row.value for row in settings_rows},
            version=record.version if record else 0,
        )

    async def seed_base(self, document: Optional[Dict[str, Any]] = None) -> GameConfigRecord:
        """Store the base document if none exists yet."""
        record = await self.db.get(GameConfigRecord, CURRENT_CONFIG_KEY)
        if record is not None:
            return record

        record = GameConfigRecord(
            key=CURRENT_CONFIG_KEY,
            value=copy.deepcopy(document or DEFAULT_BASE_CONFIG),
            version=1,
        )
        self.db.add(record)
        await self.db.flush()
        self.logger.info("Seeded base game config", version=record.version)
        return record

    async def set_global_setting(self, key: str, value: str) -> GlobalSetting:
        """Validate and upsert a global setting override."""
        parse_global_setting(key, value)

        row = await self.db.get(GlobalSetting, key)
        if row is None:
            row = GlobalSetting(key=key, value=str(value))
            self.db.add(row)
        else:
            row.value = str(value)
        await self.db.flush()

        self.logger.info("Global setting updated", key=key, value=value)
        return row

    async def list_global_settings(self) -> Dict[str, str]:
        rows = (await self.db.execute(select(GlobalSetting))).scalars().all()
        return {row.key: row.value for row in rows}
