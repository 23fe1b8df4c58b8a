"""
Persisted game configuration: the base snapshot plus live override tables.

The rows here are merged at read time by
``minetoearn.services.game_config.resolve_config``.
"""

from typing import Any, Dict, Optional

from sqlalchemy import String, Integer, Float, Boolean, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class GameConfigRecord(BaseModel, TimestampMixin):
    """Versioned base configuration document (key ``current``)."""

    __tablename__ = "game_config"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)

    value: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Base config document"
    )

    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Incremented on every write"
    )

    def __repr__(self) -> str:
        return f"<GameConfigRecord(key={self.key}, version={self.version})>"


class MachineTierOverride(BaseModel, TimestampMixin):
    """Live machine tier row; replaces the tier of the same key."""

    __tablename__ = "machine_tiers"

    machine_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    cost_oil: Mapped[float] = mapped_column(Float, nullable=False)
    cost_wld: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    speed_actions_per_hour: Mapped[float] = mapped_column(Float, nullable=False)
    oil_burn_per_hour: Mapped[float] = mapped_column(Float, nullable=False)
    tank_capacity: Mapped[float] = mapped_column(Float, nullable=False)
    max_level: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<MachineTierOverride(type={self.machine_type}, enabled={self.is_enabled})>"


class MineralOverride(BaseModel, TimestampMixin):
    """Live mineral row; replaces the mineral of the same key."""

    __tablename__ = "mineral_configs"

    mineral_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    drop_rate: Mapped[float] = mapped_column(Float, nullable=False)
    oil_value: Mapped[float] = mapped_column(Float, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<MineralOverride(id={self.mineral_id}, drop_rate={self.drop_rate})>"


class GlobalSetting(BaseModel, TimestampMixin):
    """Key/value override for a single scalar setting."""

    __tablename__ = "global_game_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GlobalSetting(key={self.key}, value={self.value})>"
