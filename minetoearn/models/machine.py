"""
Machine model - a player's mining machine and its accrual checkpoint.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class Machine(BaseModel, TimestampMixin):
    """Mining machine owned by exactly one player."""

    __tablename__ = "machines"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Machine id; equals the purchase id for bought machines"
    )

    player_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("player_states.player_id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning player"
    )

    machine_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Tier key (mini, light, heavy, mega)"
    )

    level: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Upgrade level, 1..max_level"
    )

    fuel_oil: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Oil currently in the tank"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Whether the machine is mining"
    )

    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="Accrual checkpoint; only advanced by fuelled time"
    )

    action_remainder: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Fractional mining action carried to the next accrual"
    )

    __table_args__ = (
        CheckConstraint("fuel_oil >= 0", name="ck_machine_fuel_non_negative"),
        CheckConstraint("level >= 1", name="ck_machine_level_positive"),
        Index("idx_machines_player", "player_id"),
        Index("idx_machines_active", "player_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<Machine(id={self.id}, type={self.machine_type}, level={self.level}, "
            f"fuel={self.fuel_oil}, active={self.is_active})>"
        )

    @classmethod
    def create_for_player(
        cls,
        player_id: str,
        machine_type: str,
        machine_id: Optional[str] = None
    ) -> "Machine":
        """New idle machine with an empty tank."""
        return cls(
            id=machine_id or str(uuid.uuid4()),
            player_id=player_id,
            machine_type=machine_type,
            level=1,
            fuel_oil=0.0,
            is_active=False,
            last_processed_at=None,
            action_remainder=0.0,
        )
