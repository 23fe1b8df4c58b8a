"""
Player state model - authoritative balances for one player.
"""

from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import (
    String, Integer, Float, DateTime, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PlayerState(BaseModel, TimestampMixin):
    """One row per player holding oil, diamonds and the daily diamond window."""

    __tablename__ = "player_states"

    player_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Opaque player identifier issued by the auth layer"
    )

    wallet_address: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Payout wallet address (0x EVM format)"
    )

    oil_balance: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Spendable oil"
    )

    diamond_balance: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Diamonds available for cashout"
    )

    daily_diamond_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Diamonds credited in the current 24h window"
    )

    daily_diamond_reset_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Start of the current 24h diamond window"
    )

    purchased_slots: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Extra machine slots bought on top of the base allowance"
    )

    last_daily_claim_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="Last time the daily oil reward was claimed"
    )

    __table_args__ = (
        CheckConstraint("oil_balance >= 0", name="ck_player_oil_non_negative"),
        CheckConstraint("diamond_balance >= 0", name="ck_player_diamonds_non_negative"),
        Index("idx_player_states_wallet", "wallet_address"),
    )

    def __repr__(self) -> str:
        return (
            f"<PlayerState(player_id={self.player_id}, oil={self.oil_balance}, "
            f"diamonds={self.diamond_balance})>"
        )

    def max_slots(self, base_slots: int, max_total_slots: int) -> int:
        """Machine slots available to this player."""
        return min(base_slots + (self.purchased_slots or 0), max_total_slots)


class PlayerMineral(BaseModel):
    """Mineral balance for one player and one mineral id."""

    __tablename__ = "player_minerals"

    player_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("player_states.player_id", ondelete="CASCADE"),
        primary_key=True,
        comment="Owning player"
    )

    mineral_id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="Mineral key from the mineral table"
    )

    amount: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Units held"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_player_mineral_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<PlayerMineral(player={self.player_id}, mineral={self.mineral_id}, amount={self.amount})>"

    @staticmethod
    def as_map(rows) -> Dict[str, int]:
        return {row.mineral_id: row.amount for row in rows}
