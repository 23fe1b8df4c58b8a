"""
Purchase model - oil, machine and slot purchases paid through the payment app.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PurchaseKind(str, Enum):
    OIL = "oil"
    MACHINE = "machine"
    SLOT = "slot"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Purchase(BaseModel, TimestampMixin):
    """An in-app purchase awaiting or holding payment confirmation."""

    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Purchase id; granted machines reuse it as their id"
    )

    player_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("player_states.player_id", ondelete="CASCADE"),
        nullable=False
    )

    kind: Mapped[str] = mapped_column(String(16), nullable=False, comment="oil, machine or slot")

    reference: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        comment="Payment reference shared with the payment app"
    )

    token: Mapped[str] = mapped_column(String(8), default="WLD", nullable=False)

    amount_token: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Amount charged in the payment token"
    )

    amount_wld: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Charge expressed in WLD; feeds round revenue"
    )

    amount_oil: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    machine_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    slots_purchased: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    to_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(16),
        default=PurchaseStatus.PENDING.value,
        nullable=False
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_purchases_player_status", "player_id", "status", "created_at"),
        Index("idx_purchases_status_confirmed", "status", "confirmed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, kind={self.kind}, player={self.player_id}, "
            f"status={self.status})>"
        )

    @property
    def is_pending(self) -> bool:
        return self.status == PurchaseStatus.PENDING.value
