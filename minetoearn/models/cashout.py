"""
Cashout models - rounds, per-submission requests and per-recipient payouts.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, Date, DateTime, Text, ForeignKey, Index,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class RoundStatus(str, Enum):
    """Lifecycle of a cashout round: open -> closed -> paid."""
    OPEN = "open"
    CLOSED = "closed"
    PAID = "paid"


class RequestStatus(str, Enum):
    """Status of a single cashout submission."""
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REFUNDED = "refunded"
    REJECTED = "rejected"


class PayoutStatus(str, Enum):
    """Status of a per-recipient payout row."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    @classmethod
    def terminal(cls) -> tuple:
        return (cls.PAID.value, cls.REFUNDED.value)

    @classmethod
    def outstanding(cls) -> tuple:
        return (cls.PENDING.value, cls.PROCESSING.value, cls.FAILED.value)


class CashoutRound(BaseModel, TimestampMixin):
    """A time-boxed batch of cashout requests settled against one pool."""

    __tablename__ = "cashout_rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="UTC date the round was opened"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=RoundStatus.OPEN.value,
        nullable=False,
        comment="open, closed or paid"
    )

    total_diamonds: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Diamonds submitted to this round"
    )

    revenue_window_start: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Inclusive start of the revenue window"
    )

    revenue_window_end: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Exclusive end of the revenue window"
    )

    revenue_wld: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Confirmed purchase revenue observed in the window"
    )

    payout_pool_wld: Mapped[float] = mapped_column(
        Float,
        default=0.0,
        nullable=False,
        comment="Gross payout pool before tax"
    )

    pool_manual_override: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Pool was set by an operator and is not recomputed"
    )

    tax_rate: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Tax fraction applied at finalization"
    )

    net_pool_wld: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Pool distributed to recipients after tax"
    )

    signaled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
        comment="Set when a submission asks the sweep to finalize early"
    )

    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("total_diamonds >= 0", name="ck_round_diamonds_non_negative"),
        Index("idx_cashout_rounds_date_status", "round_date", "status"),
        Index("idx_cashout_rounds_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<CashoutRound(id={self.id}, date={self.round_date}, status={self.status})>"

    @property
    def is_open(self) -> bool:
        return self.status == RoundStatus.OPEN.value


class CashoutRequest(BaseModel, TimestampMixin):
    """One cashout submission; diamonds were debited when it was created."""

    __tablename__ = "cashout_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("player_states.player_id", ondelete="CASCADE"),
        nullable=False
    )

    round_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("cashout_rounds.id", ondelete="CASCADE"),
        nullable=False
    )

    diamonds_submitted: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Diamonds debited for this request"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=RequestStatus.PENDING.value,
        nullable=False
    )

    __table_args__ = (
        CheckConstraint("diamonds_submitted > 0", name="ck_request_diamonds_positive"),
        Index("idx_cashout_requests_round_status", "round_id", "status"),
        Index("idx_cashout_requests_player", "player_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CashoutRequest(id={self.id}, round={self.round_id}, player={self.player_id}, "
            f"diamonds={self.diamonds_submitted}, status={self.status})>"
        )


class CashoutPayout(BaseModel, TimestampMixin):
    """Settlement row for one recipient of a finalized round."""

    __tablename__ = "cashout_payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("cashout_rounds.id", ondelete="CASCADE"),
        nullable=False
    )

    player_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("player_states.player_id", ondelete="CASCADE"),
        nullable=False
    )

    diamonds_burned: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Diamonds this payout settles"
    )

    amount_wld: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Net share of the pool"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=PayoutStatus.PENDING.value,
        nullable=False
    )

    attempt_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Executions claimed so far"
    )

    tx_reference: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Payment rail transaction reference"
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_cashout_payout_round_player"),
        Index("idx_cashout_payouts_round_status", "round_id", "status"),
        Index("idx_cashout_payouts_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CashoutPayout(id={self.id}, round={self.round_id}, player={self.player_id}, "
            f"amount={self.amount_wld}, status={self.status})>"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in PayoutStatus.terminal()
