"""
Database models for the mining backend.

Contains SQLAlchemy models for player balances, machines, cashout rounds,
purchases and the persisted game configuration.
"""

from .base import Base, BaseModel, TimestampMixin
from .player import PlayerState, PlayerMineral
from .machine import Machine
from .cashout import (
    CashoutRound, CashoutRequest, CashoutPayout,
    RoundStatus, RequestStatus, PayoutStatus
)
from .purchase import Purchase, PurchaseKind, PurchaseStatus
from .game_config import (
    GameConfigRecord, MachineTierOverride, MineralOverride, GlobalSetting
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "PlayerState",
    "PlayerMineral",
    "Machine",
    "CashoutRound",
    "CashoutRequest",
    "CashoutPayout",
    "RoundStatus",
    "RequestStatus",
    "PayoutStatus",
    "Purchase",
    "PurchaseKind",
    "PurchaseStatus",
    "GameConfigRecord",
    "MachineTierOverride",
    "MineralOverride",
    "GlobalSetting",
]
