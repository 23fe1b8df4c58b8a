"""
Request schemas for game, cashout and purchase endpoints.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GameActionRequest(BaseModel):
    """A player action with its action-specific payload."""
    action: str = Field(description="fuel_machine, start_machine, stop_machine, upgrade_machine, "
                                    "exchange_minerals, claim_daily_reward or discard_machine")
    payload: Dict[str, Any] = Field(default_factory=dict)


class WalletRequest(BaseModel):
    wallet_address: str = Field(description="0x-prefixed payout address")


class CashoutRequestBody(BaseModel):
    diamonds: int = Field(gt=0, description="Whole diamonds to cash out")


class OilPurchaseRequest(BaseModel):
    token: str = Field(description="WLD or USDC")
    oil_amount: float = Field(gt=0, le=1_000_000)


class MachinePurchaseRequest(BaseModel):
    machine_type: str


class ConfirmPurchaseRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    transaction_id: str = Field(min_length=1, max_length=128)


class ProcessRoundRequest(BaseModel):
    manual_pool: Optional[float] = Field(default=None, ge=0, description="Gross pool override in WLD")


class RecalculateRoundRequest(BaseModel):
    new_pool: float = Field(ge=0, description="New gross pool in WLD")


class RefundPayoutRequest(BaseModel):
    reason: str = Field(default="admin_refund", max_length=200)
    force: bool = Field(default=False, description="Also refund a payout stuck in processing")


class GlobalSettingRequest(BaseModel):
    key: str
    value: Any
