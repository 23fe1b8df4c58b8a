"""
Cashout routes: submit diamonds and inspect the current round.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.api.dependencies import get_database, get_limiter, get_player_id, get_rail
from minetoearn.api.schemas.common import SuccessResponse, create_success_response
from minetoearn.api.schemas.game import CashoutRequestBody
from minetoearn.models.cashout import CashoutRequest
from minetoearn.services.cashout.payment_rail import PaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.cashout.service import CashoutService
from minetoearn.services.rate_limiter import RateLimiter
from minetoearn.utils.timeutils import utc_now


router = APIRouter()


@router.post(
    "/request",
    response_model=SuccessResponse,
    summary="Request Cashout",
    description="Burn diamonds into today's cashout round and try to settle it"
)
async def request_cashout(
    request: CashoutRequestBody,
    player_id: str = Depends(get_player_id),
    rail: PaymentRail = Depends(get_rail),
    rate_limiter: RateLimiter = Depends(get_limiter)
):
    service = CashoutService(rail, rate_limiter=rate_limiter)
    result = await service.request_cashout(player_id, request.diamonds)
    return create_success_response(data=result, message=result["settlement"]["message"])


@router.get(
    "/rounds/current",
    response_model=SuccessResponse,
    summary="Current Cashout Round",
    description="Today's open round and the caller's requests in it"
)
async def current_round(
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database)
):
    cashout_round = await CashoutRoundManager(db).get_current_round(utc_now())
    if cashout_round is None:
        return create_success_response(data={"round": None, "requests": []})

    result = await db.execute(
        select(CashoutRequest)
        .where(
            and_(
                CashoutRequest.round_id == cashout_round.id,
                CashoutRequest.player_id == player_id,
            )
        )
        .order_by(CashoutRequest.id)
    )
    return create_success_response(data={
        "round": cashout_round.to_dict(),
        "requests": [r.to_dict() for r in result.scalars().all()],
    })
