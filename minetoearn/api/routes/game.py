"""
Game routes: state snapshot, player actions and payout wallet.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.api.dependencies import get_database, get_limiter, get_player_id
from minetoearn.api.schemas.common import SuccessResponse, create_success_response
from minetoearn.api.schemas.game import GameActionRequest, WalletRequest
from minetoearn.core.logging import get_logger
from minetoearn.services.game_actions import GameService
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.rate_limiter import RateLimiter
from minetoearn.utils.timeutils import utc_now
from minetoearn.utils.validation import validate_wallet_address


logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/state",
    response_model=SuccessResponse,
    summary="Get Game State",
    description="Bring mining up to date and return config, balances and machines"
)
async def get_game_state(
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database)
):
    state = await GameService(db).get_state(player_id)
    return create_success_response(data=state)


@router.post(
    "/action",
    response_model=SuccessResponse,
    summary="Perform Game Action",
    description="Apply one player action after the accrual pass"
)
async def perform_game_action(
    request: GameActionRequest,
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database),
    rate_limiter: RateLimiter = Depends(get_limiter)
):
    result = await GameService(db, rate_limiter=rate_limiter).perform_action(
        player_id, request.action, request.payload
    )
    return create_success_response(data=result, message=f"{result['action']} applied")


@router.post(
    "/wallet",
    response_model=SuccessResponse,
    summary="Set Payout Wallet",
    description="Store the address cashout payouts are sent to"
)
async def set_wallet(
    request: WalletRequest,
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database)
):
    address = validate_wallet_address(request.wallet_address)
    config = await ConfigRepository(db).load()
    ledger = PlayerLedger(db)
    await ledger.ensure_player(player_id, config, now=utc_now())
    await ledger.set_wallet_address(player_id, address)
    return create_success_response(data={"wallet_address": address}, message="Wallet updated")
