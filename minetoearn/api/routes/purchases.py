"""
Purchase routes: initiate oil, machine and slot purchases and confirm payment.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.api.dependencies import get_database, get_player_id, get_verifier
from minetoearn.api.schemas.common import SuccessResponse, create_success_response
from minetoearn.api.schemas.game import (
    ConfirmPurchaseRequest, MachinePurchaseRequest, OilPurchaseRequest
)
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.purchases import PaymentVerifier, PurchaseService
from minetoearn.utils.timeutils import utc_now


router = APIRouter()


async def _prepare(db: AsyncSession, player_id: str, verifier: PaymentVerifier):
    config = await ConfigRepository(db).load()
    await PlayerLedger(db).ensure_player(player_id, config, now=utc_now())
    return config, PurchaseService(db, verifier)


@router.post("/oil", response_model=SuccessResponse, summary="Initiate Oil Purchase")
async def initiate_oil_purchase(
    request: OilPurchaseRequest,
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database),
    verifier: PaymentVerifier = Depends(get_verifier)
):
    config, service = await _prepare(db, player_id, verifier)
    data = await service.initiate_oil_purchase(player_id, request.token, request.oil_amount, config)
    return create_success_response(data=data)


@router.post("/machine", response_model=SuccessResponse, summary="Initiate Machine Purchase")
async def initiate_machine_purchase(
    request: MachinePurchaseRequest,
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database),
    verifier: PaymentVerifier = Depends(get_verifier)
):
    config, service = await _prepare(db, player_id, verifier)
    data = await service.initiate_machine_purchase(player_id, request.machine_type, config)
    return create_success_response(data=data)


@router.post("/slots", response_model=SuccessResponse, summary="Initiate Slot Purchase")
async def initiate_slot_purchase(
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database),
    verifier: PaymentVerifier = Depends(get_verifier)
):
    config, service = await _prepare(db, player_id, verifier)
    data = await service.initiate_slot_purchase(player_id, config)
    return create_success_response(data=data)


@router.post(
    "/confirm",
    response_model=SuccessResponse,
    summary="Confirm Purchase",
    description="Verify the payment and fulfil the purchase; safe to repeat"
)
async def confirm_purchase(
    request: ConfirmPurchaseRequest,
    player_id: str = Depends(get_player_id),
    db: AsyncSession = Depends(get_database),
    verifier: PaymentVerifier = Depends(get_verifier)
):
    config, service = await _prepare(db, player_id, verifier)
    data = await service.confirm_purchase(player_id, request.reference, request.transaction_id, config)
    return create_success_response(data=data)
