"""
Operator endpoints: drive cashout rounds, reconcile, refund, run the sweep and
manage global setting overrides.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.admin.admin_auth import require_admin_auth
from minetoearn.api.dependencies import get_database, get_rail, get_verifier
from minetoearn.api.schemas.common import SuccessResponse, create_success_response
from minetoearn.api.schemas.game import (
    GlobalSettingRequest, ProcessRoundRequest, RecalculateRoundRequest, RefundPayoutRequest
)
from minetoearn.core.logging import get_logger
from minetoearn.scheduler.sweep_scheduler import get_sweep_scheduler
from minetoearn.services.cashout.executor import PayoutExecutor
from minetoearn.services.cashout.payment_rail import PaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.purchases import PaymentVerifier, verify_pending_purchases
from minetoearn.utils.timeutils import utc_now


logger = get_logger(__name__)

admin_router = APIRouter(dependencies=[Depends(require_admin_auth)])


@admin_router.post(
    "/rounds/{round_id}/process",
    response_model=SuccessResponse,
    summary="Finalize Round",
    description="Close an open round and create its payouts, optionally with a manual pool"
)
async def process_round(
    round_id: int,
    request: Optional[ProcessRoundRequest] = None,
    db: AsyncSession = Depends(get_database)
):
    config = await ConfigRepository(db).load()
    manual_pool = request.manual_pool if request else None
    result = await CashoutRoundManager(db).finalize_round(round_id, config, utc_now(), manual_pool=manual_pool)
    logger.info("Admin finalized round", round_id=round_id, manual_pool=manual_pool)
    return create_success_response(data=result.to_dict())


@admin_router.post(
    "/rounds/{round_id}/execute",
    response_model=SuccessResponse,
    summary="Execute Payouts",
    description="Send pending (and optionally failed) payouts of a closed round"
)
async def execute_round(
    round_id: int,
    batch_size: int = Query(25, ge=1, le=500),
    retry_failed: bool = Query(True),
    rail: PaymentRail = Depends(get_rail)
):
    report = await PayoutExecutor(rail).execute_round(round_id, batch_size=batch_size, retry_failed=retry_failed)
    return create_success_response(data=report.to_dict())


@admin_router.post(
    "/rounds/{round_id}/recalculate",
    response_model=SuccessResponse,
    summary="Recalculate Round",
    description="Redistribute a new pool; refused once any payout is paid"
)
async def recalculate_round(
    round_id: int,
    request: RecalculateRoundRequest,
    db: AsyncSession = Depends(get_database)
):
    config = await ConfigRepository(db).load()
    result = await CashoutRoundManager(db).recalculate_round(round_id, request.new_pool, config)
    return create_success_response(data=result.to_dict())


@admin_router.get(
    "/reconcile",
    response_model=SuccessResponse,
    summary="Reconcile Rounds",
    description="Check round books; auto_heal only completes finished rounds"
)
async def reconcile(
    round_id: Optional[int] = Query(None),
    auto_heal: bool = Query(False),
    db: AsyncSession = Depends(get_database)
):
    report = await CashoutRoundManager(db).reconcile(utc_now(), round_id=round_id, auto_heal=auto_heal)
    return create_success_response(data=report.to_dict())


@admin_router.post(
    "/payouts/{payout_id}/refund",
    response_model=SuccessResponse,
    summary="Refund Payout",
    description="Return a payout's diamonds; a no-op for paid or refunded payouts"
)
async def refund_payout(
    payout_id: int,
    request: Optional[RefundPayoutRequest] = None,
    db: AsyncSession = Depends(get_database)
):
    request = request or RefundPayoutRequest()
    refunded = await CashoutRoundManager(db).refund_payout(
        payout_id, request.reason, include_processing=request.force
    )
    return create_success_response(data={"payout_id": payout_id, "refunded": refunded})


@admin_router.post("/sweep", response_model=SuccessResponse, summary="Run Sweep Pass")
async def run_sweep():
    scheduler = await get_sweep_scheduler()
    result = await scheduler.run_once()
    return create_success_response(data=result.to_dict())


@admin_router.get("/scheduler/status", response_model=SuccessResponse, summary="Sweep Scheduler Status")
async def scheduler_status():
    scheduler = await get_sweep_scheduler()
    return create_success_response(data=scheduler.get_status())


@admin_router.post("/purchases/verify", response_model=SuccessResponse, summary="Verify Pending Purchases")
async def verify_purchases(
    expiry_hours: Optional[int] = Query(None, ge=1),
    verifier: PaymentVerifier = Depends(get_verifier)
):
    report = await verify_pending_purchases(verifier, utc_now(), expiry_hours=expiry_hours)
    return create_success_response(data=report.to_dict())


@admin_router.get("/settings", response_model=SuccessResponse, summary="List Global Settings")
async def list_settings(db: AsyncSession = Depends(get_database)):
    repository = ConfigRepository(db)
    overrides = await repository.list_global_settings()
    config = await repository.load()
    return create_success_response(data={"overrides": overrides, "config": config.to_dict()})


@admin_router.put("/settings", response_model=SuccessResponse, summary="Set Global Setting")
async def set_setting(
    request: GlobalSettingRequest,
    db: AsyncSession = Depends(get_database)
):
    await ConfigRepository(db).set_global_setting(request.key, str(request.value))
    return create_success_response(data={"key": request.key, "value": request.value}, message="Setting updated")
