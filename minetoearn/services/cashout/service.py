"""
Player-facing cashout flow: submit a request and, when immediate settlement is
on, finalize and execute the round straight away.
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, and_

from minetoearn.core.config import settings
from minetoearn.core.database import get_async_session
from minetoearn.core.logging import get_logger
from minetoearn.models.cashout import CashoutPayout, PayoutStatus
from minetoearn.services.cashout.executor import PayoutExecutor
from minetoearn.services.cashout.payment_rail import PaymentRail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.ledger import PlayerLedger
from minetoearn.services.rate_limiter import RateLimiter
from minetoearn.utils.timeutils import utc_now


logger = get_logger(__name__)

QUEUED_MESSAGE = "Cashout queued for auto-processing"


class CashoutService:
    """Runs each step of a cashout in its own transaction."""

    def __init__(
        self,
        rail: PaymentRail,
        session_factory: Callable[[], AbstractAsyncContextManager] = get_async_session,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable = utc_now,
        immediate_settlement: Optional[bool] = None,
    ):
        self.rail = rail
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.immediate_settlement = (
            settings.cashout_immediate_settlement if immediate_settlement is None else immediate_settlement
        )
        self.logger = logger.bind(service="cashout_service")

    async def request_cashout(self, player_id: str, diamonds) -> Dict[str, Any]:
        """
        Submit ``diamonds`` for cashout.

        Submission errors (validation, insufficient diamonds, disabled cashout)
        propagate. Settlement errors do not: the request stays queued for the
        sweep and the response says so.
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.check(
                player_id, "cashout", settings.rate_limit_cashouts, settings.rate_limit_window
            )

        now = self.clock()
        async with self.session_factory() as db:
            config = await ConfigRepository(db).load()
            await PlayerLedger(db).ensure_player(player_id, config, now=now)
            manager = CashoutRoundManager(db)
            request, cashout_round = await manager.submit_request(player_id, diamonds, config, now)
            await manager.signal_round(cashout_round.id, now)
            request_data = request.to_dict()
            round_data = cashout_round.to_dict()

        settlement = {"finalized": False, "executed": False, "refunded": False, "message": QUEUED_MESSAGE}
        if self.immediate_settlement and config.cashout.auto_finalize_enabled:
            settlement = await self._settle(player_id, cashout_round.id)

        return {"request": request_data, "round": round_data, "settlement": settlement}

    async def _settle(self, player_id: str, round_id: int) -> Dict[str, Any]:
        settlement = {"finalized": False, "executed": False, "refunded": False, "message": QUEUED_MESSAGE}
        try:
            async with self.session_factory() as db:
                config = await ConfigRepository(db).load()
                await CashoutRoundManager(db).finalize_round(round_id, config, self.clock())
            settlement["finalized"] = True

            executor = PayoutExecutor(self.rail, session_factory=self.session_factory, clock=self.clock)
            await executor.execute_round(round_id, batch_size=config.cashout.execute_batch_size)
            settlement["executed"] = True

            async with self.session_factory() as db:
                result = await db.execute(
                    select(CashoutPayout.status).where(
                        and_(
                            CashoutPayout.round_id == round_id,
                            CashoutPayout.player_id == player_id,
                        )
                    )
                )
                status = result.scalar_one_or_none()
        except Exception as e:
            self.logger.error(
                "Immediate cashout settlement failed",
                player_id=player_id,
                round_id=round_id,
                error=str(e),
                exc_info=True
            )
            return settlement

        if status == PayoutStatus.REFUNDED.value:
            settlement.update(refunded=True, message="Cashout could not be paid, diamonds were refunded")
        elif status == PayoutStatus.PAID.value:
            settlement["message"] = "Cashout paid"
        return settlement
