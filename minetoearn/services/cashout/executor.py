"""
Payout executor.

Claims a batch of payout rows (pending, optionally failed) with SKIP LOCKED and
commits them as ``processing`` before any transfer is attempted. Each row is
then settled in its own transaction:

* invalid address, zero amount, insufficient treasury, rail rejection -> refund
* retryable rail error, or any error before the transfer -> failed, refunded
  once attempts run out
* transfer timed out, rail response lost, or the status write failed after a
  transfer -> left in processing for reconciliation
"""

import asyncio
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from sqlalchemy import select, update, and_

from minetoearn.core.config import settings
from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import (
    ExternalDependencyError, RoundStateError, TransferOutcomeUnknownError
)
from minetoearn.core.logging import get_logger
from minetoearn.models.cashout import CashoutPayout, PayoutStatus, RoundStatus
from minetoearn.models.player import PlayerState
from minetoearn.services.cashout.payment_rail import PaymentRail, TransferResult
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.utils.timeutils import utc_now


logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 25
MAX_BATCHES_PER_RUN = 40


@dataclass(frozen=True)
class ClaimedPayout:
    payout_id: int
    round_id: int
    player_id: str
    amount: float
    diamonds: int
    wallet_address: Optional[str]
    attempt_count: int


@dataclass
class ExecutionReport:
    round_id: int
    claimed: int = 0
    paid: int = 0
    failed: int = 0
    refunded: int = 0
    ambiguous: int = 0
    completed: bool = False
    outcomes: List[dict] = field(default_factory=list)

    def record(self, payout: ClaimedPayout, outcome: str, **extra) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        self.outcomes.append({"payout_id": payout.payout_id, "player_id": payout.player_id, "outcome": outcome, **extra})

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class PayoutExecutor:
    """Settles a finalized round's payout rows through a payment rail."""

    def __init__(
        self,
        rail: PaymentRail,
        session_factory: Callable[[], AbstractAsyncContextManager] = get_async_session,
        max_attempts: Optional[int] = None,
        transfer_timeout: Optional[float] = None,
        clock: Callable = utc_now,
    ):
        self.rail = rail
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.payout_max_attempts
        self.transfer_timeout = transfer_timeout or settings.payment_rail_timeout
        self.clock = clock
        self.logger = logger.bind(service="payout_executor")

    async def execute_round(
        self,
        round_id: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_failed: bool = True,
    ) -> ExecutionReport:
        """
        Work through a closed round until nothing claimable is left.

        A payout is attempted at most once per call, so a failing rail burns
        one attempt per run rather than all of them.
        """
        report = ExecutionReport(round_id=round_id)
        seen: Set[int] = set()

        for _ in range(MAX_BATCHES_PER_RUN):
            batch = await self._claim_batch(round_id, batch_size, retry_failed, seen)
            if not batch:
                break
            report.claimed += len(batch)
            for payout in batch:
                seen.add(payout.payout_id)
                try:
                    await self._settle(payout, report)
                except Exception as e:
                    # row stays in processing; reconcile reports it as stuck
                    self._ambiguous(payout, report, f"outcome not recorded: {e}")

        async with self.session_factory() as db:
            report.completed = await CashoutRoundManager(db).complete_round_if_done(round_id, self.clock())

        self.logger.info(
            "Payout run finished",
            round_id=round_id,
            claimed=report.claimed,
            paid=report.paid,
            failed=report.failed,
            refunded=report.refunded,
            ambiguous=report.ambiguous,
            completed=report.completed
        )
        return report

    async def _claim_batch(
        self,
        round_id: int,
        batch_size: int,
        retry_failed: bool,
        exclude: Set[int],
    ) -> List[ClaimedPayout]:
        statuses = [PayoutStatus.PENDING.value]
        if retry_failed:
            statuses.append(PayoutStatus.FAILED.value)

        async with self.session_factory() as db:
            manager = CashoutRoundManager(db)
            cashout_round = await manager.get_round(round_id)
            if cashout_round.status == RoundStatus.OPEN.value:
                raise RoundStateError(round_id, cashout_round.status, "finalize the round before executing")
            if cashout_round.status == RoundStatus.PAID.value:
                return []

            query = (
                select(CashoutPayout)
                .where(
                    and_(
                        CashoutPayout.round_id == round_id,
                        CashoutPayout.status.in_(statuses),
                    )
                )
                .order_by(CashoutPayout.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
                .execution_options(populate_existing=True)
            )
            if exclude:
                query = query.where(CashoutPayout.id.notin_(sorted(exclude)))
            rows = (await db.execute(query)).scalars().all()
            if not rows:
                return []

            wallets = dict((await db.execute(
                select(PlayerState.player_id, PlayerState.wallet_address)
                .where(PlayerState.player_id.in_(sorted({row.player_id for row in rows})))
            )).all())

            claimed = []
            for row in rows:
                moved = await db.execute(
                    update(CashoutPayout)
                    .where(
                        and_(
                            CashoutPayout.id == row.id,
                            CashoutPayout.status.in_(statuses),
                        )
                    )
                    .values(
                        status=PayoutStatus.PROCESSING.value,
                        attempt_count=CashoutPayout.attempt_count + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount != 1:
                    # claimed by a concurrent run
                    continue
                claimed.append(ClaimedPayout(
                    payout_id=row.id,
                    round_id=row.round_id,
                    player_id=row.player_id,
                    amount=row.amount_wld,
                    diamonds=row.diamonds_burned,
                    wallet_address=wallets.get(row.player_id),
                    attempt_count=row.attempt_count + 1,
                ))
        return claimed

    async def _settle(self, payout: ClaimedPayout, report: ExecutionReport) -> None:
        """Settle one claimed row. Errors before dispatch leave it retryable."""
        try:
            result = await self._dispatch(payout, report)
        except Exception as e:
            self.logger.error(
                "Payout settlement failed before transfer",
                payout_id=payout.payout_id,
                error=str(e),
                exc_info=True
            )
            await self._retry_or_refund(payout, f"settlement error: {e}", report)
            return

        if result is not None:
            await self._record_paid(payout, result, report)

    async def _dispatch(self, payout: ClaimedPayout, report: ExecutionReport) -> Optional[TransferResult]:
        """
        Run the pre-transfer checks and send the transfer.

        Returns the transfer result, or None when the row was already settled
        as refunded, failed or ambiguous.
        """
        log = self.logger.bind(payout_id=payout.payout_id, round_id=payout.round_id, player_id=payout.player_id)

        if not await self.rail.validate_address(payout.wallet_address):
            await self._refund(payout, "invalid_address", report)
            return None
        if payout.amount <= 0:
            await self._refund(payout, "zero_amount", report)
            return None

        try:
            balance = await asyncio.wait_for(self.rail.get_treasury_balance(), self.transfer_timeout)
        except (ExternalDependencyError, asyncio.TimeoutError) as e:
            await self._retry_or_refund(payout, f"treasury balance unavailable: {e}", report)
            return None
        if balance < payout.amount:
            log.warning("Treasury cannot cover payout", balance=balance, amount=payout.amount)
            await self._refund(payout, "insufficient_treasury", report)
            return None

        # From here on the rail may have moved funds; never retry or refund blindly
        try:
            return await asyncio.wait_for(
                self.rail.transfer(
                    payout.wallet_address,
                    payout.amount,
                    reference=self.transfer_reference(payout),
                ),
                self.transfer_timeout,
            )
        except TransferOutcomeUnknownError as e:
            self._ambiguous(payout, report, e.message)
        except ExternalDependencyError as e:
            if not e.retryable:
                log.warning("Transfer rejected", error=e.message, details=e.details)
                await self._refund(payout, "rejected", report)
            else:
                await self._retry_or_refund(payout, e.message, report)
        except asyncio.TimeoutError:
            self._ambiguous(payout, report, "transfer timed out")
        except Exception as e:
            self._ambiguous(payout, report, f"transfer raised {type(e).__name__}: {e}")
        return None

    async def _record_paid(self, payout: ClaimedPayout, result: TransferResult, report: ExecutionReport) -> None:
        try:
            async with self.session_factory() as db:
                marked = await CashoutRoundManager(db).mark_payout_paid(payout.payout_id, result.tx_reference)
        except Exception as e:
            self._ambiguous(payout, report, f"status write failed: {e}", tx_reference=result.tx_reference)
            return

        if not marked:
            self._ambiguous(payout, report, "payout no longer in processing", tx_reference=result.tx_reference)
            return

        self.logger.info(
            "Payout paid",
            payout_id=payout.payout_id,
            amount=payout.amount,
            tx_reference=result.tx_reference
        )
        report.record(payout, "paid", tx_reference=result.tx_reference)

    def _ambiguous(
        self,
        payout: ClaimedPayout,
        report: ExecutionReport,
        error: str,
        tx_reference: Optional[str] = None,
    ) -> None:
        self.logger.critical(
            "Transfer outcome unknown, payout left in processing",
            payout_id=payout.payout_id,
            round_id=payout.round_id,
            amount=payout.amount,
            reference=self.transfer_reference(payout),
            tx_reference=tx_reference,
            error=error
        )
        report.record(payout, "ambiguous", tx_reference=tx_reference, error=error)

    @staticmethod
    def transfer_reference(payout: ClaimedPayout) -> str:
        return f"cashout-{payout.round_id}-{payout.payout_id}"

    async def _refund(self, payout: ClaimedPayout, reason: str, report: ExecutionReport) -> None:
        async with self.session_factory() as db:
            await CashoutRoundManager(db).refund_payout(payout.payout_id, reason)
        report.record(payout, "refunded", reason=reason)

    async def _retry_or_refund(self, payout: ClaimedPayout, error: str, report: ExecutionReport) -> None:
        if payout.attempt_count >= self.max_attempts:
            self.logger.warning(
                "Payout out of attempts",
                payout_id=payout.payout_id,
                attempts=payout.attempt_count,
                error=error
            )
            await self._refund(payout, "max_attempts", report)
            return

        async with self.session_factory() as db:
            await CashoutRoundManager(db).mark_payout_failed(payout.payout_id, error)
        self.logger.warning(
            "Payout failed, will retry",
            payout_id=payout.payout_id,
            attempts=payout.attempt_count,
            error=error
        )
        report.record(payout, "failed", error=error)
