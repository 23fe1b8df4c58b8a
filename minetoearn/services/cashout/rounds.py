"""
Cashout round manager.

Rounds move ``open -> closed -> paid``. Diamonds are debited when a request is
submitted; finalization fixes the pool and turns the round's requests into one
payout row per player; a round is paid once every payout row is terminal.
Refunds are the compensating action and are idempotent.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, update, func, and_, exists
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.exceptions import (
    CashoutDisabledError,
    ConcurrencyConflictError,
    InvalidAmountError,
    PayoutNotFoundError,
    RoundNotFoundError,
    RoundStateError,
)
from minetoearn.core.logging import get_logger
from minetoearn.models.cashout import (
    CashoutPayout, CashoutRequest, CashoutRound,
    PayoutStatus, RequestStatus, RoundStatus
)
from minetoearn.models.purchase import Purchase, PurchaseStatus
from minetoearn.services.game_config import GameConfig
from minetoearn.services.ledger import PlayerLedger
from minetoearn.utils.timeutils import DAY


logger = get_logger(__name__)

AMOUNT_PRECISION = 8
ACTIONABLE_REQUEST_STATUSES = (RequestStatus.PENDING.value, RequestStatus.APPROVED.value)
SETTLED_REQUEST_STATUSES = (RequestStatus.APPROVED.value, RequestStatus.PAID.value)
STUCK_PROCESSING_AFTER = timedelta(minutes=15)


@dataclass
class FinalizeResult:
    round_id: int
    status: str
    already_finalized: bool = False
    recipients: int = 0
    total_diamonds: int = 0
    gross_pool: float = 0.0
    tax_rate: float = 0.0
    net_pool: float = 0.0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class ReconcileReport:
    open_rounds_awaiting_finalization: List[int] = field(default_factory=list)
    closed_rounds_ready: List[int] = field(default_factory=list)
    completed_rounds: List[int] = field(default_factory=list)
    diamond_mismatches: List[dict] = field(default_factory=list)
    refund_mismatches: List[dict] = field(default_factory=list)
    stuck_processing: List[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.diamond_mismatches or self.refund_mismatches or self.stuck_processing)

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["ok"] = self.ok
        return data


def compute_gross_pool(total_diamonds: int, revenue: float, config: GameConfig) -> float:
    """Gross payout pool for a round before tax."""
    by_rate = total_diamonds * config.cashout.diamond_wld_exchange_rate
    by_revenue = revenue * config.treasury.payout_percentage
    mode = config.cashout.pool_mode
    if mode == "exchange_rate":
        return max(0.0, by_rate)
    if mode == "revenue_share":
        return max(0.0, by_revenue)
    return max(0.0, min(by_rate, by_revenue))


def split_pool(net_pool: float, shares: Sequence[Tuple[str, int]]) -> List[float]:
    """
    Pro-rata split of ``net_pool`` by diamonds.

    Every share but the last is rounded down to AMOUNT_PRECISION decimals; the
    last recipient gets the remainder so the amounts always sum to the pool.
    """
    total = sum(diamonds for _, diamonds in shares)
    if not shares:
        return []
    if total <= 0 or net_pool <= 0:
        return [0.0 for _ in shares]

    scale = 10 ** AMOUNT_PRECISION
    amounts = []
    for _, diamonds in shares[:-1]:
        amounts.append(math.floor(net_pool * diamonds / total * scale) / scale)
    amounts.append(max(0.0, round(net_pool - sum(amounts), AMOUNT_PRECISION)))
    return amounts


class CashoutRoundManager:
    """Round lifecycle operations inside one database session."""

    def __init__(self, db: AsyncSession, ledger: Optional[PlayerLedger] = None):
        self.db = db
        self.ledger = ledger or PlayerLedger(db)
        self.logger = logger.bind(service="cashout_rounds")

    async def _execute(self, statement) -> int:
        result = await self.db.execute(
            statement.execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def get_round(self, round_id: int, lock: bool = False) -> CashoutRound:
        query = select(CashoutRound).where(CashoutRound.id == round_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        cashout_round = result.scalar_one_or_none()
        if cashout_round is None:
            raise RoundNotFoundError(round_id)
        return cashout_round

    async def get_current_round(self, now: datetime) -> Optional[CashoutRound]:
        result = await self.db.execute(
            select(CashoutRound)
            .where(
                and_(
                    CashoutRound.round_date == now.date(),
                    CashoutRound.status == RoundStatus.OPEN.value,
                )
            )
            .order_by(CashoutRound.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_open_round(self, now: datetime) -> CashoutRound:
        """Today's open round, opening a new one if the last was closed."""
        cashout_round = await self.get_current_round(now)
        if cashout_round is not None:
            return cashout_round

        cashout_round = CashoutRound(
            round_date=now.date(),
            status=RoundStatus.OPEN.value,
            total_diamonds=0,
            revenue_window_start=now - DAY,
            revenue_window_end=now,
            revenue_wld=0.0,
            payout_pool_wld=0.0,
            pool_manual_override=False,
        )
        self.db.add(cashout_round)
        await self.db.flush()
        self.logger.info("Cashout round opened", round_id=cashout_round.id, date=str(cashout_round.round_date))
        return cashout_round

    async def window_revenue(self, start: datetime, end: datetime) -> float:
        """Confirmed purchase revenue in ``[start, end)``."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Purchase.amount_wld), 0.0)).where(
                and_(
                    Purchase.status == PurchaseStatus.CONFIRMED.value,
                    Purchase.confirmed_at >= start,
                    Purchase.confirmed_at < end,
                )
            )
        )
        return float(result.scalar_one() or 0.0)

    async def submit_request(
        self,
        player_id: str,
        diamonds,
        config: GameConfig,
        now: datetime,
    ) -> Tuple[CashoutRequest, CashoutRound]:
        """
        Debit diamonds and attach a request to today's open round.

        The round total is incremented in the database and the estimated pool
        recomputed from it, so concurrent submitters never overwrite each other.
        """
        if not config.cashout.enabled:
            raise CashoutDisabledError()

        try:
            requested = int(diamonds)
        except (TypeError, ValueError):
            raise InvalidAmountError("diamonds must be a whole number", {"diamonds": diamonds})
        if requested != diamonds or requested <= 0:
            raise InvalidAmountError("diamonds must be a positive whole number", {"diamonds": diamonds})
        minimum = config.cashout.minimum_diamonds_required
        if requested < minimum:
            raise InvalidAmountError(
                f"Minimum cashout is {minimum} diamonds",
                {"diamonds": requested, "minimum": minimum}
            )

        await self.ledger.get_player(player_id, lock=True)
        await self.ledger.debit_diamonds(player_id, requested)

        cashout_round = await self.get_or_open_round(now)
        request = CashoutRequest(
            player_id=player_id,
            round_id=cashout_round.id,
            diamonds_submitted=requested,
            status=RequestStatus.PENDING.value,
        )
        self.db.add(request)
        await self.db.flush()

        revenue = await self.window_revenue(cashout_round.revenue_window_start, now)
        rate = config.cashout.diamond_wld_exchange_rate
        attached = await self._execute(
            update(CashoutRound)
            .where(
                and_(
                    CashoutRound.id == cashout_round.id,
                    CashoutRound.status == RoundStatus.OPEN.value,
                )
            )
            .values(total_diamonds=CashoutRound.total_diamonds + requested)
        )
        if not attached:
            raise ConcurrencyConflictError(
                "Cashout round closed while submitting",
                {"round_id": cashout_round.id}
            )
        await self._execute(
            update(CashoutRound)
            .where(
                and_(
                    CashoutRound.id == cashout_round.id,
                    CashoutRound.pool_manual_override.is_(False),
                )
            )
            .values(payout_pool_wld=CashoutRound.total_diamonds * rate)
        )
        await self._execute(
            update(CashoutRound)
            .where(CashoutRound.id == cashout_round.id)
            .values(revenue_wld=revenue, revenue_window_end=now)
        )

        cashout_round = await self.get_round(cashout_round.id)
        self.logger.info(
            "Cashout request submitted",
            player_id=player_id,
            diamonds=requested,
            round_id=cashout_round.id,
            round_total=cashout_round.total_diamonds
        )
        return request, cashout_round

    async def signal_round(self, round_id: int, now: datetime) -> None:
        """Ask the sweep to finalize this round without waiting for the interval."""
        await self._execute(
            update(CashoutRound)
            .where(
                and_(
                    CashoutRound.id == round_id,
                    CashoutRound.status == RoundStatus.OPEN.value,
                )
            )
            .values(signaled_at=now)
        )

    async def finalize_round(
        self,
        round_id: int,
        config: GameConfig,
        now: datetime,
        manual_pool: Optional[float] = None,
    ) -> FinalizeResult:
        """
        Close an open round and create its payout rows.

        Finalizing a closed or paid round is a no-op that reports the stored
        figures, so the sweep and the immediate settlement path can both call it.
        """
        cashout_round = await self.get_round(round_id, lock=True)
        if cashout_round.status != RoundStatus.OPEN.value:
            return FinalizeResult(
                round_id=round_id,
                status=cashout_round.status,
                already_finalized=True,
                total_diamonds=cashout_round.total_diamonds,
                gross_pool=cashout_round.payout_pool_wld,
                tax_rate=cashout_round.tax_rate or 0.0,
                net_pool=cashout_round.net_pool_wld or 0.0,
            )

        if manual_pool is not None and (manual_pool < 0 or not math.isfinite(manual_pool)):
            raise InvalidAmountError("Manual pool must be zero or more", {"manual_pool": manual_pool})

        result = await self.db.execute(
            select(CashoutRequest)
            .where(
                and_(
                    CashoutRequest.round_id == round_id,
                    CashoutRequest.status.in_(ACTIONABLE_REQUEST_STATUSES),
                )
            )
            .order_by(CashoutRequest.id)
            .with_for_update()
        )
        requests = result.scalars().all()

        per_player: "OrderedDict[str, int]" = OrderedDict()
        for request in requests:
            per_player[request.player_id] = per_player.get(request.player_id, 0) + request.diamonds_submitted
        total_diamonds = sum(per_player.values())

        revenue = await self.window_revenue(cashout_round.revenue_window_start, now)
        if manual_pool is not None:
            gross = float(manual_pool)
        elif cashout_round.pool_manual_override:
            gross = cashout_round.payout_pool_wld
        else:
            gross = compute_gross_pool(total_diamonds, revenue, config)

        tax_rate = config.cashout.tax_rate
        net = round(gross * (1 - tax_rate), AMOUNT_PRECISION)
        shares = list(per_player.items())
        amounts = split_pool(net, shares)

        for (player_id, diamonds), amount in zip(shares, amounts):
            self.db.add(CashoutPayout(
                round_id=round_id,
                player_id=player_id,
                diamonds_burned=diamonds,
                amount_wld=amount,
                status=PayoutStatus.PENDING.value,
                attempt_count=0,
            ))

        await self._execute(
            update(CashoutRequest)
            .where(
                and_(
                    CashoutRequest.round_id == round_id,
                    CashoutRequest.status.in_(ACTIONABLE_REQUEST_STATUSES),
                )
            )
            .values(status=RequestStatus.APPROVED.value)
        )
        closed = await self._execute(
            update(CashoutRound)
            .where(
                and_(
                    CashoutRound.id == round_id,
                    CashoutRound.status == RoundStatus.OPEN.value,
                )
            )
            .values(
                status=RoundStatus.CLOSED.value,
                payout_pool_wld=gross,
                pool_manual_override=manual_pool is not None or cashout_round.pool_manual_override,
                tax_rate=tax_rate,
                net_pool_wld=net,
                revenue_wld=revenue,
                revenue_window_end=now,
                finalized_at=now,
            )
        )
        if not closed:
            raise ConcurrencyConflictError("Round finalized concurrently", {"round_id": round_id})
        await self.db.flush()

        self.logger.info(
            "Cashout round finalized",
            round_id=round_id,
            recipients=len(shares),
            total_diamonds=total_diamonds,
            gross_pool=gross,
            net_pool=net,
            tax_rate=tax_rate
        )
        return FinalizeResult(
            round_id=round_id,
            status=RoundStatus.CLOSED.value,
            recipients=len(shares),
            total_diamonds=total_diamonds,
            gross_pool=gross,
            tax_rate=tax_rate,
            net_pool=net,
        )

    async def recalculate_round(
        self,
        round_id: int,
        new_pool: float,
        config: GameConfig,
    ) -> FinalizeResult:
        """
        Redistribute a new gross pool over a finalized round.

        Only allowed while no payout of the round has been paid. Non-refunded
        payouts are reset to pending with their new amounts.
        """
        if new_pool is None or new_pool < 0 or not math.isfinite(new_pool):
            raise InvalidAmountError("Pool must be zero or more", {"new_pool": new_pool})

        cashout_round = await self.get_round(round_id, lock=True)
        if cashout_round.status == RoundStatus.OPEN.value:
            raise RoundStateError(round_id, cashout_round.status, "finalize it before recalculating")

        result = await self.db.execute(
            select(CashoutPayout)
            .where(CashoutPayout.round_id == round_id)
            .order_by(CashoutPayout.id)
            .with_for_update()
        )
        payouts = result.scalars().all()
        if any(p.status in (PayoutStatus.PAID.value, PayoutStatus.PROCESSING.value) for p in payouts):
            raise RoundStateError(round_id, cashout_round.status, "payouts already paid or in flight")

        active = [p for p in payouts if p.status != PayoutStatus.REFUNDED.value]
        tax_rate = config.cashout.tax_rate
        net = round(new_pool * (1 - tax_rate), AMOUNT_PRECISION)
        amounts = split_pool(net, [(p.player_id, p.diamonds_burned) for p in active])

        for payout, amount in zip(active, amounts):
            await self._execute(
                update(CashoutPayout)
                .where(CashoutPayout.id == payout.id)
                .values(
                    amount_wld=amount,
                    status=PayoutStatus.PENDING.value,
                    tx_reference=None,
                    last_error=None,
                )
            )

        await self._execute(
            update(CashoutRound)
            .where(CashoutRound.id == round_id)
            .values(
                status=RoundStatus.CLOSED.value if active else cashout_round.status,
                payout_pool_wld=new_pool,
                pool_manual_override=True,
                tax_rate=tax_rate,
                net_pool_wld=net,
                paid_at=None if active else cashout_round.paid_at,
            )
        )

        self.logger.info(
            "Cashout round recalculated",
            round_id=round_id,
            gross_pool=new_pool,
            net_pool=net,
            recipients=len(active)
        )
        return FinalizeResult(
            round_id=round_id,
            status=RoundStatus.CLOSED.value if active else cashout_round.status,
            recipients=len(active),
            total_diamonds=sum(p.diamonds_burned for p in active),
            gross_pool=new_pool,
            tax_rate=tax_rate,
            net_pool=net,
        )

    async def complete_round_if_done(self, round_id: int, now: datetime) -> bool:
        """Move a closed round to paid when no payout is outstanding."""
        outstanding = exists().where(
            and_(
                CashoutPayout.round_id == CashoutRound.id,
                CashoutPayout.status.in_(PayoutStatus.outstanding()),
            )
        )
        completed = await self._execute(
            update(CashoutRound)
            .where(
                and_(
                    CashoutRound.id == round_id,
                    CashoutRound.status == RoundStatus.CLOSED.value,
                    ~outstanding,
                )
            )
            .values(status=RoundStatus.PAID.value, paid_at=now)
        )
        if completed:
            self.logger.info("Cashout round completed", round_id=round_id)
        return bool(completed)

    async def refund_payout(
        self,
        payout_id: int,
        reason: str,
        include_processing: bool = True,
    ) -> bool:
        """
        Return a payout's diamonds to the player.

        Returns False without touching balances when the payout is already
        refunded or paid, so repeated calls never double-credit.
        """
        refundable = [PayoutStatus.PENDING.value, PayoutStatus.FAILED.value]
        if include_processing:
            refundable.append(PayoutStatus.PROCESSING.value)

        payout = await self.db.get(CashoutPayout, payout_id, populate_existing=True)
        if payout is None:
            raise PayoutNotFoundError(payout_id)

        refunded = await self._execute(
            update(CashoutPayout)
            .where(
                and_(
                    CashoutPayout.id == payout_id,
                    CashoutPayout.status.in_(refundable),
                )
            )
            .values(status=PayoutStatus.REFUNDED.value, last_error=reason)
        )
        if not refunded:
            self.logger.info(
                "Refund skipped",
                payout_id=payout_id,
                status=payout.status
            )
            return False

        await self.ledger.credit_diamonds(payout.player_id, payout.diamonds_burned)
        await self._execute(
            update(CashoutRequest)
            .where(
                and_(
                    CashoutRequest.round_id == payout.round_id,
                    CashoutRequest.player_id == payout.player_id,
                    CashoutRequest.status.in_(ACTIONABLE_REQUEST_STATUSES),
                )
            )
            .values(status=RequestStatus.REFUNDED.value)
        )

        self.logger.warning(
            "Cashout payout refunded",
            payout_id=payout_id,
            round_id=payout.round_id,
            player_id=payout.player_id,
            diamonds=payout.diamonds_burned,
            reason=reason
        )
        return True

    async def mark_payout_paid(self, payout_id: int, tx_reference: str) -> bool:
        paid = await self._execute(
            update(CashoutPayout)
            .where(
                and_(
                    CashoutPayout.id == payout_id,
                    CashoutPayout.status == PayoutStatus.PROCESSING.value,
                )
            )
            .values(status=PayoutStatus.PAID.value, tx_reference=tx_reference, last_error=None)
        )
        if not paid:
            return False

        payout = await self.db.get(CashoutPayout, payout_id, populate_existing=True)
        await self._execute(
            update(CashoutRequest)
            .where(
                and_(
                    CashoutRequest.round_id == payout.round_id,
                    CashoutRequest.player_id == payout.player_id,
                    CashoutRequest.status == RequestStatus.APPROVED.value,
                )
            )
            .values(status=RequestStatus.PAID.value)
        )
        return True

    async def mark_payout_failed(self, payout_id: int, error: str) -> bool:
        failed = await self._execute(
            update(CashoutPayout)
            .where(
                and_(
                    CashoutPayout.id == payout_id,
                    CashoutPayout.status == PayoutStatus.PROCESSING.value,
                )
            )
            .values(status=PayoutStatus.FAILED.value, last_error=error[:2000])
        )
        return bool(failed)

    async def rounds_to_finalize(self, now: datetime, config: GameConfig) -> List[int]:
        """Open rounds with actionable requests that are due or were signalled."""
        cutoff = now - timedelta(seconds=config.cashout.finalize_interval_seconds)
        has_requests = exists().where(
            and_(
                CashoutRequest.round_id == CashoutRound.id,
                CashoutRequest.status.in_(ACTIONABLE_REQUEST_STATUSES),
            )
        )
        result = await self.db.execute(
            select(CashoutRound.id)
            .where(
                and_(
                    CashoutRound.status == RoundStatus.OPEN.value,
                    has_requests,
                    (CashoutRound.revenue_window_start <= cutoff - DAY) | CashoutRound.signaled_at.is_not(None),
                )
            )
            .order_by(CashoutRound.id)
        )
        return list(result.scalars().all())

    async def rounds_with_outstanding_payouts(self, include_failed: bool = True) -> List[int]:
        statuses = [PayoutStatus.PENDING.value]
        if include_failed:
            statuses.append(PayoutStatus.FAILED.value)
        result = await self.db.execute(
            select(CashoutPayout.round_id)
            .join(CashoutRound, CashoutRound.id == CashoutPayout.round_id)
            .where(
                and_(
                    CashoutRound.status == RoundStatus.CLOSED.value,
                    CashoutPayout.status.in_(statuses),
                )
            )
            .distinct()
            .order_by(CashoutPayout.round_id)
        )
        return list(result.scalars().all())

    async def reconcile(
        self,
        now: datetime,
        round_id: Optional[int] = None,
        auto_heal: bool = False,
    ) -> ReconcileReport:
        """
        Check every round's books.

        Mismatches are reported and logged at critical level but never
        corrected; the only repair ``auto_heal`` performs is completing closed
        rounds whose payouts are all terminal.
        """
        report = ReconcileReport()

        query = select(CashoutRound).order_by(CashoutRound.id)
        if round_id is not None:
            query = query.where(CashoutRound.id == round_id)
        rounds = (await self.db.execute(query.execution_options(populate_existing=True))).scalars().all()
        if round_id is not None and not rounds:
            raise RoundNotFoundError(round_id)

        for cashout_round in rounds:
            requests = (await self.db.execute(
                select(CashoutRequest).where(CashoutRequest.round_id == cashout_round.id)
            )).scalars().all()
            payouts = (await self.db.execute(
                select(CashoutPayout)
                .where(CashoutPayout.round_id == cashout_round.id)
                .execution_options(populate_existing=True)
            )).scalars().all()

            if cashout_round.status == RoundStatus.OPEN.value:
                if any(r.status in ACTIONABLE_REQUEST_STATUSES for r in requests) and not payouts:
                    report.open_rounds_awaiting_finalization.append(cashout_round.id)
                continue

            request_diamonds = sum(
                r.diamonds_submitted for r in requests if r.status in SETTLED_REQUEST_STATUSES
            )
            payout_diamonds = sum(
                p.diamonds_burned for p in payouts if p.status != PayoutStatus.REFUNDED.value
            )
            if request_diamonds != payout_diamonds:
                report.diamond_mismatches.append({
                    "round_id": cashout_round.id,
                    "request_diamonds": request_diamonds,
                    "payout_diamonds": payout_diamonds,
                })

            refunded_payout_players = {
                p.player_id for p in payouts if p.status == PayoutStatus.REFUNDED.value
            }
            refunded_request_players = {
                r.player_id for r in requests
                if r.status == RequestStatus.REFUNDED.value
                and any(p.player_id == r.player_id for p in payouts)
            }
            if refunded_payout_players != refunded_request_players:
                report.refund_mismatches.append({
                    "round_id": cashout_round.id,
                    "refunded_payouts": len(refunded_payout_players),
                    "refunded_request_players": len(refunded_request_players),
                })

            for payout in payouts:
                if (
                    payout.status == PayoutStatus.PROCESSING.value
                    and payout.updated_at is not None
                    and now - payout.updated_at >= STUCK_PROCESSING_AFTER
                ):
                    report.stuck_processing.append({
                        "round_id": cashout_round.id,
                        "payout_id": payout.id,
                        "attempt_count": payout.attempt_count,
                        "tx_reference": payout.tx_reference,
                    })

            if cashout_round.status == RoundStatus.CLOSED.value and all(p.is_terminal for p in payouts):
                report.closed_rounds_ready.append(cashout_round.id)
                if auto_heal and await self.complete_round_if_done(cashout_round.id, now):
                    report.completed_rounds.append(cashout_round.id)

        for mismatch in report.diamond_mismatches + report.refund_mismatches:
            self.logger.critical("Cashout ledger mismatch", **mismatch)
        for stuck in report.stuck_processing:
            self.logger.critical("Cashout payout stuck in processing", **stuck)

        return report
