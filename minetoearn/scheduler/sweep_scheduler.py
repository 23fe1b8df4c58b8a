"""
Cashout sweep scheduler.

Each pass:
- verifies pending purchases and expires abandoned ones
- finalizes open rounds that are due or were signalled
- executes closed rounds with pending or failed payouts
- reconciles, completing rounds whose payouts are all terminal

Overlapping passes (several workers, or a pass racing the immediate settlement
path) are safe: finalization locks the round and payout claims skip locked rows.
"""

import asyncio
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from minetoearn.core.config import settings
from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import MineToEarnException
from minetoearn.core.logging import get_logger
from minetoearn.services.cashout.executor import PayoutExecutor
from minetoearn.services.cashout.payment_rail import PaymentRail, get_payment_rail
from minetoearn.services.cashout.rounds import CashoutRoundManager
from minetoearn.services.game_config import ConfigRepository
from minetoearn.services.purchases import (
    PaymentVerifier, get_payment_verifier, verify_pending_purchases
)
from minetoearn.utils.timeutils import utc_now


logger = get_logger(__name__)


class SchedulerStatus(Enum):
    """Status of the sweep scheduler."""
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class SweepResult:
    """Outcome of one sweep pass."""
    started_at: Optional[datetime] = None
    purchases: Optional[Dict[str, Any]] = None
    finalized_rounds: List[int] = field(default_factory=list)
    executed_rounds: List[Dict[str, Any]] = field(default_factory=list)
    reconcile: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        return data


@dataclass
class SchedulerStats:
    """Statistics for scheduler operations."""
    last_run: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    rounds_finalized: int = 0
    payouts_paid: int = 0
    payouts_refunded: int = 0
    uptime_start: Optional[datetime] = None


class CashoutSweepScheduler:
    """Polling loop that drives rounds and purchases to completion."""

    def __init__(
        self,
        rail: Optional[PaymentRail] = None,
        verifier: Optional[PaymentVerifier] = None,
        interval: Optional[int] = None,
        session_factory: Callable[[], AbstractAsyncContextManager] = get_async_session,
        clock: Callable = utc_now,
    ):
        self.logger = logger.bind(service="cashout_sweep_scheduler")
        self.enabled = settings.scheduler_enabled
        self.interval = interval or settings.scheduler_interval
        self.rail = rail
        self.verifier = verifier
        self.session_factory = session_factory
        self.clock = clock

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats(uptime_start=utc_now())
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self):
        """Start the sweep loop."""
        if not self.enabled:
            self.logger.info("Cashout sweep scheduler is disabled")
            return

        if self.status != SchedulerStatus.STOPPED:
            self.logger.warning("Scheduler already running", current_status=self.status.value)
            return

        self._should_stop = False
        self.status = SchedulerStatus.WAITING
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self.logger.info("Cashout sweep scheduler started", interval=self.interval)

    async def stop(self):
        """Stop the sweep loop."""
        if self.status == SchedulerStatus.STOPPED:
            return

        self._should_stop = True
        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass

        self.status = SchedulerStatus.STOPPED
        self.logger.info("Cashout sweep scheduler stopped")

    async def _scheduler_loop(self):
        while not self._should_stop:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval)

            except asyncio.CancelledError:
                self.logger.info("Scheduler loop cancelled")
                break

            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e), exc_info=True)
                self.status = SchedulerStatus.ERROR
                await asyncio.sleep(self.interval)
                self.status = SchedulerStatus.WAITING

    async def run_once(self) -> SweepResult:
        """Run one sweep pass. Steps that fail are logged and the pass continues."""
        async with self._pass_lock:
            self.status = SchedulerStatus.PROCESSING
            self.stats.total_runs += 1
            result = SweepResult(started_at=self.clock())

            rail = self.rail or await get_payment_rail()
            verifier = self.verifier or await get_payment_verifier()

            await self._step(result, "verify_purchases", self._verify_purchases, verifier)
            await self._step(result, "finalize_rounds", self._finalize_rounds)
            await self._step(result, "execute_rounds", self._execute_rounds, rail)
            await self._step(result, "reconcile", self._reconcile)

            self.stats.last_run = utc_now()
            if result.errors:
                self.stats.failed_runs += 1
            else:
                self.stats.successful_runs += 1
            self.status = SchedulerStatus.WAITING

            if result.finalized_rounds or result.executed_rounds or result.errors:
                self.logger.info(
                    "Sweep pass completed",
                    finalized=result.finalized_rounds,
                    executed=[r["round_id"] for r in result.executed_rounds],
                    errors=len(result.errors)
                )
            return result

    async def _step(self, result: SweepResult, name: str, step, *args) -> None:
        try:
            await step(result, *args)
        except Exception as e:
            self.logger.error("Sweep step failed", step=name, error=str(e), exc_info=True)
            result.errors.append(f"{name}: {e}")

    async def _verify_purchases(self, result: SweepResult, verifier: PaymentVerifier) -> None:
        report = await verify_pending_purchases(
            verifier, self.clock(), session_factory=self.session_factory
        )
        result.purchases = report.to_dict()

    async def _finalize_rounds(self, result: SweepResult) -> None:
        async with self.session_factory() as db:
            config = await ConfigRepository(db).load()
            if not config.cashout.auto_finalize_enabled:
                return
            due = await CashoutRoundManager(db).rounds_to_finalize(self.clock(), config)

        for round_id in due:
            try:
                async with self.session_factory() as db:
                    config = await ConfigRepository(db).load()
                    finalized = await CashoutRoundManager(db).finalize_round(round_id, config, self.clock())
            except MineToEarnException as e:
                self.logger.error("Round finalization failed", round_id=round_id, error=e.message)
                result.errors.append(f"finalize {round_id}: {e.message}")
                continue
            if not finalized.already_finalized:
                result.finalized_rounds.append(round_id)
                self.stats.rounds_finalized += 1

    async def _execute_rounds(self, result: SweepResult, rail: PaymentRail) -> None:
        async with self.session_factory() as db:
            config = await ConfigRepository(db).load()
            round_ids = await CashoutRoundManager(db).rounds_with_outstanding_payouts()

        executor = PayoutExecutor(rail, session_factory=self.session_factory, clock=self.clock)
        for round_id in round_ids:
            try:
                report = await executor.execute_round(round_id, batch_size=config.cashout.execute_batch_size)
            except Exception as e:
                self.logger.error("Round execution failed", round_id=round_id, error=str(e), exc_info=True)
                result.errors.append(f"execute {round_id}: {e}")
                continue
            self.stats.payouts_paid += report.paid
            self.stats.payouts_refunded += report.refunded
            result.executed_rounds.append({
                "round_id": round_id,
                "paid": report.paid,
                "failed": report.failed,
                "refunded": report.refunded,
                "ambiguous": report.ambiguous,
                "completed": report.completed,
            })

    async def _reconcile(self, result: SweepResult) -> None:
        async with self.session_factory() as db:
            report = await CashoutRoundManager(db).reconcile(self.clock(), auto_heal=True)
        result.reconcile = report.to_dict()

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        stats = asdict(self.stats)
        for key in ("last_run", "uptime_start"):
            stats[key] = stats[key].isoformat() if stats[key] else None
        return {
            "status": self.status.value,
            "enabled": self.enabled,
            "interval": self.interval,
            "stats": stats,
        }


# Global scheduler instance
_sweep_scheduler: Optional[CashoutSweepScheduler] = None


async def get_sweep_scheduler() -> CashoutSweepScheduler:
    """Get or create the global sweep scheduler."""
    global _sweep_scheduler
    if _sweep_scheduler is None:
        _sweep_scheduler = CashoutSweepScheduler()
    return _sweep_scheduler


async def start_sweep_scheduler():
    scheduler = await get_sweep_scheduler()
    await scheduler.start()


async def stop_sweep_scheduler():
    global _sweep_scheduler
    if _sweep_scheduler:
        await _sweep_scheduler.stop()
        _sweep_scheduler = None
