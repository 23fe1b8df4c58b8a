"""
In-app purchases: oil, machines and extra machine slots.

A purchase is initiated with a unique reference, paid in the payment app, then
confirmed against the payment verifier. Confirmation is idempotent and fulfils
the purchase in the same transaction that marks it confirmed.
"""

import asyncio
import math
import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

import aiohttp
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from minetoearn.core.config import settings
from minetoearn.core.database import get_async_session
from minetoearn.core.exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    ExternalDependencyError,
    InvalidAmountError,
    MineToEarnException,
    PurchaseNotFoundError,
    SlotLimitError,
    ValidationError,
)
from minetoearn.core.logging import get_logger
from minetoearn.models.purchase import Purchase, PurchaseKind, PurchaseStatus
from minetoearn.services.game_config import ConfigRepository, GameConfig
from minetoearn.services.ledger import PlayerLedger, MAX_EXCHANGE_AMOUNT
from minetoearn.utils.timeutils import utc_now


logger = get_logger(__name__)

SUPPORTED_TOKENS = ("WLD", "USDC")
SUCCESS_STATUSES = ("mined", "completed", "confirmed", "success")
FAILED_STATUS = "failed"
UNDERPAYMENT_TOLERANCE = 0.01
DUPLICATE_WINDOW = timedelta(seconds=60)
MAX_OIL_PURCHASE = MAX_EXCHANGE_AMOUNT


@dataclass(frozen=True)
class VerifiedPayment:
    transaction_id: str
    status: Optional[str]
    reference: Optional[str] = None
    to_address: Optional[str] = None
    amount: Optional[float] = None


def parse_token_amount(raw: Any) -> Optional[float]:
    """Token amount from the verifier; values above 1e9 are base units (18 decimals)."""
    if raw in (None, ""):
        return None
    amount = float(raw)
    if amount > 1e9:
        amount = amount / 1e18
    return amount


def payment_from_response(transaction_id: str, data: Mapping[str, Any]) -> VerifiedPayment:
    """Normalise a verifier payload that may use snake_case or camelCase keys."""
    input_token = data.get("input_token") or {}
    return VerifiedPayment(
        transaction_id=transaction_id,
        status=data.get("transaction_status") or data.get("transactionStatus"),
        reference=data.get("reference"),
        to_address=data.get("to") or data.get("recipientAddress"),
        amount=parse_token_amount(input_token.get("amount") or data.get("inputTokenAmount")),
    )


class PaymentVerifier(ABC):
    """Looks up an in-app payment by transaction id."""

    @abstractmethod
    async def verify(self, transaction_id: str) -> VerifiedPayment:
        """Raises ExternalDependencyError when the lookup fails."""

    async def close(self) -> None:
        return None


class HttpPaymentVerifier(PaymentVerifier):
    """Verifier backed by the payment app's developer API."""

    def __init__(self, base_url: str, app_id: str, api_key: str, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def verify(self, transaction_id: str) -> VerifiedPayment:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}/{transaction_id}",
                params={"app_id": self.app_id, "type": "payment"},
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise ExternalDependencyError(
                        "Failed to verify transaction",
                        {"status": response.status, "body": body[:200]}
                    )
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ExternalDependencyError("Payment verifier unreachable", {"error": str(e)})
        return payment_from_response(transaction_id, data or {})


class SimulatedPaymentVerifier(PaymentVerifier):
    """
    Verifier answering from an in-memory table.

    Unknown transaction ids report ``default_status`` with no amount, which
    confirms them when it is a success status.
    """

    def __init__(self, transactions: Optional[Dict[str, Mapping[str, Any]]] = None, default_status: Optional[str] = "mined"):
        self.transactions: Dict[str, Mapping[str, Any]] = dict(transactions or {})
        self.default_status = default_status

    async def verify(self, transaction_id: str) -> VerifiedPayment:
        data = self.transactions.get(transaction_id)
        if data is None:
            if self.default_status is None:
                raise ExternalDependencyError("Unknown transaction", {"transaction_id": transaction_id})
            data = {"transaction_status": self.default_status}
        return payment_from_response(transaction_id, data)


@dataclass
class VerificationReport:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    expired: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def _purchase_response(purchase: Purchase, **extra) -> Dict[str, Any]:
    data = {
        "purchase_id": purchase.id,
        "reference": purchase.reference,
        "kind": purchase.kind,
        "token": purchase.token,
        "amount_token": purchase.amount_token,
        "to_address": purchase.to_address,
        "status": purchase.status,
    }
    data.update(extra)
    return data


class PurchaseService:
    """Initiates and confirms purchases for one player session."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: PaymentVerifier,
        treasury_address: Optional[str] = None,
        clock: Callable = utc_now,
    ):
        self.db = db
        self.verifier = verifier
        self.ledger = PlayerLedger(db)
        self.treasury_address = treasury_address or settings.treasury_address
        self.clock = clock
        self.logger = logger.bind(service="purchase_service")

    def _require_treasury(self) -> str:
        if not self.treasury_address:
            raise ConfigurationError("Treasury address not configured")
        return self.treasury_address

    async def _recent_duplicate(self, player_id: str, now: datetime, **criteria) -> Optional[Purchase]:
        conditions = [
            Purchase.player_id == player_id,
            Purchase.status == PurchaseStatus.PENDING.value,
            Purchase.created_at >= now - DUPLICATE_WINDOW,
        ]
        conditions.extend(getattr(Purchase, name) == value for name, value in criteria.items())
        result = await self.db.execute(
            select(Purchase)
            .where(and_(*conditions))
            .order_by(Purchase.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _create(self, player_id: str, now: datetime, **values) -> Purchase:
        purchase = Purchase(
            id=str(uuid.uuid4()),
            player_id=player_id,
            reference=uuid.uuid4().hex,
            to_address=self._require_treasury(),
            status=PurchaseStatus.PENDING.value,
            created_at=now,
            **values,
        )
        self.db.add(purchase)
        await self.db.flush()
        self.logger.info(
            "Purchase initiated",
            player_id=player_id,
            kind=purchase.kind,
            reference=purchase.reference,
            amount_wld=purchase.amount_wld
        )
        return purchase

    async def initiate_oil_purchase(
        self,
        player_id: str,
        token: str,
        oil_amount,
        config: GameConfig,
    ) -> Dict[str, Any]:
        if token not in SUPPORTED_TOKENS:
            raise ValidationError("Invalid token", {"token": token, "supported": list(SUPPORTED_TOKENS)})
        try:
            amount = float(oil_amount)
        except (TypeError, ValueError):
            raise InvalidAmountError("Invalid OIL amount", {"oil_amount": oil_amount})
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidAmountError("Invalid OIL amount", {"oil_amount": oil_amount})
        if amount > MAX_OIL_PURCHASE:
            raise InvalidAmountError(
                f"Maximum OIL purchase is {MAX_OIL_PURCHASE:,}",
                {"oil_amount": amount}
            )

        pricing = config.pricing
        if token == "WLD":
            amount_token = amount / pricing.oil_per_wld
            amount_wld = amount_token
        else:
            amount_token = amount / pricing.oil_per_usdc
            amount_wld = amount_token * pricing.usdc_to_wld_rate

        now = self.clock()
        purchase = await self._recent_duplicate(
            player_id, now, kind=PurchaseKind.OIL.value, token=token, amount_oil=amount
        )
        if purchase is None:
            purchase = await self._create(
                player_id, now,
                kind=PurchaseKind.OIL.value,
                token=token,
                amount_token=amount_token,
                amount_wld=amount_wld,
                amount_oil=amount,
            )
        return _purchase_response(purchase, amount_oil=amount, description=f"Buy {amount:g} OIL")

    async def initiate_machine_purchase(
        self,
        player_id: str,
        machine_type: str,
        config: GameConfig,
    ) -> Dict[str, Any]:
        tier = config.tier(machine_type)
        state = await self.ledger.get_player(player_id)
        limit = state.max_slots(config.slots.base_slots, config.slots.max_total_slots)
        used = await self.ledger.count_machines(player_id)
        if used >= limit:
            raise SlotLimitError(used, limit)

        now = self.clock()
        purchase = await self._recent_duplicate(
            player_id, now, kind=PurchaseKind.MACHINE.value, machine_type=machine_type
        )
        if purchase is None:
            purchase = await self._create(
                player_id, now,
                kind=PurchaseKind.MACHINE.value,
                token="WLD",
                amount_token=tier.cost_wld,
                amount_wld=tier.cost_wld,
                machine_type=machine_type,
            )
        return _purchase_response(purchase, machine_type=machine_type, description=f"Buy {tier.name}")

    async def initiate_slot_purchase(self, player_id: str, config: GameConfig) -> Dict[str, Any]:
        slots = config.slots
        state = await self.ledger.get_player(player_id)
        current = state.max_slots(slots.base_slots, slots.max_total_slots)
        if current >= slots.max_total_slots:
            raise SlotLimitError(current, slots.max_total_slots)
        to_add = min(slots.slot_pack_size, slots.max_total_slots - current)

        now = self.clock()
        purchase = await self._recent_duplicate(
            player_id, now, kind=PurchaseKind.SLOT.value, slots_purchased=to_add
        )
        if purchase is None:
            purchase = await self._create(
                player_id, now,
                kind=PurchaseKind.SLOT.value,
                token="WLD",
                amount_token=slots.slot_pack_price_wld,
                amount_wld=slots.slot_pack_price_wld,
                slots_purchased=to_add,
            )
        return _purchase_response(
            purchase,
            slots_to_add=to_add,
            current_slots=current,
            new_max_slots=current + to_add,
            description=f"Buy {to_add} machine slots",
        )

    async def _lock_purchase(self, reference: str, player_id: Optional[str] = None) -> Purchase:
        query = select(Purchase).where(Purchase.reference == reference)
        if player_id is not None:
            query = query.where(Purchase.player_id == player_id)
        result = await self.db.execute(
            query.with_for_update().execution_options(populate_existing=True)
        )
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise PurchaseNotFoundError(reference)
        return purchase

    async def confirm_purchase(
        self,
        player_id: str,
        reference: str,
        transaction_id: str,
        config: GameConfig,
    ) -> Dict[str, Any]:
        """
        Verify the payment and fulfil the purchase once.

        Repeated confirmations of a confirmed purchase return its status
        without fulfilling again.
        """
        if not reference or not transaction_id:
            raise ValidationError("Missing payment payload")

        purchase = await self._lock_purchase(reference, player_id)
        if not purchase.is_pending:
            return _purchase_response(purchase, already_processed=True)

        if not purchase.transaction_id:
            purchase.transaction_id = transaction_id
            await self.db.flush()

        payment = await self.verifier.verify(transaction_id)
        status = await self._apply_verification(purchase, payment, config, strict=True)
        return _purchase_response(purchase, status=status, already_processed=False)

    async def _apply_verification(
        self,
        purchase: Purchase,
        payment: VerifiedPayment,
        config: GameConfig,
        strict: bool,
    ) -> str:
        log = self.logger.bind(reference=purchase.reference, player_id=purchase.player_id)

        if payment.reference and payment.reference != purchase.reference:
            if strict:
                raise ValidationError("Reference mismatch", {"reference": purchase.reference})
            log.warning("Verifier reference differs", verifier_reference=payment.reference)

        if (
            payment.to_address and purchase.to_address
            and payment.to_address.lower() != purchase.to_address.lower()
        ):
            raise ValidationError("Treasury address mismatch", {"reference": purchase.reference})

        if payment.amount is not None and payment.amount < purchase.amount_token * (1 - UNDERPAYMENT_TOLERANCE):
            log.critical(
                "Underpayment attempt",
                expected=purchase.amount_token,
                received=payment.amount
            )
            raise ValidationError(
                "Transaction amount mismatch",
                {"expected": purchase.amount_token, "received": payment.amount}
            )

        if payment.status == FAILED_STATUS:
            purchase.status = PurchaseStatus.FAILED.value
            purchase.transaction_id = payment.transaction_id
            await self.db.flush()
            log.info("Purchase payment failed")
            return PurchaseStatus.FAILED.value

        if payment.status and payment.status not in SUCCESS_STATUSES:
            return payment.status

        now = self.clock()
        confirmed = await self.db.execute(
            update(Purchase)
            .where(
                and_(
                    Purchase.id == purchase.id,
                    Purchase.status == PurchaseStatus.PENDING.value,
                )
            )
            .values(
                status=PurchaseStatus.CONFIRMED.value,
                transaction_id=payment.transaction_id,
                confirmed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not confirmed.rowcount:
            raise ConcurrencyConflictError("Purchase confirmed concurrently", {"reference": purchase.reference})

        await self._fulfil(purchase, config)
        await self.db.refresh(purchase)
        log.info("Purchase confirmed", kind=purchase.kind, transaction_id=payment.transaction_id)
        return PurchaseStatus.CONFIRMED.value

    async def _fulfil(self, purchase: Purchase, config: GameConfig) -> None:
        if purchase.kind == PurchaseKind.OIL.value:
            await self.ledger.credit_oil(purchase.player_id, purchase.amount_oil or 0.0)
        elif purchase.kind == PurchaseKind.MACHINE.value:
            await self.ledger.grant_machine(purchase.player_id, purchase.machine_type, purchase.id)
        elif purchase.kind == PurchaseKind.SLOT.value:
            state = await self.ledger.get_player(purchase.player_id, lock=True)
            max_purchased = config.slots.max_total_slots - config.slots.base_slots
            slots = min(purchase.slots_purchased or 0, max(0, max_purchased - state.purchased_slots))
            if slots > 0:
                await self.ledger.add_slots(purchase.player_id, slots, max_purchased)
        else:
            raise ConfigurationError("Unknown purchase kind", {"kind": purchase.kind})


async def verify_pending_purchases(
    verifier: PaymentVerifier,
    now: datetime,
    expiry_hours: Optional[int] = None,
    session_factory: Callable[[], AbstractAsyncContextManager] = get_async_session,
) -> VerificationReport:
    """
    Re-verify pending purchases that carry a transaction id and expire the
    ones that never got one. Each purchase runs in its own transaction.
    """
    report = VerificationReport()
    expiry = timedelta(hours=expiry_hours if expiry_hours is not None else settings.purchase_expiry_hours)

    async with session_factory() as db:
        expired = await db.execute(
            update(Purchase)
            .where(
                and_(
                    Purchase.status == PurchaseStatus.PENDING.value,
                    Purchase.transaction_id.is_(None),
                    Purchase.created_at < now - expiry,
                )
            )
            .values(status=PurchaseStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        report.expired = expired.rowcount
        result = await db.execute(
            select(Purchase.reference)
            .where(
                and_(
                    Purchase.status == PurchaseStatus.PENDING.value,
                    Purchase.transaction_id.is_not(None),
                )
            )
            .order_by(Purchase.created_at)
        )
        references = list(result.scalars().all())

    for reference in references:
        report.checked += 1
        try:
            async with session_factory() as db:
                config = await ConfigRepository(db).load()
                service = PurchaseService(db, verifier, clock=lambda: now)
                purchase = await service._lock_purchase(reference)
                if not purchase.is_pending:
                    continue
                payment = await verifier.verify(purchase.transaction_id)
                status = await service._apply_verification(purchase, payment, config, strict=False)
        except MineToEarnException as e:
            logger.warning("Pending purchase verification failed", reference=reference, error=e.message)
            report.errors.append({"reference": reference, "error": e.message})
            continue

        if status == PurchaseStatus.CONFIRMED.value:
            report.confirmed += 1
        elif status == PurchaseStatus.FAILED.value:
            report.failed += 1
        else:
            report.still_pending += 1

    if report.checked or report.expired:
        logger.info("Pending purchases verified", **{k: v for k, v in report.to_dict().items() if k != "errors"})
    return report


def build_payment_verifier() -> PaymentVerifier:
    if settings.payment_verifier_app_id and settings.payment_verifier_api_key:
        return HttpPaymentVerifier(
            base_url=settings.payment_verifier_url,
            app_id=settings.payment_verifier_app_id,
            api_key=settings.payment_verifier_api_key,
            timeout=settings.payment_verifier_timeout,
        )
    if settings.is_production:
        raise ConfigurationError("WORLD_APP_ID and DEV_PORTAL_API_KEY are required in production")
    logger.warning("Payment verifier credentials missing, using simulated verifier")
    return SimulatedPaymentVerifier()


_payment_verifier: Optional[PaymentVerifier] = None


async def get_payment_verifier() -> PaymentVerifier:
    """Get the global payment verifier."""
    global _payment_verifier

    if _payment_verifier is None:
        _payment_verifier = build_payment_verifier()

    return _payment_verifier


async def shutdown_payment_verifier() -> None:
    global _payment_verifier

    if _payment_verifier is not None:
        await _payment_verifier.close()
        _payment_verifier = None
