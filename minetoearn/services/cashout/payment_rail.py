"""
Payment rail abstraction used by the payout executor.

The rail moves payout currency from the treasury to a recipient. The real
transfer backend is external; ``HttpPaymentRail`` talks to it over HTTP and
``SimulatedPaymentRail`` keeps an in-process treasury for development.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Set

import aiohttp

from minetoearn.core.config import settings
from minetoearn.core.exceptions import (
    ConfigurationError, ExternalDependencyError, TransferOutcomeUnknownError
)
from minetoearn.core.logging import get_logger
from minetoearn.utils.validation import is_valid_wallet_address


logger = get_logger(__name__)


@dataclass(frozen=True)
class TransferResult:
    tx_reference: str
    amount: float


class PaymentRail(ABC):
    """Interface the payout executor needs from a transfer backend."""

    async def validate_address(self, address: Optional[str]) -> bool:
        return is_valid_wallet_address(address)

    @abstractmethod
    async def get_treasury_balance(self) -> float:
        """Current spendable treasury balance."""

    @abstractmethod
    async def transfer(self, to_address: str, amount: float, reference: str) -> TransferResult:
        """
        Send ``amount`` to ``to_address``.

        Raises:
            ExternalDependencyError: ``retryable`` False when the rail
                definitively rejected the transfer
        """

    async def close(self) -> None:
        return None


class SimulatedPaymentRail(PaymentRail):
    """In-process rail with a fixed treasury; never touches a network."""

    def __init__(
        self,
        treasury_balance: float = 1_000_000.0,
        rejected_addresses: Optional[Set[str]] = None,
        unavailable_addresses: Optional[Set[str]] = None,
    ):
        self.treasury_balance = treasury_balance
        self.rejected_addresses = {a.lower() for a in (rejected_addresses or set())}
        self.unavailable_addresses = {a.lower() for a in (unavailable_addresses or set())}
        self.transfers = []

    async def get_treasury_balance(self) -> float:
        return self.treasury_balance

    async def transfer(self, to_address: str, amount: float, reference: str) -> TransferResult:
        address = to_address.lower()
        if address in self.rejected_addresses:
            raise ExternalDependencyError(
                "Transfer rejected by rail",
                {"to": to_address, "reference": reference},
                retryable=False,
            )
        if address in self.unavailable_addresses:
            raise ExternalDependencyError(
                "Payment rail unavailable",
                {"to": to_address, "reference": reference},
            )

        self.treasury_balance -= amount
        result = TransferResult(tx_reference=f"sim-{uuid.uuid4().hex}", amount=amount)
        self.transfers.append((to_address, amount, reference, result.tx_reference))
        logger.info("Simulated transfer", to=to_address, amount=amount, reference=reference)
        return result


class HttpPaymentRail(PaymentRail):
    """Rail backed by an HTTP transfer service."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        treasury_address: Optional[str] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.treasury_address = treasury_address
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._session = aiohttp.ClientSession(headers=headers, timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_treasury_balance(self) -> float:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}/balance",
                params={"address": self.treasury_address} if self.treasury_address else None,
            ) as response:
                if response.status != 200:
                    raise ExternalDependencyError(
                        "Treasury balance lookup failed",
                        {"status": response.status}
                    )
                data = await response.json()
                return float(data["balance"])
        except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, ValueError) as e:
            raise ExternalDependencyError("Treasury balance lookup failed", {"error": str(e)})

    async def transfer(self, to_address: str, amount: float, reference: str) -> TransferResult:
        session = await self._get_session()
        body = {"to": to_address, "amount": amount, "reference": reference}
        try:
            async with session.post(f"{self.base_url}/transfers", json=body) as response:
                if 400 <= response.status < 500:
                    text = await response.text()
                    raise ExternalDependencyError(
                        "Transfer rejected by rail",
                        {"status": response.status, "body": text[:500], "reference": reference},
                        retryable=False,
                    )
                if response.status >= 500:
                    raise ExternalDependencyError(
                        "Payment rail error",
                        {"status": response.status, "reference": reference},
                    )
                data = await response.json(content_type=None)
                tx_reference = (data or {}).get("tx_hash") or (data or {}).get("transaction_id")
                if not tx_reference:
                    raise TransferOutcomeUnknownError(
                        "Payment rail accepted the transfer without a transaction reference",
                        {"status": response.status, "reference": reference},
                    )
                return TransferResult(tx_reference=str(tx_reference), amount=amount)
        except aiohttp.ClientConnectorError as e:
            # request never reached the rail
            raise ExternalDependencyError(
                "Payment rail unreachable",
                {"error": str(e), "reference": reference},
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransferOutcomeUnknownError(
                "Transfer sent but the rail response was lost",
                {"error": str(e), "reference": reference},
            )


def build_payment_rail() -> PaymentRail:
    """Create the rail selected by ``settings.payment_rail_mode``."""
    if settings.payment_rail_mode == "http":
        if not settings.payment_rail_url:
            raise ConfigurationError("PAYMENT_RAIL_URL is required for the http payment rail")
        return HttpPaymentRail(
            base_url=settings.payment_rail_url,
            api_key=settings.payment_rail_api_key,
            timeout=settings.payment_rail_timeout,
            treasury_address=settings.treasury_address,
        )
    return SimulatedPaymentRail(treasury_balance=settings.simulated_treasury_balance)


_payment_rail: Optional[PaymentRail] = None


async def get_payment_rail() -> PaymentRail:
    """Get the global payment rail."""
    global _payment_rail

    if _payment_rail is None:
        _payment_rail = build_payment_rail()
        logger.info("Payment rail initialized", mode=settings.payment_rail_mode)

    return _payment_rail


async def shutdown_payment_rail() -> None:
    global _payment_rail

    if _payment_rail is not None:
        await _payment_rail.close()
        _payment_rail = None
