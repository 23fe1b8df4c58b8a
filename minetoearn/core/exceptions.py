"""
Custom exception classes for the application.
Provides structured error handling across all modules.

Categories:
    ValidationError            bad input, rejected synchronously, never retried
    InsufficientResourceError  funds, diamonds, minerals or fuel missing
    ExternalDependencyError    payment rail / verifier unavailable, retryable
    InvariantViolationError    reconciliation mismatch, needs an operator
    ConcurrencyConflictError   optimistic check lost, retry the whole operation
"""

from typing import Any, Optional, Dict


class MineToEarnException(Exception):
    """Base exception class for the mining backend."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(MineToEarnException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(MineToEarnException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class SchedulerError(MineToEarnException):
    """Raised when there's a scheduler error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SCHEDULER_ERROR", details)


class ValidationError(MineToEarnException):
    """Raised when data validation fails."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: str = "VALIDATION_ERROR"
    ):
        super().__init__(message, code, details)


class NotFoundError(MineToEarnException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(MineToEarnException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class RateLimitError(MineToEarnException):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "RATE_LIMITED", details)


class ExternalDependencyError(MineToEarnException):
    """Raised when an external service (payment rail, verifier) fails.

    ``retryable`` is False when the remote side gave a definitive rejection.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True
    ):
        super().__init__(message, "EXTERNAL_DEPENDENCY_ERROR", details)
        self.retryable = retryable


class TransferOutcomeUnknownError(ExternalDependencyError):
    """Raised when a transfer may have been delivered but was not confirmed.

    Neither retry nor refund is safe; the payout is left for reconciliation.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, retryable=False)
        self.code = "TRANSFER_OUTCOME_UNKNOWN"


class InvariantViolationError(MineToEarnException):
    """Raised when a ledger invariant does not hold. Never auto-healed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INVARIANT_VIOLATION", details)


class ConcurrencyConflictError(MineToEarnException):
    """Raised when a conditional write lost a race; the caller may retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONCURRENCY_CONFLICT", details)


# Validation exceptions
class InvalidAmountError(ValidationError):
    """Raised when an amount is zero, negative, non-integral or too large."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, "INVALID_AMOUNT")


class UnknownActionError(ValidationError):
    """Raised when a game action name is not recognised."""

    def __init__(self, action: str):
        super().__init__(
            f"Unknown action: {action}",
            {"action": action},
            "UNKNOWN_ACTION"
        )


class InvalidAddressError(ValidationError):
    """Raised when a wallet address is malformed."""

    def __init__(self, address: Optional[str]):
        super().__init__(
            f"Invalid wallet address: {address}",
            {"address": address},
            "INVALID_ADDRESS"
        )


class MaxLevelReachedError(ValidationError):
    """Raised when upgrading a machine that is already at max level."""

    def __init__(self, machine_id: str, max_level: int):
        super().__init__(
            f"Machine {machine_id} is already at max level {max_level}",
            {"machine_id": machine_id, "max_level": max_level},
            "MAX_LEVEL_REACHED"
        )


class AlreadyClaimedTodayError(ValidationError):
    """Raised when the daily reward was claimed less than 24h ago."""

    def __init__(self, next_claim_at: str):
        super().__init__(
            "Daily reward already claimed",
            {"next_claim_at": next_claim_at},
            "ALREADY_CLAIMED_TODAY"
        )


class SlotLimitError(ValidationError):
    """Raised when a player has no free machine slot."""

    def __init__(self, used: int, limit: int):
        super().__init__(
            f"Slot limit reached ({used}/{limit})",
            {"used": used, "limit": limit},
            "SLOT_LIMIT_REACHED"
        )


class CashoutDisabledError(ValidationError):
    """Raised when cashouts are switched off in the game config."""

    def __init__(self):
        super().__init__("Cashouts are currently disabled", None, "CASHOUT_DISABLED")


class RoundStateError(ValidationError):
    """Raised when a cashout round is not in the state an operation needs."""

    def __init__(self, round_id: int, status: str, reason: str):
        super().__init__(
            f"Cashout round {round_id} is {status}: {reason}",
            {"round_id": round_id, "status": status},
            "ROUND_STATE_INVALID"
        )


# Not found exceptions
class PlayerNotFoundError(NotFoundError):
    """Raised when a player is not found."""

    def __init__(self, player_id: str):
        super().__init__(
            f"Player not found: {player_id}",
            {"player_id": player_id}
        )


class MachineNotFoundError(NotFoundError):
    """Raised when a machine is not found or belongs to another player."""

    def __init__(self, machine_id: str):
        super().__init__(
            f"Machine not found: {machine_id}",
            {"machine_id": machine_id}
        )


class RoundNotFoundError(NotFoundError):
    """Raised when a cashout round is not found."""

    def __init__(self, round_id: int):
        super().__init__(
            f"Cashout round not found: {round_id}",
            {"round_id": round_id}
        )


class PayoutNotFoundError(NotFoundError):
    """Raised when a cashout payout is not found."""

    def __init__(self, payout_id: int):
        super().__init__(
            f"Cashout payout not found: {payout_id}",
            {"payout_id": payout_id}
        )


class PurchaseNotFoundError(NotFoundError):
    """Raised when a purchase reference is not found."""

    def __init__(self, reference: str):
        super().__init__(
            f"Purchase not found: {reference}",
            {"reference": reference}
        )


# Business logic exceptions
class InsufficientResourceError(MineToEarnException):
    """Raised when a balance is too low for an operation."""

    def __init__(
        self,
        resource: str,
        required: float,
        available: float,
        code: str = "INSUFFICIENT_RESOURCE"
    ):
        super().__init__(
            f"Insufficient {resource}: required {required}, available {available}",
            code,
            {"resource": resource, "required": required, "available": available}
        )


class InsufficientFundsError(InsufficientResourceError):
    """Raised when there is not enough oil for an operation."""

    def __init__(self, required: float, available: float):
        super().__init__("oil", required, available, "INSUFFICIENT_FUNDS")


class InsufficientMineralsError(InsufficientResourceError):
    """Raised when a mineral balance is too low for an exchange."""

    def __init__(self, mineral: str, required: int, available: int):
        super().__init__(mineral, required, available, "INSUFFICIENT_MINERALS")


class InsufficientDiamondsError(InsufficientResourceError):
    """Raised when a diamond balance is too low for a cashout."""

    def __init__(self, required: int, available: int):
        super().__init__("diamonds", required, available, "INSUFFICIENT_DIAMONDS")


class InsufficientFuelError(InsufficientResourceError):
    """Raised when starting a machine with an empty tank."""

    def __init__(self, machine_id: str):
        super().__init__("fuel", 1, 0, "INSUFFICIENT_FUEL")
        self.details["machine_id"] = machine_id
