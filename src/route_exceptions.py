"""
ShieldRoute - Exception Hierarchy

Every failure raised by the request lifecycle carries a category and a
structured context so the HTTP layer and the logs can report it without
string matching.

Categories:
- validation: malformed input, rejected before any state change
- authorization: caller lacks the capability for the operation
- state: the request is not in the status the caller assumed
- timing: a deadline has not been reached yet
- settlement: payout bookkeeping or the outbound transfer failed
- configuration: invalid runtime configuration
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Top-level buckets of the error taxonomy."""

    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    STATE = "state"
    TIMING = "timing"
    SETTLEMENT = "settlement"
    CONFIGURATION = "configuration"


@dataclass
class ErrorContext:
    """Structured context attached to every error."""

    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class RouteOptimizerError(Exception):
    """
    Base exception for all lifecycle errors.

    Subclasses fix the category; callers only supply the message,
    the operation name and optional details.
    """

    category: ErrorCategory = ErrorCategory.STATE

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(operation=operation, details=details or {})
        self.cause = cause
        if cause:
            self.__cause__ = cause

    @property
    def code(self) -> str:
        """Stable error code (the class name)."""
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error": self.code,
            "category": self.category.value,
            "message": self.message,
            **self.context.to_dict(),
        }
        if self.cause:
            result["cause"] = {"type": type(self.cause).__name__, "message": str(self.cause)}
        return result

    def __str__(self) -> str:
        return f"[{self.code}:{self.context.operation}] {self.message}"


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(RouteOptimizerError):
    category = ErrorCategory.VALIDATION


class InvalidItemCount(ValidationError):
    """Declared item count is zero or above the configured maximum."""


class InsufficientStake(ValidationError):
    """Deposit is below the minimum stake."""


class InvalidAddress(ValidationError):
    """Principal is empty or the zero address."""


class InvalidItemIndex(ValidationError):
    """Item index is outside the declared slots or not an active item."""


# =============================================================================
# Authorization Errors
# =============================================================================


class AuthorizationError(RouteOptimizerError):
    category = ErrorCategory.AUTHORIZATION


class NotAuthorized(AuthorizationError):
    """Caller is not the administrator."""


class NotOperator(AuthorizationError):
    """Caller does not hold the operator capability."""


class NotPauser(AuthorizationError):
    """Caller does not hold the pause-authority capability."""


class NotRequestOwner(AuthorizationError):
    """Caller does not own the request."""


# =============================================================================
# State-Machine Errors
# =============================================================================


class StateError(RouteOptimizerError):
    category = ErrorCategory.STATE


class InvalidStatus(StateError):
    """Attempted transition is not an edge of the lifecycle graph."""


class AlreadyProcessed(StateError):
    """Request has already left the Pending status."""


class RequestNotFound(StateError):
    """No request (or correlation id) with the given identifier."""


class ItemAlreadyDelivered(StateError):
    """Item has already been marked delivered."""


class ContractPaused(StateError):
    """Operation is blocked while the system is paused."""


class ContractNotPaused(StateError):
    """Operation is only allowed while the system is paused."""


class OracleUnavailable(StateError):
    """The decryption oracle did not accept the batch; nothing was changed."""


# =============================================================================
# Timing Errors
# =============================================================================


class TimingError(RouteOptimizerError):
    category = ErrorCategory.TIMING


class TimeoutNotReached(TimingError):
    """Refund deadline has not passed yet; a later retry may succeed."""


# =============================================================================
# Settlement Errors
# =============================================================================


class SettlementError(RouteOptimizerError):
    category = ErrorCategory.SETTLEMENT


class RefundAlreadyIssued(SettlementError):
    """The single-use refund has already been paid."""


class TransferFailed(SettlementError):
    """Outbound transfer failed; the enclosing operation was rolled back."""


class InsufficientFunds(SettlementError):
    """Requested amount exceeds what is available to pay out."""


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(RouteOptimizerError):
    category = ErrorCategory.CONFIGURATION
