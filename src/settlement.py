"""
ShieldRoute - Settlement Ledger

Economic bookkeeping for the request lifecycle.

Core Properties:
- Fee extraction at intake: fee = deposit * fee_percent // 100, stake = deposit - fee
- The fee accumulator grows only at request creation and shrinks only
  through an explicit withdrawal
- Exactly one payout per request: the single-use refund flag flips before
  the outbound transfer, and a failed transfer restores every mutation
- Eligibility is a pure read of status and elapsed time
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from access_control import AccessControl, Role, validate_address
from lifecycle_events import EventBus, EventKind
from optimizer_config import OptimizerConfig
from request_ledger import RequestStatus, RouteRequest
from route_exceptions import (
    InsufficientFunds,
    InsufficientStake,
    RefundAlreadyIssued,
    TransferFailed,
)
from transfers import FundsTransfer

logger = logging.getLogger(__name__)


class EligibilityCode(Enum):
    """Why a request is (or is not) refundable."""

    COMPLETED = "completed successfully"
    DECRYPTION_FAILED = "decryption failed"
    STILL_PROCESSING = "still processing"
    PROCESSING_TIMEOUT = "processing timeout"
    STILL_PENDING = "still pending"
    REQUEST_TIMEOUT = "request timeout"
    TIMED_OUT = "timed out"
    ALREADY_REFUNDED = "already refunded"


# Ineligible codes that a later call may turn into eligible ones
WAITING_CODES = frozenset({EligibilityCode.STILL_PENDING, EligibilityCode.STILL_PROCESSING})

# Eligible codes that require the Pending/Processing -> TimedOut edge at refund time
TIMEOUT_CODES = frozenset({EligibilityCode.REQUEST_TIMEOUT, EligibilityCode.PROCESSING_TIMEOUT})


@dataclass(frozen=True)
class Eligibility:
    """Result of an eligibility check."""

    eligible: bool
    code: EligibilityCode
    elapsed_seconds: int = 0

    @property
    def reason(self) -> str:
        return self.code.value

    @property
    def is_timeout(self) -> bool:
        return self.code in TIMEOUT_CODES

    def to_dict(self) -> dict[str, Any]:
        return {"eligible": self.eligible, "reason": self.reason}


class SettlementLedger:
    """
    Stake intake, fee accumulation, refund payout and fee withdrawal.

    Transfers are attempted after the internal bookkeeping is updated; any
    failure rolls the bookkeeping back and raises TransferFailed.
    """

    def __init__(
        self,
        config: OptimizerConfig,
        access: AccessControl,
        transfer: FundsTransfer,
        events: EventBus,
        lock: "threading.RLock | None" = None,
    ):
        self.config = config
        self.access = access
        self.transfer = transfer
        self.events = events
        self._lock = lock or threading.RLock()

        self.fee_accumulator = 0
        self.balance = 0  # everything currently held
        self.total_fees_accrued = 0
        self.total_fees_withdrawn = 0
        self.total_refunded = 0
        self.total_emergency_withdrawn = 0

    # =========================================================================
    # Intake
    # =========================================================================

    def compute_fee(self, deposit: int) -> int:
        return deposit * self.config.fee_percent // 100

    def check_minimum(self, deposit: int, operation: str = "check_minimum") -> None:
        """
        Raises:
            InsufficientStake: If the deposit is below the minimum stake
        """
        if not isinstance(deposit, int) or deposit < self.config.min_stake or deposit <= 0:
            raise InsufficientStake(
                f"Deposit must be at least {self.config.min_stake}",
                operation=operation,
                details={"deposit": deposit, "min_stake": self.config.min_stake},
            )

    def accept_deposit(self, deposit: int) -> tuple[int, int]:
        """
        Take a deposit and extract the platform fee.

        Returns:
            Tuple of (stake, fee)
        """
        with self._lock:
            fee = self.compute_fee(deposit)
            stake = deposit - fee
            self.fee_accumulator += fee
            self.total_fees_accrued += fee
            self.balance += deposit
        return stake, fee

    # =========================================================================
    # Eligibility
    # =========================================================================

    def check_eligibility(self, request: RouteRequest, now: int) -> Eligibility:
        """
        Derive refund eligibility from status and elapsed time. Pure read.

        Args:
            request: Request to evaluate
            now: Current time (seconds)

        Returns:
            Eligibility with the deciding reason code
        """
        if not request.refund_eligible or request.status == RequestStatus.REFUNDED:
            return Eligibility(False, EligibilityCode.ALREADY_REFUNDED)

        status = request.status
        if status == RequestStatus.COMPLETED:
            return Eligibility(False, EligibilityCode.COMPLETED)
        if status == RequestStatus.FAILED:
            return Eligibility(True, EligibilityCode.DECRYPTION_FAILED)
        if status == RequestStatus.TIMED_OUT:
            return Eligibility(True, EligibilityCode.TIMED_OUT)

        if status == RequestStatus.PROCESSING:
            elapsed = now - request.processing_started_at
            if elapsed > self.config.processing_timeout_seconds:
                return Eligibility(True, EligibilityCode.PROCESSING_TIMEOUT, elapsed)
            return Eligibility(False, EligibilityCode.STILL_PROCESSING, elapsed)

        elapsed = now - request.created_at
        if elapsed > self.config.request_timeout_seconds:
            return Eligibility(True, EligibilityCode.REQUEST_TIMEOUT, elapsed)
        return Eligibility(False, EligibilityCode.STILL_PENDING, elapsed)

    # =========================================================================
    # Payouts
    # =========================================================================

    def _send(self, to: str, amount: int, operation: str) -> None:
        """
        Raises:
            TransferFailed: If the transfer returns False or raises
        """
        try:
            delivered = self.transfer.send(to, amount)
        except Exception as e:
            raise TransferFailed(
                "Transfer raised", operation=operation, details={"to": to, "amount": amount}, cause=e
            ) from e
        if not delivered:
            raise TransferFailed(
                "Transfer rejected", operation=operation, details={"to": to, "amount": amount}
            )

    def pay_refund(self, request: RouteRequest) -> int:
        """
        Pay the stake back to the request owner, exactly once.

        The refund flag flips before the transfer; a failed transfer
        restores it so the owner can retry.

        Returns:
            The amount paid

        Raises:
            RefundAlreadyIssued, InsufficientFunds, TransferFailed
        """
        operation = "pay_refund"
        with self._lock:
            if not request.refund_eligible:
                raise RefundAlreadyIssued(
                    "Refund already issued",
                    operation=operation,
                    details={"request_id": request.request_id},
                )
            amount = request.stake
            if amount > self.balance:
                raise InsufficientFunds(
                    "Held balance cannot cover the refund",
                    operation=operation,
                    details={"request_id": request.request_id, "amount": amount, "balance": self.balance},
                )

            request.refund_eligible = False
            self.balance -= amount
            try:
                self._send(request.owner, amount, operation)
            except TransferFailed:
                request.refund_eligible = True
                self.balance += amount
                logger.warning(
                    "Refund transfer failed; bookkeeping restored",
                    extra={"request_id": request.request_id, "amount": amount},
                )
                raise

            request.refunded_amount = amount
            self.total_refunded += amount
        return amount

    def withdraw_fees(self, caller: str, to: str) -> int:
        """
        Send the whole fee accumulator to ``to``.

        Returns:
            The amount withdrawn

        Raises:
            NotAuthorized, InvalidAddress, InsufficientFunds, TransferFailed
        """
        operation = "withdraw_fees"
        self.access.require_role(caller, Role.ADMINISTRATOR, operation)
        validate_address(to, operation=operation)

        with self._lock:
            amount = self.fee_accumulator
            if amount <= 0:
                raise InsufficientFunds("No platform fees to withdraw", operation=operation)
            if amount > self.balance:
                raise InsufficientFunds(
                    "Held balance cannot cover the accumulated fees",
                    operation=operation,
                    details={"amount": amount, "balance": self.balance},
                )

            self.fee_accumulator = 0
            self.balance -= amount
            try:
                self._send(to, amount, operation)
            except TransferFailed:
                self.fee_accumulator = amount
                self.balance += amount
                logger.warning("Fee withdrawal failed; accumulator restored", extra={"amount": amount})
                raise
            self.total_fees_withdrawn += amount

        self.events.emit(EventKind.FEES_WITHDRAWN, to=to, amount=amount)
        return amount

    def emergency_withdraw(self, caller: str, to: str, amount: int) -> int:
        """
        Drain held funds while the system is paused.

        The fee accumulator is not touched: it only changes through withdraw_fees.

        Raises:
            NotAuthorized, ContractNotPaused, InvalidAddress, InsufficientFunds,
            TransferFailed
        """
        operation = "emergency_withdraw"
        self.access.require_role(caller, Role.ADMINISTRATOR, operation)
        self.access.require_paused(operation)
        validate_address(to, operation=operation)

        with self._lock:
            if not isinstance(amount, int) or amount <= 0 or amount > self.balance:
                raise InsufficientFunds(
                    "Amount must be positive and within the held balance",
                    operation=operation,
                    details={"amount": amount, "balance": self.balance},
                )
            self.balance -= amount
            try:
                self._send(to, amount, operation)
            except TransferFailed:
                self.balance += amount
                raise
            self.total_emergency_withdrawn += amount

        logger.warning("Emergency withdrawal", extra={"to": to, "amount": amount})
        self.events.emit(EventKind.EMERGENCY_WITHDRAWAL, to=to, amount=amount)
        return amount

    # =========================================================================
    # Reporting & Persistence
    # =========================================================================

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "fee_accumulator": self.fee_accumulator,
                "balance": self.balance,
                "total_fees_accrued": self.total_fees_accrued,
                "total_fees_withdrawn": self.total_fees_withdrawn,
                "total_refunded": self.total_refunded,
                "total_emergency_withdrawn": self.total_emergency_withdrawn,
            }

    def to_dict(self) -> dict[str, Any]:
        return self.get_summary()

    def load_dict(self, data: dict[str, Any]) -> None:
        with self._lock:
            self.fee_accumulator = data.get("fee_accumulator", 0)
            self.balance = data.get("balance", 0)
            self.total_fees_accrued = data.get("total_fees_accrued", 0)
            self.total_fees_withdrawn = data.get("total_fees_withdrawn", 0)
            self.total_refunded = data.get("total_refunded", 0)
            self.total_emergency_withdrawn = data.get("total_emergency_withdrawn", 0)
