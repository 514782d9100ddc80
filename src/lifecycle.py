"""
ShieldRoute - Lifecycle Coordinator

Drives the request state machine:

    Pending -> Processing -> {Completed | Failed | TimedOut}
    Failed -> Refunded
    Pending -> TimedOut (long-elapsed, detected at refund time)

Timeouts are detected lazily: nothing fires when a deadline passes. The
status only moves to TimedOut when the owner calls ``request_refund`` after
the deadline. ``scan_claimable`` reports such requests without touching them.

The decryption callback is an independent, arbitrarily delayed message. It
is validated against the current status before it is trusted, and a callback
whose proof fails verification is a no-op.
"""

import logging
import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from access_control import AccessControl, Role
from compute_engine import WIDE_BITS, CiphertextHandle, ComputeEngine
from decryption_oracle import DecryptionOracle
from lifecycle_events import EventBus, EventKind
from monitoring import metrics
from request_ledger import ItemRecord, RequestLedger, RequestStatus, ResultRecord
from route_exceptions import (
    AlreadyProcessed,
    InvalidItemIndex,
    InvalidStatus,
    ItemAlreadyDelivered,
    RefundAlreadyIssued,
    RouteOptimizerError,
    TimeoutNotReached,
)
from settlement import WAITING_CODES, Eligibility, EligibilityCode, SettlementLedger

logger = logging.getLogger(__name__)

# Cleartexts expected from the oracle: (masked distance, cost)
EXPECTED_CLEARTEXTS = 2


class LifecycleCoordinator:
    """
    Validates and applies every status transition of a request.

    Usage:
        coordinator.process(operator, request_id)
        # ... oracle delivers complete_callback later ...
        coordinator.request_refund(owner, request_id)
    """

    def __init__(
        self,
        ledger: RequestLedger,
        settlement: SettlementLedger,
        access: AccessControl,
        engine: ComputeEngine,
        oracle: DecryptionOracle,
        events: EventBus,
        clock: Callable[[], int] | None = None,
        lock: "threading.RLock | None" = None,
    ):
        self.ledger = ledger
        self.settlement = settlement
        self.access = access
        self.engine = engine
        self.oracle = oracle
        self.events = events
        self.clock = clock or (lambda: int(time.time()))
        self._lock = lock or threading.RLock()
        # Where the oracle delivers results; a facade may wrap complete_callback
        self.callback_target: Callable[[int, Sequence[int], str], bool] | None = None
        # Verified results that arrived before their correlation id was bound
        self._early_results: dict[int, list[int]] = {}

    # =========================================================================
    # Encrypted accumulation
    # =========================================================================

    def _wide_abs_diff(
        self, a: CiphertextHandle, b: CiphertextHandle, scratch: list[CiphertextHandle]
    ) -> CiphertextHandle:
        """|a - b| over unsigned handles, widened, without revealing which is larger."""
        engine = self.engine
        a_ge_b = engine.compare(a, b)
        high = engine.select(a_ge_b, a, b)
        low = engine.select(a_ge_b, b, a)
        diff = engine.sub(high, low)
        scratch.extend((a_ge_b, high, low, diff))
        return engine.widen(diff, WIDE_BITS)

    def _accumulate(
        self, items: list[ItemRecord], multiplier: int
    ) -> tuple[CiphertextHandle, CiphertextHandle]:
        """
        Sum Manhattan legs between consecutive items and the masked prices.

        Every leg is widened before it is added, and the total is scaled by
        the request multiplier before it leaves the engine. Intermediate
        handles are released; only the two results survive.

        Returns:
            Tuple of (masked distance, cost) handles
        """
        engine = self.engine
        scratch: list[CiphertextHandle] = []
        distance = engine.encrypt(0, bits=WIDE_BITS)
        cost = engine.encrypt(0, bits=WIDE_BITS)

        for previous, current in zip(items, items[1:]):
            for a, b in ((previous.x, current.x), (previous.y, current.y)):
                leg = self._wide_abs_diff(a, b, scratch)
                scratch.extend((distance, leg))
                distance = engine.add(distance, leg)

        for item in items:
            price = engine.widen(item.price, WIDE_BITS)
            scratch.extend((cost, price))
            cost = engine.add(cost, price)

        scale = engine.encrypt(multiplier, bits=WIDE_BITS)
        masked = engine.mul(distance, scale)
        scratch.extend((distance, scale))

        for handle in scratch:
            engine.release(handle)
        return masked, cost

    def _require_pending(self, request, operation: str) -> None:
        if request.status != RequestStatus.PENDING:
            raise AlreadyProcessed(
                f"Request {request.request_id} is {request.status.value}",
                operation=operation,
                details={"request_id": request.request_id, "status": request.status.value},
            )

    # =========================================================================
    # Processing
    # =========================================================================

    def process(self, caller: str, request_id: int) -> int:
        """
        Start processing a Pending request and submit its aggregates for decryption.

        The request is reserved and its aggregates computed under the lock;
        the oracle is called without it. If the request left Pending in the
        meantime (a timeout refund), the batch is discarded and nothing is
        bound.

        Returns:
            The oracle correlation id

        Raises:
            NotOperator, ContractPaused, RequestNotFound, AlreadyProcessed,
            OracleUnavailable
        """
        operation = "process"
        self.access.require_role(caller, Role.OPERATOR, operation)
        self.access.require_not_paused(operation)

        with self._lock:
            request = self.ledger.get_request(request_id)
            self._require_pending(request, operation)
            self.ledger.reserve_submission(request_id, operation)
            try:
                items = self.ledger.active_items(request_id)
                distance, cost = self._accumulate(items, request.multiplier)
            except Exception:
                self.ledger.release_submission(request_id)
                raise

        try:
            correlation_id = self.oracle.request_decryption(
                [distance, cost], self.callback_target or self.complete_callback
            )
        except Exception:
            self._abandon_submission(request_id, distance, cost)
            raise

        early_result = None
        with self._lock:
            try:
                if not correlation_id:
                    raise InvalidStatus(
                        "Oracle returned no correlation id",
                        operation=operation,
                        details={"request_id": request_id},
                    )
                self._require_pending(request, operation)
                self.ledger.bind_correlation(correlation_id, request_id)
            except RouteOptimizerError:
                if correlation_id:
                    self.oracle.discard(correlation_id)
                    self._early_results.pop(correlation_id, None)
                self._abandon_submission(request_id, distance, cost)
                raise
            self.ledger.release_submission(request_id)

            self.ledger.set_status(request, RequestStatus.PROCESSING, operation)
            request.processing_started_at = self.clock()
            request.correlation_id = correlation_id
            self.ledger.store_result(
                ResultRecord(
                    request_id=request_id,
                    distance=distance,
                    cost=cost,
                    item_order=[item.index for item in items],
                )
            )
            cleartexts = self._early_results.pop(correlation_id, None)
            if cleartexts is not None:
                early_result = self._finalize(request, cleartexts, "complete_callback")

        self.events.emit(
            EventKind.PROCESSING_STARTED,
            request_id=request_id,
            correlation_id=correlation_id,
            item_count=len(items),
        )
        if early_result is not None:
            self._emit_completed(request, correlation_id, early_result)
        return correlation_id

    def _abandon_submission(
        self, request_id: int, distance: CiphertextHandle, cost: CiphertextHandle
    ) -> None:
        with self._lock:
            self.ledger.release_submission(request_id)
        self.engine.release(distance)
        self.engine.release(cost)

    def complete_callback(self, correlation_id: int, cleartexts: Sequence[int], proof: str) -> bool:
        """
        Accept the oracle's decryption result.

        A proof that fails verification, or a malformed payload, leaves every
        piece of state untouched and returns False; the request stays in
        Processing and remains reachable by the processing-timeout refund.

        A verified callback that overtakes the binding of its correlation id
        (the oracle answered before ``process`` re-took the lock) is held
        and applied as soon as the binding happens.

        Returns:
            True if the request was completed

        Raises:
            RequestNotFound: Unknown correlation id
            InvalidStatus: The request is no longer Processing (stale or duplicate callback)
        """
        operation = "complete_callback"
        if not self.oracle.verify_proof(correlation_id, cleartexts, proof):
            logger.warning("Callback proof rejected", extra={"correlation_id": correlation_id})
            self.events.emit(EventKind.CALLBACK_REJECTED, correlation_id=correlation_id, reason="proof")
            return False
        if len(cleartexts) != EXPECTED_CLEARTEXTS:
            logger.warning(
                "Callback payload has %d values", len(cleartexts), extra={"correlation_id": correlation_id}
            )
            self.events.emit(EventKind.CALLBACK_REJECTED, correlation_id=correlation_id, reason="payload")
            return False

        with self._lock:
            if not self.ledger.has_correlation(correlation_id) and self.ledger.submissions_in_flight:
                self._early_results[correlation_id] = [int(v) for v in cleartexts]
                logger.info("Callback held until its correlation is bound", extra={"correlation_id": correlation_id})
                return False

            request_id = self.ledger.resolve_correlation(correlation_id)
            request = self.ledger.get_request(request_id)
            result = self._finalize(request, cleartexts, operation)

        self._emit_completed(request, correlation_id, result)
        return True

    def _finalize(self, request, cleartexts: Sequence[int], operation: str) -> ResultRecord:
        """Reveal the result and complete the request. Caller holds the lock."""
        if request.status != RequestStatus.PROCESSING:
            raise InvalidStatus(
                f"Callback for request {request.request_id} arrived in status {request.status.value}",
                operation=operation,
                details={"request_id": request.request_id, "correlation_id": request.correlation_id},
            )

        masked_distance, cost = (int(v) for v in cleartexts)
        now = self.clock()
        result = self.ledger.get_result(request.request_id)
        result.revealed_distance = masked_distance // request.multiplier
        result.revealed_cost = cost
        result.finalized = True
        result.finalized_at = now

        self.ledger.set_status(request, RequestStatus.COMPLETED, operation)
        request.completed_at = now
        return result

    def _emit_completed(self, request, correlation_id: int, result: ResultRecord) -> None:
        self.events.emit(
            EventKind.CALLBACK_RECEIVED,
            request_id=request.request_id,
            correlation_id=correlation_id,
            success=True,
        )
        self.events.emit(
            EventKind.COMPLETED,
            request_id=request.request_id,
            owner=request.owner,
            distance=result.revealed_distance,
        )

    def mark_failed(self, caller: str, request_id: int, reason: str) -> None:
        """
        Declare that decryption will not complete. Operator-only.

        Raises:
            NotOperator, RequestNotFound, InvalidStatus
        """
        operation = "mark_failed"
        self.access.require_role(caller, Role.OPERATOR, operation)

        with self._lock:
            request = self.ledger.get_request(request_id)
            if request.status != RequestStatus.PROCESSING:
                raise InvalidStatus(
                    "Only a Processing request can be marked failed",
                    operation=operation,
                    details={"request_id": request_id, "status": request.status.value},
                )
            self.ledger.set_status(request, RequestStatus.FAILED, operation)
            request.failure_reason = reason

        self.events.emit(EventKind.FAILED, request_id=request_id, reason=reason)

    # =========================================================================
    # Refunds
    # =========================================================================

    def check_eligibility(self, request_id: int) -> Eligibility:
        """Eligibility for a refund right now. Does not mutate state."""
        request = self.ledger.get_request(request_id)
        return self.settlement.check_eligibility(request, self.clock())

    def request_refund(self, caller: str, request_id: int) -> int:
        """
        Return the stake to the request owner.

        Timed-out requests move to TimedOut here; Failed requests move to
        Refunded. The refund flag flips before the transfer. A failed payout
        (transfer failure or insufficient held funds) restores both flag and
        status.

        Returns:
            The amount refunded

        Raises:
            ContractPaused, RequestNotFound, NotRequestOwner, InvalidStatus,
            TimeoutNotReached, RefundAlreadyIssued, InsufficientFunds, TransferFailed
        """
        operation = "request_refund"
        self.access.require_not_paused(operation)

        with self._lock:
            request = self.ledger.get_request(request_id)
            self.ledger.require_owner(request, caller, operation)

            eligibility = self.settlement.check_eligibility(request, self.clock())
            if not eligibility.eligible:
                details = {"request_id": request_id, "reason": eligibility.reason}
                if eligibility.code == EligibilityCode.ALREADY_REFUNDED:
                    raise RefundAlreadyIssued("Refund already issued", operation=operation, details=details)
                if eligibility.code in WAITING_CODES:
                    raise TimeoutNotReached(
                        f"Not refundable yet: {eligibility.reason}", operation=operation, details=details
                    )
                raise InvalidStatus(
                    f"Not refundable: {eligibility.reason}", operation=operation, details=details
                )

            previous_status = request.status
            if eligibility.is_timeout:
                self.ledger.set_status(request, RequestStatus.TIMED_OUT, operation)

            try:
                amount = self.settlement.pay_refund(request)
            except RouteOptimizerError:
                request.status = previous_status
                raise

            if previous_status == RequestStatus.FAILED:
                self.ledger.set_status(request, RequestStatus.REFUNDED, operation)

        if eligibility.is_timeout:
            self.events.emit(
                EventKind.TIMEOUT_DETECTED,
                request_id=request_id,
                previous_status=previous_status.value,
                elapsed_seconds=eligibility.elapsed_seconds,
            )
        self.events.emit(
            EventKind.REFUND_ISSUED,
            request_id=request_id,
            requester=request.owner,
            amount=amount,
            reason=eligibility.reason,
        )

        metrics.increment("refund_amount_total", amount)

        return amount

    def scan_claimable(self, now: int | None = None) -> list[dict[str, Any]]:
        """
        Requests whose owners could claim a refund right now. Read-only.

        Returns:
            List of dicts with request_id, owner, stake and reason
        """
        now = self.clock() if now is None else now
        claimable = []
        for request in self.ledger.all_requests():
            eligibility = self.settlement.check_eligibility(request, now)
            if eligibility.eligible:
                claimable.append({
                    "request_id": request.request_id,
                    "owner": request.owner,
                    "stake": request.stake,
                    "reason": eligibility.reason,
                })
        return claimable

    # =========================================================================
    # Results & Delivery
    # =========================================================================

    def get_result(self, request_id: int) -> dict[str, Any] | None:
        """Public view of the result; distance and cost stay hidden until finalized."""
        result = self.ledger.get_result(request_id)
        return result.to_public_dict() if result else None

    def mark_item_delivered(self, caller: str, request_id: int, index: int) -> None:
        """
        Record delivery of one stop of a completed route.

        Raises:
            RequestNotFound, NotRequestOwner, InvalidStatus, InvalidItemIndex,
            ItemAlreadyDelivered
        """
        operation = "mark_item_delivered"
        with self._lock:
            request = self.ledger.get_request(request_id)
            self.ledger.require_owner(request, caller, operation)
            if request.status != RequestStatus.COMPLETED:
                raise InvalidStatus(
                    "Deliveries can only be marked on a completed route",
                    operation=operation,
                    details={"request_id": request_id, "status": request.status.value},
                )
            item = self.ledger.get_item(request_id, index)
            if item is None or not item.active:
                raise InvalidItemIndex(
                    f"No active item at index {index}",
                    operation=operation,
                    details={"request_id": request_id, "index": index},
                )
            if item.delivered:
                raise ItemAlreadyDelivered(
                    f"Item {index} already delivered",
                    operation=operation,
                    details={"request_id": request_id, "index": index},
                )
            item.delivered = True

        self.events.emit(EventKind.ITEM_DELIVERED, request_id=request_id, index=index)
