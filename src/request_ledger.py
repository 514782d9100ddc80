"""
ShieldRoute - Request Ledger

Owns the request, item and result records, the request id sequence and the
correlation map. Enforces the structural invariants on creation and on
every mutation:

- request ids increase monotonically from 1
- deposit == stake + fee, fixed at creation
- items may only be written by the owner while the request is Pending
- status changes follow the lifecycle graph (see ALLOWED_TRANSITIONS)
- each correlation id is bound to exactly one request, once

Records are never deleted; terminal requests stay for audit.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from access_control import AccessControl, validate_address
from compute_engine import CiphertextHandle
from lifecycle_events import EventBus, EventKind
from optimizer_config import OptimizerConfig
from privacy_obfuscator import PrivacyObfuscator, new_salt
from route_exceptions import (
    AlreadyProcessed,
    InvalidItemCount,
    InvalidItemIndex,
    InvalidStatus,
    NotRequestOwner,
    RequestNotFound,
)

if TYPE_CHECKING:
    from settlement import SettlementLedger

logger = logging.getLogger(__name__)


class RequestStatus(Enum):
    """Lifecycle states of a request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REFUNDED = "refunded"


# The only edges of the lifecycle graph
ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.PROCESSING, RequestStatus.TIMED_OUT}),
    RequestStatus.PROCESSING: frozenset({
        RequestStatus.COMPLETED,
        RequestStatus.FAILED,
        RequestStatus.TIMED_OUT,
    }),
    RequestStatus.FAILED: frozenset({RequestStatus.REFUNDED}),
    RequestStatus.TIMED_OUT: frozenset({RequestStatus.REFUNDED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.REFUNDED: frozenset(),
}


@dataclass
class RouteRequest:
    """A confidential route-optimization request."""

    request_id: int
    owner: str
    item_count: int
    max_distance: CiphertextHandle
    capacity_limit: CiphertextHandle
    deposit: int
    stake: int
    fee: int
    created_at: int
    multiplier: int
    salt: bytes = field(repr=False)
    status: RequestStatus = RequestStatus.PENDING
    processing_started_at: int = 0
    correlation_id: int = 0
    refund_eligible: bool = True
    failure_reason: str | None = None
    completed_at: int = 0
    refunded_amount: int = 0

    def to_public_dict(self) -> dict[str, Any]:
        """Client-facing view (no multiplier, salt or handles)."""
        return {
            "request_id": self.request_id,
            "owner": self.owner,
            "item_count": self.item_count,
            "status": self.status.value,
            "stake": self.stake,
            "created_at": self.created_at,
            "refund_eligible": self.refund_eligible,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "owner": self.owner,
            "item_count": self.item_count,
            "max_distance": self.max_distance.to_dict(),
            "capacity_limit": self.capacity_limit.to_dict(),
            "deposit": self.deposit,
            "stake": self.stake,
            "fee": self.fee,
            "created_at": self.created_at,
            "multiplier": self.multiplier,
            "salt": self.salt.hex(),
            "status": self.status.value,
            "processing_started_at": self.processing_started_at,
            "correlation_id": self.correlation_id,
            "refund_eligible": self.refund_eligible,
            "failure_reason": self.failure_reason,
            "completed_at": self.completed_at,
            "refunded_amount": self.refunded_amount,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouteRequest":
        return cls(
            request_id=data["request_id"],
            owner=data["owner"],
            item_count=data["item_count"],
            max_distance=CiphertextHandle.from_dict(data["max_distance"]),
            capacity_limit=CiphertextHandle.from_dict(data["capacity_limit"]),
            deposit=data["deposit"],
            stake=data["stake"],
            fee=data["fee"],
            created_at=data["created_at"],
            multiplier=data["multiplier"],
            salt=bytes.fromhex(data["salt"]),
            status=RequestStatus(data["status"]),
            processing_started_at=data.get("processing_started_at", 0),
            correlation_id=data.get("correlation_id", 0),
            refund_eligible=data.get("refund_eligible", True),
            failure_reason=data.get("failure_reason"),
            completed_at=data.get("completed_at", 0),
            refunded_amount=data.get("refunded_amount", 0),
        )


@dataclass
class ItemRecord:
    """One declared item slot of a request."""

    index: int
    x: CiphertextHandle
    y: CiphertextHandle
    weight: CiphertextHandle
    price: CiphertextHandle  # masked with deterministic noise
    active: bool = True
    delivered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "x": self.x.to_dict(),
            "y": self.y.to_dict(),
            "weight": self.weight.to_dict(),
            "price": self.price.to_dict(),
            "active": self.active,
            "delivered": self.delivered,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ItemRecord":
        return cls(
            index=data["index"],
            x=CiphertextHandle.from_dict(data["x"]),
            y=CiphertextHandle.from_dict(data["y"]),
            weight=CiphertextHandle.from_dict(data["weight"]),
            price=CiphertextHandle.from_dict(data["price"]),
            active=data.get("active", True),
            delivered=data.get("delivered", False),
        )


@dataclass
class ResultRecord:
    """Aggregates for a processed request; revealed values only after a verified callback."""

    request_id: int
    distance: CiphertextHandle
    cost: CiphertextHandle
    item_order: list[int] = field(default_factory=list)
    finalized: bool = False
    revealed_distance: int = 0
    revealed_cost: int = 0
    finalized_at: int = 0

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "distance": self.revealed_distance if self.finalized else None,
            "cost": self.revealed_cost if self.finalized else None,
            "finalized": self.finalized,
            "item_order": list(self.item_order),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "distance": self.distance.to_dict(),
            "cost": self.cost.to_dict(),
            "item_order": list(self.item_order),
            "finalized": self.finalized,
            "revealed_distance": self.revealed_distance,
            "revealed_cost": self.revealed_cost,
            "finalized_at": self.finalized_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResultRecord":
        return cls(
            request_id=data["request_id"],
            distance=CiphertextHandle.from_dict(data["distance"]),
            cost=CiphertextHandle.from_dict(data["cost"]),
            item_order=list(data.get("item_order", [])),
            finalized=data.get("finalized", False),
            revealed_distance=data.get("revealed_distance", 0),
            revealed_cost=data.get("revealed_cost", 0),
            finalized_at=data.get("finalized_at", 0),
        )


class RequestLedger:
    """
    Request, item and result records plus the id sequence and correlation map.

    All mutations run under the shared lock so that the id counter, the
    fee accumulator and the request record change together.
    """

    def __init__(
        self,
        config: OptimizerConfig,
        access: AccessControl,
        settlement: "SettlementLedger",
        engine,
        obfuscator: PrivacyObfuscator,
        events: EventBus,
        clock: Callable[[], int] | None = None,
        lock: "threading.RLock | None" = None,
    ):
        self.config = config
        self.access = access
        self.settlement = settlement
        self.engine = engine
        self.obfuscator = obfuscator
        self.events = events
        self.clock = clock or (lambda: int(time.time()))
        self._lock = lock or threading.RLock()

        self._counter = 0
        self._requests: dict[int, RouteRequest] = {}
        self._items: dict[int, dict[int, ItemRecord]] = {}
        self._results: dict[int, ResultRecord] = {}
        self._by_owner: dict[str, list[int]] = {}
        self._correlations: dict[int, int] = {}
        # Pending requests whose aggregates are out at the oracle
        self._submitting: set[int] = set()

    # =========================================================================
    # Creation
    # =========================================================================

    def create_request(
        self,
        caller: str,
        item_count: int,
        max_distance: CiphertextHandle,
        capacity_limit: CiphertextHandle,
        deposit: int,
    ) -> int:
        """
        Register a new request and take its deposit.

        Args:
            caller: Submitting principal (becomes the owner)
            item_count: Declared number of item slots (1..max_items)
            max_distance: Encrypted max-distance constraint
            capacity_limit: Encrypted capacity constraint
            deposit: Deposited amount; the platform fee is deducted here

        Returns:
            The new request id

        Raises:
            ContractPaused, InvalidAddress, InvalidItemCount, InsufficientStake
        """
        operation = "create_request"
        self.access.require_not_paused(operation)
        validate_address(caller, operation=operation)
        if not isinstance(item_count, int) or item_count <= 0 or item_count > self.config.max_items:
            raise InvalidItemCount(
                f"Item count must be between 1 and {self.config.max_items}",
                operation=operation,
                details={"item_count": item_count},
            )
        self.settlement.check_minimum(deposit, operation=operation)

        with self._lock:
            stake, fee = self.settlement.accept_deposit(deposit)

            self._counter += 1
            request_id = self._counter
            created_at = self.clock()
            salt = new_salt()
            multiplier = self.obfuscator.generate_multiplier(
                self.obfuscator.request_multiplier_seed(request_id, caller, created_at, salt)
            )

            self._requests[request_id] = RouteRequest(
                request_id=request_id,
                owner=caller,
                item_count=item_count,
                max_distance=max_distance,
                capacity_limit=capacity_limit,
                deposit=deposit,
                stake=stake,
                fee=fee,
                created_at=created_at,
                multiplier=multiplier,
                salt=salt,
            )
            self._items[request_id] = {}
            self._by_owner.setdefault(caller, []).append(request_id)

        logger.info(
            "Request created",
            extra={"request_id": request_id, "item_count": item_count, "stake": stake},
        )
        self.events.emit(
            EventKind.REQUEST_CREATED,
            request_id=request_id,
            owner=caller,
            item_count=item_count,
            deposit=deposit,
            created_at=created_at,
        )
        return request_id

    def add_item(
        self,
        caller: str,
        request_id: int,
        index: int,
        x: CiphertextHandle,
        y: CiphertextHandle,
        weight: CiphertextHandle,
        price: CiphertextHandle,
    ) -> ItemRecord:
        """
        Write an item slot. Re-adding an index while Pending overwrites it.

        The price is masked with deterministic noise before storage.

        Raises:
            ContractPaused, RequestNotFound, NotRequestOwner, AlreadyProcessed,
            InvalidItemIndex
        """
        operation = "add_item"
        self.access.require_not_paused(operation)

        with self._lock:
            request = self.get_request(request_id)
            self.require_owner(request, caller, operation)
            if request.status != RequestStatus.PENDING:
                raise AlreadyProcessed(
                    "Items are immutable once processing has started",
                    operation=operation,
                    details={"request_id": request_id, "status": request.status.value},
                )
            if request_id in self._submitting:
                raise AlreadyProcessed(
                    "Items are frozen while the request is being submitted",
                    operation=operation,
                    details={"request_id": request_id},
                )
            if not isinstance(index, int) or index < 0 or index >= request.item_count:
                raise InvalidItemIndex(
                    f"Index must be below the declared item count ({request.item_count})",
                    operation=operation,
                    details={"request_id": request_id, "index": index},
                )

            seed = self.obfuscator.item_noise_seed(
                request_id, index, request.created_at, request.salt
            )
            masked_price = self.obfuscator.mask_ciphertext(self.engine, price, seed)
            record = ItemRecord(index=index, x=x, y=y, weight=weight, price=masked_price)
            previous = self._items[request_id].get(index)
            replaced = previous is not None
            if replaced:
                self.engine.release(previous.price)
            self._items[request_id][index] = record

        logger.debug(
            "Item stored", extra={"request_id": request_id, "index": index, "replaced": replaced}
        )
        return record

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_request(self, request_id: int) -> RouteRequest:
        """
        Raises:
            RequestNotFound: If the id was never assigned
        """
        request = self._requests.get(request_id)
        if request is None:
            raise RequestNotFound(
                f"Request {request_id} not found",
                operation="get_request",
                details={"request_id": request_id},
            )
        return request

    def require_owner(self, request: RouteRequest, caller: str, operation: str) -> None:
        if caller != request.owner:
            raise NotRequestOwner(
                "Only the request owner may perform this operation",
                operation=operation,
                details={"request_id": request.request_id, "caller": caller},
            )

    def requests_of(self, owner: str) -> list[int]:
        with self._lock:
            return list(self._by_owner.get(owner, []))

    def items(self, request_id: int) -> list[ItemRecord]:
        """Stored item slots, ordered by index."""
        self.get_request(request_id)
        with self._lock:
            return [self._items[request_id][i] for i in sorted(self._items[request_id])]

    def active_items(self, request_id: int) -> list[ItemRecord]:
        return [item for item in self.items(request_id) if item.active]

    def get_item(self, request_id: int, index: int) -> ItemRecord | None:
        self.get_request(request_id)
        return self._items[request_id].get(index)

    def all_requests(self) -> list[RouteRequest]:
        with self._lock:
            return [self._requests[i] for i in sorted(self._requests)]

    @property
    def request_count(self) -> int:
        return self._counter

    # =========================================================================
    # Status & Correlation
    # =========================================================================

    def set_status(self, request: RouteRequest, new_status: RequestStatus, operation: str) -> None:
        """
        Move a request along one edge of the lifecycle graph.

        Raises:
            InvalidStatus: If the edge does not exist (state is left unchanged)
        """
        with self._lock:
            if new_status not in ALLOWED_TRANSITIONS[request.status]:
                raise InvalidStatus(
                    f"Cannot move from {request.status.value} to {new_status.value}",
                    operation=operation,
                    details={
                        "request_id": request.request_id,
                        "from": request.status.value,
                        "to": new_status.value,
                    },
                )
            previous = request.status
            request.status = new_status

        logger.info(
            "Status %s -> %s",
            previous.value,
            new_status.value,
            extra={"request_id": request.request_id},
        )

    def bind_correlation(self, correlation_id: int, request_id: int) -> None:
        """Record correlation id -> request id (write-once)."""
        with self._lock:
            if correlation_id in self._correlations:
                raise InvalidStatus(
                    "Correlation id already bound",
                    operation="bind_correlation",
                    details={
                        "correlation_id": correlation_id,
                        "bound_to": self._correlations[correlation_id],
                    },
                )
            self._correlations[correlation_id] = request_id

    @property
    def last_correlation_id(self) -> int:
        with self._lock:
            return max(self._correlations, default=0)

    def resolve_correlation(self, correlation_id: int) -> int:
        with self._lock:
            request_id = self._correlations.get(correlation_id)
        if request_id is None:
            raise RequestNotFound(
                f"Unknown correlation id {correlation_id}",
                operation="resolve_correlation",
                details={"correlation_id": correlation_id},
            )
        return request_id

    def has_correlation(self, correlation_id: int) -> bool:
        with self._lock:
            return correlation_id in self._correlations

    # =========================================================================
    # In-flight submissions
    # =========================================================================

    def reserve_submission(self, request_id: int, operation: str) -> None:
        """
        Claim a Pending request for submission to the oracle.

        Items are frozen until ``release_submission``.

        Raises:
            AlreadyProcessed: If another submission for the request is in flight
        """
        with self._lock:
            if request_id in self._submitting:
                raise AlreadyProcessed(
                    f"Request {request_id} is already being submitted",
                    operation=operation,
                    details={"request_id": request_id},
                )
            self._submitting.add(request_id)

    def release_submission(self, request_id: int) -> None:
        with self._lock:
            self._submitting.discard(request_id)

    @property
    def submissions_in_flight(self) -> int:
        with self._lock:
            return len(self._submitting)

    # =========================================================================
    # Results
    # =========================================================================

    def store_result(self, result: ResultRecord) -> None:
        with self._lock:
            self._results[result.request_id] = result

    def get_result(self, request_id: int) -> ResultRecord | None:
        self.get_request(request_id)
        return self._results.get(request_id)

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counter": self._counter,
                "requests": [r.to_dict() for r in self._requests.values()],
                "items": {
                    str(rid): [item.to_dict() for item in slots.values()]
                    for rid, slots in self._items.items()
                },
                "results": [r.to_dict() for r in self._results.values()],
                "correlations": {str(cid): rid for cid, rid in self._correlations.items()},
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Restore state produced by ``to_dict``."""
        with self._lock:
            self._counter = data.get("counter", 0)
            self._requests = {}
            self._by_owner = {}
            for raw in data.get("requests", []):
                request = RouteRequest.from_dict(raw)
                self._requests[request.request_id] = request
            for request_id in sorted(self._requests):
                owner = self._requests[request_id].owner
                self._by_owner.setdefault(owner, []).append(request_id)
            self._items = {rid: {} for rid in self._requests}
            for rid, slots in data.get("items", {}).items():
                for raw in slots:
                    item = ItemRecord.from_dict(raw)
                    self._items[int(rid)][item.index] = item
            self._results = {}
            for raw in data.get("results", []):
                result = ResultRecord.from_dict(raw)
                self._results[result.request_id] = result
            self._correlations = {
                int(cid): rid for cid, rid in data.get("correlations", {}).items()
            }
