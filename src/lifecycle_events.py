"""
ShieldRoute - Lifecycle Events

Fire-and-observe notifications for every externally visible state change.
No lifecycle logic depends on delivery: a failing listener is logged and
skipped, and the history is kept purely for audit.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from monitoring import metrics

logger = logging.getLogger(__name__)

MAX_HISTORY = 10000


class EventKind(Enum):
    """Kinds of lifecycle events."""

    # Request lifecycle
    REQUEST_CREATED = "RequestCreated"
    PROCESSING_STARTED = "ProcessingStarted"
    CALLBACK_RECEIVED = "CallbackReceived"
    CALLBACK_REJECTED = "CallbackRejected"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TIMEOUT_DETECTED = "TimeoutDetected"
    ITEM_DELIVERED = "ItemDelivered"

    # Settlement
    REFUND_ISSUED = "RefundIssued"
    FEES_WITHDRAWN = "FeesWithdrawn"
    EMERGENCY_WITHDRAWAL = "EmergencyWithdrawal"

    # Administration
    OPERATOR_ADDED = "OperatorAdded"
    OPERATOR_REMOVED = "OperatorRemoved"
    PAUSER_ADDED = "PauserAdded"
    PAUSER_REMOVED = "PauserRemoved"
    PAUSE_TOGGLED = "PauseToggled"
    OWNERSHIP_TRANSFERRED = "OwnershipTransferred"


@dataclass(frozen=True)
class LifecycleEvent:
    """A single emitted event."""

    sequence: int
    kind: EventKind
    data: dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def request_id(self) -> int | None:
        return self.data.get("request_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "data": self.data,
        }


Listener = Callable[[LifecycleEvent], None]


class EventBus:
    """
    In-process event dispatcher with a bounded audit history.

    Usage:
        bus = EventBus()
        bus.subscribe(lambda event: print(event.kind), EventKind.REFUND_ISSUED)
        bus.emit(EventKind.REFUND_ISSUED, request_id=1, amount=49)
    """

    def __init__(self, max_history: int = MAX_HISTORY):
        self._lock = threading.RLock()
        self._sequence = 0
        self._history: list[LifecycleEvent] = []
        self._max_history = max_history
        self._listeners: list[tuple[EventKind | None, Listener]] = []

    def subscribe(self, listener: Listener, kind: EventKind | None = None) -> None:
        """Register a listener for one kind, or for all kinds when kind is None."""
        with self._lock:
            self._listeners.append((kind, listener))

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = [(k, fn) for k, fn in self._listeners if fn != listener]

    def emit(self, kind: EventKind, **data: Any) -> LifecycleEvent:
        """
        Record an event and notify listeners.

        Args:
            kind: Event kind
            **data: Event payload

        Returns:
            The recorded event
        """
        with self._lock:
            self._sequence += 1
            event = LifecycleEvent(sequence=self._sequence, kind=kind, data=dict(data))
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]
            listeners = [fn for k, fn in self._listeners if k is None or k == kind]

        logger.info("Event %s", kind.value, extra={"event": event.to_dict()})

        metrics.increment("events_total", labels={"kind": kind.value})

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", kind.value)

        return event

    def history(
        self,
        kind: EventKind | None = None,
        request_id: int | None = None,
        limit: int | None = None,
    ) -> list[LifecycleEvent]:
        """Get recorded events, optionally filtered by kind and request."""
        with self._lock:
            events = list(self._history)

        if kind is not None:
            events = [e for e in events if e.kind == kind]
        if request_id is not None:
            events = [e for e in events if e.request_id == request_id]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear(self) -> None:
        """Drop the recorded history (listeners are kept)."""
        with self._lock:
            self._history.clear()
