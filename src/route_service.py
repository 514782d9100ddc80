"""
ShieldRoute - Route Optimizer Service

Single entry point that wires the components together around one shared
lock, persists a snapshot after every mutation when a storage backend is
configured, and exposes the client-facing reads.

Usage:
    service = RouteOptimizerService.from_env()
    request_id = service.create_request(owner, 5, max_distance, capacity, deposit)
    service.process(operator, request_id)
"""

import functools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from access_control import AccessControl, Role
from admin_surface import AdminSurface
from compute_engine import ComputeEngine, SimulatedComputeEngine
from decryption_oracle import DecryptionOracle, LocalDecryptionOracle
from lifecycle import LifecycleCoordinator
from lifecycle_events import EventBus, EventKind, LifecycleEvent
from optimizer_config import OptimizerConfig
from privacy_obfuscator import PrivacyObfuscator
from request_ledger import RequestLedger, RequestStatus
from settlement import SettlementLedger
from storage import StorageBackend, StorageError
from timeout_sweeper import NotifyHook, TimeoutSweeper
from transfers import FundsTransfer, InMemoryTransfer

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def persisted(func):
    """Save a snapshot after the wrapped mutation succeeds."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        result = func(self, *args, **kwargs)
        self.persist()
        return result

    return wrapper


class RouteOptimizerService:
    """
    Facade over the ledger, coordinator, settlement and admin components.

    External collaborators (compute engine, decryption oracle, funds
    transfer, storage) are injected; the defaults are the in-process
    simulation backends.
    """

    def __init__(
        self,
        config: OptimizerConfig | None = None,
        engine: ComputeEngine | None = None,
        oracle: DecryptionOracle | None = None,
        transfer: FundsTransfer | None = None,
        storage: StorageBackend | None = None,
        clock: Callable[[], int] | None = None,
        sweep_notify: NotifyHook | None = None,
    ):
        self.config = (config or OptimizerConfig()).validate()
        self.clock = clock or (lambda: int(time.time()))
        self.storage = storage
        self._lock = threading.RLock()

        self.events = EventBus()
        self.access = AccessControl(self.config.owner, lock=self._lock)
        for principal in self.config.operators:
            self.access.grant_role(Role.OPERATOR, principal)
        for principal in self.config.pausers:
            self.access.grant_role(Role.PAUSER, principal)

        self.engine = engine or SimulatedComputeEngine()
        if oracle is None:
            if not isinstance(self.engine, SimulatedComputeEngine):
                raise ValueError("An oracle is required with a non-simulated compute engine")
            oracle = LocalDecryptionOracle(self.engine)
        self.oracle = oracle
        self.transfer = transfer or InMemoryTransfer()
        self.obfuscator = PrivacyObfuscator(
            self.config.multiplier_min, self.config.multiplier_max, self.config.noise_bound
        )

        self.settlement = SettlementLedger(
            self.config, self.access, self.transfer, self.events, lock=self._lock
        )
        self.ledger = RequestLedger(
            self.config,
            self.access,
            self.settlement,
            self.engine,
            self.obfuscator,
            self.events,
            clock=self.clock,
            lock=self._lock,
        )
        self.coordinator = LifecycleCoordinator(
            self.ledger,
            self.settlement,
            self.access,
            self.engine,
            self.oracle,
            self.events,
            clock=self.clock,
            lock=self._lock,
        )
        self.admin = AdminSurface(self.access, self.settlement, self.events, lock=self._lock)
        self.sweeper = TimeoutSweeper(
            self.coordinator.scan_claimable,
            self.config.sweep_interval_seconds,
            notify=sweep_notify,
        )
        self.coordinator.callback_target = self.complete_callback

        if self.storage is not None:
            self._restore_from_storage()

    @classmethod
    def from_env(cls, **kwargs) -> "RouteOptimizerService":
        """Build a service from environment configuration and storage selection."""
        from oracle_client import remote_oracle_from_env
        from storage import get_storage_backend

        kwargs.setdefault("storage", get_storage_backend())
        kwargs.setdefault("oracle", remote_oracle_from_env())
        return cls(OptimizerConfig.from_env(), **kwargs)

    # =========================================================================
    # Request lifecycle
    # =========================================================================

    @persisted
    def create_request(self, caller, item_count, max_distance, capacity_limit, deposit) -> int:
        return self.ledger.create_request(caller, item_count, max_distance, capacity_limit, deposit)

    @persisted
    def add_item(self, caller, request_id, index, x, y, weight, price):
        return self.ledger.add_item(caller, request_id, index, x, y, weight, price)

    @persisted
    def process(self, caller: str, request_id: int) -> int:
        return self.coordinator.process(caller, request_id)

    @persisted
    def complete_callback(self, correlation_id: int, cleartexts: list[int], proof: str) -> bool:
        return self.coordinator.complete_callback(correlation_id, cleartexts, proof)

    @persisted
    def mark_failed(self, caller: str, request_id: int, reason: str) -> None:
        self.coordinator.mark_failed(caller, request_id, reason)

    @persisted
    def request_refund(self, caller: str, request_id: int) -> int:
        return self.coordinator.request_refund(caller, request_id)

    @persisted
    def mark_item_delivered(self, caller: str, request_id: int, index: int) -> None:
        self.coordinator.mark_item_delivered(caller, request_id, index)

    # =========================================================================
    # Administration
    # =========================================================================

    @persisted
    def add_operator(self, caller: str, principal: str) -> bool:
        return self.admin.add_operator(caller, principal)

    @persisted
    def remove_operator(self, caller: str, principal: str) -> bool:
        return self.admin.remove_operator(caller, principal)

    @persisted
    def add_pauser(self, caller: str, principal: str) -> bool:
        return self.admin.add_pauser(caller, principal)

    @persisted
    def remove_pauser(self, caller: str, principal: str) -> bool:
        return self.admin.remove_pauser(caller, principal)

    @persisted
    def toggle_pause(self, caller: str) -> bool:
        return self.admin.toggle_pause(caller)

    @persisted
    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        return self.admin.transfer_ownership(caller, new_owner)

    @persisted
    def withdraw_fees(self, caller: str, to: str) -> int:
        return self.admin.withdraw_fees(caller, to)

    @persisted
    def emergency_withdraw(self, caller: str, to: str, amount: int) -> int:
        return self.admin.emergency_withdraw(caller, to, amount)

    # =========================================================================
    # Reads
    # =========================================================================

    def has_role(self, principal: str, role: Role) -> bool:
        return self.access.has_role(principal, role)

    def get_requests_of(self, owner: str) -> list[int]:
        return self.ledger.requests_of(owner)

    def get_request(self, request_id: int) -> dict[str, Any]:
        return self.ledger.get_request(request_id).to_public_dict()

    def get_result(self, request_id: int) -> dict[str, Any] | None:
        return self.coordinator.get_result(request_id)

    def check_eligibility(self, request_id: int) -> dict[str, Any]:
        return self.coordinator.check_eligibility(request_id).to_dict()

    def scan_claimable(self) -> list[dict[str, Any]]:
        return self.coordinator.scan_claimable()

    def get_events(
        self,
        kind: EventKind | None = None,
        request_id: int | None = None,
        limit: int | None = None,
    ) -> list[LifecycleEvent]:
        return self.events.history(kind=kind, request_id=request_id, limit=limit)

    def get_stats(self) -> dict[str, Any]:
        """Counters, balances and per-status request counts."""
        with self._lock:
            by_status = {status.value: 0 for status in RequestStatus}
            for request in self.ledger.all_requests():
                by_status[request.status.value] += 1
            settlement = self.settlement.get_summary()
            return {
                "request_count": self.ledger.request_count,
                "owner": self.access.owner,
                "paused": self.access.paused,
                "fee_accumulator": settlement["fee_accumulator"],
                "balance": settlement["balance"],
                "total_refunded": settlement["total_refunded"],
                "total_fees_withdrawn": settlement["total_fees_withdrawn"],
                "requests_by_status": by_status,
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            state = {
                "version": SNAPSHOT_VERSION,
                "access": self.access.to_dict(),
                "ledger": self.ledger.to_dict(),
                "settlement": self.settlement.to_dict(),
            }
            if isinstance(self.engine, SimulatedComputeEngine):
                state["engine"] = self.engine.to_dict()
            return state

    def restore(self, state: dict[str, Any]) -> None:
        """Load a snapshot produced by ``snapshot``."""
        with self._lock:
            self.access.load_dict(state["access"])
            self.ledger.load_dict(state["ledger"])
            self.settlement.load_dict(state["settlement"])
            if "engine" in state and isinstance(self.engine, SimulatedComputeEngine):
                self.engine.load_dict(state["engine"])
            if isinstance(self.oracle, LocalDecryptionOracle):
                self.oracle.resume_after(self.ledger.last_correlation_id)

        logger.info(
            "Restored state",
            extra={"request_count": self.ledger.request_count, "owner": self.access.owner},
        )

    def _restore_from_storage(self) -> None:
        state = self.storage.load_state()
        if state is None:
            logger.info("No saved state found. Starting fresh.")
            return
        self.restore(state)

    def persist(self) -> bool:
        """
        Save a snapshot to the configured backend.

        A failed save is logged; in-memory state stays authoritative.

        Returns:
            True if a snapshot was written
        """
        if self.storage is None:
            return False
        try:
            self.storage.save_state(self.snapshot())
            return True
        except StorageError as e:
            logger.error(f"Error saving state: {e}")
            return False

    # =========================================================================
    # Background sweeper
    # =========================================================================

    def start_sweeper(self) -> bool:
        return self.sweeper.start()

    def stop_sweeper(self) -> None:
        self.sweeper.stop()
