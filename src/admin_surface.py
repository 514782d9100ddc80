"""
ShieldRoute - Administrative Surface

Thin wrappers over AccessControl and SettlementLedger that add the
capability checks and the audit events for every administrative action.
"""

import logging
import threading

from access_control import AccessControl, Role
from lifecycle_events import EventBus, EventKind
from settlement import SettlementLedger

logger = logging.getLogger(__name__)

_GRANT_EVENTS = {
    Role.OPERATOR: (EventKind.OPERATOR_ADDED, EventKind.OPERATOR_REMOVED),
    Role.PAUSER: (EventKind.PAUSER_ADDED, EventKind.PAUSER_REMOVED),
}


class AdminSurface:
    """Role grants, pause toggle, ownership transfer and fund withdrawal."""

    def __init__(
        self,
        access: AccessControl,
        settlement: SettlementLedger,
        events: EventBus,
        lock: "threading.RLock | None" = None,
    ):
        self.access = access
        self.settlement = settlement
        self.events = events
        self._lock = lock or threading.RLock()

    # =========================================================================
    # Role management
    # =========================================================================

    def _grant(self, caller: str, role: Role, principal: str) -> bool:
        self.access.require_role(caller, Role.ADMINISTRATOR, f"add_{role.value}")
        with self._lock:
            added = self.access.grant_role(role, principal)
        if added:
            self.events.emit(_GRANT_EVENTS[role][0], principal=principal, by=caller)
        return added

    def _revoke(self, caller: str, role: Role, principal: str) -> bool:
        self.access.require_role(caller, Role.ADMINISTRATOR, f"remove_{role.value}")
        with self._lock:
            removed = self.access.revoke_role(role, principal)
        if removed:
            self.events.emit(_GRANT_EVENTS[role][1], principal=principal, by=caller)
        return removed

    def add_operator(self, caller: str, principal: str) -> bool:
        """
        Grant the operator capability.

        Returns:
            True if the principal was not already an operator

        Raises:
            NotAuthorized, InvalidAddress
        """
        return self._grant(caller, Role.OPERATOR, principal)

    def remove_operator(self, caller: str, principal: str) -> bool:
        return self._revoke(caller, Role.OPERATOR, principal)

    def add_pauser(self, caller: str, principal: str) -> bool:
        return self._grant(caller, Role.PAUSER, principal)

    def remove_pauser(self, caller: str, principal: str) -> bool:
        return self._revoke(caller, Role.PAUSER, principal)

    # =========================================================================
    # Pause & Ownership
    # =========================================================================

    def toggle_pause(self, caller: str) -> bool:
        """
        Flip the global pause flag. Pause-authority only.

        Returns:
            The new paused state
        """
        self.access.require_role(caller, Role.PAUSER, "toggle_pause")
        with self._lock:
            paused = not self.access.paused
            self.access.set_paused(paused)

        logger.warning("System %s by %s", "paused" if paused else "unpaused", caller)
        self.events.emit(EventKind.PAUSE_TOGGLED, paused=paused, by=caller)
        return paused

    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        """
        Hand the administrator capability to ``new_owner``.

        Returns:
            The previous owner

        Raises:
            NotAuthorized, InvalidAddress
        """
        self.access.require_role(caller, Role.ADMINISTRATOR, "transfer_ownership")
        with self._lock:
            previous = self.access.transfer_ownership(new_owner)
        self.events.emit(EventKind.OWNERSHIP_TRANSFERRED, previous_owner=previous, new_owner=new_owner)
        return previous

    # =========================================================================
    # Funds
    # =========================================================================

    def withdraw_fees(self, caller: str, to: str) -> int:
        return self.settlement.withdraw_fees(caller, to)

    def emergency_withdraw(self, caller: str, to: str, amount: int) -> int:
        """Drain ``amount`` of held funds to ``to``. Only while paused."""
        return self.settlement.emergency_withdraw(caller, to, amount)
