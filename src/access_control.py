"""
ShieldRoute - Access Control

Named capability sets for the request lifecycle.

Roles:
- ADMINISTRATOR: the single owner principal (role grants, fee withdrawal,
  ownership transfer, emergency drain)
- OPERATOR: may process requests and declare decryption failures
- PAUSER: may toggle the global pause

Callers check a capability with ``has_role`` (or ``require_role``) before
invoking a privileged operation. The global pause flag lives here as well,
since it gates the same operations the capabilities do.

Usage:
    access = AccessControl(owner="0xabc...")
    access.grant_role(Role.OPERATOR, "0xdef...")
    if access.has_role("0xdef...", Role.OPERATOR):
        ...
"""

import logging
import threading
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from route_exceptions import (
    ContractNotPaused,
    ContractPaused,
    InvalidAddress,
    NotAuthorized,
    NotOperator,
    NotPauser,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class Role(Enum):
    """Capability sets."""

    ADMINISTRATOR = "administrator"
    OPERATOR = "operator"
    PAUSER = "pauser"


# Error raised when a capability check fails
ROLE_ERRORS = {
    Role.ADMINISTRATOR: NotAuthorized,
    Role.OPERATOR: NotOperator,
    Role.PAUSER: NotPauser,
}


def is_valid_address(principal: str | None) -> bool:
    """A principal is valid when it is a non-empty string other than the zero address."""
    if not principal or not isinstance(principal, str):
        return False
    return principal.strip().lower() != ZERO_ADDRESS


def validate_address(principal: str | None, operation: str = "validate_address") -> str:
    """Return the principal unchanged, or raise InvalidAddress."""
    if not is_valid_address(principal):
        raise InvalidAddress(
            "Principal must be a non-empty, non-zero address",
            operation=operation,
            details={"principal": principal},
        )
    return principal


class AccessControl:
    """
    Role registry, owner and pause flag.

    The owner is the administrator and, at construction, also holds the
    operator and pause-authority capabilities.
    """

    def __init__(self, owner: str, lock: "threading.RLock | None" = None):
        validate_address(owner, operation="init_access_control")
        self._lock = lock or threading.RLock()
        self._owner = owner
        self._members: dict[Role, set[str]] = {
            Role.OPERATOR: {owner},
            Role.PAUSER: {owner},
        }
        self._paused = False
        self._audit_log: list[dict[str, Any]] = []
        self._max_audit_entries = 10000

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def paused(self) -> bool:
        return self._paused

    def has_role(self, principal: str | None, role: Role) -> bool:
        """Answer whether a principal holds a capability."""
        if not principal:
            return False
        with self._lock:
            if role == Role.ADMINISTRATOR:
                return principal == self._owner
            return principal in self._members[role]

    def members(self, role: Role) -> list[str]:
        with self._lock:
            if role == Role.ADMINISTRATOR:
                return [self._owner]
            return sorted(self._members[role])

    def require_role(self, principal: str | None, role: Role, operation: str) -> None:
        """
        Raise the role-specific authorization error unless the principal holds the role.

        Raises:
            NotAuthorized, NotOperator or NotPauser
        """
        if not self.has_role(principal, role):
            self._audit("access_denied", principal=principal, role=role.value, operation=operation)
            raise ROLE_ERRORS[role](
                f"{principal!r} lacks the {role.value} capability",
                operation=operation,
                details={"principal": principal, "role": role.value},
            )

    def require_not_paused(self, operation: str) -> None:
        if self._paused:
            raise ContractPaused("System is paused", operation=operation)

    def require_paused(self, operation: str) -> None:
        if not self._paused:
            raise ContractNotPaused(
                "Operation is only available while paused", operation=operation
            )

    # =========================================================================
    # Mutations
    # =========================================================================

    def grant_role(self, role: Role, principal: str) -> bool:
        """
        Grant a capability.

        Returns:
            True if the principal did not already hold the role
        """
        if role == Role.ADMINISTRATOR:
            raise ValueError("Administrator changes go through transfer_ownership")
        validate_address(principal, operation=f"grant_{role.value}")

        with self._lock:
            added = principal not in self._members[role]
            self._members[role].add(principal)
            self._audit("role_granted", principal=principal, role=role.value, changed=added)
            return added

    def revoke_role(self, role: Role, principal: str) -> bool:
        """
        Revoke a capability.

        Returns:
            True if the principal held the role
        """
        if role == Role.ADMINISTRATOR:
            raise ValueError("Administrator changes go through transfer_ownership")
        validate_address(principal, operation=f"revoke_{role.value}")

        with self._lock:
            removed = principal in self._members[role]
            self._members[role].discard(principal)
            self._audit("role_revoked", principal=principal, role=role.value, changed=removed)
            return removed

    def transfer_ownership(self, new_owner: str) -> str:
        """
        Hand the administrator capability to a new principal.

        Operator and pause-authority memberships are left unchanged.

        Returns:
            The previous owner
        """
        validate_address(new_owner, operation="transfer_ownership")
        with self._lock:
            previous = self._owner
            self._owner = new_owner
            self._audit("ownership_transferred", previous=previous, new_owner=new_owner)
            return previous

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = paused
            self._audit("pause_set", paused=paused)

    # =========================================================================
    # Audit & Persistence
    # =========================================================================

    def _audit(self, action: str, **kwargs):
        """Record an audit log entry."""
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": action,
            **kwargs,
        }

        with self._lock:
            self._audit_log.append(entry)
            if len(self._audit_log) > self._max_audit_entries:
                self._audit_log = self._audit_log[-self._max_audit_entries :]

        logger.debug("Access audit: %s - %s", action, kwargs)

    def get_audit_log(self, limit: int = 100, action_filter: str | None = None) -> list[dict[str, Any]]:
        """Get recent audit log entries."""
        with self._lock:
            log = self._audit_log.copy()

        if action_filter:
            log = [e for e in log if e.get("action") == action_filter]

        return log[-limit:]

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "owner": self._owner,
                "operators": sorted(self._members[Role.OPERATOR]),
                "pausers": sorted(self._members[Role.PAUSER]),
                "paused": self._paused,
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Restore state produced by ``to_dict``."""
        with self._lock:
            self._owner = data["owner"]
            self._members[Role.OPERATOR] = set(data.get("operators", []))
            self._members[Role.PAUSER] = set(data.get("pausers", []))
            self._paused = bool(data.get("paused", False))
