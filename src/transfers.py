"""
ShieldRoute - Outbound Transfers

Payouts (refunds, fee withdrawals, emergency drains) leave the system
through a FundsTransfer. A transfer may fail; the settlement ledger treats
any failure as a full abort of the enclosing operation.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class FundsTransfer(ABC):
    """Sends value to a principal."""

    @abstractmethod
    def send(self, to: str, amount: int) -> bool:
        """
        Transfer ``amount`` to ``to``.

        Returns:
            True on success, False if the recipient rejected the transfer.
            Implementations may also raise; both are treated as failure.
        """


class InMemoryTransfer(FundsTransfer):
    """
    Balance book for development and tests.

    Recipients listed in ``rejecting`` refuse transfers, which lets tests
    exercise the rollback path.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._balances: dict[str, int] = defaultdict(int)
        self.rejecting: set[str] = set()
        self.history: list[dict[str, Any]] = []

    def send(self, to: str, amount: int) -> bool:
        with self._lock:
            if to in self.rejecting:
                logger.warning("Transfer rejected by recipient", extra={"to": to, "amount": amount})
                return False
            self._balances[to] += amount
            self.history.append({
                "to": to,
                "amount": amount,
                "timestamp": datetime.now(UTC).isoformat(),
            })
            return True

    def balance_of(self, principal: str) -> int:
        with self._lock:
            return self._balances.get(principal, 0)
