"""
ShieldRoute - Timeout Sweeper

Optional background scan for requests whose owners can claim a refund.

The sweeper only reports. It never moves a request to TimedOut and never
pays anything out: timeouts are still acted on when the owner calls
``request_refund``. What it adds is visibility, so that stuck requests show
up in logs, in the ``refunds_claimable`` gauge, and in an optional
notification hook.

Usage:
    sweeper = TimeoutSweeper(coordinator.scan_claimable, interval_seconds=300)
    sweeper.start()
    ...
    sweeper.stop()
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from monitoring import metrics

logger = logging.getLogger(__name__)

ScanFunction = Callable[[], list[dict[str, Any]]]
NotifyHook = Callable[[list[dict[str, Any]]], None]


class TimeoutSweeper:
    """Periodically runs a read-only claimable-refund scan on a daemon thread."""

    def __init__(
        self,
        scan: ScanFunction,
        interval_seconds: float,
        notify: NotifyHook | None = None,
    ):
        self.scan = scan
        self.interval_seconds = interval_seconds
        self.notify = notify
        self.last_claimable: list[dict[str, Any]] = []
        self.sweeps = 0
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep_once(self) -> list[dict[str, Any]]:
        """Run one scan, publish the result and return it."""
        claimable = self.scan()
        self.last_claimable = claimable
        self.sweeps += 1
        metrics.set_gauge("refunds_claimable", len(claimable))

        if claimable:
            logger.warning(
                "%d request(s) awaiting refund claim",
                len(claimable),
                extra={"request_ids": [c["request_id"] for c in claimable]},
            )
            if self.notify:
                self.notify(claimable)
        return claimable

    def _loop(self):
        logger.info(f"Timeout sweeper started (interval: {self.interval_seconds}s)")

        while not self._stop.is_set():
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Timeout sweep failed: {e}")
            self._stop.wait(self.interval_seconds)

        logger.info("Timeout sweeper stopped")

    def start(self) -> bool:
        """
        Start the background thread.

        Returns:
            True if a new thread was started
        """
        if self.running:
            logger.warning("Sweeper already running")
            return False
        if self.interval_seconds <= 0:
            logger.info("Timeout sweeping is disabled")
            return False

        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="TimeoutSweeper", daemon=True)
        self._thread.start()
        return True

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
