"""Background sweep: approval expiry and leaked-execution reconciliation."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

_logger = logging.getLogger(__name__)


class Sweepable(Protocol):
    def expire_overdue(self) -> int:
        ...

    def reconcile_leaked(self) -> int:
        ...


@dataclass(frozen=True)
class SweepReport:
    expired: int
    reconciled: int


class Sweeper:
    """Runs ``expire_overdue`` and ``reconcile_leaked`` every ``interval_seconds`` on a daemon thread."""

    def __init__(self, target: Sweepable, *, interval_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.target = target
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> SweepReport:
        """One sweep cycle. Errors propagate to the caller."""
        expired = self.target.expire_overdue()
        reconciled = self.target.reconcile_leaked()
        if expired or reconciled:
            _logger.info("sweep expired=%d reconciled=%d", expired, reconciled)
        return SweepReport(expired=expired, reconciled=reconciled)

    def _loop(self) -> None:
        _logger.info("sweeper started (interval %.1fs)", self.interval_seconds)
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # one bad cycle must not stop the thread
                _logger.exception("sweep cycle failed")
            self._stop_event.wait(self.interval_seconds)
        _logger.info("sweeper stopped")

    def start(self) -> None:
        if self.is_running():
            _logger.warning("sweeper already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="skillrunner-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "Sweeper":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
