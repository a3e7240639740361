from __future__ import annotations

import threading

import pytest

from skillrunner.sweeper import SweepReport, Sweeper


class FakeTarget:
    def __init__(self, *, fail_first: bool = False) -> None:
        self.calls = 0
        self.fail_first = fail_first
        self.swept = threading.Event()

    def expire_overdue(self) -> int:
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("database unavailable")
        return 2

    def reconcile_leaked(self) -> int:
        self.swept.set()
        return 1


def test_run_once_reports_counts() -> None:
    sweeper = Sweeper(FakeTarget(), interval_seconds=1)
    assert sweeper.run_once() == SweepReport(expired=2, reconciled=1)


def test_run_once_propagates_errors() -> None:
    sweeper = Sweeper(FakeTarget(fail_first=True), interval_seconds=1)
    with pytest.raises(RuntimeError):
        sweeper.run_once()


def test_background_loop_survives_failed_cycle(caplog) -> None:
    target = FakeTarget(fail_first=True)
    sweeper = Sweeper(target, interval_seconds=0.01)

    with sweeper:
        assert sweeper.is_running()
        assert target.swept.wait(timeout=5)
    assert not sweeper.is_running()
    assert target.calls >= 2
    assert "sweep cycle failed" in caplog.text


def test_start_twice_is_harmless() -> None:
    sweeper = Sweeper(FakeTarget(), interval_seconds=60)
    sweeper.start()
    try:
        sweeper.start()
        assert sweeper.is_running()
    finally:
        sweeper.stop()
    assert not sweeper.is_running()


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Sweeper(FakeTarget(), interval_seconds=0)
