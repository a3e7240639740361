from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from skillrunner.config import RunnerConfig, cap_expires_at

NOW = datetime(2026, 1, 25, 12, 0, 0, tzinfo=timezone.utc)


def test_defaults() -> None:
    config = RunnerConfig()
    assert config.approval_window_seconds == 86400
    assert config.max_approval_window_seconds == 7 * 86400
    assert config.retry_backoff_multiplier == 1.0
    assert config.audit_log_path is None


def test_from_env_reads_prefixed_variables() -> None:
    config = RunnerConfig.from_env(
        {
            "SKILLRUNNER_DB_PATH": "/var/lib/skillrunner/runner.sqlite",
            "SKILLRUNNER_APPROVAL_WINDOW_SECONDS": "600",
            "SKILLRUNNER_RETRY_BACKOFF_MULTIPLIER": "2",
            "SKILLRUNNER_AUDIT_LOG_PATH": "audit.jsonl",
            "SKILLRUNNER_LEAK_GRACE_SECONDS": " ",
            "UNRELATED": "x",
        }
    )

    assert config.database_path == Path("/var/lib/skillrunner/runner.sqlite")
    assert config.approval_window_seconds == 600
    assert config.retry_backoff_multiplier == 2.0
    assert config.audit_log_path == Path("audit.jsonl")
    assert config.leak_grace_seconds == 60


def test_database_path_beats_legacy_alias() -> None:
    config = RunnerConfig.from_env(
        {"SKILLRUNNER_DATABASE_PATH": "a.sqlite", "SKILLRUNNER_DB_PATH": "b.sqlite"}
    )
    assert config.database_path == Path("a.sqlite")


def test_from_env_rejects_bad_values() -> None:
    with pytest.raises(ValueError, match="SKILLRUNNER_CONTENTION_RETRIES must be an integer"):
        RunnerConfig.from_env({"SKILLRUNNER_CONTENTION_RETRIES": "many"})
    with pytest.raises(ValueError, match="must be a number"):
        RunnerConfig.from_env({"SKILLRUNNER_SWEEP_INTERVAL_SECONDS": "soon"})
    with pytest.raises(ValueError, match="retry_backoff_multiplier"):
        RunnerConfig.from_env({"SKILLRUNNER_RETRY_BACKOFF_MULTIPLIER": "0.5"})


def test_window_validation() -> None:
    with pytest.raises(ValueError):
        RunnerConfig(approval_window_seconds=0)
    with pytest.raises(ValueError):
        RunnerConfig(approval_window_seconds=100, max_approval_window_seconds=50)


def test_cap_expires_at() -> None:
    assert cap_expires_at(expires_at=None, now=NOW, default_window_seconds=60) == NOW + timedelta(
        seconds=60
    )
    far = NOW + timedelta(days=30)
    assert cap_expires_at(expires_at=far, now=NOW, max_window_seconds=3600) == NOW + timedelta(hours=1)
    near = NOW + timedelta(minutes=5)
    assert cap_expires_at(expires_at=near, now=NOW) == near
