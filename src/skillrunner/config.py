"""Runtime configuration and shared window helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Mapping

DEFAULT_APPROVAL_WINDOW_SECONDS: int = 86400  # 24 hours
MAX_APPROVAL_WINDOW_SECONDS: int = 7 * 86400  # hard cap, nothing stays pending longer
DEFAULT_CONTENTION_RETRIES: int = 5
DEFAULT_CONTENTION_BACKOFF_SECONDS: float = 0.05
DEFAULT_LEAK_GRACE_SECONDS: int = 60
DEFAULT_SWEEP_INTERVAL_SECONDS: float = 30.0

ENV_PREFIX = "SKILLRUNNER_"


def validate_nonempty_str(name: str, value: str | None) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")


def cap_expires_at(
    *,
    expires_at: datetime | None,
    now: datetime | None = None,
    default_window_seconds: int = DEFAULT_APPROVAL_WINDOW_SECONDS,
    max_window_seconds: int = MAX_APPROVAL_WINDOW_SECONDS,
) -> datetime:
    """Return a capped expiration time using defaults and hard limits."""
    now = now or datetime.now(timezone.utc)
    max_expiry = now + timedelta(seconds=max_window_seconds)

    if expires_at is None:
        expires_at = now + timedelta(seconds=default_window_seconds)
    elif expires_at > max_expiry:
        expires_at = max_expiry

    return expires_at


@dataclass(frozen=True)
class RunnerConfig:
    """Knobs for the orchestrator, its ledger and the background sweep.

    ``retry_backoff_multiplier`` scales the delay between handler attempts:
    attempt ``n`` (1-based) waits ``retry_delay_seconds * multiplier ** (n - 1)``.
    A multiplier of 1.0 keeps the skill's fixed delay.
    """

    database_path: Path = Path("skillrunner.sqlite")
    approval_window_seconds: int = DEFAULT_APPROVAL_WINDOW_SECONDS
    max_approval_window_seconds: int = MAX_APPROVAL_WINDOW_SECONDS
    contention_retries: int = DEFAULT_CONTENTION_RETRIES
    contention_backoff_seconds: float = DEFAULT_CONTENTION_BACKOFF_SECONDS
    retry_backoff_multiplier: float = 1.0
    leak_grace_seconds: int = DEFAULT_LEAK_GRACE_SECONDS
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    audit_log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.approval_window_seconds <= 0:
            raise ValueError("approval_window_seconds must be positive")
        if self.max_approval_window_seconds < self.approval_window_seconds:
            raise ValueError("max_approval_window_seconds must be >= approval_window_seconds")
        if self.contention_retries < 0:
            raise ValueError("contention_retries must be non-negative")
        if self.contention_backoff_seconds < 0:
            raise ValueError("contention_backoff_seconds must be non-negative")
        if self.retry_backoff_multiplier < 1.0:
            raise ValueError("retry_backoff_multiplier must be >= 1.0")
        if self.leak_grace_seconds < 0:
            raise ValueError("leak_grace_seconds must be non-negative")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RunnerConfig":
        """Build a config from ``SKILLRUNNER_*`` variables, falling back to defaults."""
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None and f.name == "database_path":
                raw = environ.get(ENV_PREFIX + "DB_PATH")
            if raw is None or not raw.strip():
                continue
            values[f.name] = _coerce(f.name, raw.strip())
        return cls(**values)  # type: ignore[arg-type]


def _coerce(name: str, raw: str) -> object:
    if name in ("database_path", "audit_log_path"):
        return Path(raw)
    if name in ("contention_backoff_seconds", "retry_backoff_multiplier", "sweep_interval_seconds"):
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a number") from exc
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name.upper()} must be an integer") from exc
