"""Audit logger interface."""

from __future__ import annotations

from typing import Protocol

from ..types import AuditEntry


class AuditLogger(Protocol):
    """Protocol for operational audit sinks."""

    def log(self, entry: AuditEntry) -> None:
        """Persist one entry. May raise ``AuditLogError``."""
        ...


class NullAuditLogger:
    """Discards every entry."""

    def log(self, entry: AuditEntry) -> None:
        return None
