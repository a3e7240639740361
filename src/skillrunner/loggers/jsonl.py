"""JSONL audit logger."""

from __future__ import annotations

import threading
from pathlib import Path

from ..errors import AuditLogError
from ..types import AuditEntry


class JsonlAuditLogger:
    """Append-only JSONL audit logger. Safe to share between threads."""

    def __init__(self, path: str | Path = "skillrunner_audit.jsonl") -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def log(self, entry: AuditEntry) -> None:
        """Append an audit entry to the JSONL file."""
        line = entry.to_json_line() + "\n"
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line)
        except OSError as e:
            raise AuditLogError(f"Failed to write audit log: {e.strerror or e}") from e
