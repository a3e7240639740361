"""SQLite persistence for executions, budgets, approvals and their audit logs.

Design notes:
- WAL mode is set exactly once per database file (thread-safe)
- every write goes through ``transaction()``, which opens ``BEGIN IMMEDIATE``
  so the write lock is taken before any read-modify-write
- components accept an optional open connection so several of them can share
  one transaction (admission inserts, reserves and logs atomically)
- money is stored as TEXT and handled as ``Decimal`` in Python
- the two audit tables are append-only; triggers reject UPDATE and DELETE
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .ledger import ChainSealer, Seal

_logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_BUSY_TIMEOUT_SECONDS: float = 5.0

_WAL_INITIALIZED: dict[Path, bool] = {}
_WAL_LOCK = threading.Lock()

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        skill_key TEXT NOT NULL,
        skill_version TEXT NOT NULL,
        skill_id TEXT NOT NULL,
        skill_version_id TEXT NOT NULL,
        executor_type TEXT NOT NULL,
        executor_id TEXT NOT NULL,
        legal_responsible_user_id TEXT NOT NULL,
        responsibility_level INTEGER NOT NULL,
        approval_chain TEXT NOT NULL DEFAULT '[]',
        requires_approval INTEGER NOT NULL DEFAULT 0,
        input TEXT NOT NULL DEFAULT '{}',
        state TEXT NOT NULL,
        previous_state TEXT,
        state_changed_at TEXT NOT NULL,
        state_changed_by TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        budget_reserved_amount TEXT NOT NULL DEFAULT '0',
        budget_consumed_amount TEXT NOT NULL DEFAULT '0',
        budget_released INTEGER NOT NULL DEFAULT 0,
        result_status TEXT,
        result_summary TEXT,
        error_code TEXT,
        error_message TEXT,
        trace_id TEXT NOT NULL,
        parent_execution_id TEXT,
        timeout_seconds INTEGER NOT NULL,
        lease_seconds INTEGER NOT NULL,
        UNIQUE (tenant_id, idempotency_key)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_executions_state
    ON executions (state, state_changed_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        scope_type TEXT NOT NULL CHECK (scope_type IN ('tenant', 'skill', 'user')),
        scope_id TEXT,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        limit_amount TEXT NOT NULL,
        used_amount TEXT NOT NULL DEFAULT '0',
        reserved_amount TEXT NOT NULL DEFAULT '0',
        is_hard_limit INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_budgets_scope
    ON budgets (tenant_id, scope_type, scope_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_reservations (
        id TEXT PRIMARY KEY,
        budget_id TEXT NOT NULL REFERENCES budgets (id),
        execution_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        actual_amount TEXT,
        status TEXT NOT NULL CHECK (status IN ('reserved', 'consumed', 'released')),
        created_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    # At most one live reservation per execution.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_live
    ON budget_reservations (execution_id)
    WHERE status = 'reserved'
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        budget_id TEXT NOT NULL REFERENCES budgets (id),
        execution_id TEXT,
        reservation_id TEXT,
        transaction_type TEXT NOT NULL
            CHECK (transaction_type IN ('reserve', 'consume', 'release', 'adjust')),
        amount TEXT NOT NULL,
        reserved_delta TEXT NOT NULL,
        used_delta TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        prev_entry_hash TEXT,
        entry_hash TEXT NOT NULL,
        entry_signature TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_budget_transactions_budget
    ON budget_transactions (budget_id, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_requests (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        requester_id TEXT NOT NULL,
        scope TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'approved', 'rejected', 'expired')),
        approver_id TEXT,
        rejection_reason TEXT,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    # At most one pending approval per execution.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_approvals_one_pending
    ON approval_requests (execution_id)
    WHERE status = 'pending'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_approvals_pending_expires
    ON approval_requests (status, expires_at)
    WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_state_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        actor_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        prev_entry_hash TEXT,
        entry_hash TEXT NOT NULL,
        entry_signature TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_state_logs_execution
    ON execution_state_logs (execution_id, id)
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_state_logs_no_update
    BEFORE UPDATE ON execution_state_logs
    BEGIN SELECT RAISE(ABORT, 'execution_state_logs is append-only'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_state_logs_no_delete
    BEFORE DELETE ON execution_state_logs
    BEGIN SELECT RAISE(ABORT, 'execution_state_logs is append-only'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_budget_transactions_no_update
    BEFORE UPDATE ON budget_transactions
    BEGIN SELECT RAISE(ABORT, 'budget_transactions is append-only'); END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_budget_transactions_no_delete
    BEFORE DELETE ON budget_transactions
    BEGIN SELECT RAISE(ABORT, 'budget_transactions is append-only'); END
    """,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format datetime as ISO 8601 UTC with microseconds and Z suffix.

    The fixed width keeps stored timestamps comparable as text in SQL.
    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def decimal_text(value: Decimal) -> str:
    return format(value, "f")


def is_lock_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _ensure_wal_mode(path: Path) -> None:
    """Ensure WAL mode is set exactly once per database file. Thread-safe."""
    with _WAL_LOCK:
        if path in _WAL_INITIALIZED:
            return
        conn = sqlite3.connect(path)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            _WAL_INITIALIZED[path] = True
        finally:
            conn.close()


class Database:
    """Connection factory and transaction boundary for one SQLite file."""

    def __init__(
        self,
        path: str | Path,
        *,
        sealer: ChainSealer | None = None,
        busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.sealer = sealer or ChainSealer()
        self.busy_timeout_seconds = busy_timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _ensure_wal_mode(self.path.resolve())
        self.init_schema()

    def init_schema(self) -> None:
        with self.transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection with ``sqlite3.Row`` rows. Always closes."""
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection | None = None) -> Iterator[sqlite3.Connection]:
        """Run the block in one ``BEGIN IMMEDIATE`` transaction.

        When ``conn`` is given the block joins the caller's transaction and
        commit/rollback is left to the caller.
        """
        if conn is not None:
            yield conn
            return
        with self.connect() as own:
            own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                if own.in_transaction:
                    own.execute("ROLLBACK")
                raise
            else:
                own.execute("COMMIT")

    def seal(self, conn: sqlite3.Connection, table: str, payload: dict[str, Any]) -> Seal:
        return self.sealer.seal(conn, table, payload)

    def retry_locked(
        self,
        func: Callable[[], R],
        *,
        retries: int,
        backoff_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> R:
        """Call ``func``, retrying a bounded number of times on lock contention."""
        attempt = 0
        while True:
            try:
                return func()
            except sqlite3.OperationalError as exc:
                if not is_lock_error(exc) or attempt >= retries:
                    raise
                attempt += 1
                _logger.debug("database locked, retry %d/%d: %s", attempt, retries, exc)
                sleep(backoff_seconds * attempt)
