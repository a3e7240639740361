"""SQLite persistence for approval requests.

Design notes:
- every pending request has an expiry, capped at ``max_window_seconds``
- at most one pending request per execution (partial unique index)
- resolution is a conditional ``UPDATE ... WHERE status = 'pending'``; losing
  that race raises ``NotPending`` so a request is resolved exactly once
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .config import (
    DEFAULT_APPROVAL_WINDOW_SECONDS,
    MAX_APPROVAL_WINDOW_SECONDS,
    cap_expires_at,
    validate_nonempty_str,
)
from .db import Database, format_timestamp, utcnow
from .errors import ApprovalNotFound, NotPending
from .types import ApprovalRequest, ApprovalStatus


@dataclass
class ApprovalStore:
    db: Database
    default_window_seconds: int = field(default=DEFAULT_APPROVAL_WINDOW_SECONDS)
    max_window_seconds: int = field(default=MAX_APPROVAL_WINDOW_SECONDS)
    now: Callable[[], datetime] = field(default=utcnow)

    def __post_init__(self) -> None:
        if self.default_window_seconds <= 0:
            raise ValueError("default_window_seconds must be positive")
        if self.max_window_seconds < self.default_window_seconds:
            raise ValueError("max_window_seconds must be >= default_window_seconds")

    def create_pending(
        self,
        *,
        execution_id: str,
        tenant_id: str,
        requester_id: str,
        scope: str,
        expires_at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ApprovalRequest:
        """Open a pending request. ``expires_at`` defaults to now + the configured window."""
        validate_nonempty_str("execution_id", execution_id)
        validate_nonempty_str("tenant_id", tenant_id)
        validate_nonempty_str("requester_id", requester_id)
        validate_nonempty_str("scope", scope)

        now = self.now()
        expires_at = cap_expires_at(
            expires_at=expires_at,
            now=now,
            default_window_seconds=self.default_window_seconds,
            max_window_seconds=self.max_window_seconds,
        )
        approval_id = str(uuid.uuid4())
        with self.db.transaction(conn) as tx:
            try:
                tx.execute(
                    """
                    INSERT INTO approval_requests
                    (id, execution_id, tenant_id, requester_id, scope, status, approver_id,
                     rejection_reason, expires_at, created_at, resolved_at)
                    VALUES (?, ?, ?, ?, ?, 'pending', NULL, NULL, ?, ?, NULL)
                    """,
                    (
                        approval_id,
                        execution_id,
                        tenant_id,
                        requester_id,
                        scope,
                        format_timestamp(expires_at),
                        format_timestamp(now),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(
                    f"execution {execution_id} already has a pending approval request"
                ) from exc
            return self._fetch(tx, approval_id)

    def get(self, approval_id: str, *, conn: sqlite3.Connection | None = None) -> ApprovalRequest:
        validate_nonempty_str("approval_id", approval_id)
        if conn is not None:
            return self._fetch(conn, approval_id)
        with self.db.connect() as own:
            return self._fetch(own, approval_id)

    def pending_for_execution(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> ApprovalRequest | None:
        sql = "SELECT * FROM approval_requests WHERE execution_id = ? AND status = 'pending'"
        if conn is not None:
            row = conn.execute(sql, (execution_id,)).fetchone()
        else:
            with self.db.connect() as own:
                row = own.execute(sql, (execution_id,)).fetchone()
        return ApprovalRequest.from_row(row) if row is not None else None

    def list_requests(
        self,
        *,
        status: ApprovalStatus | None = ApprovalStatus.PENDING,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[ApprovalRequest]:
        clauses: list[str] = []
        params: list[object] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM approval_requests {where} ORDER BY created_at, id LIMIT ?",
                params,
            ).fetchall()
        return [ApprovalRequest.from_row(row) for row in rows]

    def mark(
        self,
        approval_id: str,
        *,
        status: ApprovalStatus,
        approver_id: str | None,
        reason: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ApprovalRequest:
        """Resolve a pending request. Raises ``NotPending`` if it was already resolved."""
        if status is ApprovalStatus.PENDING:
            raise ValueError("cannot mark a request as pending")
        with self.db.transaction(conn) as tx:
            cursor = tx.execute(
                """
                UPDATE approval_requests
                SET status = ?, approver_id = ?, rejection_reason = ?, resolved_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (status.value, approver_id, reason, format_timestamp(self.now()), approval_id),
            )
            current = self._fetch(tx, approval_id)
            if cursor.rowcount == 0:
                raise NotPending(
                    f"approval {approval_id} is {current.status.value}, not pending"
                )
            return current

    def overdue(
        self, *, conn: sqlite3.Connection | None = None, limit: int = 500
    ) -> list[ApprovalRequest]:
        """Pending requests whose ``expires_at`` has passed."""
        sql = """
            SELECT * FROM approval_requests
            WHERE status = 'pending' AND expires_at < ?
            ORDER BY expires_at, id
            LIMIT ?
        """
        params = (format_timestamp(self.now()), limit)
        if conn is not None:
            rows = conn.execute(sql, params).fetchall()
        else:
            with self.db.connect() as own:
                rows = own.execute(sql, params).fetchall()
        return [ApprovalRequest.from_row(row) for row in rows]

    @staticmethod
    def _fetch(conn: sqlite3.Connection, approval_id: str) -> ApprovalRequest:
        row = conn.execute("SELECT * FROM approval_requests WHERE id = ?", (approval_id,)).fetchone()
        if row is None:
            raise ApprovalNotFound(f"approval not found: {approval_id}")
        return ApprovalRequest.from_row(row)
