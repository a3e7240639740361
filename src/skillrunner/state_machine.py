"""Execution state machine.

The transition table below is the only place legal moves are defined. Every
transition is one ``BEGIN IMMEDIATE`` unit that checks the expected source
state, updates the execution row with ``WHERE state = ?`` and appends one
hash-chained row to ``execution_state_logs``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Mapping

from .db import Database, decimal_text, format_timestamp, utcnow
from .errors import ActorRequired, ExecutionNotFound, InvalidTransition, StaleState
from .ledger import STATE_LOG_TABLE
from .redaction import sanitize_value
from .types import Execution, ExecutionState, StateLogEntry

_logger = logging.getLogger(__name__)

S = ExecutionState

TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    S.CREATED: frozenset({S.PENDING_APPROVAL, S.RUNNING, S.FAILED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.FAILED}),
    S.APPROVED: frozenset({S.RUNNING, S.FAILED}),
    S.RUNNING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset(),
    S.FAILED: frozenset(),
}

# Transitions that must name the human who made them.
ACTOR_REQUIRED: frozenset[tuple[ExecutionState, ExecutionState]] = frozenset(
    {(S.PENDING_APPROVAL, S.APPROVED)}
)

_UPDATABLE_COLUMNS = frozenset(
    {
        "approval_chain",
        "result_status",
        "result_summary",
        "error_code",
        "error_message",
    }
)


def can_transition(from_state: ExecutionState, to_state: ExecutionState) -> bool:
    return to_state in TRANSITIONS[from_state]


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return decimal_text(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class StateMachine:
    """Authoritative lifecycle controller for executions."""

    def __init__(self, db: Database, *, now: Callable[[], datetime] | None = None) -> None:
        self._db = db
        self._now = now or utcnow

    def get(self, execution_id: str, *, conn: sqlite3.Connection | None = None) -> Execution:
        if conn is not None:
            return self._fetch(conn, execution_id)
        with self._db.connect() as own:
            return self._fetch(own, execution_id)

    def transition(
        self,
        execution_id: str,
        *,
        expected: ExecutionState,
        to: ExecutionState,
        actor_id: str | None,
        metadata: Mapping[str, Any] | None = None,
        updates: Mapping[str, Any] | None = None,
        actor_required: bool = False,
        conn: sqlite3.Connection | None = None,
    ) -> Execution:
        """Move ``execution_id`` from ``expected`` to ``to``.

        Raises:
            ExecutionNotFound: no such execution
            InvalidTransition: the table forbids the move, the execution is terminal,
                or a guard fails (no live reservation for RUNNING, approval skipped)
            StaleState: the execution is no longer in ``expected``
            ActorRequired: the move needs a human actor and none was given
        """
        if not can_transition(expected, to):
            raise InvalidTransition(f"{expected.value} -> {to.value} is not a valid transition")
        if (actor_required or (expected, to) in ACTOR_REQUIRED) and not (
            actor_id and actor_id.strip()
        ):
            raise ActorRequired(f"{expected.value} -> {to.value} requires an actor")
        extra = dict(updates or {})
        unknown = set(extra) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"columns not updatable through a transition: {sorted(unknown)}")

        with self._db.transaction(conn) as tx:
            current = self._fetch(tx, execution_id)
            if current.state.is_terminal:
                raise InvalidTransition(
                    f"execution {execution_id} is terminal ({current.state.value})"
                )
            if current.state is not expected:
                raise StaleState(
                    f"execution {execution_id} is {current.state.value}, expected {expected.value}"
                )
            self._check_guards(tx, current, to)

            now = self._now()
            stamp = format_timestamp(now)
            columns: dict[str, Any] = {
                "state": to.value,
                "previous_state": expected.value,
                "state_changed_at": stamp,
                "state_changed_by": actor_id,
            }
            if to is S.RUNNING:
                columns["started_at"] = stamp
            if to.is_terminal:
                columns["completed_at"] = stamp
            for name, value in extra.items():
                columns[name] = _column_value(value)

            assignments = ", ".join(f"{name} = ?" for name in columns)
            cursor = tx.execute(
                f"UPDATE executions SET {assignments} WHERE id = ? AND state = ?",
                (*columns.values(), execution_id, expected.value),
            )
            if cursor.rowcount == 0:
                raise StaleState(f"execution {execution_id} changed concurrently")
            self.append_log(
                tx,
                execution_id=execution_id,
                from_state=expected,
                to_state=to,
                actor_id=actor_id,
                metadata=metadata,
                created_at=now,
            )
            updated = self._fetch(tx, execution_id)
        _logger.debug("execution %s: %s -> %s", execution_id, expected.value, to.value)
        return updated

    def append_log(
        self,
        conn: sqlite3.Connection,
        *,
        execution_id: str,
        from_state: ExecutionState | None,
        to_state: ExecutionState,
        actor_id: str | None,
        metadata: Mapping[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """Append one sealed state-log row. Must run inside the caller's transaction."""
        safe_metadata = sanitize_value(None, dict(metadata or {}))
        row = {
            "execution_id": execution_id,
            "from_state": from_state.value if from_state is not None else None,
            "to_state": to_state.value,
            "actor_id": actor_id,
            "metadata": safe_metadata,
            "created_at": format_timestamp(created_at or self._now()),
        }
        seal = self._db.seal(conn, STATE_LOG_TABLE, row)
        conn.execute(
            """
            INSERT INTO execution_state_logs
            (execution_id, from_state, to_state, actor_id, metadata, created_at,
             prev_entry_hash, entry_hash, entry_signature)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row["execution_id"],
                row["from_state"],
                row["to_state"],
                row["actor_id"],
                json.dumps(safe_metadata),
                row["created_at"],
                seal.prev_entry_hash,
                seal.entry_hash,
                seal.entry_signature,
            ),
        )

    def history(self, execution_id: str) -> list[StateLogEntry]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_state_logs WHERE execution_id = ? ORDER BY id ASC",
                (execution_id,),
            ).fetchall()
        return [StateLogEntry.from_row(row) for row in rows]

    def _check_guards(
        self, conn: sqlite3.Connection, current: Execution, to: ExecutionState
    ) -> None:
        if to is not S.RUNNING:
            return
        if current.state is S.CREATED and current.requires_approval:
            raise InvalidTransition(
                f"execution {current.id} requires approval and cannot start from CREATED"
            )
        live = conn.execute(
            "SELECT 1 FROM budget_reservations WHERE execution_id = ? AND status = 'reserved'",
            (current.id,),
        ).fetchone()
        if live is None:
            raise InvalidTransition(
                f"execution {current.id} has no live budget reservation; cannot enter RUNNING"
            )

    @staticmethod
    def _fetch(conn: sqlite3.Connection, execution_id: str) -> Execution:
        row = conn.execute("SELECT * FROM executions WHERE id = ?", (execution_id,)).fetchone()
        if row is None:
            raise ExecutionNotFound(f"execution not found: {execution_id}")
        return Execution.from_row(row)
