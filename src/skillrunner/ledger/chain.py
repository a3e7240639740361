"""Hash chaining for the append-only audit tables.

Both ``execution_state_logs`` and ``budget_transactions`` are sealed the same
way: each row stores ``prev_entry_hash`` (the previous row's hash in the same
table, ``None`` for the first row) and ``entry_hash``, the SHA-256 of the
canonical JSON of the row payload with ``prev_entry_hash`` set and
``entry_hash`` nulled. Rows are sealed inside the writer's ``BEGIN IMMEDIATE``
transaction, so reading the last hash and inserting the new row is atomic.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .errors import LedgerVerificationError, LedgerWriteError
from .jcs import CanonicalizationError, sha256_hex
from .signing import Ed25519PrivateKey, Ed25519PublicKey, sign_entry_hash, verify_entry_hash

STATE_LOG_TABLE = "execution_state_logs"
BUDGET_TRANSACTION_TABLE = "budget_transactions"


def state_log_payload(row: Mapping[str, Any]) -> dict[str, Any]:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return {
        "execution_id": row["execution_id"],
        "from_state": row["from_state"],
        "to_state": row["to_state"],
        "actor_id": row["actor_id"],
        "metadata": metadata,
        "created_at": row["created_at"],
    }


def budget_transaction_payload(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "budget_id": row["budget_id"],
        "execution_id": row["execution_id"],
        "reservation_id": row["reservation_id"],
        "transaction_type": row["transaction_type"],
        "amount": str(row["amount"]),
        "reserved_delta": str(row["reserved_delta"]),
        "used_delta": str(row["used_delta"]),
        "description": row["description"],
        "created_at": row["created_at"],
    }


PAYLOAD_BUILDERS: dict[str, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    STATE_LOG_TABLE: state_log_payload,
    BUDGET_TRANSACTION_TABLE: budget_transaction_payload,
}


def compute_entry_hash(payload: Mapping[str, Any], prev_hash: str | None) -> str:
    """This is the single source of truth for chain hashing."""
    candidate = dict(payload)
    candidate["prev_entry_hash"] = prev_hash
    candidate["entry_hash"] = None
    return sha256_hex(candidate)


@dataclass(frozen=True, slots=True)
class Seal:
    prev_entry_hash: str | None
    entry_hash: str
    entry_signature: str | None


@dataclass(frozen=True)
class ChainSealer:
    """Seals new rows onto a table's chain, optionally signing each hash."""

    signing_key: Ed25519PrivateKey | None = None

    def seal(self, conn: sqlite3.Connection, table: str, payload: Mapping[str, Any]) -> Seal:
        if table not in PAYLOAD_BUILDERS:
            raise LedgerWriteError(f"table {table!r} is not chained")
        row = conn.execute(f"SELECT entry_hash FROM {table} ORDER BY id DESC LIMIT 1").fetchone()
        prev_hash = row[0] if row is not None else None
        try:
            entry_hash = compute_entry_hash(payload, prev_hash)
        except CanonicalizationError as exc:
            raise LedgerWriteError(str(exc)) from exc
        signature = None
        if self.signing_key is not None:
            signature = sign_entry_hash(self.signing_key, entry_hash)
        return Seal(prev_entry_hash=prev_hash, entry_hash=entry_hash, entry_signature=signature)


def verify_rows(
    rows: Iterable[Mapping[str, Any]],
    payload_builder: Callable[[Mapping[str, Any]], dict[str, Any]],
    *,
    public_key: Ed25519PublicKey | None = None,
    label: str = "row",
) -> int:
    """Verify a chain of rows in insertion order. Returns the number of rows checked."""
    expected_prev: str | None = None
    count = 0
    for row in rows:
        count += 1
        row_id = row["id"]
        prev_hash = row["prev_entry_hash"]
        if prev_hash != expected_prev:
            raise LedgerVerificationError(f"prev_entry_hash mismatch at {label} {row_id}")
        try:
            calculated = compute_entry_hash(payload_builder(row), prev_hash)
        except (CanonicalizationError, json.JSONDecodeError) as exc:
            raise LedgerVerificationError(f"{label} {row_id} cannot be canonicalized: {exc}") from exc
        actual = row["entry_hash"]
        if not isinstance(actual, str) or calculated != actual:
            raise LedgerVerificationError(f"entry_hash mismatch at {label} {row_id}")
        if public_key is not None:
            signature = row["entry_signature"]
            if not isinstance(signature, str):
                raise LedgerVerificationError(f"entry_signature missing at {label} {row_id}")
            if not verify_entry_hash(public_key, actual, signature):
                raise LedgerVerificationError(f"entry_signature invalid at {label} {row_id}")
        expected_prev = actual
    return count


def verify_table(
    conn: sqlite3.Connection, table: str, *, public_key: Ed25519PublicKey | None = None
) -> int:
    """Verify one chained table end to end, failing on any edit, gap or reordering."""
    builder = PAYLOAD_BUILDERS.get(table)
    if builder is None:
        raise LedgerVerificationError(f"table {table!r} is not chained")
    conn.row_factory = sqlite3.Row
    rows = conn.execute(f"SELECT * FROM {table} ORDER BY id ASC")
    return verify_rows(rows, builder, public_key=public_key, label=table)
