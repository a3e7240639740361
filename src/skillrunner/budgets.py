"""Budget reservation ledger.

The ``budgets`` row and its ``reserved_amount``/``used_amount`` counters are
shared by every concurrent execution in a scope. They are only ever changed
here, inside one ``BEGIN IMMEDIATE`` transaction per operation, and every
change is mirrored by an append-only, hash-chained ``budget_transactions``
row from which the counters can be rebuilt.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, TypeVar

from .db import Database, decimal_text, format_timestamp, is_lock_error, utcnow
from .ledger import BUDGET_TRANSACTION_TABLE
from .types import (
    Budget,
    BudgetReservation,
    BudgetScope,
    BudgetTransaction,
    ReservationStatus,
    ScopeType,
    TransactionType,
    quantize_amount,
)

_logger = logging.getLogger(__name__)

R = TypeVar("R")

ZERO = Decimal("0")


class BudgetError(RuntimeError):
    """Base class for budget errors."""

    code = "BUDGET_ERROR"


class BudgetExceeded(BudgetError):
    """Raised when a hard limit would be exceeded."""

    code = "BUDGET_EXCEEDED"


class NoBudgetConfigured(BudgetError):
    """Raised when no active budget resolves for the scope chain."""

    code = "NO_BUDGET"


class BudgetStateError(BudgetError):
    """Raised when budget state is invalid or missing."""

    code = "BUDGET_STATE_ERROR"


class ReservationNotFound(BudgetStateError):
    code = "RESERVATION_NOT_FOUND"


class InvalidReservation(BudgetStateError):
    """Raised when a reservation is not in a state that allows the operation."""

    code = "INVALID_RESERVATION"


class OverconsumptionError(BudgetError):
    """Raised when consumption exceeds the reserved amount. Never clamped."""

    code = "OVERCONSUMPTION"


class BudgetContention(BudgetError):
    """Raised when the ledger stays locked after all retries."""

    code = "BUDGET_CONTENTION"


_SCOPE_ORDER = (ScopeType.USER, ScopeType.SKILL, ScopeType.TENANT)


class BudgetLedger:
    """Atomic reserve / top-up / consume / release against scoped budgets."""

    def __init__(
        self,
        db: Database,
        *,
        now: Callable[[], datetime] | None = None,
        contention_retries: int = 5,
        contention_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if contention_retries < 0:
            raise ValueError("contention_retries must be non-negative")
        self._db = db
        self._now = now or utcnow
        self._retries = contention_retries
        self._backoff = contention_backoff_seconds
        self._sleep = sleep

    # ----- budgets -----

    def create_budget(
        self,
        *,
        tenant_id: str,
        limit_amount: Decimal | int | str,
        period_start: datetime,
        period_end: datetime,
        scope_type: ScopeType = ScopeType.TENANT,
        scope_id: str | None = None,
        is_hard_limit: bool = True,
        is_active: bool = True,
    ) -> Budget:
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenant_id must be a non-empty string")
        if scope_type is ScopeType.TENANT and scope_id is not None:
            raise ValueError("tenant budgets do not take a scope_id")
        if scope_type is not ScopeType.TENANT and not scope_id:
            raise ValueError(f"{scope_type.value} budgets require a scope_id")
        limit = quantize_amount(limit_amount)
        if limit < 0:
            raise ValueError("limit_amount must be non-negative")
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        budget_id = str(uuid.uuid4())
        stamp = format_timestamp(self._now())

        def op(conn: sqlite3.Connection) -> Budget:
            conn.execute(
                """
                INSERT INTO budgets
                (id, tenant_id, scope_type, scope_id, period_start, period_end, limit_amount,
                 used_amount, reserved_amount, is_hard_limit, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, '0', '0', ?, ?, ?, ?)
                """,
                (
                    budget_id,
                    tenant_id,
                    scope_type.value,
                    scope_id,
                    format_timestamp(period_start),
                    format_timestamp(period_end),
                    decimal_text(limit),
                    int(is_hard_limit),
                    int(is_active),
                    stamp,
                    stamp,
                ),
            )
            return self._budget(conn, budget_id)

        return self._atomic(op)

    def get_budget(self, budget_id: str) -> Budget:
        with self._db.connect() as conn:
            return self._budget(conn, budget_id)

    def resolve(self, scope: BudgetScope, *, conn: sqlite3.Connection | None = None) -> Budget:
        """Most specific active budget: user, then skill, then tenant."""
        if conn is not None:
            return self._resolve(conn, scope)
        with self._db.connect() as own:
            return self._resolve(own, scope)

    def budget_status(self, scope: BudgetScope) -> Budget:
        return self.resolve(scope)

    def set_limit(
        self, budget_id: str, new_limit: Decimal | int | str, *, description: str | None = None
    ) -> Budget:
        """Change a budget's limit and record the change as an ``adjust`` transaction."""
        limit = quantize_amount(new_limit)
        if limit < 0:
            raise ValueError("limit_amount must be non-negative")

        def op(conn: sqlite3.Connection) -> Budget:
            budget = self._budget(conn, budget_id)
            committed = budget.reserved_amount + budget.used_amount
            if budget.is_hard_limit and limit < committed:
                raise BudgetStateError(
                    f"limit {limit} is below committed amount {committed} for budget {budget_id}"
                )
            now = self._now()
            conn.execute(
                "UPDATE budgets SET limit_amount = ?, updated_at = ? WHERE id = ?",
                (decimal_text(limit), format_timestamp(now), budget_id),
            )
            self._record(
                conn,
                budget_id=budget_id,
                execution_id=None,
                reservation_id=None,
                transaction_type=TransactionType.ADJUST,
                amount=limit - budget.limit_amount,
                reserved_delta=ZERO,
                used_delta=ZERO,
                description=description or f"limit changed from {budget.limit_amount} to {limit}",
                now=now,
            )
            return self._budget(conn, budget_id)

        return self._atomic(op)

    # ----- reservations -----

    def reserve(
        self,
        scope: BudgetScope,
        execution_id: str,
        amount: Decimal | int | str,
        *,
        description: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BudgetReservation:
        """Reserve ``amount`` for ``execution_id`` against the resolved budget.

        Raises:
            NoBudgetConfigured: no active budget for the scope chain
            BudgetExceeded: a hard limit would be exceeded; counters are unchanged
            InvalidReservation: the execution already holds a live reservation
        """
        value = quantize_amount(amount)
        if value < 0:
            raise BudgetStateError("amount must be non-negative")

        def op(tx: sqlite3.Connection) -> BudgetReservation:
            budget = self._resolve(tx, scope)
            if self._live(tx, execution_id) is not None:
                raise InvalidReservation(
                    f"execution {execution_id} already holds a live reservation"
                )
            now = self._now()
            self._charge(tx, budget, value, execution_id=execution_id, now=now)

            reservation_id = str(uuid.uuid4())
            tx.execute(
                """
                INSERT INTO budget_reservations
                (id, budget_id, execution_id, amount, actual_amount, status, created_at, resolved_at)
                VALUES (?, ?, ?, ?, NULL, 'reserved', ?, NULL)
                """,
                (reservation_id, budget.id, execution_id, decimal_text(value), format_timestamp(now)),
            )
            self._record(
                tx,
                budget_id=budget.id,
                execution_id=execution_id,
                reservation_id=reservation_id,
                transaction_type=TransactionType.RESERVE,
                amount=value,
                reserved_delta=value,
                used_delta=ZERO,
                description=description,
                now=now,
            )
            self._mirror_on_execution(tx, execution_id, reserved_delta=value)
            return self._reservation(tx, reservation_id)

        return self._atomic(op, conn)

    def top_up(
        self,
        reservation_id: str,
        amount: Decimal | int | str,
        *,
        description: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BudgetReservation:
        """Grow a live reservation under the same limit check as ``reserve``."""
        value = quantize_amount(amount)
        if value <= 0:
            raise BudgetStateError("top-up amount must be positive")

        def op(tx: sqlite3.Connection) -> BudgetReservation:
            reservation = self._require_live(tx, reservation_id)
            budget = self._budget(tx, reservation.budget_id)
            now = self._now()
            self._charge(tx, budget, value, execution_id=reservation.execution_id, now=now)
            tx.execute(
                "UPDATE budget_reservations SET amount = ? WHERE id = ? AND status = 'reserved'",
                (decimal_text(reservation.amount + value), reservation_id),
            )
            self._record(
                tx,
                budget_id=budget.id,
                execution_id=reservation.execution_id,
                reservation_id=reservation_id,
                transaction_type=TransactionType.RESERVE,
                amount=value,
                reserved_delta=value,
                used_delta=ZERO,
                description=description or "top-up",
                now=now,
            )
            self._mirror_on_execution(tx, reservation.execution_id, reserved_delta=value)
            return self._reservation(tx, reservation_id)

        return self._atomic(op, conn)

    def consume(
        self,
        reservation_id: str,
        actual_amount: Decimal | int | str,
        *,
        description: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BudgetReservation:
        """Settle a live reservation at ``actual_amount`` (at most the reserved amount)."""
        actual = quantize_amount(actual_amount)
        if actual < 0:
            raise BudgetStateError("actual_amount must be non-negative")

        def op(tx: sqlite3.Connection) -> BudgetReservation:
            reservation = self._require_live(tx, reservation_id)
            if actual > reservation.amount:
                raise OverconsumptionError(
                    f"actual cost {actual} exceeds reservation {reservation.amount}; "
                    "top up the reservation before spending more"
                )
            budget = self._budget(tx, reservation.budget_id)
            now = self._now()
            self._set_counters(
                tx,
                budget,
                reserved=budget.reserved_amount - reservation.amount,
                used=budget.used_amount + actual,
                now=now,
            )
            self._settle(tx, reservation_id, ReservationStatus.CONSUMED, actual, now)
            self._record(
                tx,
                budget_id=budget.id,
                execution_id=reservation.execution_id,
                reservation_id=reservation_id,
                transaction_type=TransactionType.CONSUME,
                amount=actual,
                reserved_delta=-reservation.amount,
                used_delta=actual,
                description=description,
                now=now,
            )
            self._mirror_on_execution(
                tx,
                reservation.execution_id,
                consumed_delta=actual,
                released=actual < reservation.amount,
            )
            return self._reservation(tx, reservation_id)

        return self._atomic(op, conn)

    def release(
        self,
        reservation_id: str,
        *,
        description: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BudgetReservation:
        """Return a live reservation to the pool."""

        def op(tx: sqlite3.Connection) -> BudgetReservation:
            reservation = self._require_live(tx, reservation_id)
            budget = self._budget(tx, reservation.budget_id)
            now = self._now()
            self._set_counters(
                tx,
                budget,
                reserved=budget.reserved_amount - reservation.amount,
                used=budget.used_amount,
                now=now,
            )
            self._settle(tx, reservation_id, ReservationStatus.RELEASED, None, now)
            self._record(
                tx,
                budget_id=budget.id,
                execution_id=reservation.execution_id,
                reservation_id=reservation_id,
                transaction_type=TransactionType.RELEASE,
                amount=reservation.amount,
                reserved_delta=-reservation.amount,
                used_delta=ZERO,
                description=description,
                now=now,
            )
            self._mirror_on_execution(tx, reservation.execution_id, released=True)
            return self._reservation(tx, reservation_id)

        return self._atomic(op, conn)

    def release_for_execution(
        self,
        execution_id: str,
        *,
        description: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> BudgetReservation | None:
        """Release the execution's live reservation, if it holds one."""

        def op(tx: sqlite3.Connection) -> BudgetReservation | None:
            live = self._live(tx, execution_id)
            if live is None:
                return None
            return self.release(live.id, description=description, conn=tx)

        return self._atomic(op, conn)

    def live_reservation(
        self, execution_id: str, *, conn: sqlite3.Connection | None = None
    ) -> BudgetReservation | None:
        if conn is not None:
            return self._live(conn, execution_id)
        with self._db.connect() as own:
            return self._live(own, execution_id)

    def reservations(self, execution_id: str) -> list[BudgetReservation]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM budget_reservations WHERE execution_id = ? ORDER BY created_at, id",
                (execution_id,),
            ).fetchall()
        return [BudgetReservation.from_row(row) for row in rows]

    # ----- audit trail -----

    def transactions(self, budget_id: str) -> list[BudgetTransaction]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM budget_transactions WHERE budget_id = ? ORDER BY id ASC",
                (budget_id,),
            ).fetchall()
        return [BudgetTransaction.from_row(row) for row in rows]

    def reconstruct(self, budget_id: str) -> tuple[Decimal, Decimal]:
        """Rebuild ``(reserved_amount, used_amount)`` from the transaction log alone."""
        reserved = ZERO
        used = ZERO
        for txn in self.transactions(budget_id):
            reserved += txn.reserved_delta
            used += txn.used_delta
        return quantize_amount(reserved), quantize_amount(used)

    def verify_budget(self, budget_id: str) -> Budget:
        """Raise ``BudgetStateError`` when the counters disagree with the log."""
        budget = self.get_budget(budget_id)
        reserved, used = self.reconstruct(budget_id)
        if reserved != budget.reserved_amount or used != budget.used_amount:
            raise BudgetStateError(
                f"budget {budget_id} counters diverge from transactions: "
                f"reserved {budget.reserved_amount} != {reserved} or used {budget.used_amount} != {used}"
            )
        return budget

    # ----- internal helpers -----

    def _atomic(
        self, op: Callable[[sqlite3.Connection], R], conn: sqlite3.Connection | None = None
    ) -> R:
        if conn is not None:
            return op(conn)

        def attempt() -> R:
            with self._db.transaction() as tx:
                return op(tx)

        try:
            return self._db.retry_locked(
                attempt, retries=self._retries, backoff_seconds=self._backoff, sleep=self._sleep
            )
        except sqlite3.OperationalError as exc:
            if is_lock_error(exc):
                raise BudgetContention(
                    f"budget ledger still locked after {self._retries} retries"
                ) from exc
            raise BudgetStateError(f"budget storage error: {exc}") from exc
        except sqlite3.Error as exc:
            raise BudgetStateError(f"budget storage error: {exc}") from exc

    def _charge(
        self,
        conn: sqlite3.Connection,
        budget: Budget,
        amount: Decimal,
        *,
        execution_id: str,
        now: datetime,
    ) -> None:
        committed = budget.reserved_amount + budget.used_amount
        projected = committed + amount
        if projected > budget.limit_amount:
            if budget.is_hard_limit:
                raise BudgetExceeded(
                    f"budget {budget.id} exceeded: reserved {budget.reserved_amount} + used "
                    f"{budget.used_amount} + requested {amount} > limit {budget.limit_amount}"
                )
            overage = projected - max(committed, budget.limit_amount)
            _logger.warning(
                "soft budget %s exceeded by %s for execution %s", budget.id, overage, execution_id
            )
            self._record(
                conn,
                budget_id=budget.id,
                execution_id=execution_id,
                reservation_id=None,
                transaction_type=TransactionType.ADJUST,
                amount=overage,
                reserved_delta=ZERO,
                used_delta=ZERO,
                description=(
                    f"soft limit {budget.limit_amount} exceeded: projected {projected}"
                ),
                now=now,
            )
        self._set_counters(
            conn, budget, reserved=budget.reserved_amount + amount, used=budget.used_amount, now=now
        )

    @staticmethod
    def _set_counters(
        conn: sqlite3.Connection, budget: Budget, *, reserved: Decimal, used: Decimal, now: datetime
    ) -> None:
        if reserved < 0 or used < 0:
            raise BudgetStateError(f"budget {budget.id} counters would go negative")
        conn.execute(
            """
            UPDATE budgets SET reserved_amount = ?, used_amount = ?, updated_at = ?
            WHERE id = ?
            """,
            (decimal_text(reserved), decimal_text(used), format_timestamp(now), budget.id),
        )

    @staticmethod
    def _settle(
        conn: sqlite3.Connection,
        reservation_id: str,
        status: ReservationStatus,
        actual: Decimal | None,
        now: datetime,
    ) -> None:
        cursor = conn.execute(
            """
            UPDATE budget_reservations SET status = ?, actual_amount = ?, resolved_at = ?
            WHERE id = ? AND status = 'reserved'
            """,
            (
                status.value,
                decimal_text(actual) if actual is not None else None,
                format_timestamp(now),
                reservation_id,
            ),
        )
        if cursor.rowcount == 0:
            raise InvalidReservation(f"reservation {reservation_id} is no longer reserved")

    def _record(
        self,
        conn: sqlite3.Connection,
        *,
        budget_id: str,
        execution_id: str | None,
        reservation_id: str | None,
        transaction_type: TransactionType,
        amount: Decimal,
        reserved_delta: Decimal,
        used_delta: Decimal,
        description: str | None,
        now: datetime,
    ) -> None:
        row = {
            "budget_id": budget_id,
            "execution_id": execution_id,
            "reservation_id": reservation_id,
            "transaction_type": transaction_type.value,
            "amount": decimal_text(quantize_amount(amount)),
            "reserved_delta": decimal_text(quantize_amount(reserved_delta)),
            "used_delta": decimal_text(quantize_amount(used_delta)),
            "description": description,
            "created_at": format_timestamp(now),
        }
        seal = self._db.seal(conn, BUDGET_TRANSACTION_TABLE, row)
        conn.execute(
            """
            INSERT INTO budget_transactions
            (budget_id, execution_id, reservation_id, transaction_type, amount, reserved_delta,
             used_delta, description, created_at, prev_entry_hash, entry_hash, entry_signature)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (*row.values(), seal.prev_entry_hash, seal.entry_hash, seal.entry_signature),
        )

    @staticmethod
    def _mirror_on_execution(
        conn: sqlite3.Connection,
        execution_id: str,
        *,
        reserved_delta: Decimal = ZERO,
        consumed_delta: Decimal = ZERO,
        released: bool | None = None,
    ) -> None:
        row = conn.execute(
            "SELECT budget_reserved_amount, budget_consumed_amount FROM executions WHERE id = ?",
            (execution_id,),
        ).fetchone()
        if row is None:
            return
        conn.execute(
            """
            UPDATE executions
            SET budget_reserved_amount = ?, budget_consumed_amount = ?,
                budget_released = COALESCE(?, budget_released)
            WHERE id = ?
            """,
            (
                decimal_text(quantize_amount(Decimal(row[0]) + reserved_delta)),
                decimal_text(quantize_amount(Decimal(row[1]) + consumed_delta)),
                None if released is None else int(released),
                execution_id,
            ),
        )

    def _resolve(self, conn: sqlite3.Connection, scope: BudgetScope) -> Budget:
        stamp = format_timestamp(self._now())
        candidates = (
            (ScopeType.USER, scope.user_id),
            (ScopeType.SKILL, scope.skill_key),
            (ScopeType.TENANT, None),
        )
        for scope_type, scope_id in candidates:
            if scope_type is not ScopeType.TENANT and not scope_id:
                continue
            row = conn.execute(
                """
                SELECT * FROM budgets
                WHERE tenant_id = ? AND scope_type = ? AND scope_id IS ?
                  AND is_active = 1 AND period_start <= ? AND period_end > ?
                ORDER BY created_at DESC, id
                LIMIT 1
                """,
                (scope.tenant_id, scope_type.value, scope_id, stamp, stamp),
            ).fetchone()
            if row is not None:
                return Budget.from_row(row)
        raise NoBudgetConfigured(f"no active budget for tenant {scope.tenant_id}")

    @staticmethod
    def _budget(conn: sqlite3.Connection, budget_id: str) -> Budget:
        row = conn.execute("SELECT * FROM budgets WHERE id = ?", (budget_id,)).fetchone()
        if row is None:
            raise BudgetStateError(f"budget not found: {budget_id}")
        return Budget.from_row(row)

    @staticmethod
    def _reservation(conn: sqlite3.Connection, reservation_id: str) -> BudgetReservation:
        row = conn.execute(
            "SELECT * FROM budget_reservations WHERE id = ?", (reservation_id,)
        ).fetchone()
        if row is None:
            raise ReservationNotFound(f"reservation not found: {reservation_id}")
        return BudgetReservation.from_row(row)

    def _require_live(self, conn: sqlite3.Connection, reservation_id: str) -> BudgetReservation:
        reservation = self._reservation(conn, reservation_id)
        if reservation.status is not ReservationStatus.RESERVED:
            raise InvalidReservation(
                f"reservation {reservation_id} is {reservation.status.value}, expected reserved"
            )
        return reservation

    @staticmethod
    def _live(conn: sqlite3.Connection, execution_id: str) -> BudgetReservation | None:
        row = conn.execute(
            "SELECT * FROM budget_reservations WHERE execution_id = ? AND status = 'reserved'",
            (execution_id,),
        ).fetchone()
        return BudgetReservation.from_row(row) if row is not None else None
