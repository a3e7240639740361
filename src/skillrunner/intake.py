"""Idempotency & intake guard.

``admit`` is the only way an execution row is created. The lookup, the
insert, the initial state-log row and the gate's side effect (a budget
reservation on the autonomous path, an approval request on the gated path)
share one ``BEGIN IMMEDIATE`` transaction, so a failure anywhere leaves
nothing behind. The ``UNIQUE (tenant_id, idempotency_key)`` constraint backs
the in-transaction lookup.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .budgets import BudgetContention, BudgetLedger
from .db import Database, format_timestamp, is_lock_error, utcnow
from .errors import (
    PIIPolicyError,
    ResponsibilityError,
    SkillCategoryForbidden,
    ValidationError,
)
from .gate import ApprovalGate
from .invoker import lease_seconds
from .policies import GateResult
from .redaction import mask_fields
from .skills import PIIHandling, Skill, SkillRegistry
from .state_machine import StateMachine
from .types import (
    ApprovalRequest,
    BudgetReservation,
    BudgetScope,
    Execution,
    ExecutionState,
    ExecutorInfo,
    ResponsibilityLevel,
)

_logger = logging.getLogger(__name__)

_LEVELS = frozenset(int(level) for level in ResponsibilityLevel)


@dataclass(frozen=True)
class Admission:
    """Result of ``admit``. ``duplicate`` admissions carry no skill, decision or side effect."""

    execution: Execution
    duplicate: bool
    skill: Skill | None = None
    decision: GateResult | None = None
    approval: ApprovalRequest | None = None
    reservation: BudgetReservation | None = None


def budget_scope(execution: Execution) -> BudgetScope:
    return BudgetScope(
        tenant_id=execution.tenant_id,
        skill_key=execution.skill_key,
        user_id=execution.legal_responsible_user_id,
    )


def validate_responsibility(executor: ExecutorInfo) -> None:
    if not executor.legal_responsible_user_id or not executor.legal_responsible_user_id.strip():
        raise ResponsibilityError("legal_responsible_user_id is required")
    if executor.responsibility_level not in _LEVELS:
        raise ResponsibilityError(
            f"responsibility_level must be one of {sorted(_LEVELS)}, "
            f"got {executor.responsibility_level}"
        )


class IntakeGuard:
    def __init__(
        self,
        db: Database,
        *,
        registry: SkillRegistry,
        machine: StateMachine,
        gate: ApprovalGate,
        ledger: BudgetLedger,
        retry_backoff_multiplier: float = 1.0,
        contention_retries: int = 5,
        contention_backoff_seconds: float = 0.05,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._retries = contention_retries
        self._backoff = contention_backoff_seconds
        self._registry = registry
        self._machine = machine
        self._gate = gate
        self._ledger = ledger
        self._multiplier = retry_backoff_multiplier
        self._now = now or utcnow

    def find(
        self, tenant_id: str, idempotency_key: str, *, conn: sqlite3.Connection | None = None
    ) -> Execution | None:
        sql = "SELECT * FROM executions WHERE tenant_id = ? AND idempotency_key = ?"
        if conn is not None:
            row = conn.execute(sql, (tenant_id, idempotency_key)).fetchone()
        else:
            with self._db.connect() as own:
                row = own.execute(sql, (tenant_id, idempotency_key)).fetchone()
        return Execution.from_row(row) if row is not None else None

    def admit(
        self,
        tenant_id: str,
        idempotency_key: str,
        skill_key: str,
        input: Any,
        executor: ExecutorInfo,
        *,
        skill_version: str | None = None,
    ) -> Admission:
        """Create the execution for ``(tenant_id, idempotency_key)`` or return the existing one.

        Raises (before anything is persisted):
            ValidationError, SkillNotFound, SkillCategoryForbidden, ResponsibilityError,
            PIIPolicyError, and on the autonomous path NoBudgetConfigured / BudgetExceeded.
        """
        if not tenant_id or not tenant_id.strip():
            raise ValidationError("tenant_id must be a non-empty string")
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("idempotency_key must be a non-empty string")

        existing = self.find(tenant_id, idempotency_key)
        if existing is not None:
            _logger.debug("idempotent re-admission of %s", existing.id)
            return Admission(execution=existing, duplicate=True)

        validate_responsibility(executor)
        skill = self._registry.resolve(skill_key, skill_version)
        spec = skill.spec
        if spec.is_internal and executor.is_external:
            raise SkillCategoryForbidden(
                f"skill {spec.key} is internal and cannot be called directly"
            )
        payload = skill.validate_input(input)
        pii = spec.pii_policy
        if pii.input_contains_pii:
            if pii.handling is PIIHandling.REJECT:
                raise PIIPolicyError(
                    f"skill {spec.key} declares PII input but its policy is REJECT"
                )
            if pii.handling is PIIHandling.MASK_BEFORE_LLM:
                payload = mask_fields(payload, pii.pii_fields)

        decision = self._gate.evaluate(spec, executor)
        amount = skill.estimated_cost(payload)

        def create() -> Admission:
            with self._db.transaction() as tx:
                existing = self.find(tenant_id, idempotency_key, conn=tx)
                if existing is not None:
                    return Admission(execution=existing, duplicate=True)
                execution = self._insert(
                    tx, tenant_id, idempotency_key, skill, payload, executor, decision
                )
                if decision.requires_approval:
                    approval = self._gate.open_request(execution, decision, conn=tx)
                    return Admission(
                        execution=self._machine.get(execution.id, conn=tx),
                        duplicate=False,
                        skill=skill,
                        decision=decision,
                        approval=approval,
                    )
                reservation = self._ledger.reserve(
                    budget_scope(execution),
                    execution.id,
                    amount,
                    description=f"estimated cost of {spec.version_id}",
                    conn=tx,
                )
                return Admission(
                    execution=self._machine.get(execution.id, conn=tx),
                    duplicate=False,
                    skill=skill,
                    decision=decision,
                    reservation=reservation,
                )

        try:
            return self._db.retry_locked(
                create, retries=self._retries, backoff_seconds=self._backoff
            )
        except sqlite3.OperationalError as exc:
            if not is_lock_error(exc):
                raise
            raise BudgetContention(
                f"admission of {tenant_id}/{idempotency_key} still locked after {self._retries} retries"
            ) from exc
        except sqlite3.IntegrityError:
            # Lost the race to a concurrent admission with the same key.
            existing = self.find(tenant_id, idempotency_key)
            if existing is None:
                raise
            return Admission(execution=existing, duplicate=True)

    def _insert(
        self,
        conn: sqlite3.Connection,
        tenant_id: str,
        idempotency_key: str,
        skill: Skill,
        payload: dict[str, Any],
        executor: ExecutorInfo,
        decision: GateResult,
    ) -> Execution:
        spec = skill.spec
        execution_id = str(uuid.uuid4())
        now = self._now()
        stamp = format_timestamp(now)
        conn.execute(
            """
            INSERT INTO executions
            (id, tenant_id, idempotency_key, skill_key, skill_version, skill_id, skill_version_id,
             executor_type, executor_id, legal_responsible_user_id, responsibility_level,
             approval_chain, requires_approval, input, state, previous_state, state_changed_at,
             state_changed_by, created_at, trace_id, parent_execution_id, timeout_seconds,
             lease_seconds)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '[]', ?, ?, ?, NULL, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution_id,
                tenant_id,
                idempotency_key,
                spec.key,
                spec.version,
                spec.skill_id,
                spec.version_id,
                executor.executor_type.value,
                executor.executor_id,
                executor.legal_responsible_user_id,
                int(executor.responsibility_level),
                int(decision.requires_approval),
                json.dumps(payload),
                ExecutionState.CREATED.value,
                stamp,
                executor.executor_id,
                stamp,
                executor.trace_id or str(uuid.uuid4()),
                executor.parent_execution_id,
                spec.safety.timeout_seconds,
                lease_seconds(spec.safety, self._multiplier),
            ),
        )
        self._machine.append_log(
            conn,
            execution_id=execution_id,
            from_state=None,
            to_state=ExecutionState.CREATED,
            actor_id=executor.executor_id,
            metadata={"skill": spec.version_id, "decision": decision.reason},
            created_at=now,
        )
        return self._machine.get(execution_id, conn=conn)
