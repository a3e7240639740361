"""Responsibility & approval gate.

Waiting for a human is never a blocking wait: ``open_request`` parks the
execution in PENDING_APPROVAL and returns; a later ``approve``/``reject``
call (or the expiry sweep) resolves it. Each resolution marks the request,
moves the execution and releases budget in a single transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable

from .approvals_store import ApprovalStore
from .budgets import BudgetLedger
from .db import Database, utcnow
from .errors import ActorRequired, InvalidTransition, NotPending
from .policies import ApprovalPolicy, GateResult, ResponsibilityPolicy
from .reason_codes import APPROVAL_EXPIRED, APPROVAL_REJECTED, CANCELLED
from .redaction import sanitize_error_message
from .skills import SkillSpec
from .state_machine import StateMachine
from .types import (
    ApprovalChainEntry,
    ApprovalRequest,
    ApprovalStatus,
    Execution,
    ExecutionState,
    ExecutorInfo,
    ResultStatus,
)

_logger = logging.getLogger(__name__)

SWEEPER_ACTOR = "system:approval-sweeper"

_CANCELLABLE = frozenset(
    {ExecutionState.CREATED, ExecutionState.PENDING_APPROVAL, ExecutionState.APPROVED}
)


def _require_actor(name: str, value: str | None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ActorRequired(f"{name} must be a non-empty string")
    return value


class ApprovalGate:
    def __init__(
        self,
        db: Database,
        *,
        machine: StateMachine,
        ledger: BudgetLedger,
        store: ApprovalStore,
        policy: ApprovalPolicy | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._machine = machine
        self._ledger = ledger
        self._store = store
        self._policy = policy or ResponsibilityPolicy()
        self._now = now or utcnow

    @property
    def store(self) -> ApprovalStore:
        return self._store

    def evaluate(self, spec: SkillSpec, executor: ExecutorInfo) -> GateResult:
        """Pure decision; no side effects."""
        return self._policy.evaluate(spec, executor)

    def open_request(
        self,
        execution: Execution,
        decision: GateResult,
        *,
        expires_at: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> ApprovalRequest:
        """Park a CREATED execution in PENDING_APPROVAL with one pending request."""
        if not decision.requires_approval or decision.scope is None:
            raise ValueError("open_request needs a decision that requires approval")
        with self._db.transaction(conn) as tx:
            self._machine.transition(
                execution.id,
                expected=ExecutionState.CREATED,
                to=ExecutionState.PENDING_APPROVAL,
                actor_id=execution.executor_id,
                metadata={"reason": decision.reason, "scope": decision.scope},
                conn=tx,
            )
            return self._store.create_pending(
                execution_id=execution.id,
                tenant_id=execution.tenant_id,
                requester_id=execution.executor_id,
                scope=decision.scope,
                expires_at=expires_at,
                conn=tx,
            )

    def approve(self, approval_id: str, approver_id: str) -> Execution:
        """Resolve as approved and move the execution to APPROVED.

        An overdue request is expired instead and ``NotPending`` is raised.
        """
        _require_actor("approver_id", approver_id)
        request = self._store.get(approval_id)
        if request.status is ApprovalStatus.PENDING and request.expires_at < self._now():
            self._expire(request)
            raise NotPending(f"approval {approval_id} expired before it was approved")

        with self._db.transaction() as tx:
            marked = self._store.mark(
                approval_id, status=ApprovalStatus.APPROVED, approver_id=approver_id, conn=tx
            )
            execution = self._machine.get(marked.execution_id, conn=tx)
            return self._machine.transition(
                execution.id,
                expected=ExecutionState.PENDING_APPROVAL,
                to=ExecutionState.APPROVED,
                actor_id=approver_id,
                metadata={"approval_id": approval_id},
                updates={"approval_chain": self._chain(execution, marked)},
                conn=tx,
            )

    def reject(self, approval_id: str, approver_id: str, reason: str | None = None) -> Execution:
        """Resolve as rejected; the execution fails with APPROVAL_REJECTED."""
        _require_actor("approver_id", approver_id)
        with self._db.transaction() as tx:
            marked = self._store.mark(
                approval_id,
                status=ApprovalStatus.REJECTED,
                approver_id=approver_id,
                reason=reason,
                conn=tx,
            )
            execution = self._machine.get(marked.execution_id, conn=tx)
            message = sanitize_error_message(reason or "rejected by approver")
            self._ledger.release_for_execution(
                execution.id, description=f"approval {approval_id} rejected", conn=tx
            )
            return self._machine.transition(
                execution.id,
                expected=ExecutionState.PENDING_APPROVAL,
                to=ExecutionState.FAILED,
                actor_id=approver_id,
                metadata={"approval_id": approval_id, "error_code": APPROVAL_REJECTED},
                updates={
                    "approval_chain": self._chain(execution, marked),
                    "result_status": ResultStatus.FAILED,
                    "error_code": APPROVAL_REJECTED,
                    "error_message": message,
                },
                conn=tx,
            )

    def cancel(self, execution_id: str, actor_id: str, reason: str | None = None) -> Execution:
        """Fail an execution that has not started running, releasing its budget."""
        _require_actor("actor_id", actor_id)
        with self._db.transaction() as tx:
            execution = self._machine.get(execution_id, conn=tx)
            if execution.state not in _CANCELLABLE:
                raise InvalidTransition(
                    f"execution {execution_id} is {execution.state.value} and cannot be cancelled"
                )
            pending = self._store.pending_for_execution(execution_id, conn=tx)
            if pending is not None:
                self._store.mark(
                    pending.id,
                    status=ApprovalStatus.REJECTED,
                    approver_id=actor_id,
                    reason=reason or "cancelled",
                    conn=tx,
                )
            self._ledger.release_for_execution(
                execution_id, description="execution cancelled", conn=tx
            )
            return self._machine.transition(
                execution_id,
                expected=execution.state,
                to=ExecutionState.FAILED,
                actor_id=actor_id,
                actor_required=True,
                metadata={"error_code": CANCELLED},
                updates={
                    "result_status": ResultStatus.FAILED,
                    "error_code": CANCELLED,
                    "error_message": sanitize_error_message(reason or "cancelled"),
                },
                conn=tx,
            )

    def expire_overdue(self) -> list[Execution]:
        """Expire every overdue pending request and fail its execution."""
        expired: list[Execution] = []
        for request in self._store.overdue():
            try:
                expired.append(self._expire(request))
            except NotPending:
                # Resolved by someone else between the scan and the update.
                continue
        if expired:
            _logger.warning("expired %d overdue approval request(s)", len(expired))
        return expired

    def _expire(self, request: ApprovalRequest) -> Execution:
        with self._db.transaction() as tx:
            self._store.mark(
                request.id, status=ApprovalStatus.EXPIRED, approver_id=None, conn=tx
            )
            self._ledger.release_for_execution(
                request.execution_id, description=f"approval {request.id} expired", conn=tx
            )
            return self._machine.transition(
                request.execution_id,
                expected=ExecutionState.PENDING_APPROVAL,
                to=ExecutionState.FAILED,
                actor_id=SWEEPER_ACTOR,
                metadata={"approval_id": request.id, "error_code": APPROVAL_EXPIRED},
                updates={
                    "result_status": ResultStatus.FAILED,
                    "error_code": APPROVAL_EXPIRED,
                    "error_message": "approval window elapsed without a decision",
                },
                conn=tx,
            )

    def _chain(self, execution: Execution, request: ApprovalRequest) -> list[dict[str, object]]:
        entry = ApprovalChainEntry(
            approval_id=request.id,
            approver_id=request.approver_id or "",
            decision=request.status,
            decided_at=request.resolved_at or self._now(),
            reason=request.rejection_reason,
        )
        chain = [item.model_dump(mode="json") for item in execution.approval_chain]
        chain.append(entry.model_dump(mode="json"))
        return chain
