"""Execution orchestrator for skillrunner."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta
from typing import Any, Callable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .approvals_store import ApprovalStore
from .budgets import (
    BudgetContention,
    BudgetExceeded,
    BudgetLedger,
    InvalidReservation,
    NoBudgetConfigured,
    OverconsumptionError,
)
from .config import RunnerConfig
from .db import Database, is_lock_error, utcnow
from .errors import InvalidTransition, NotPending, SkillCategoryForbidden, StaleState
from .gate import ApprovalGate
from .intake import IntakeGuard, budget_scope
from .invoker import HandlerInvoker, InvocationOutcome
from .ledger import BUDGET_TRANSACTION_TABLE, STATE_LOG_TABLE, ChainSealer, verify_table
from .loggers.base import AuditLogger, NullAuditLogger
from .loggers.jsonl import JsonlAuditLogger
from .policies import ApprovalPolicy
from .reason_codes import CANCELLED, EXECUTION_ABANDONED, OVERCONSUMPTION
from .redaction import sanitize_error_message, summarize_output
from .skills import Skill, SkillContext, SkillRegistry
from .state_machine import StateMachine
from .types import (
    ApprovalStatus,
    AuditEntry,
    Budget,
    BudgetScope,
    Execution,
    ExecutionState,
    ExecutorInfo,
    ResultStatus,
    StateLogEntry,
    SubmissionStatus,
    SubmitResult,
)

_logger = logging.getLogger(__name__)

RUNNER_ACTOR = "system:runner"
RECONCILER_ACTOR = "system:leak-reconciler"

# Executions in these states hold no approval window and can only be stuck by a crash.
_LEASED_STATES = (ExecutionState.CREATED, ExecutionState.APPROVED, ExecutionState.RUNNING)


def _log_background_failure(future: Future[Any]) -> None:
    exc = future.exception()
    if exc is not None:
        _logger.error("background execution failed: %s", exc, exc_info=exc)


class Orchestrator:
    """Front door for submitting, approving and running skill executions.

    Every state change goes through the state machine; every budget change
    goes through the ledger. Handler dispatch after admission or approval
    runs inline unless an ``executor`` is supplied.
    """

    def __init__(
        self,
        registry: SkillRegistry,
        *,
        config: RunnerConfig | None = None,
        db: Database | None = None,
        policy: ApprovalPolicy | None = None,
        audit_logger: AuditLogger | None = None,
        executor: Executor | None = None,
        signing_key: Ed25519PrivateKey | None = None,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if registry is None:
            raise ValueError("registry is required")
        self.config = config if config is not None else RunnerConfig()
        self.registry = registry
        self._now = now or utcnow
        self.db = (
            db
            if db is not None
            else Database(self.config.database_path, sealer=ChainSealer(signing_key))
        )
        if audit_logger is not None:
            self.audit_logger: AuditLogger = audit_logger
        elif self.config.audit_log_path is not None:
            self.audit_logger = JsonlAuditLogger(self.config.audit_log_path)
        else:
            self.audit_logger = NullAuditLogger()
        self._executor = executor
        self._audit_errors = 0
        self._audit_lock = threading.Lock()

        self.machine = StateMachine(self.db, now=self._now)
        self.ledger = BudgetLedger(
            self.db,
            now=self._now,
            contention_retries=self.config.contention_retries,
            contention_backoff_seconds=self.config.contention_backoff_seconds,
            sleep=sleep,
        )
        self.approvals = ApprovalStore(
            self.db,
            default_window_seconds=self.config.approval_window_seconds,
            max_window_seconds=self.config.max_approval_window_seconds,
            now=self._now,
        )
        self.gate = ApprovalGate(
            self.db,
            machine=self.machine,
            ledger=self.ledger,
            store=self.approvals,
            policy=policy,
            now=self._now,
        )
        self.intake = IntakeGuard(
            self.db,
            registry=registry,
            machine=self.machine,
            gate=self.gate,
            ledger=self.ledger,
            retry_backoff_multiplier=self.config.retry_backoff_multiplier,
            contention_retries=self.config.contention_retries,
            contention_backoff_seconds=self.config.contention_backoff_seconds,
            now=self._now,
        )
        self.invoker = HandlerInvoker(
            retry_backoff_multiplier=self.config.retry_backoff_multiplier, sleep=sleep
        )

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.invoker.shutdown()

    @property
    def audit_error_count(self) -> int:
        """Number of audit entries that could not be written."""
        return self._audit_errors

    # ----- calling-layer operations -----

    def submit(
        self,
        tenant_id: str,
        idempotency_key: str,
        skill_key: str,
        input: Any,
        executor: ExecutorInfo,
        *,
        skill_version: str | None = None,
    ) -> SubmitResult:
        """Admit an execution and, when the gate allows it, run it.

        Admission errors are raised before anything is persisted. A repeated
        ``(tenant_id, idempotency_key)`` returns the original execution.
        """
        try:
            admission = self.intake.admit(
                tenant_id,
                idempotency_key,
                skill_key,
                input,
                executor,
                skill_version=skill_version,
            )
        except SkillCategoryForbidden as exc:
            self._audit(
                "skill.execute.blocked",
                tenant_id=tenant_id,
                skill_key=skill_key,
                actor_id=executor.executor_id,
                error_code=exc.code,
                error=str(exc),
            )
            raise

        execution = admission.execution
        if admission.duplicate:
            pending = self.approvals.pending_for_execution(execution.id)
            return self._submit_result(
                execution,
                admitted_state=execution.state,
                duplicate=True,
                approval_id=pending.id if pending is not None else None,
            )

        admitted_state = execution.state
        if admission.approval is not None:
            self._audit(
                "approval.requested",
                execution,
                actor_id=executor.executor_id,
                metadata={
                    "approval_id": admission.approval.id,
                    "scope": admission.approval.scope,
                    "reason": admission.decision.reason if admission.decision else None,
                },
            )
            return self._submit_result(
                execution, admitted_state=admitted_state, approval_id=admission.approval.id
            )

        if admission.reservation is not None:
            self._audit(
                "budget.reserved",
                execution,
                metadata={
                    "reservation_id": admission.reservation.id,
                    "amount": str(admission.reservation.amount),
                },
            )
        assert admission.skill is not None
        execution = self._dispatch(self._start, execution.id, admission.skill)
        return self._submit_result(execution, admitted_state=admitted_state)

    def get_status(self, execution_id: str) -> Execution:
        return self.machine.get(execution_id)

    def history(self, execution_id: str) -> list[StateLogEntry]:
        return self.machine.history(execution_id)

    def budget_status(self, scope: BudgetScope) -> Budget:
        return self.ledger.budget_status(scope)

    def approve(self, approval_id: str, approver_id: str) -> Execution:
        """Approve a pending request and resume the execution."""
        attempted_at = self._now()
        try:
            approved = self.gate.approve(approval_id, approver_id)
        except NotPending:
            request = self.approvals.get(approval_id)
            expired_now = (
                request.status is ApprovalStatus.EXPIRED
                and request.resolved_at is not None
                and request.resolved_at >= attempted_at
            )
            if expired_now:
                self._audit_expired(self.machine.get(request.execution_id), approval_id)
            raise
        self._audit(
            "approval.approved",
            approved,
            actor_id=approver_id,
            metadata={"approval_id": approval_id},
        )
        return self._dispatch(self.resume_approved, approved.id)

    def reject(self, approval_id: str, approver_id: str, reason: str | None = None) -> Execution:
        rejected = self.gate.reject(approval_id, approver_id, reason)
        self._audit(
            "approval.rejected",
            rejected,
            actor_id=approver_id,
            error_code=rejected.error_code,
            metadata={"approval_id": approval_id},
        )
        return rejected

    def cancel(self, execution_id: str, actor_id: str, reason: str | None = None) -> Execution:
        cancelled = self.gate.cancel(execution_id, actor_id, reason)
        self._audit(
            "skill.execute.failed",
            cancelled,
            actor_id=actor_id,
            error_code=CANCELLED,
            error=cancelled.error_message,
        )
        return cancelled

    def resume_approved(self, execution_id: str) -> Execution:
        """Reserve budget for an APPROVED execution and run it.

        A budget failure here is not raised: the execution fails with
        ``BUDGET_EXCEEDED``, ``NO_BUDGET`` or ``BUDGET_CONTENTION``.
        """
        execution = self.machine.get(execution_id)
        if execution.state is not ExecutionState.APPROVED:
            raise InvalidTransition(
                f"execution {execution_id} is {execution.state.value}, expected APPROVED"
            )
        skill = self.registry.resolve(execution.skill_key, execution.skill_version)
        amount = skill.estimated_cost(execution.input)

        def start() -> Execution:
            with self.db.transaction() as tx:
                reservation = self.ledger.reserve(
                    budget_scope(execution),
                    execution.id,
                    amount,
                    description=f"estimated cost of {skill.spec.version_id}",
                    conn=tx,
                )
                return self.machine.transition(
                    execution.id,
                    expected=ExecutionState.APPROVED,
                    to=ExecutionState.RUNNING,
                    actor_id=RUNNER_ACTOR,
                    metadata={"reservation_id": reservation.id},
                    conn=tx,
                )

        try:
            running = self.db.retry_locked(
                start,
                retries=self.config.contention_retries,
                backoff_seconds=self.config.contention_backoff_seconds,
            )
        except (BudgetExceeded, NoBudgetConfigured) as exc:
            _logger.warning("execution %s could not reserve budget: %s", execution_id, exc.code)
            return self._fail(execution, ExecutionState.APPROVED, exc.code, str(exc))
        except sqlite3.OperationalError as exc:
            if not is_lock_error(exc):
                raise
            contention = BudgetContention(
                f"budget ledger still locked after {self.config.contention_retries} retries"
            )
            _logger.warning("execution %s could not reserve budget: %s", execution_id, exc)
            return self._fail(
                execution, ExecutionState.APPROVED, contention.code, str(contention)
            )
        except StaleState:
            # Started or cancelled by someone else.
            return self.machine.get(execution_id)

        self._audit(
            "budget.reserved",
            running,
            metadata={"amount": str(running.budget_reserved_amount)},
        )
        return self._execute(running, skill)

    # ----- sweeps -----

    def expire_overdue(self) -> int:
        """Expire overdue approval requests. Returns how many executions were failed."""
        expired = self.gate.expire_overdue()
        for execution in expired:
            self._audit_expired(execution, None)
        return len(expired)

    def reconcile_leaked(self) -> int:
        """Fail executions whose lease ran out without reaching a terminal state."""
        now = self._now()
        grace = timedelta(seconds=self.config.leak_grace_seconds)
        placeholders = ", ".join("?" for _ in _LEASED_STATES)
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM executions WHERE state IN ({placeholders}) ORDER BY state_changed_at",
                [state.value for state in _LEASED_STATES],
            ).fetchall()
        candidates = [Execution.from_row(row) for row in rows]

        reconciled = 0
        for execution in candidates:
            deadline = execution.state_changed_at + timedelta(seconds=execution.lease_seconds) + grace
            if deadline >= now:
                continue
            result = self._fail(
                execution,
                execution.state,
                EXECUTION_ABANDONED,
                f"no progress since {execution.state_changed_at.isoformat()} "
                f"(lease {execution.lease_seconds}s)",
                actor_id=RECONCILER_ACTOR,
            )
            if result.error_code == EXECUTION_ABANDONED:
                reconciled += 1
        if reconciled:
            _logger.warning("reconciled %d abandoned execution(s)", reconciled)
        return reconciled

    def verify_audit_chains(self, public_key: Ed25519PublicKey | None = None) -> dict[str, int]:
        """Verify the state-log and budget-transaction chains. Raises ``LedgerVerificationError``."""
        with self.db.connect() as conn:
            return {
                table: verify_table(conn, table, public_key=public_key)
                for table in (STATE_LOG_TABLE, BUDGET_TRANSACTION_TABLE)
            }

    # ----- running -----

    def _dispatch(
        self, func: Callable[..., Execution], execution_id: str, *args: Any
    ) -> Execution:
        if self._executor is None:
            return func(execution_id, *args)
        future = self._executor.submit(func, execution_id, *args)
        future.add_done_callback(_log_background_failure)
        return self.machine.get(execution_id)

    def _start(self, execution_id: str, skill: Skill) -> Execution:
        try:
            running = self.machine.transition(
                execution_id,
                expected=ExecutionState.CREATED,
                to=ExecutionState.RUNNING,
                actor_id=RUNNER_ACTOR,
            )
        except (StaleState, InvalidTransition) as exc:
            _logger.warning("execution %s not started: %s", execution_id, exc)
            return self.machine.get(execution_id)
        return self._execute(running, skill)

    def _execute(self, running: Execution, skill: Skill) -> Execution:
        spec = skill.spec
        self._audit("skill.execute.started", running, metadata={"skill": spec.version_id})
        skill_logger = logging.getLogger(f"skillrunner.skills.{spec.key}")

        def top_up(amount: Any) -> None:
            live = self.ledger.live_reservation(running.id)
            if live is None:
                raise InvalidReservation(f"execution {running.id} holds no live reservation")
            self.ledger.top_up(live.id, amount, description="handler top-up")

        def call(attempt: int) -> Any:
            ctx = SkillContext(
                execution_id=running.id,
                tenant_id=running.tenant_id,
                trace_id=running.trace_id,
                skill_key=running.skill_key,
                attempt=attempt,
                logger=skill_logger,
                _top_up=top_up,
            )
            return skill.execute(dict(running.input), ctx)

        outcome = self.invoker.invoke(call, spec.safety, label=spec.version_id)
        if outcome.succeeded:
            return self._complete(running, outcome)
        return self._fail(
            running,
            ExecutionState.RUNNING,
            outcome.error_code or "HANDLER_FAILED",
            outcome.error_message or "handler failed",
            attempts=outcome.attempts,
        )

    def _complete(self, running: Execution, outcome: InvocationOutcome) -> Execution:
        result = outcome.result
        assert result is not None

        def settle() -> Execution:
            with self.db.transaction() as tx:
                live = self.ledger.live_reservation(running.id, conn=tx)
                if live is None:
                    raise InvalidReservation(f"execution {running.id} holds no live reservation")
                self.ledger.consume(
                    live.id, result.actual_cost, description="actual cost", conn=tx
                )
                return self.machine.transition(
                    running.id,
                    expected=ExecutionState.RUNNING,
                    to=ExecutionState.COMPLETED,
                    actor_id=RUNNER_ACTOR,
                    metadata={"attempts": outcome.attempts, "actual_cost": result.actual_cost},
                    updates={
                        "result_status": ResultStatus.SUCCESS,
                        "result_summary": summarize_output(result.output),
                    },
                    conn=tx,
                )

        try:
            completed = self.db.retry_locked(
                settle,
                retries=self.config.contention_retries,
                backoff_seconds=self.config.contention_backoff_seconds,
            )
        except OverconsumptionError as exc:
            _logger.error("execution %s overconsumed its reservation: %s", running.id, exc)
            return self._fail(
                running,
                ExecutionState.RUNNING,
                OVERCONSUMPTION,
                str(exc),
                attempts=outcome.attempts,
            )
        except (StaleState, InvalidTransition, InvalidReservation) as exc:
            # Reconciled as abandoned while the handler was still running.
            _logger.warning("execution %s finished after being closed: %s", running.id, exc)
            return self.machine.get(running.id)

        self._audit(
            "budget.consumed",
            completed,
            metadata={"amount": str(completed.budget_consumed_amount)},
        )
        self._audit(
            "skill.execute.completed",
            completed,
            metadata={"attempts": outcome.attempts},
        )
        return completed

    def _fail(
        self,
        execution: Execution,
        expected: ExecutionState,
        error_code: str,
        message: str,
        *,
        attempts: int | None = None,
        actor_id: str = RUNNER_ACTOR,
    ) -> Execution:
        safe_message = sanitize_error_message(message)
        metadata: dict[str, Any] = {"error_code": error_code}
        if attempts is not None:
            metadata["attempts"] = attempts

        def fail() -> tuple[Execution, bool]:
            with self.db.transaction() as tx:
                released = self.ledger.release_for_execution(
                    execution.id, description=f"execution failed: {error_code}", conn=tx
                )
                failed = self.machine.transition(
                    execution.id,
                    expected=expected,
                    to=ExecutionState.FAILED,
                    actor_id=actor_id,
                    metadata=metadata,
                    updates={
                        "result_status": ResultStatus.FAILED,
                        "error_code": error_code,
                        "error_message": safe_message,
                    },
                    conn=tx,
                )
                return failed, released is not None

        try:
            failed, released = self.db.retry_locked(
                fail,
                retries=self.config.contention_retries,
                backoff_seconds=self.config.contention_backoff_seconds,
            )
        except (StaleState, InvalidTransition) as exc:
            _logger.warning("execution %s not failed with %s: %s", execution.id, error_code, exc)
            return self.machine.get(execution.id)

        if released:
            self._audit("budget.released", failed, error_code=error_code)
        self._audit(
            "skill.execute.failed",
            failed,
            actor_id=actor_id,
            error_code=error_code,
            error=safe_message,
        )
        return failed

    # ----- audit -----

    def _audit_expired(self, execution: Execution, approval_id: str | None) -> None:
        self._audit(
            "approval.expired",
            execution,
            error_code=execution.error_code,
            metadata={"approval_id": approval_id} if approval_id else None,
        )

    def _audit(
        self,
        event: str,
        execution: Execution | None = None,
        *,
        tenant_id: str | None = None,
        skill_key: str | None = None,
        actor_id: str | None = None,
        error_code: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Best-effort audit write; failures are logged and counted, never raised."""
        entry = AuditEntry(
            timestamp=self._now(),
            event=event,
            execution_id=execution.id if execution is not None else None,
            tenant_id=execution.tenant_id if execution is not None else tenant_id,
            skill_key=execution.skill_key if execution is not None else skill_key,
            actor_id=actor_id,
            error_code=error_code,
            error=error,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None},
        )
        try:
            self.audit_logger.log(entry)
        except Exception as exc:  # audit sinks are pluggable; any failure is non-fatal
            with self._audit_lock:
                self._audit_errors += 1
            _logger.warning("audit write failed for %s: %s", event, exc)

    @staticmethod
    def _submit_result(
        execution: Execution,
        *,
        admitted_state: ExecutionState,
        duplicate: bool = False,
        approval_id: str | None = None,
    ) -> SubmitResult:
        status = (
            SubmissionStatus.PENDING_APPROVAL
            if admitted_state is ExecutionState.PENDING_APPROVAL
            else SubmissionStatus.ACCEPTED
        )
        return SubmitResult(
            execution_id=execution.id,
            status=status,
            state=execution.state,
            duplicate=duplicate,
            approval_id=approval_id,
        )
