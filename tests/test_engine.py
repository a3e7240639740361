from __future__ import annotations

import asyncio
import sqlite3
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest

from skillrunner import Orchestrator, RunnerConfig
from skillrunner.budgets import BudgetContention
from skillrunner.db import Database
from skillrunner.errors import (
    AuditLogError,
    InvalidTransition,
    NotPending,
    SkillCategoryForbidden,
)
from skillrunner.skills import CostModel, SafetyConfig, SkillRegistry, SkillResult, SkillSpec
from skillrunner.types import (
    AuditEntry,
    BudgetScope,
    ExecutionState,
    ExecutorInfo,
    ExecutorType,
    ReservationStatus,
    SubmissionStatus,
)

TENANT = "t1"


class RecordingAuditLogger:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def log(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def events(self) -> list[str]:
        return [entry.event for entry in self.entries]


class FailingAuditLogger:
    def log(self, entry: AuditEntry) -> None:
        raise AuditLogError("disk full")


class HeldExecutor(Executor):
    """Accepts work and never runs it until ``run_all``."""

    def __init__(self) -> None:
        self.jobs: list[tuple[object, tuple[object, ...]]] = []

    def submit(self, fn, /, *args, **kwargs):
        self.jobs.append((fn, args))
        return Future()

    def run_all(self) -> list[object]:
        return [fn(*args) for fn, args in self.jobs]


def _spec(key: str, *, requires_approval: bool = False, cost: str = "2", **safety) -> SkillSpec:
    safety.setdefault("timeout_seconds", 5)
    return SkillSpec(
        key=key,
        name=key,
        category="crm",
        cost_model=CostModel(fixed_cost=cost),
        safety=SafetyConfig(requires_approval=requires_approval, **safety),
        required_responsibility_level=2,
    )


def _executor(level: int = 1, **overrides) -> ExecutorInfo:
    data = {
        "executor_type": ExecutorType.AGENT,
        "executor_id": "agent-1",
        "legal_responsible_user_id": "user-1",
        "responsibility_level": level,
    }
    data.update(overrides)
    return ExecutorInfo(**data)


def _orchestrator(tmp_path, clock, registry, *, limit: str | None = "100", **kwargs) -> Orchestrator:
    sleeps = kwargs.pop("sleeps", [])
    config = RunnerConfig(
        database_path=tmp_path / "runner.sqlite",
        approval_window_seconds=600,
        **kwargs.pop("config", {}),
    )
    orchestrator = Orchestrator(
        registry, config=config, now=clock, sleep=sleeps.append, **kwargs
    )
    if limit is not None:
        orchestrator.ledger.create_budget(
            tenant_id=TENANT,
            limit_amount=limit,
            period_start=clock() - timedelta(days=1),
            period_end=clock() + timedelta(days=30),
        )
    return orchestrator


def _budget(orchestrator: Orchestrator):
    return orchestrator.budget_status(BudgetScope(tenant_id=TENANT))


def test_autonomous_execution_runs_to_completion(tmp_path, clock) -> None:
    registry = SkillRegistry()
    calls: list[dict] = []

    @registry.handler(_spec("crm.search"))
    def search(payload, ctx) -> SkillResult:
        calls.append(payload)
        assert ctx.attempt == 1
        return SkillResult(output={"match": "bob@example.com"}, actual_cost="1.5")

    audit = RecordingAuditLogger()
    with _orchestrator(tmp_path, clock, registry, audit_logger=audit) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {"q": "bob"}, _executor(level=1))

        assert result.status is SubmissionStatus.ACCEPTED
        assert result.state is ExecutionState.COMPLETED
        assert not result.duplicate
        execution = orchestrator.get_status(result.execution_id)
        assert execution.budget_reserved_amount == Decimal("2")
        assert execution.budget_consumed_amount == Decimal("1.5")
        assert execution.budget_released
        assert "bob@example.com" not in execution.result_summary
        assert [e.to_state for e in orchestrator.history(execution.id)] == [
            ExecutionState.CREATED,
            ExecutionState.RUNNING,
            ExecutionState.COMPLETED,
        ]
        budget = _budget(orchestrator)
        assert budget.used_amount == Decimal("1.5")
        assert budget.reserved_amount == Decimal("0")

        again = orchestrator.submit(TENANT, "k1", "crm.search", {"q": "bob"}, _executor(level=1))
        assert again.duplicate
        assert again.execution_id == result.execution_id
        assert again.state is ExecutionState.COMPLETED

    assert len(calls) == 1
    assert audit.events() == [
        "budget.reserved",
        "skill.execute.started",
        "budget.consumed",
        "skill.execute.completed",
    ]


def test_gated_execution_rejected(tmp_path, clock) -> None:
    registry = SkillRegistry()
    calls: list[int] = []
    registry.handler(_spec("crm.update", requires_approval=True))(
        lambda payload, ctx: calls.append(1) or SkillResult()
    )

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        assert result.status is SubmissionStatus.PENDING_APPROVAL
        assert result.approval_id is not None

        duplicate = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        assert duplicate.status is SubmissionStatus.PENDING_APPROVAL
        assert duplicate.approval_id == result.approval_id

        failed = orchestrator.reject(result.approval_id, "alice", "not today")
        assert failed.state is ExecutionState.FAILED
        assert failed.error_code == "APPROVAL_REJECTED"
        with pytest.raises(NotPending):
            orchestrator.approve(result.approval_id, "bob")
        assert _budget(orchestrator).used_amount == Decimal("0")

    assert calls == []


def test_gated_execution_approved_reserves_on_resume(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.update", requires_approval=True))(
        lambda payload, ctx: SkillResult(actual_cost="2")
    )
    audit = RecordingAuditLogger()

    with _orchestrator(tmp_path, clock, registry, audit_logger=audit) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        assert _budget(orchestrator).reserved_amount == Decimal("0")

        done = orchestrator.approve(result.approval_id, "alice")

        assert done.state is ExecutionState.COMPLETED
        assert [entry.approver_id for entry in done.approval_chain] == ["alice"]
        assert [e.to_state for e in orchestrator.history(done.id)] == [
            ExecutionState.CREATED,
            ExecutionState.PENDING_APPROVAL,
            ExecutionState.APPROVED,
            ExecutionState.RUNNING,
            ExecutionState.COMPLETED,
        ]
        assert _budget(orchestrator).used_amount == Decimal("2")

    assert audit.events()[:3] == ["approval.requested", "approval.approved", "budget.reserved"]


def test_budget_failure_on_resume_fails_execution(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.update", requires_approval=True, cost="5"))(
        lambda payload, ctx: SkillResult()
    )

    with _orchestrator(tmp_path, clock, registry, limit="3") as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        failed = orchestrator.approve(result.approval_id, "alice")

        assert failed.state is ExecutionState.FAILED
        assert failed.error_code == "BUDGET_EXCEEDED"
        assert _budget(orchestrator).reserved_amount == Decimal("0")


def test_submit_under_lock_contention_raises_budget_contention(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult(actual_cost="1"))
    db = Database(tmp_path / "runner.sqlite", busy_timeout_seconds=0.05)
    config = {"contention_retries": 1, "contention_backoff_seconds": 0.0}

    with _orchestrator(tmp_path, clock, registry, db=db, config=config) as orchestrator:
        blocker = sqlite3.connect(str(tmp_path / "runner.sqlite"), isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with pytest.raises(BudgetContention) as excinfo:
                orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
            assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        assert result.duplicate is False
        assert result.state is ExecutionState.COMPLETED


def test_lock_contention_on_resume_fails_execution(tmp_path, clock, monkeypatch) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.update", requires_approval=True))(
        lambda payload, ctx: SkillResult(actual_cost="2")
    )
    config = {"contention_retries": 1, "contention_backoff_seconds": 0.0}

    with _orchestrator(tmp_path, clock, registry, config=config) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())

        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(orchestrator.ledger, "reserve", locked)
        failed = orchestrator.approve(result.approval_id, "alice")

        assert failed.state is ExecutionState.FAILED
        assert failed.error_code == "BUDGET_CONTENTION"
        assert _budget(orchestrator).reserved_amount == Decimal("0")


def test_long_skill_key_survives_in_state_log(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("customer_lookup_skill"))(
        lambda payload, ctx: SkillResult(actual_cost="1")
    )

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "customer_lookup_skill", {}, _executor())
        created = orchestrator.history(result.execution_id)[0]

    assert created.metadata["skill"] == "customer_lookup_skill@1.0.0"


def test_expiry_sweep_fails_unanswered_requests(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.update", requires_approval=True))(
        lambda payload, ctx: SkillResult()
    )
    audit = RecordingAuditLogger()

    with _orchestrator(tmp_path, clock, registry, audit_logger=audit) as orchestrator:
        first = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        second = orchestrator.submit(TENANT, "k2", "crm.update", {}, _executor())

        clock.advance(601)
        assert orchestrator.expire_overdue() == 2
        for result in (first, second):
            execution = orchestrator.get_status(result.execution_id)
            assert execution.state is ExecutionState.FAILED
            assert execution.error_code == "APPROVAL_EXPIRED"
        assert orchestrator.expire_overdue() == 0
        assert audit.events().count("approval.expired") == 2


def test_approving_after_expiry_is_refused(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.update", requires_approval=True))(
        lambda payload, ctx: SkillResult()
    )
    audit = RecordingAuditLogger()

    with _orchestrator(tmp_path, clock, registry, audit_logger=audit) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.update", {}, _executor())
        clock.advance(601)

        with pytest.raises(NotPending):
            orchestrator.approve(result.approval_id, "alice")
        assert orchestrator.get_status(result.execution_id).error_code == "APPROVAL_EXPIRED"
        assert "approval.expired" in audit.events()


def test_terminal_execution_cannot_be_cancelled(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult())

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        with pytest.raises(InvalidTransition):
            orchestrator.cancel(result.execution_id, "ops")
        assert orchestrator.get_status(result.execution_id).state is ExecutionState.COMPLETED


def test_retries_then_success_with_backoff(tmp_path, clock) -> None:
    registry = SkillRegistry()
    attempts: list[int] = []

    @registry.handler(_spec("crm.flaky", max_retries=2, retry_delay_seconds=1))
    def flaky(payload, ctx) -> SkillResult:
        attempts.append(ctx.attempt)
        if ctx.attempt < 3:
            raise ConnectionError("upstream unavailable")
        return SkillResult(actual_cost="1")

    sleeps: list[float] = []
    with _orchestrator(
        tmp_path, clock, registry, sleeps=sleeps, config={"retry_backoff_multiplier": 2.0}
    ) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.flaky", {}, _executor())

        assert result.state is ExecutionState.COMPLETED
        history = orchestrator.history(result.execution_id)
        assert history[-1].metadata["attempts"] == 3

    assert attempts == [1, 2, 3]
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_fail_and_release(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.broken", max_retries=1, retry_delay_seconds=0))(
        lambda payload, ctx: SkillResult(success=False, error="token sk-abc leaked")
    )

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.broken", {}, _executor())
        execution = orchestrator.get_status(result.execution_id)

        assert execution.state is ExecutionState.FAILED
        assert execution.error_code == "HANDLER_FAILED"
        assert execution.budget_released
        budget = _budget(orchestrator)
        assert budget.reserved_amount == Decimal("0")
        assert budget.used_amount == Decimal("0")
        statuses = [r.status for r in orchestrator.ledger.reservations(execution.id)]
        assert statuses == [ReservationStatus.RELEASED]


def test_handler_timeout(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.slow", timeout_seconds=1))(
        lambda payload, ctx: time.sleep(1.5) or SkillResult()
    )

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.slow", {}, _executor())
        execution = orchestrator.get_status(result.execution_id)

        assert execution.state is ExecutionState.FAILED
        assert execution.error_code == "HANDLER_TIMEOUT"


def test_async_handler(tmp_path, clock) -> None:
    registry = SkillRegistry()

    @registry.handler(_spec("crm.async"))
    async def handler(payload, ctx) -> SkillResult:
        await asyncio.sleep(0)
        return SkillResult(output={"async": True}, actual_cost="0.5")

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.async", {}, _executor())
        assert result.state is ExecutionState.COMPLETED
        assert orchestrator.get_status(result.execution_id).result_summary == '{"async": true}'


def test_overconsumption_fails_execution(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.greedy", cost="1"))(
        lambda payload, ctx: SkillResult(actual_cost="4")
    )

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.greedy", {}, _executor())
        execution = orchestrator.get_status(result.execution_id)

        assert execution.state is ExecutionState.FAILED
        assert execution.error_code == "OVERCONSUMPTION"
        budget = _budget(orchestrator)
        assert budget.used_amount == Decimal("0")
        assert budget.reserved_amount == Decimal("0")


def test_top_up_allows_spending_beyond_estimate(tmp_path, clock) -> None:
    registry = SkillRegistry()

    @registry.handler(_spec("crm.grow", cost="1"))
    def grow(payload, ctx) -> SkillResult:
        ctx.top_up("3")
        return SkillResult(actual_cost="4")

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.grow", {}, _executor())
        execution = orchestrator.get_status(result.execution_id)

        assert execution.state is ExecutionState.COMPLETED
        assert execution.budget_consumed_amount == Decimal("4")
        assert _budget(orchestrator).used_amount == Decimal("4")


def test_leaked_execution_is_reconciled(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search", timeout_seconds=5))(lambda payload, ctx: SkillResult())
    held = HeldExecutor()

    with _orchestrator(tmp_path, clock, registry, executor=held) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        assert result.status is SubmissionStatus.ACCEPTED
        assert result.state is ExecutionState.CREATED
        assert _budget(orchestrator).reserved_amount == Decimal("2")

        clock.advance(5 + 60)
        assert orchestrator.reconcile_leaked() == 0
        clock.advance(1)
        assert orchestrator.reconcile_leaked() == 1

        execution = orchestrator.get_status(result.execution_id)
        assert execution.state is ExecutionState.FAILED
        assert execution.error_code == "EXECUTION_ABANDONED"
        assert _budget(orchestrator).reserved_amount == Decimal("0")

        # The queued job starts late and finds nothing to do.
        held.run_all()
        assert orchestrator.get_status(result.execution_id).state is ExecutionState.FAILED


def test_cancel_queued_execution_releases_budget(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult())

    with _orchestrator(tmp_path, clock, registry, executor=HeldExecutor()) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        cancelled = orchestrator.cancel(result.execution_id, "ops", "customer withdrew")

        assert cancelled.error_code == "CANCELLED"
        assert cancelled.state_changed_by == "ops"
        assert _budget(orchestrator).reserved_amount == Decimal("0")


def test_background_executor(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult(actual_cost="1"))
    pool = ThreadPoolExecutor(max_workers=2)

    with _orchestrator(tmp_path, clock, registry, executor=pool) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        assert result.status is SubmissionStatus.ACCEPTED
        pool.shutdown(wait=True)
        assert orchestrator.get_status(result.execution_id).state is ExecutionState.COMPLETED


def test_blocked_internal_skill_is_audited(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(
        SkillSpec(
            key="ops.reindex",
            name="reindex",
            category="internal",
            safety=SafetyConfig(requires_approval=False),
            required_responsibility_level=2,
        )
    )(lambda payload, ctx: SkillResult())
    audit = RecordingAuditLogger()

    with _orchestrator(tmp_path, clock, registry, audit_logger=audit) as orchestrator:
        with pytest.raises(SkillCategoryForbidden):
            orchestrator.submit(TENANT, "k1", "ops.reindex", {}, _executor())

    assert audit.events() == ["skill.execute.blocked"]
    assert audit.entries[0].error_code == "INTERNAL_SKILL_BLOCKED"


def test_audit_failures_are_counted_not_raised(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult())

    with _orchestrator(tmp_path, clock, registry, audit_logger=FailingAuditLogger()) as orchestrator:
        result = orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        assert result.state is ExecutionState.COMPLETED
        assert orchestrator.audit_error_count == 4


def test_audit_chains_verify(tmp_path, clock) -> None:
    registry = SkillRegistry()
    registry.handler(_spec("crm.search"))(lambda payload, ctx: SkillResult(actual_cost="1"))

    with _orchestrator(tmp_path, clock, registry) as orchestrator:
        orchestrator.submit(TENANT, "k1", "crm.search", {}, _executor())
        counts = orchestrator.verify_audit_chains()

    assert counts == {"execution_state_logs": 3, "budget_transactions": 2}
