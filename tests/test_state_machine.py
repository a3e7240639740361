from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from skillrunner.budgets import BudgetLedger
from skillrunner.db import Database, format_timestamp
from skillrunner.errors import ActorRequired, ExecutionNotFound, InvalidTransition, StaleState
from skillrunner.state_machine import TRANSITIONS, StateMachine, can_transition
from skillrunner.types import BudgetScope, ExecutionState, ResultStatus

S = ExecutionState


def _seed(db: Database, machine: StateMachine, now: datetime, *, requires_approval: bool = False) -> str:
    execution_id = str(uuid.uuid4())
    stamp = format_timestamp(now)
    with db.transaction() as tx:
        tx.execute(
            """
            INSERT INTO executions
            (id, tenant_id, idempotency_key, skill_key, skill_version, skill_id, skill_version_id,
             executor_type, executor_id, legal_responsible_user_id, responsibility_level,
             requires_approval, state, state_changed_at, created_at, trace_id, timeout_seconds,
             lease_seconds)
            VALUES (?, 't1', ?, 'demo.echo', '1.0.0', 'demo.echo', 'demo.echo@1.0.0',
                    'agent', 'agent-1', 'user-1', 2, ?, 'CREATED', ?, ?, 'trace-1', 30, 30)
            """,
            (execution_id, execution_id, int(requires_approval), stamp, stamp),
        )
        machine.append_log(
            tx,
            execution_id=execution_id,
            from_state=None,
            to_state=S.CREATED,
            actor_id="agent-1",
            created_at=now,
        )
    return execution_id


def _reserve(db: Database, clock, execution_id: str) -> None:
    ledger = BudgetLedger(db, now=clock)
    ledger.create_budget(
        tenant_id="t1",
        limit_amount="100",
        period_start=clock() - timedelta(days=1),
        period_end=clock() + timedelta(days=30),
    )
    ledger.reserve(BudgetScope(tenant_id="t1"), execution_id, "1")


def test_transition_table_has_no_exits_from_terminal_states() -> None:
    assert TRANSITIONS[S.COMPLETED] == frozenset()
    assert TRANSITIONS[S.FAILED] == frozenset()
    assert set(TRANSITIONS) == set(ExecutionState)
    assert can_transition(S.PENDING_APPROVAL, S.APPROVED)
    assert not can_transition(S.PENDING_APPROVAL, S.RUNNING)
    assert not can_transition(S.CREATED, S.COMPLETED)


def test_happy_path_writes_one_log_row_per_transition(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())
    _reserve(db, clock, execution_id)

    clock.advance(1)
    running = machine.transition(
        execution_id, expected=S.CREATED, to=S.RUNNING, actor_id="system:runner"
    )
    assert running.state is S.RUNNING
    assert running.previous_state is S.CREATED
    assert running.started_at == clock()

    clock.advance(2)
    done = machine.transition(
        execution_id,
        expected=S.RUNNING,
        to=S.COMPLETED,
        actor_id="system:runner",
        updates={"result_status": ResultStatus.SUCCESS, "result_summary": "ok"},
    )
    assert done.state is S.COMPLETED
    assert done.completed_at == clock()
    assert done.result_status is ResultStatus.SUCCESS

    history = machine.history(execution_id)
    assert [(e.from_state, e.to_state) for e in history] == [
        (None, S.CREATED),
        (S.CREATED, S.RUNNING),
        (S.RUNNING, S.COMPLETED),
    ]
    assert history[0].prev_entry_hash is None
    assert history[1].prev_entry_hash == history[0].entry_hash


def test_invalid_transition_is_refused_without_side_effects(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())

    with pytest.raises(InvalidTransition):
        machine.transition(execution_id, expected=S.CREATED, to=S.COMPLETED, actor_id="x")

    assert machine.get(execution_id).state is S.CREATED
    assert len(machine.history(execution_id)) == 1


def test_terminal_state_is_immutable(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())
    machine.transition(
        execution_id,
        expected=S.CREATED,
        to=S.FAILED,
        actor_id="ops",
        updates={"error_code": "CANCELLED"},
    )

    for target in (S.RUNNING, S.COMPLETED, S.FAILED):
        with pytest.raises(InvalidTransition):
            machine.transition(execution_id, expected=S.RUNNING, to=target, actor_id="ops")
    with pytest.raises(InvalidTransition):
        machine.transition(execution_id, expected=S.CREATED, to=S.RUNNING, actor_id="ops")

    failed = machine.get(execution_id)
    assert failed.state is S.FAILED
    assert failed.error_code == "CANCELLED"
    assert len(machine.history(execution_id)) == 2


def test_stale_expected_state_is_rejected(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock(), requires_approval=True)
    machine.transition(
        execution_id, expected=S.CREATED, to=S.PENDING_APPROVAL, actor_id="agent-1"
    )

    with pytest.raises(StaleState):
        machine.transition(execution_id, expected=S.CREATED, to=S.FAILED, actor_id="ops")


def test_running_requires_live_reservation(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())

    with pytest.raises(InvalidTransition, match="reservation"):
        machine.transition(execution_id, expected=S.CREATED, to=S.RUNNING, actor_id="r")
    assert machine.get(execution_id).state is S.CREATED


def test_gated_execution_cannot_skip_approval(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock(), requires_approval=True)
    _reserve(db, clock, execution_id)

    with pytest.raises(InvalidTransition, match="requires approval"):
        machine.transition(execution_id, expected=S.CREATED, to=S.RUNNING, actor_id="r")


def test_approval_transition_requires_actor(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock(), requires_approval=True)
    machine.transition(
        execution_id, expected=S.CREATED, to=S.PENDING_APPROVAL, actor_id="agent-1"
    )

    with pytest.raises(ActorRequired):
        machine.transition(
            execution_id, expected=S.PENDING_APPROVAL, to=S.APPROVED, actor_id="  "
        )
    approved = machine.transition(
        execution_id, expected=S.PENDING_APPROVAL, to=S.APPROVED, actor_id="alice"
    )
    assert approved.state_changed_by == "alice"


def test_updates_are_limited_to_result_columns(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())

    with pytest.raises(ValueError, match="not updatable"):
        machine.transition(
            execution_id,
            expected=S.CREATED,
            to=S.FAILED,
            actor_id="ops",
            updates={"budget_reserved_amount": Decimal("5")},
        )


def test_unknown_execution(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    with pytest.raises(ExecutionNotFound):
        machine.get("missing")


def test_log_metadata_is_sanitized(db, clock) -> None:
    machine = StateMachine(db, now=clock)
    execution_id = _seed(db, machine, clock())
    machine.transition(
        execution_id,
        expected=S.CREATED,
        to=S.FAILED,
        actor_id="ops",
        metadata={"api_key": "sk-secret", "note": "mail bob@example.com"},
    )

    entry = machine.history(execution_id)[-1]
    assert entry.metadata["api_key"] == "[redacted]"
    assert "bob@example.com" not in entry.metadata["note"]
