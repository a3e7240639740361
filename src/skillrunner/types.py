"""Typed models for skillrunner."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, Field, field_validator

AMOUNT_QUANTUM = Decimal("0.0001")


def quantize_amount(value: Decimal | int | str) -> Decimal:
    """Normalize a money amount to four decimal places."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if not amount.is_finite():
        raise ValueError("amount must be finite")
    return amount.quantize(AMOUNT_QUANTUM)


class ExecutionState(str, Enum):
    """Lifecycle states of a single execution."""

    CREATED = "CREATED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[ExecutionState] = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.FAILED}
)


class ExecutorType(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class ResponsibilityLevel(IntEnum):
    """Ordinal autonomy tiers. Lower values are more privileged."""

    HUMAN_DIRECT = 0
    HUMAN_APPROVED = 1
    AI_WITH_REVIEW = 2
    AI_INTERNAL_ONLY = 3


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    CONSUMED = "consumed"
    RELEASED = "released"


class TransactionType(str, Enum):
    RESERVE = "reserve"
    CONSUME = "consume"
    RELEASE = "release"
    ADJUST = "adjust"


class ScopeType(str, Enum):
    TENANT = "tenant"
    SKILL = "skill"
    USER = "user"


class SubmissionStatus(str, Enum):
    ACCEPTED = "ACCEPTED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class _RowModel(BaseModel):
    """Frozen projection of a persisted row."""

    model_config = {"frozen": True}

    _json_fields: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]):
        data = dict(row)
        for name in cls._json_fields:
            value = data.get(name)
            if isinstance(value, str):
                data[name] = json.loads(value)
        return cls.model_validate(data)


class ExecutorInfo(BaseModel):
    """Who is asking for an execution and who answers for it."""

    model_config = {"frozen": True}

    executor_type: ExecutorType
    executor_id: str
    legal_responsible_user_id: str | None = None
    responsibility_level: int = ResponsibilityLevel.AI_WITH_REVIEW
    parent_execution_id: str | None = None
    trace_id: str | None = None

    @field_validator("executor_id")
    @classmethod
    def _executor_id_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("executor_id must be a non-empty string")
        return value

    @property
    def is_external(self) -> bool:
        return self.parent_execution_id is None


class ApprovalChainEntry(BaseModel):
    model_config = {"frozen": True}

    approval_id: str
    approver_id: str
    decision: ApprovalStatus
    decided_at: datetime
    reason: str | None = None


class Execution(_RowModel):
    """Read-only projection of one execution record."""

    _json_fields: ClassVar[tuple[str, ...]] = ("approval_chain", "input")

    id: str
    tenant_id: str
    idempotency_key: str

    skill_key: str
    skill_version: str
    skill_id: str
    skill_version_id: str

    executor_type: ExecutorType
    executor_id: str
    legal_responsible_user_id: str
    responsibility_level: int
    approval_chain: list[ApprovalChainEntry] = Field(default_factory=list)
    requires_approval: bool = False

    input: dict[str, Any] = Field(default_factory=dict)

    state: ExecutionState
    previous_state: ExecutionState | None = None
    state_changed_at: datetime
    state_changed_by: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    budget_reserved_amount: Decimal = Decimal("0")
    budget_consumed_amount: Decimal = Decimal("0")
    budget_released: bool = False

    result_status: ResultStatus | None = None
    result_summary: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    trace_id: str
    parent_execution_id: str | None = None

    timeout_seconds: int
    lease_seconds: int

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class BudgetScope(BaseModel):
    """The scope chain a reservation resolves against, most specific first."""

    model_config = {"frozen": True}

    tenant_id: str
    skill_key: str | None = None
    user_id: str | None = None


class Budget(_RowModel):
    id: str
    tenant_id: str
    scope_type: ScopeType
    scope_id: str | None = None
    period_start: datetime
    period_end: datetime
    limit_amount: Decimal
    used_amount: Decimal = Decimal("0")
    reserved_amount: Decimal = Decimal("0")
    is_hard_limit: bool = True
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    @property
    def available_amount(self) -> Decimal:
        return self.limit_amount - self.used_amount - self.reserved_amount

    @property
    def utilization(self) -> Decimal:
        if self.limit_amount == 0:
            return Decimal("0")
        return (self.used_amount + self.reserved_amount) / self.limit_amount


class BudgetReservation(_RowModel):
    id: str
    budget_id: str
    execution_id: str
    amount: Decimal
    actual_amount: Decimal | None = None
    status: ReservationStatus
    created_at: datetime
    resolved_at: datetime | None = None


class BudgetTransaction(_RowModel):
    id: int
    budget_id: str
    execution_id: str | None = None
    reservation_id: str | None = None
    transaction_type: TransactionType
    amount: Decimal
    reserved_delta: Decimal
    used_delta: Decimal
    description: str | None = None
    created_at: datetime
    prev_entry_hash: str | None = None
    entry_hash: str
    entry_signature: str | None = None


class ApprovalRequest(_RowModel):
    id: str
    execution_id: str
    tenant_id: str
    requester_id: str
    scope: str
    status: ApprovalStatus
    approver_id: str | None = None
    rejection_reason: str | None = None
    expires_at: datetime
    created_at: datetime
    resolved_at: datetime | None = None


class StateLogEntry(_RowModel):
    _json_fields: ClassVar[tuple[str, ...]] = ("metadata",)

    id: int
    execution_id: str
    from_state: ExecutionState | None = None
    to_state: ExecutionState
    actor_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    prev_entry_hash: str | None = None
    entry_hash: str
    entry_signature: str | None = None


class SubmitResult(BaseModel):
    """What the calling layer gets back from a submission."""

    model_config = {"frozen": True}

    execution_id: str
    status: SubmissionStatus
    state: ExecutionState
    duplicate: bool = False
    approval_id: str | None = None


class AuditEntry(BaseModel):
    """Operational audit record written as one JSON line."""

    timestamp: datetime
    event: str
    execution_id: str | None = None
    tenant_id: str | None = None
    skill_key: str | None = None
    actor_id: str | None = None
    error_code: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            raise ValueError("timestamp must be timezone-aware")
        return value

    @field_validator("event")
    @classmethod
    def _event_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("event must be a non-empty string")
        return value

    @field_validator("error", mode="before")
    @classmethod
    def _truncate_error(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if len(value) > 200:
            return value[:197] + "..."
        return value

    def to_json_line(self) -> str:
        """Render the entry as a single JSON line."""
        return json.dumps(self.model_dump(mode="json", exclude_none=True))
