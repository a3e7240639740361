"""skillrunner public API."""

from .approvals_store import ApprovalStore
from .budgets import (
    BudgetContention,
    BudgetError,
    BudgetExceeded,
    BudgetLedger,
    BudgetStateError,
    InvalidReservation,
    NoBudgetConfigured,
    OverconsumptionError,
    ReservationNotFound,
)
from .config import RunnerConfig
from .db import Database
from .engine import Orchestrator
from .errors import (
    ActorRequired,
    ApprovalNotFound,
    AuditLogError,
    ExecutionNotFound,
    HandlerTimeout,
    InvalidTransition,
    NotPending,
    PIIPolicyError,
    ResponsibilityError,
    SkillCategoryForbidden,
    SkillNotFound,
    SkillRunnerError,
    StaleState,
    ValidationError,
)
from .gate import ApprovalGate
from .intake import IntakeGuard
from .ledger import ChainSealer, LedgerVerificationError, LedgerWriteError
from .loggers import AuditLogger, JsonlAuditLogger, NullAuditLogger
from .policies import AlwaysRequireApprovalPolicy, ApprovalPolicy, GateResult, ResponsibilityPolicy
from .skills import (
    CostModel,
    PIIHandling,
    PIIPolicy,
    RegisteredSkill,
    SafetyConfig,
    Skill,
    SkillContext,
    SkillRegistry,
    SkillResult,
    SkillSpec,
)
from .state_machine import StateMachine
from .sweeper import Sweeper
from .types import (
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    Budget,
    BudgetScope,
    Execution,
    ExecutionState,
    ExecutorInfo,
    ExecutorType,
    ResponsibilityLevel,
    ScopeType,
    SubmissionStatus,
    SubmitResult,
)

__all__ = (
    # Orchestrator
    "Orchestrator",
    "RunnerConfig",
    "Sweeper",
    # Components
    "Database",
    "StateMachine",
    "BudgetLedger",
    "ApprovalStore",
    "ApprovalGate",
    "IntakeGuard",
    # Skills
    "SkillRegistry",
    "SkillSpec",
    "Skill",
    "RegisteredSkill",
    "SkillContext",
    "SkillResult",
    "SafetyConfig",
    "CostModel",
    "PIIPolicy",
    "PIIHandling",
    # Policies
    "ApprovalPolicy",
    "GateResult",
    "ResponsibilityPolicy",
    "AlwaysRequireApprovalPolicy",
    # Types
    "Execution",
    "ExecutionState",
    "ExecutorInfo",
    "ExecutorType",
    "ResponsibilityLevel",
    "ApprovalRequest",
    "ApprovalStatus",
    "Budget",
    "BudgetScope",
    "ScopeType",
    "SubmissionStatus",
    "SubmitResult",
    "AuditEntry",
    # Audit
    "AuditLogger",
    "JsonlAuditLogger",
    "NullAuditLogger",
    "ChainSealer",
    "LedgerWriteError",
    "LedgerVerificationError",
    # Errors
    "SkillRunnerError",
    "ValidationError",
    "SkillNotFound",
    "SkillCategoryForbidden",
    "ResponsibilityError",
    "PIIPolicyError",
    "ExecutionNotFound",
    "StaleState",
    "InvalidTransition",
    "ActorRequired",
    "ApprovalNotFound",
    "NotPending",
    "HandlerTimeout",
    "AuditLogError",
    "BudgetError",
    "BudgetExceeded",
    "NoBudgetConfigured",
    "BudgetStateError",
    "ReservationNotFound",
    "InvalidReservation",
    "OverconsumptionError",
    "BudgetContention",
)
