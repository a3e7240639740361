"""Error codes recorded on executions that end in FAILED."""

from __future__ import annotations

APPROVAL_REJECTED = "APPROVAL_REJECTED"
APPROVAL_EXPIRED = "APPROVAL_EXPIRED"
CANCELLED = "CANCELLED"

HANDLER_FAILED = "HANDLER_FAILED"
HANDLER_TIMEOUT = "HANDLER_TIMEOUT"
EXECUTION_ABANDONED = "EXECUTION_ABANDONED"

BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
NO_BUDGET = "NO_BUDGET"
OVERCONSUMPTION = "OVERCONSUMPTION"

ALL_CODES: frozenset[str] = frozenset(
    {
        APPROVAL_REJECTED,
        APPROVAL_EXPIRED,
        CANCELLED,
        HANDLER_FAILED,
        HANDLER_TIMEOUT,
        EXECUTION_ABANDONED,
        BUDGET_EXCEEDED,
        NO_BUDGET,
        OVERCONSUMPTION,
    }
)
