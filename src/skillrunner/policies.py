"""Approval policies: decide whether an execution may run without a human."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, field_validator, model_validator

from .skills import SkillSpec
from .types import ExecutorInfo


class GateResult(BaseModel):
    """Outcome of the approval decision. ``scope`` is set when approval is required."""

    model_config = {"frozen": True}

    requires_approval: bool
    reason: str
    scope: str | None = None

    @field_validator("reason")
    @classmethod
    def _reason_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("reason must be a non-empty string")
        return value

    @model_validator(mode="after")
    def _require_scope(self) -> "GateResult":
        if self.requires_approval and (self.scope is None or not self.scope.strip()):
            raise ValueError("scope is required when approval is required")
        return self

    @property
    def auto_approved(self) -> bool:
        return not self.requires_approval


class ApprovalPolicy(Protocol):
    """Policy interface for the approval gate. Must be pure and deterministic."""

    def evaluate(self, spec: SkillSpec, executor: ExecutorInfo) -> GateResult:
        ...


class ResponsibilityPolicy:
    """Default rule.

    Approval is required when the skill declares ``safety.requires_approval``
    or when the caller's asserted level is numerically higher (less
    privileged) than the skill's ``required_responsibility_level``. Equal
    levels run autonomously: the declared level is a floor, not a ceiling.
    """

    def evaluate(self, spec: SkillSpec, executor: ExecutorInfo) -> GateResult:
        if spec.safety.requires_approval:
            return GateResult(
                requires_approval=True,
                reason=f"skill {spec.key} requires approval",
                scope=spec.key,
            )
        if executor.responsibility_level > spec.required_responsibility_level:
            return GateResult(
                requires_approval=True,
                reason=(
                    f"responsibility level {executor.responsibility_level} is weaker than "
                    f"required level {int(spec.required_responsibility_level)}"
                ),
                scope=spec.key,
            )
        return GateResult(requires_approval=False, reason="auto-approved")


class AlwaysRequireApprovalPolicy:
    """Routes every execution through a human."""

    def evaluate(self, spec: SkillSpec, executor: ExecutorInfo) -> GateResult:
        return GateResult(requires_approval=True, reason="approval always required", scope=spec.key)
