"""Skill declarations and the explicit registration table.

A skill is registered by code, never discovered from the filesystem:

    registry = SkillRegistry()

    @registry.handler(spec, input_model=SummarizeInput)
    def summarize(payload: dict, ctx: SkillContext) -> SkillResult:
        ...

The orchestrator only sees ``RegisteredSkill`` capabilities: validate the
input, estimate the cost, execute.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Iterator, Protocol, Union

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import SkillNotFound, ValidationError
from .types import ResponsibilityLevel, quantize_amount

INTERNAL_CATEGORY = "internal"
TOKENS_PER_UNIT = Decimal("1000")

_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")
_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


class PIIHandling(str, Enum):
    REJECT = "REJECT"
    MASK_BEFORE_LLM = "MASK_BEFORE_LLM"
    ALLOW_WITH_CONSENT = "ALLOW_WITH_CONSENT"


class PIIPolicy(BaseModel):
    model_config = {"frozen": True}

    input_contains_pii: bool = False
    output_contains_pii: bool = False
    pii_fields: tuple[str, ...] = ()
    handling: PIIHandling = PIIHandling.REJECT


class SafetyConfig(BaseModel):
    model_config = {"frozen": True}

    requires_approval: bool = True
    timeout_seconds: int = Field(default=300, gt=0)
    max_retries: int = Field(default=0, ge=0)
    retry_delay_seconds: int = Field(default=5, ge=0)


class CostModel(BaseModel):
    """Declared cost. Token prices are per thousand tokens."""

    model_config = {"frozen": True}

    fixed_cost: Decimal = Field(default=Decimal("0"), ge=0)
    per_token_input: Decimal = Field(default=Decimal("0.003"), ge=0)
    per_token_output: Decimal = Field(default=Decimal("0.015"), ge=0)
    estimated_tokens_input: int | None = Field(default=None, gt=0)
    estimated_tokens_output: int | None = Field(default=None, gt=0)

    @field_validator("fixed_cost", "per_token_input", "per_token_output", mode="before")
    @classmethod
    def _no_binary_floats(cls, value: Any) -> Any:
        if isinstance(value, float):
            return Decimal(str(value))
        return value

    def estimate(self) -> Decimal:
        total = self.fixed_cost
        if self.estimated_tokens_input:
            total += Decimal(self.estimated_tokens_input) / TOKENS_PER_UNIT * self.per_token_input
        if self.estimated_tokens_output:
            total += Decimal(self.estimated_tokens_output) / TOKENS_PER_UNIT * self.per_token_output
        return quantize_amount(total)


class SkillSpec(BaseModel):
    """Declarative profile of one skill version."""

    model_config = {"frozen": True}

    key: str
    version: str = "1.0.0"
    name: str
    description: str = ""
    category: str
    tags: tuple[str, ...] = ()
    cost_model: CostModel = Field(default_factory=CostModel)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    pii_policy: PIIPolicy = Field(default_factory=PIIPolicy)
    has_external_effect: bool = False
    required_responsibility_level: ResponsibilityLevel = ResponsibilityLevel.HUMAN_APPROVED

    @field_validator("key")
    @classmethod
    def _key_format(cls, value: str) -> str:
        if not _KEY_PATTERN.match(value):
            raise ValueError('key must be lowercase with dots (e.g. "crm.customer.search")')
        return value

    @field_validator("version")
    @classmethod
    def _version_format(cls, value: str) -> str:
        if not _VERSION_PATTERN.match(value):
            raise ValueError('version must be semver (e.g. "1.0.0")')
        return value

    @field_validator("category")
    @classmethod
    def _category_non_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("category must be a non-empty string")
        return value

    @model_validator(mode="after")
    def _external_effect_needs_human(self) -> "SkillSpec":
        if (
            self.has_external_effect
            and self.required_responsibility_level > ResponsibilityLevel.HUMAN_APPROVED
        ):
            raise ValueError(
                "skills with external effects require responsibility level HUMAN_APPROVED or stricter"
            )
        return self

    @property
    def skill_id(self) -> str:
        return self.key

    @property
    def version_id(self) -> str:
        return f"{self.key}@{self.version}"

    @property
    def is_internal(self) -> bool:
        return self.category == INTERNAL_CATEGORY


class SkillResult(BaseModel):
    """What a handler reports back. ``success=False`` counts as a failed attempt."""

    output: dict[str, Any] = Field(default_factory=dict)
    actual_cost: Decimal = Field(default=Decimal("0"), ge=0)
    tokens_used: dict[str, int] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error: str | None = None

    @field_validator("actual_cost", mode="before")
    @classmethod
    def _no_binary_floats(cls, value: Any) -> Any:
        if isinstance(value, float):
            return Decimal(str(value))
        return value


@dataclass
class SkillContext:
    """Per-attempt context handed to a handler."""

    execution_id: str
    tenant_id: str
    trace_id: str
    skill_key: str
    attempt: int
    logger: logging.Logger
    _top_up: Callable[[Decimal], Any] = field(repr=False)

    def top_up(self, amount: Decimal | int | str) -> None:
        """Enlarge this execution's reservation before spending beyond the estimate."""
        self._top_up(quantize_amount(amount))


HandlerResult = Union[SkillResult, Awaitable[SkillResult]]
Handler = Callable[[dict[str, Any], SkillContext], HandlerResult]


class Skill(Protocol):
    """Capability the orchestrator needs from a registered skill."""

    spec: SkillSpec

    def validate_input(self, raw: Any) -> dict[str, Any]:
        ...

    def estimated_cost(self, payload: dict[str, Any]) -> Decimal:
        ...

    def execute(self, payload: dict[str, Any], ctx: SkillContext) -> HandlerResult:
        ...


@dataclass(frozen=True)
class RegisteredSkill:
    spec: SkillSpec
    handler: Handler
    input_model: type[BaseModel] | None = None

    def validate_input(self, raw: Any) -> dict[str, Any]:
        """Validate against the declared input model; return a JSON-safe dict."""
        if self.input_model is not None:
            try:
                model = self.input_model.model_validate(raw)
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"input for {self.spec.key} is invalid: {exc.error_count()} error(s)"
                ) from exc
            return model.model_dump(mode="json")
        if not isinstance(raw, dict):
            raise ValidationError("input must be an object")
        try:
            return json.loads(json.dumps(raw))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"input is not JSON-serializable: {exc}") from exc

    def estimated_cost(self, payload: dict[str, Any]) -> Decimal:
        return self.spec.cost_model.estimate()

    def execute(self, payload: dict[str, Any], ctx: SkillContext) -> HandlerResult:
        return self.handler(payload, ctx)


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in version.split("."))


class SkillRegistry:
    """Explicit mapping of skill key and version to a registered capability."""

    def __init__(self, skills: Iterable[Skill] = ()) -> None:
        self._skills: dict[str, dict[str, Skill]] = {}
        for skill in skills:
            self.register(skill)

    def register(self, skill: Skill) -> Skill:
        versions = self._skills.setdefault(skill.spec.key, {})
        if skill.spec.version in versions:
            raise ValueError(f"skill {skill.spec.version_id} is already registered")
        versions[skill.spec.version] = skill
        return skill

    def handler(
        self, spec: SkillSpec, *, input_model: type[BaseModel] | None = None
    ) -> Callable[[Handler], Handler]:
        """Decorator form of ``register`` for plain handler functions."""

        def decorator(func: Handler) -> Handler:
            self.register(RegisteredSkill(spec=spec, handler=func, input_model=input_model))
            return func

        return decorator

    def resolve(self, key: str, version: str | None = None) -> Skill:
        """Return the requested version, or the highest one when ``version`` is None."""
        versions = self._skills.get(key)
        if not versions:
            raise SkillNotFound(f"skill not found: {key}")
        if version is None:
            return versions[max(versions, key=_version_key)]
        skill = versions.get(version)
        if skill is None:
            raise SkillNotFound(f"skill not found: {key}@{version}")
        return skill

    def keys(self) -> list[str]:
        return sorted(self._skills)

    def __contains__(self, key: object) -> bool:
        return key in self._skills

    def __iter__(self) -> Iterator[Skill]:
        for key in sorted(self._skills):
            versions = self._skills[key]
            for version in sorted(versions, key=_version_key):
                yield versions[version]

    def __len__(self) -> int:
        return sum(len(v) for v in self._skills.values())
