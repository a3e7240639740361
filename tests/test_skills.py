from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from skillrunner.errors import SkillNotFound, ValidationError
from skillrunner.skills import CostModel, RegisteredSkill, SkillRegistry, SkillResult, SkillSpec


def _spec(version: str = "1.0.0", **kwargs) -> SkillSpec:
    return SkillSpec(key="doc.summarize", version=version, name="Summarize", category="docs", **kwargs)


def _noop(payload, ctx) -> SkillResult:
    return SkillResult()


def test_spec_validation() -> None:
    with pytest.raises(PydanticValidationError):
        SkillSpec(key="Doc Summarize", name="x", category="docs")
    with pytest.raises(PydanticValidationError):
        _spec(version="v1")
    with pytest.raises(PydanticValidationError, match="external effects"):
        _spec(has_external_effect=True, required_responsibility_level=2)

    spec = _spec(category="internal")
    assert spec.is_internal
    assert spec.version_id == "doc.summarize@1.0.0"


def test_cost_estimate() -> None:
    assert CostModel().estimate() == Decimal("0")
    model = CostModel(
        fixed_cost="0.5",
        per_token_input="0.003",
        per_token_output="0.015",
        estimated_tokens_input=2000,
        estimated_tokens_output=1000,
    )
    assert model.estimate() == Decimal("0.5210")
    assert CostModel(fixed_cost=0.1).fixed_cost == Decimal("0.1")


def test_resolve_picks_highest_version_by_default() -> None:
    registry = SkillRegistry()
    for version in ("1.2.0", "1.10.0", "1.9.3"):
        registry.handler(_spec(version))(_noop)

    assert registry.resolve("doc.summarize").spec.version == "1.10.0"
    assert registry.resolve("doc.summarize", "1.2.0").spec.version == "1.2.0"
    assert [s.spec.version for s in registry] == ["1.2.0", "1.9.3", "1.10.0"]
    assert len(registry) == 3
    assert "doc.summarize" in registry
    with pytest.raises(SkillNotFound):
        registry.resolve("doc.summarize", "2.0.0")
    with pytest.raises(SkillNotFound):
        registry.resolve("doc.translate")


def test_duplicate_registration_is_refused() -> None:
    registry = SkillRegistry([RegisteredSkill(spec=_spec(), handler=_noop)])
    with pytest.raises(ValueError, match="already registered"):
        registry.handler(_spec())(_noop)


def test_validate_input() -> None:
    class Payload(BaseModel):
        text: str
        max_words: int = 50

    typed = RegisteredSkill(spec=_spec(), handler=_noop, input_model=Payload)
    assert typed.validate_input({"text": "hello"}) == {"text": "hello", "max_words": 50}
    with pytest.raises(ValidationError, match="1 error"):
        typed.validate_input({"max_words": 3})

    untyped = RegisteredSkill(spec=_spec(), handler=_noop)
    assert untyped.validate_input({"a": (1, 2)}) == {"a": [1, 2]}
    with pytest.raises(ValidationError):
        untyped.validate_input(["not", "an", "object"])
    with pytest.raises(ValidationError):
        untyped.validate_input({"a": object()})
