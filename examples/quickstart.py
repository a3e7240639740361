"""Quickstart demo for skillrunner."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel

from skillrunner import (
    BudgetScope,
    CostModel,
    ExecutorInfo,
    ExecutorType,
    NoBudgetConfigured,
    Orchestrator,
    RunnerConfig,
    SafetyConfig,
    SkillContext,
    SkillRegistry,
    SkillResult,
    SkillSpec,
)

registry = SkillRegistry()


class RefundInput(BaseModel):
    user_id: str
    amount: Decimal


@registry.handler(
    SkillSpec(
        key="crm.lookup",
        name="Look up customer",
        category="crm",
        cost_model=CostModel(fixed_cost="0.01"),
        safety=SafetyConfig(requires_approval=False, timeout_seconds=10),
        required_responsibility_level=2,
    )
)
def lookup(payload: dict, ctx: SkillContext) -> SkillResult:
    ctx.logger.info("looking up %s", payload.get("user_id"))
    return SkillResult(output={"user_id": payload.get("user_id"), "tier": "gold"}, actual_cost="0.01")


@registry.handler(
    SkillSpec(
        key="billing.refund",
        name="Issue refund",
        category="billing",
        cost_model=CostModel(fixed_cost="0.05"),
        safety=SafetyConfig(requires_approval=True, timeout_seconds=30, max_retries=2),
        has_external_effect=True,
    ),
    input_model=RefundInput,
)
def refund(payload: dict, ctx: SkillContext) -> SkillResult:
    print(f"Processing refund: ${payload['amount']} to user {payload['user_id']}")
    return SkillResult(output={"refunded": payload["amount"]}, actual_cost="0.05")


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    config = RunnerConfig(
        database_path=Path("skillrunner_demo.sqlite"),
        audit_log_path=Path("skillrunner_audit.jsonl"),
    )
    agent = ExecutorInfo(
        executor_type=ExecutorType.AGENT,
        executor_id="demo:quickstart",
        legal_responsible_user_id="ops-lead",
    )
    now = datetime.now(timezone.utc)

    with Orchestrator(registry, config=config) as runner:
        try:
            runner.budget_status(BudgetScope(tenant_id="acme"))
        except NoBudgetConfigured:
            runner.ledger.create_budget(
                tenant_id="acme",
                limit_amount="10",
                period_start=now,
                period_end=now + timedelta(days=30),
            )

        print("Demo 1: customer lookup (autonomous)")
        lookup_run = runner.submit("acme", "lookup-user_123", "crm.lookup", {"user_id": "user_123"}, agent)
        print(f"  execution {lookup_run.execution_id} {lookup_run.state.value}")

        print("\nDemo 2: refund (requires approval)")
        refund_run = runner.submit(
            "acme",
            "refund-user_456",
            "billing.refund",
            {"user_id": "user_456", "amount": "1500"},
            agent,
        )
        print(f"  execution {refund_run.execution_id} {refund_run.state.value}")

        # Use auto-approve if SKILLRUNNER_AUTO_APPROVE=1 (for CI/demo)
        if refund_run.approval_id and os.getenv("SKILLRUNNER_AUTO_APPROVE") == "1":
            done = runner.approve(refund_run.approval_id, "demo:approver")
            print(f"  [auto-approved for demo] execution {done.id} {done.state.value}")
        elif refund_run.approval_id:
            print("\nApprove from the command line:")
            print(
                f"  skillrunner --db {config.database_path} approvals approve {refund_run.approval_id}"
                " --approver you --registry quickstart:registry"
            )

        budget = runner.budget_status(BudgetScope(tenant_id="acme"))
        print(f"\nBudget: used {budget.used_amount}, reserved {budget.reserved_amount}, limit {budget.limit_amount}")

    print("\nOutputs:")
    print(f"  Database:  {config.database_path}")
    print(f"  Audit log: {config.audit_log_path}")
    print("\nVerify audit chains:")
    print(f"  skillrunner --db {config.database_path} verify")


if __name__ == "__main__":
    main()
