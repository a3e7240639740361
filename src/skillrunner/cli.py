"""Command-line interface for skillrunner."""

from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from .budgets import BudgetError
from .config import RunnerConfig
from .db import Database
from .engine import Orchestrator
from .errors import SkillRunnerError
from .ledger import LedgerVerificationError
from .ledger.signing import generate_keypair, load_public_key
from .skills import SkillRegistry
from .sweeper import Sweeper
from .types import ApprovalStatus, BudgetScope, ScopeType

DEFAULT_BUDGET_DAYS = 30


def _parse_timestamp(value: str) -> datetime | None:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}") from exc
    if not amount.is_finite() or amount < 0:
        raise argparse.ArgumentTypeError(f"invalid amount: {value}")
    return amount


def _load_registry(spec: str | None) -> SkillRegistry:
    """Import ``module:attribute``; the attribute is a registry or a zero-arg factory."""
    if spec is None:
        return SkillRegistry()
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError("--registry must look like module:attribute")
    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ValueError(f"cannot load registry {spec}: {exc}") from exc
    registry = target() if callable(target) and not isinstance(target, SkillRegistry) else target
    if not isinstance(registry, SkillRegistry):
        raise ValueError(f"{spec} is not a SkillRegistry")
    return registry


def _orchestrator(args: argparse.Namespace, *, with_registry: bool = False) -> Orchestrator:
    config = RunnerConfig.from_env()
    if args.db is not None:
        config = dataclasses.replace(config, database_path=args.db)
    registry = _load_registry(getattr(args, "registry", None) if with_registry else None)
    return Orchestrator(registry, config=config)


def _db_path(args: argparse.Namespace) -> Path:
    if args.db is not None:
        return args.db
    return RunnerConfig.from_env().database_path


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="skillrunner", add_help=True)
    parser.add_argument("--db", type=Path, help="Path to the SQLite database")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the database schema")

    budget_parser = subparsers.add_parser("budget", help="Manage budgets")
    budget_sub = budget_parser.add_subparsers(dest="budget_command", required=True)

    create_parser = budget_sub.add_parser("create", help="Create a budget")
    create_parser.add_argument("--tenant", required=True, help="Tenant id")
    create_parser.add_argument("--limit", required=True, type=_parse_amount, help="Limit amount")
    create_parser.add_argument(
        "--scope-type",
        choices=[s.value for s in ScopeType],
        default=ScopeType.TENANT.value,
        help="Budget scope",
    )
    create_parser.add_argument("--scope-id", help="Skill key or user id for scoped budgets")
    create_parser.add_argument("--start", help="Period start (ISO 8601, default now)")
    create_parser.add_argument("--end", help="Period end (ISO 8601, default start + 30 days)")
    create_parser.add_argument("--soft", action="store_true", help="Warn instead of refusing")

    show_parser = budget_sub.add_parser("show", help="Show the budget that applies to a scope")
    show_parser.add_argument("--tenant", required=True, help="Tenant id")
    show_parser.add_argument("--skill", help="Skill key")
    show_parser.add_argument("--user", help="Legal responsible user id")
    show_parser.add_argument("--json", action="store_true", help="Output JSON")

    limit_parser = budget_sub.add_parser("set-limit", help="Change a budget's limit")
    limit_parser.add_argument("budget_id", help="Budget id")
    limit_parser.add_argument("limit", type=_parse_amount, help="New limit amount")
    limit_parser.add_argument("--description", help="Reason for the change")

    status_parser = subparsers.add_parser("status", help="Show an execution")
    status_parser.add_argument("execution_id", help="Execution id")
    status_parser.add_argument("--json", action="store_true", help="Output JSON")

    history_parser = subparsers.add_parser("history", help="Show an execution's state log")
    history_parser.add_argument("execution_id", help="Execution id")
    history_parser.add_argument("--json", action="store_true", help="Output JSON")

    approvals_parser = subparsers.add_parser("approvals", help="Manage approval requests")
    approvals_sub = approvals_parser.add_subparsers(dest="approvals_command", required=True)

    list_parser = approvals_sub.add_parser("list", help="List approval requests")
    list_parser.add_argument("--tenant", help="Tenant id")
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in ApprovalStatus] + ["all"],
        default=ApprovalStatus.PENDING.value,
        help="Request status",
    )
    list_parser.add_argument("--json", action="store_true", help="Output JSON")

    approve_parser = approvals_sub.add_parser("approve", help="Approve and run an execution")
    approve_parser.add_argument("approval_id", help="Approval id")
    approve_parser.add_argument("--approver", required=True, help="Approver id")
    approve_parser.add_argument(
        "--registry", required=True, help="Skill registry as module:attribute"
    )

    reject_parser = approvals_sub.add_parser("reject", help="Reject an approval request")
    reject_parser.add_argument("approval_id", help="Approval id")
    reject_parser.add_argument("--approver", required=True, help="Approver id")
    reject_parser.add_argument("--reason", help="Rejection reason")

    review_parser = approvals_sub.add_parser("review", help="Review pending requests interactively")
    review_parser.add_argument("--approver", required=True, help="Approver id")
    review_parser.add_argument(
        "--registry", required=True, help="Skill registry as module:attribute"
    )
    review_parser.add_argument("--tenant", help="Tenant id")

    sweep_parser = subparsers.add_parser("sweep", help="Expire overdue approvals and reconcile leaks")
    sweep_parser.add_argument("--json", action="store_true", help="Output JSON")

    verify_parser = subparsers.add_parser("verify", help="Verify audit chains and budget counters")
    verify_parser.add_argument("--json", action="store_true", help="Output JSON")
    verify_parser.add_argument("--public-key", type=Path, help="Path to Ed25519 public key PEM")

    keygen_parser = subparsers.add_parser("keygen", help="Generate Ed25519 key pair")
    keygen_parser.add_argument("--private-key", type=Path, required=True, help="Path to private key PEM")
    keygen_parser.add_argument("--public-key", type=Path, required=True, help="Path to public key PEM")
    keygen_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing key files",
    )

    return parser.parse_args(argv)


def _cmd_init(args: argparse.Namespace) -> int:
    path = _db_path(args)
    Database(path)
    print(f"initialized {path}")
    return 0


def _cmd_budget_create(args: argparse.Namespace) -> int:
    start = _parse_timestamp(args.start) if args.start else datetime.now(timezone.utc)
    if start is None:
        print("invalid --start timestamp", file=sys.stderr)
        return 2
    end = _parse_timestamp(args.end) if args.end else start + timedelta(days=DEFAULT_BUDGET_DAYS)
    if end is None:
        print("invalid --end timestamp", file=sys.stderr)
        return 2
    with _orchestrator(args) as orchestrator:
        budget = orchestrator.ledger.create_budget(
            tenant_id=args.tenant,
            limit_amount=args.limit,
            period_start=start,
            period_end=end,
            scope_type=ScopeType(args.scope_type),
            scope_id=args.scope_id,
            is_hard_limit=not args.soft,
        )
    print(budget.id)
    return 0


def _cmd_budget_show(args: argparse.Namespace) -> int:
    scope = BudgetScope(tenant_id=args.tenant, skill_key=args.skill, user_id=args.user)
    with _orchestrator(args) as orchestrator:
        budget = orchestrator.budget_status(scope)
    if args.json:
        payload = budget.model_dump(mode="json")
        payload["available_amount"] = str(budget.available_amount)
        payload["utilization"] = str(budget.utilization)
        print(json.dumps(payload))
        return 0
    table = Table(title=f"Budget {budget.id}")
    table.add_column("field")
    table.add_column("value")
    table.add_row("scope", f"{budget.scope_type.value} {budget.scope_id or ''}".strip())
    table.add_row("period", f"{budget.period_start.isoformat()} .. {budget.period_end.isoformat()}")
    table.add_row("limit", str(budget.limit_amount))
    table.add_row("used", str(budget.used_amount))
    table.add_row("reserved", str(budget.reserved_amount))
    table.add_row("available", str(budget.available_amount))
    table.add_row("utilization", f"{budget.utilization:.2%}")
    table.add_row("hard limit", "yes" if budget.is_hard_limit else "no")
    Console().print(table)
    return 0


def _cmd_budget_set_limit(args: argparse.Namespace) -> int:
    with _orchestrator(args) as orchestrator:
        budget = orchestrator.ledger.set_limit(
            args.budget_id, args.limit, description=args.description
        )
    print(f"budget {budget.id} limit {budget.limit_amount}")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    with _orchestrator(args) as orchestrator:
        execution = orchestrator.get_status(args.execution_id)
    if args.json:
        print(json.dumps(execution.model_dump(mode="json", exclude={"input"})))
        return 0
    table = Table(title=f"Execution {execution.id}")
    table.add_column("field")
    table.add_column("value")
    table.add_row("skill", escape(execution.skill_version_id))
    table.add_row("tenant", escape(execution.tenant_id))
    table.add_row("state", execution.state.value)
    table.add_row("executor", escape(f"{execution.executor_type.value}:{execution.executor_id}"))
    table.add_row("responsible", escape(execution.legal_responsible_user_id))
    table.add_row("reserved", str(execution.budget_reserved_amount))
    table.add_row("consumed", str(execution.budget_consumed_amount))
    if execution.error_code:
        table.add_row("error", escape(f"{execution.error_code}: {execution.error_message or ''}"))
    if execution.result_summary:
        table.add_row("result", escape(execution.result_summary))
    Console().print(table)
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    with _orchestrator(args) as orchestrator:
        entries = orchestrator.history(args.execution_id)
    if args.json:
        print(json.dumps([entry.model_dump(mode="json") for entry in entries]))
        return 0
    table = Table(title=f"History {args.execution_id}")
    for column in ("at", "from", "to", "actor"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.created_at.isoformat(),
            entry.from_state.value if entry.from_state else "-",
            entry.to_state.value,
            escape(entry.actor_id or "-"),
        )
    Console().print(table)
    return 0


def _cmd_approvals_list(args: argparse.Namespace) -> int:
    status = None if args.status == "all" else ApprovalStatus(args.status)
    with _orchestrator(args) as orchestrator:
        requests = orchestrator.approvals.list_requests(status=status, tenant_id=args.tenant)
    if args.json:
        print(json.dumps([request.model_dump(mode="json") for request in requests]))
        return 0
    table = Table(title="Approval requests")
    for column in ("id", "execution", "scope", "status", "expires"):
        table.add_column(column)
    for request in requests:
        table.add_row(
            request.id,
            request.execution_id,
            escape(request.scope),
            request.status.value,
            request.expires_at.isoformat(),
        )
    Console().print(table)
    return 0


def _cmd_approvals_approve(args: argparse.Namespace) -> int:
    with _orchestrator(args, with_registry=True) as orchestrator:
        execution = orchestrator.approve(args.approval_id, args.approver)
    print(f"execution {execution.id} {execution.state.value}")
    return 0


def _cmd_approvals_reject(args: argparse.Namespace) -> int:
    with _orchestrator(args) as orchestrator:
        execution = orchestrator.reject(args.approval_id, args.approver, args.reason)
    print(f"execution {execution.id} {execution.state.value}")
    return 0


def _cmd_approvals_review(args: argparse.Namespace) -> int:
    console = Console()
    with _orchestrator(args, with_registry=True) as orchestrator:
        requests = orchestrator.approvals.list_requests(tenant_id=args.tenant)
        if not requests:
            print("no pending approval requests")
            return 0
        for request in requests:
            execution = orchestrator.get_status(request.execution_id)
            console.print(f"\n[bold]Skill:[/bold] {escape(execution.skill_version_id)}")
            console.print(f"[bold]Scope:[/bold] {escape(request.scope)}")
            console.print(f"[bold]Requester:[/bold] {escape(request.requester_id)}")
            console.print(f"[bold]Responsible:[/bold] {escape(execution.legal_responsible_user_id)}")
            console.print(f"[bold]Expires:[/bold] {request.expires_at.isoformat()}")
            console.print(f"[bold]Approval ID:[/bold] {escape(request.id)}")
            console.print()
            try:
                approved = Confirm.ask("Approve this execution?", default=False)
            except (KeyboardInterrupt, EOFError):
                print("review interrupted", file=sys.stderr)
                return 1
            if approved:
                result = orchestrator.approve(request.id, args.approver)
            else:
                result = orchestrator.reject(request.id, args.approver, "rejected in review")
            print(f"execution {result.id} {result.state.value}")
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    with _orchestrator(args) as orchestrator:
        sweeper = Sweeper(
            orchestrator, interval_seconds=orchestrator.config.sweep_interval_seconds
        )
        report = sweeper.run_once()
    if args.json:
        print(json.dumps({"expired": report.expired, "reconciled": report.reconciled}))
    else:
        print(f"expired {report.expired}, reconciled {report.reconciled}")
    return 0


def _verify_failed(message: str, json_output: bool) -> int:
    if json_output:
        print(json.dumps({"status": "failed", "error": message}))
    else:
        print(f"verify failed: {message}", file=sys.stderr)
    return 1


def _cmd_verify(args: argparse.Namespace) -> int:
    public_key = None
    if args.public_key is not None:
        try:
            public_key = load_public_key(args.public_key.read_bytes())
        except (OSError, ValueError) as exc:
            return _verify_failed(str(exc), args.json)
    with _orchestrator(args) as orchestrator:
        try:
            counts = orchestrator.verify_audit_chains(public_key)
            with orchestrator.db.connect() as conn:
                budget_ids = [row[0] for row in conn.execute("SELECT id FROM budgets ORDER BY id")]
            for budget_id in budget_ids:
                orchestrator.ledger.verify_budget(budget_id)
        except (LedgerVerificationError, BudgetError) as exc:
            return _verify_failed(str(exc), args.json)
    if args.json:
        print(json.dumps({"status": "ok", "rows": counts, "budgets": len(budget_ids)}))
    else:
        print("verification ok")
    return 0


def _cmd_keygen(
    *,
    private_key_path: Path,
    public_key_path: Path,
    overwrite: bool,
) -> int:
    if not overwrite and (private_key_path.exists() or public_key_path.exists()):
        print("key file already exists", file=sys.stderr)
        return 1
    private_key_path.parent.mkdir(parents=True, exist_ok=True)
    public_key_path.parent.mkdir(parents=True, exist_ok=True)
    private_key, public_key = generate_keypair()
    private_key_path.write_bytes(private_key)
    public_key_path.write_bytes(public_key)
    return 0


_BUDGET_COMMANDS = {
    "create": _cmd_budget_create,
    "show": _cmd_budget_show,
    "set-limit": _cmd_budget_set_limit,
}

_APPROVAL_COMMANDS = {
    "list": _cmd_approvals_list,
    "approve": _cmd_approvals_approve,
    "reject": _cmd_approvals_reject,
    "review": _cmd_approvals_review,
}


def _dispatch(args: argparse.Namespace) -> int:
    if args.command == "init":
        return _cmd_init(args)
    if args.command == "budget":
        return _BUDGET_COMMANDS[args.budget_command](args)
    if args.command == "status":
        return _cmd_status(args)
    if args.command == "history":
        return _cmd_history(args)
    if args.command == "approvals":
        return _APPROVAL_COMMANDS[args.approvals_command](args)
    if args.command == "sweep":
        return _cmd_sweep(args)
    if args.command == "verify":
        return _cmd_verify(args)
    if args.command == "keygen":
        return _cmd_keygen(
            private_key_path=args.private_key,
            public_key_path=args.public_key,
            overwrite=args.overwrite,
        )
    print("unknown command", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=getattr(logging, args.log_level))
    try:
        return _dispatch(args)
    except (SkillRunnerError, BudgetError, ValueError) as exc:
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
