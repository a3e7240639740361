from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from skillrunner import Orchestrator, RunnerConfig
from skillrunner.errors import AuditLogError
from skillrunner.loggers import JsonlAuditLogger, NullAuditLogger
from skillrunner.skills import SkillRegistry
from skillrunner.types import AuditEntry

WHEN = datetime(2026, 1, 25, 12, 0, 0, tzinfo=timezone.utc)


def _entry(event: str, **kwargs) -> AuditEntry:
    return AuditEntry(timestamp=WHEN, event=event, **kwargs)


def test_jsonl_logger_appends_one_line_per_entry(tmp_path: Path) -> None:
    path = tmp_path / "audit" / "events.jsonl"
    logger = JsonlAuditLogger(path)

    logger.log(_entry("approval.requested", execution_id="e1"))
    logger.log(_entry("approval.approved", execution_id="e1", actor_id="alice"))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["event"] for line in lines] == ["approval.requested", "approval.approved"]
    assert json.loads(lines[1])["actor_id"] == "alice"


def test_jsonl_logger_is_thread_safe(tmp_path: Path) -> None:
    logger = JsonlAuditLogger(tmp_path / "events.jsonl")

    def write(worker: int) -> None:
        for i in range(25):
            logger.log(_entry("budget.reserved", execution_id=f"{worker}-{i}"))

    threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = (tmp_path / "events.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 100
    assert all(json.loads(line)["event"] == "budget.reserved" for line in lines)


def test_jsonl_logger_wraps_os_errors(tmp_path: Path) -> None:
    logger = JsonlAuditLogger(tmp_path)  # a directory cannot be opened for append

    with pytest.raises(AuditLogError, match="Failed to write audit log"):
        logger.log(_entry("skill.execute.started"))


def test_null_logger_discards() -> None:
    assert NullAuditLogger().log(_entry("skill.execute.started")) is None


def test_orchestrator_uses_configured_audit_path(tmp_path: Path) -> None:
    config = RunnerConfig(
        database_path=tmp_path / "runner.sqlite", audit_log_path=tmp_path / "audit.jsonl"
    )
    with Orchestrator(SkillRegistry(), config=config) as orchestrator:
        assert isinstance(orchestrator.audit_logger, JsonlAuditLogger)
        assert orchestrator.audit_logger.path == tmp_path / "audit.jsonl"

    with Orchestrator(SkillRegistry(), config=RunnerConfig(database_path=tmp_path / "b.sqlite")) as bare:
        assert isinstance(bare.audit_logger, NullAuditLogger)
