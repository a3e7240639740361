from __future__ import annotations

import os
import shutil
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator

import pytest

from skillrunner.db import Database


class FixedClock:
    """Deterministic ``now`` callable that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def tmp_path() -> Iterator[Path]:
    """Return a writable temp dir under %TEMP% without tempfile.mkdtemp ACL quirks."""
    temp_root = Path(os.environ.get("TEMP", Path.cwd()))
    root = temp_root / "skillrunner_test_runs"
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"run_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=True)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 1, 25, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path: Path) -> Database:
    return Database(tmp_path / "skillrunner.sqlite")
