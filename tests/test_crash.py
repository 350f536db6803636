"""Test crash report writing and discovery."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.crash import find_recent_crash, list_crash_logs, write_crash_log
from story_runner.models import AcceptanceCriterion, IterationRecord, Story


def test_write_crash_log_renders_context(tmp_path: Path) -> None:
    story = Story(
        id="US-004",
        title="Export CSV",
        acceptance_criteria=[AcceptanceCriterion("writes header", True), AcceptanceCriterion("escapes commas")],
    )
    history = [IterationRecord(iteration=3, story_id="US-003", model="sonnet", outcome="completed")]

    path = write_crash_log(
        tmp_path / "logs",
        iteration=4,
        story=story,
        error="KeyError: 'id'",
        history=history,
        traceback_text="Traceback (most recent call last):\n  ...",
    )

    text = path.read_text(encoding="utf-8")
    assert path.name.startswith("crash-") and path.name.endswith(f"-{os.getpid()}.log")
    assert "# Crash Report" in text
    assert "- **Story:** US-004 (Export CSV)" in text
    assert "- **Criteria:** 1/2" in text
    assert "- [x] writes header" in text
    assert "- [ ] escapes commas" in text
    assert "| 3 | US-003 | sonnet | completed | 1 |  |" in text
    assert "## Traceback" in text


def test_find_recent_crash_window(tmp_path: Path) -> None:
    assert find_recent_crash(tmp_path) is None

    old = tmp_path / "crash-20240101-000000-1.log"
    old.write_text("old", encoding="utf-8")
    two_days_ago = time.time() - 48 * 3600
    os.utime(old, (two_days_ago, two_days_ago))
    assert find_recent_crash(tmp_path) is None

    new = tmp_path / "crash-20240103-000000-1.log"
    new.write_text("new", encoding="utf-8")
    assert find_recent_crash(tmp_path) == new
    assert list_crash_logs(tmp_path) == [new, old]
