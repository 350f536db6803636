"""Write crash reports for the main loop and surface them on the next run."""

from __future__ import annotations

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import CRASH_HISTORY_LIMIT, CRASH_LOG_RECENT_HOURS
from .io_utils import _atomic_write_text
from .models import IterationRecord, Story
from .utils import _now_iso

CRASH_LOG_GLOB = "crash-*.log"


def _render_crash(
    *,
    iteration: int,
    story: Optional[Story],
    error: str,
    history: list[IterationRecord],
    traceback_text: Optional[str],
) -> str:
    lines = [
        "# Crash Report",
        "",
        f"- **Time:** {_now_iso()}",
        f"- **PID:** {os.getpid()}",
        f"- **Iteration:** {iteration}",
    ]
    if story is not None:
        lines.append(f"- **Story:** {story.id}" + (f" ({story.title})" if story.title else ""))
        lines.append(f"- **Criteria:** {story.criteria_checked}/{story.criteria_total}")
    else:
        lines.append("- **Story:** none")
    lines += ["", "## Error", "", "```", error.rstrip(), "```"]

    if story is not None and story.acceptance_criteria:
        lines += ["", "## Criteria", ""]
        for item in story.acceptance_criteria:
            mark = "x" if item.checked else " "
            lines.append(f"- [{mark}] {item.text}")

    recent = history[-CRASH_HISTORY_LIMIT:]
    if recent:
        lines += [
            "",
            "## Recent iterations",
            "",
            "| # | Story | Model | Outcome | Attempts | Error |",
            "|---|---|---|---|---|---|",
        ]
        for record in recent:
            lines.append(
                f"| {record.iteration} | {record.story_id} | {record.model} | "
                f"{record.outcome} | {record.attempts} | {record.error_kind or ''} |"
            )

    if traceback_text:
        lines += ["", "## Traceback", "", "```", traceback_text.rstrip(), "```"]
    return "\n".join(lines) + "\n"


def write_crash_log(
    logs_dir: Path,
    *,
    iteration: int,
    story: Optional[Story],
    error: str,
    history: Optional[list[IterationRecord]] = None,
    traceback_text: Optional[str] = None,
) -> Path:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = Path(logs_dir) / f"crash-{stamp}-{os.getpid()}.log"
    _atomic_write_text(
        path,
        _render_crash(
            iteration=iteration,
            story=story,
            error=error,
            history=list(history or []),
            traceback_text=traceback_text,
        ),
    )
    return path


def list_crash_logs(logs_dir: Path) -> list[Path]:
    """Return crash logs newest first."""
    logs_dir = Path(logs_dir)
    if not logs_dir.exists():
        return []
    paths = [path for path in logs_dir.glob(CRASH_LOG_GLOB) if path.is_file()]
    return sorted(paths, key=lambda path: (path.stat().st_mtime, path.name), reverse=True)


def find_recent_crash(
    logs_dir: Path,
    *,
    within_hours: float = CRASH_LOG_RECENT_HOURS,
    now: Optional[float] = None,
) -> Optional[Path]:
    logs = list_crash_logs(logs_dir)
    if not logs:
        return None
    latest = logs[0]
    current = time.time() if now is None else now
    if current - latest.stat().st_mtime > within_hours * 3600:
        return None
    return latest
