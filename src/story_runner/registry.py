"""Cross-session registry of helper processes, used to detect orphans."""

from __future__ import annotations

import os
import signal
import time
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .io_utils import _atomic_write_text
from .models import PidRecord
from .utils import _now_epoch, _pid_is_running


class PidRegistry:
    """File-backed `pid tag timestamp ownerPid` table shared by all sessions.

    Every mutation rewrites the whole file through a temp file and rename, so
    concurrent sessions never see a torn file; a lost update from a race is
    corrected by the next sweep.
    """

    def __init__(
        self,
        path: Path,
        owner_pid: Optional[int] = None,
        is_alive: Callable[[int], bool] = _pid_is_running,
    ) -> None:
        self.path = Path(path)
        self.owner_pid = owner_pid if owner_pid is not None else os.getpid()
        self._is_alive = is_alive

    def rows(self) -> list[PidRecord]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Cannot read PID registry {}: {}", self.path, exc)
            return []
        rows: list[PidRecord] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            row = PidRecord.from_line(line)
            if row is None:
                logger.debug("Skipping malformed registry line: {!r}", line)
                continue
            rows.append(row)
        return rows

    def _write(self, rows: list[PidRecord]) -> None:
        if not rows:
            self.path.unlink(missing_ok=True)
            return
        _atomic_write_text(self.path, "".join(row.to_line() + "\n" for row in rows))

    def track(self, pid: int, tag: str) -> PidRecord:
        row = PidRecord(pid=int(pid), tag=tag.replace(" ", "_") or "helper", registered_at=_now_epoch(), owner_pid=self.owner_pid)
        rows = [existing for existing in self.rows() if existing.pid != row.pid]
        rows.append(row)
        self._write(rows)
        return row

    def untrack(self, pid: int) -> None:
        rows = self.rows()
        kept = [row for row in rows if row.pid != pid]
        if len(kept) != len(rows):
            self._write(kept)

    def untrack_session(self, owner_pid: Optional[int] = None) -> int:
        owner = self.owner_pid if owner_pid is None else owner_pid
        rows = self.rows()
        kept = [row for row in rows if row.owner_pid != owner]
        removed = len(rows) - len(kept)
        if removed:
            self._write(kept)
        return removed

    def find_orphans(self) -> list[PidRecord]:
        """Rows whose owner is dead while the tracked process still runs."""
        return [
            row
            for row in self.rows()
            if not self._is_alive(row.owner_pid) and self._is_alive(row.pid)
        ]

    def sweep_dead(self) -> int:
        rows = self.rows()
        kept = [row for row in rows if self._is_alive(row.pid)]
        removed = len(rows) - len(kept)
        if removed:
            self._write(kept)
            logger.debug("Swept {} dead registry rows", removed)
        return removed

    def kill_orphans(self, grace_seconds: float = 2.0) -> list[PidRecord]:
        killed: list[PidRecord] = []
        for row in self.find_orphans():
            if terminate_pid(row.pid, grace_seconds, self._is_alive):
                logger.info("Killed orphan {} pid={} (owner {} gone)", row.tag, row.pid, row.owner_pid)
                killed.append(row)
            self.untrack(row.pid)
        return killed


def terminate_pid(pid: int, grace_seconds: float = 2.0, is_alive: Callable[[int], bool] = _pid_is_running) -> bool:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as exc:
        logger.warning("Cannot signal pid={}: {}", pid, exc)
        return False
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(0.05)
    try:
        os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
    except ProcessLookupError:
        pass
    return True
