"""Per-session status file read by external monitors."""

from __future__ import annotations

import atexit
import os
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import STATUS_FILE_PREFIX, STOP_FILE_PREFIX
from .io_utils import _atomic_write_json, _atomic_write_text, _is_temp_file, _load_data_with_error
from .models import StatusRecord, StatusState
from .utils import _now_epoch, _pid_is_running


def status_path(status_dir: Path, pid: int) -> Path:
    return Path(status_dir) / f"{STATUS_FILE_PREFIX}{pid}.json"


def stop_path(status_dir: Path, pid: int) -> Path:
    return Path(status_dir) / f"{STOP_FILE_PREFIX}{pid}"


def request_stop(status_dir: Path, pid: int) -> Path:
    """Ask the session *pid* to stop after its current iteration."""
    path = stop_path(status_dir, pid)
    _atomic_write_text(path, f"{_now_epoch()}\n")
    return path


class StatusFile:
    """Owns the status file of the running session.

    The file exists only while the session runs; `cleanup()` is idempotent and
    is wired to `atexit` as well as the scheduler's `finally`.
    """

    def __init__(self, status_dir: Path, pid: Optional[int] = None) -> None:
        self.pid = pid if pid is not None else os.getpid()
        self.path = status_path(status_dir, self.pid)
        self.stop_path = stop_path(status_dir, self.pid)
        self._registered = False
        self.last: Optional[StatusRecord] = None

    def write(
        self,
        state: StatusState,
        *,
        error: Optional[str] = None,
        retry_in: int = 0,
        iteration: Optional[int] = None,
        story_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> StatusRecord:
        record = StatusRecord(
            state=state,
            last_activity=_now_epoch(),
            pid=self.pid,
            error=error,
            retry_in=retry_in,
            iteration=iteration,
            story_id=story_id,
            model=model,
        )
        if not self._registered:
            atexit.register(self.cleanup)
            self._registered = True
        try:
            _atomic_write_json(self.path, record.to_dict())
        except OSError as exc:
            logger.warning("Failed to write status file {}: {}", self.path, exc)
        self.last = record
        return record

    def consume_stop_request(self) -> bool:
        """Return True once if `request_stop` targeted this session."""
        if not self.stop_path.exists():
            return False
        try:
            self.stop_path.unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup(self) -> None:
        for path in (self.path, self.stop_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.debug("Failed to remove {}: {}", path, exc)


def read_status(path: Path) -> StatusRecord:
    """Read a status file; an absent or unreadable file reads as idle."""
    data, err = _load_data_with_error(Path(path), {})
    if err or not data:
        if err:
            logger.debug("Unreadable status file {}: {}", path, err)
        return StatusRecord(state=StatusState.IDLE, last_activity=0, pid=0)
    return StatusRecord.from_dict(data)


def list_sessions(status_dir: Path, *, sweep: bool = True) -> list[tuple[Path, StatusRecord]]:
    """Return live sessions, removing files left behind by dead processes."""
    status_dir = Path(status_dir)
    if not status_dir.exists():
        return []
    sessions: list[tuple[Path, StatusRecord]] = []
    for path in sorted(status_dir.glob(f"{STATUS_FILE_PREFIX}*.json")):
        if _is_temp_file(path):
            continue
        record = read_status(path)
        pid = record.pid or _pid_from_name(path)
        if not _pid_is_running(pid):
            if sweep:
                logger.debug("Removing stale status file {}", path)
                path.unlink(missing_ok=True)
                stop_path(status_dir, pid).unlink(missing_ok=True)
            continue
        sessions.append((path, record))
    return sessions


def _pid_from_name(path: Path) -> int:
    suffix = path.stem[len(STATUS_FILE_PREFIX):]
    return int(suffix) if suffix.isdigit() else 0
