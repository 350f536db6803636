"""Spawn the agent process with a hard timeout and capture its output."""

from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import DEFAULT_KILL_GRACE_SECONDS, SPAWN_ERROR_EXIT_CODE, TIMEOUT_EXIT_CODE


@dataclass(frozen=True)
class SpawnResult:
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    aborted: bool = False
    pid: Optional[int] = None
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None

    @property
    def spawn_failed(self) -> bool:
        return self.exit_code == SPAWN_ERROR_EXIT_CODE


def _stream_pipe(
    pipe: Any,
    sink: list[str],
    file_path: Optional[Path],
    label: str,
    on_line: Optional[Callable[[str, str], None]],
) -> None:
    handle = open(file_path, "w", encoding="utf-8") if file_path else None
    try:
        for line in iter(pipe.readline, ""):
            sink.append(line)
            if handle:
                handle.write(line)
                handle.flush()
            if on_line:
                try:
                    on_line(label, line)
                except Exception as exc:
                    logger.debug("Output callback failed: {}", exc)
    finally:
        if handle:
            handle.close()
        try:
            pipe.close()
        except OSError:
            pass


def _terminate(process: subprocess.Popen, grace_seconds: float) -> None:
    process.terminate()
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Agent pid={} ignored SIGTERM; killing", process.pid)
        process.kill()
        process.wait()


def run_agent(
    command: list[str],
    *,
    cwd: Path,
    timeout_seconds: float,
    env: Optional[dict[str, str]] = None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    log_dir: Optional[Path] = None,
    on_spawn: Optional[Callable[[int], None]] = None,
    on_line: Optional[Callable[[str, str], None]] = None,
    should_abort: Optional[Callable[[], bool]] = None,
    poll_interval: float = 0.2,
) -> SpawnResult:
    """Run *command* to completion, timeout, or abort.

    Standard input is inherited from this process. Standard output and error
    are drained by reader threads and, when *log_dir* is given, mirrored to
    `stdout.log` / `stderr.log` there.

    Never raises for a missing executable or a timeout: those come back as
    `SPAWN_ERROR_EXIT_CODE` and `TIMEOUT_EXIT_CODE` respectively.
    """
    stdout_path = stderr_path = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = log_dir / "stdout.log"
        stderr_path = log_dir / "stderr.log"

    start = time.monotonic()
    try:
        process = subprocess.Popen(
            command,
            cwd=cwd,
            env=env,
            stdin=None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
        logger.error("Failed to start agent {}: {}", command[0] if command else "<empty>", exc)
        return SpawnResult(
            success=False,
            exit_code=SPAWN_ERROR_EXIT_CODE,
            stdout="",
            stderr=f"{exc.__class__.__name__}: {exc}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    logger.debug("Spawned agent pid={} cmd={}", process.pid, command[0])
    if on_spawn:
        try:
            on_spawn(process.pid)
        except Exception as exc:
            logger.warning("on_spawn hook failed for pid={}: {}", process.pid, exc)

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        threading.Thread(
            target=_stream_pipe,
            args=(process.stdout, stdout_lines, stdout_path, "stdout", on_line),
            daemon=True,
        ),
        threading.Thread(
            target=_stream_pipe,
            args=(process.stderr, stderr_lines, stderr_path, "stderr", on_line),
            daemon=True,
        ),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    aborted = False
    while True:
        if time.monotonic() - start > timeout_seconds:
            timed_out = True
            logger.warning("Agent pid={} exceeded {}s timeout", process.pid, timeout_seconds)
            _terminate(process, kill_grace_seconds)
            break
        if should_abort is not None and should_abort():
            aborted = True
            logger.info("Aborting agent pid={}", process.pid)
            _terminate(process, kill_grace_seconds)
            break
        try:
            process.wait(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            continue

    for reader in readers:
        reader.join(timeout=5)

    exit_code = process.returncode
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
    elif exit_code is None:
        exit_code = -1

    return SpawnResult(
        success=exit_code == 0 and not aborted,
        exit_code=exit_code,
        stdout="".join(stdout_lines),
        stderr="".join(stderr_lines),
        duration_ms=int((time.monotonic() - start) * 1000),
        timed_out=timed_out,
        aborted=aborted,
        pid=process.pid,
        stdout_path=str(stdout_path) if stdout_path else None,
        stderr_path=str(stderr_path) if stderr_path else None,
    )
