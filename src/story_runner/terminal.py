"""Small terminal helpers: interactivity checks, key polling, cursor queries."""

from __future__ import annotations

import os
import re
import select
import sys
import time
from typing import Optional, TextIO

try:
    import termios
    import tty
except ImportError:  # Windows has no termios; key polling is disabled there.
    termios = None  # type: ignore[assignment]
    tty = None  # type: ignore[assignment]

SAVE_CURSOR = "\x1b[s"
RESTORE_CURSOR = "\x1b[u"

_CURSOR_REPORT_RE = re.compile(r"\x1b\[(\d+);(\d+)R")


def move_to(row: int, col: int = 1) -> str:
    return f"\x1b[{row};{col}H"


def is_interactive(stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None) -> bool:
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    if termios is None:
        return False
    try:
        return stdin.isatty() and stdout.isatty()
    except (AttributeError, ValueError):
        return False


def _stdin_fd() -> Optional[int]:
    try:
        return sys.stdin.fileno()
    except (AttributeError, ValueError, OSError):
        return None


def poll_key(timeout: float) -> Optional[str]:
    """Wait up to *timeout* seconds for one keypress.

    The terminal is switched to cbreak mode only for the duration of the call,
    so the agent child never inherits a modified terminal. Returns None when
    nothing was pressed or stdin is not a terminal.
    """
    fd = _stdin_fd()
    if fd is None or termios is None or not os.isatty(fd):
        if timeout > 0:
            time.sleep(timeout)
        return None
    old_settings = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        ready, _, _ = select.select([fd], [], [], max(0.0, timeout))
        if not ready:
            return None
        data = os.read(fd, 1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
    return data.decode("utf-8", errors="ignore") or None


def query_cursor_row(stdout: Optional[TextIO] = None, timeout: float = 0.2) -> Optional[int]:
    """Ask the terminal for the cursor position and return its row (1-based)."""
    stdout = stdout or sys.stdout
    fd = _stdin_fd()
    if fd is None or termios is None or not os.isatty(fd) or not stdout.isatty():
        return None
    old_settings = termios.tcgetattr(fd)
    response = ""
    try:
        tty.setraw(fd)
        stdout.write("\x1b[6n")
        stdout.flush()
        deadline = time.monotonic() + timeout
        while "R" not in response:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            ready, _, _ = select.select([fd], [], [], remaining)
            if not ready:
                break
            response += os.read(fd, 32).decode("ascii", errors="ignore")
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
    match = _CURSOR_REPORT_RE.search(response)
    return int(match.group(1)) if match else None
