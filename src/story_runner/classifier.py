"""Deterministic classification of agent spawn failures and the retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .constants import (
    DEFAULT_COOLDOWN_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_NO_OUTPUT_COOLDOWN_SECONDS,
    DEFAULT_NO_OUTPUT_MAX_RETRIES,
)
from .workers.output import parse_records


class ErrorKind(str, Enum):
    NONE = "none"
    NO_OUTPUT = "no_output"
    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.NONE


# Most specific first; the first table entry with a matching pattern wins.
_PATTERNS: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = (
    (ErrorKind.NO_OUTPUT, re.compile(r"No messages returned", re.IGNORECASE)),
    (ErrorKind.CONNECTION_RESET, re.compile(r"\bECONNRESET\b|\bEAGAIN\b|\bfetch failed\b", re.IGNORECASE)),
    (ErrorKind.TIMEOUT, re.compile(r"\bETIMEDOUT\b|\bsocket hang up\b", re.IGNORECASE)),
    (ErrorKind.RATE_LIMITED, re.compile(r"\brate[ _-]?limit(?:ed)?\b|\boverloaded(?:_error)?\b|\b429 Too Many Requests\b", re.IGNORECASE)),
    (ErrorKind.SERVER_ERROR, re.compile(r"\bError: 5\d\d\b|\bHTTP\S*\s.*\b5\d\d\b|\bAPI Error: 5\d\d\b", re.IGNORECASE)),
)

# A line that starts like a thrown error, e.g. "Error: ..." or "TypeError: ...".
_GENERIC_ERROR_RE = re.compile(r"^\s*(?:[A-Za-z]+)?Error:", re.MULTILINE)

_DESCRIPTIONS: dict[ErrorKind, str] = {
    ErrorKind.NONE: "No error",
    ErrorKind.NO_OUTPUT: "No messages returned from the agent",
    ErrorKind.CONNECTION_RESET: "Connection was reset",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded",
    ErrorKind.SERVER_ERROR: "Server error (5xx)",
    ErrorKind.UNKNOWN: "Unknown error",
}


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    matched_pattern: Optional[str] = None


def _first_match(haystack: str) -> Optional[tuple[ErrorKind, str]]:
    for kind, pattern in _PATTERNS:
        if pattern.search(haystack):
            return kind, pattern.pattern
    return None


def classify_detail(
    stdout: str,
    stderr: str,
    exit_code: int,
    *,
    timed_out: bool = False,
    has_records: Optional[bool] = None,
) -> Classification:
    """Classify a finished spawn, keeping the rule that matched."""
    if timed_out:
        return Classification(ErrorKind.TIMEOUT, "timed_out")

    if has_records is None:
        has_records = bool(parse_records(stdout))
    if exit_code == 0 and has_records:
        return Classification(ErrorKind.NONE)

    haystack = f"{stderr}\n{stdout}"
    match = _first_match(haystack)
    if match is not None:
        return Classification(match[0], match[1])

    if exit_code != 0:
        return Classification(ErrorKind.UNKNOWN, "exit_code")
    if not stdout.strip() and not stderr.strip():
        return Classification(ErrorKind.NO_OUTPUT, "empty_output")
    if _GENERIC_ERROR_RE.search(haystack):
        return Classification(ErrorKind.UNKNOWN, _GENERIC_ERROR_RE.pattern)
    return Classification(ErrorKind.NONE)


def classify(
    stdout: str,
    stderr: str,
    exit_code: int,
    *,
    timed_out: bool = False,
    has_records: Optional[bool] = None,
) -> ErrorKind:
    return classify_detail(
        stdout,
        stderr,
        exit_code,
        timed_out=timed_out,
        has_records=has_records,
    ).kind


def describe(kind: ErrorKind) -> str:
    return _DESCRIPTIONS.get(kind, "Unknown error")


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    cooldown_seconds: int
    max_retries: int


@dataclass(frozen=True)
class RetryPolicy:
    """Per-kind retry budgets.

    `attempt` counts retries already made for the current iteration, so with
    the defaults `no_output` retries at attempts 0-2 and stops at 3, and every
    other retryable kind retries at attempts 0-4 and stops at 5.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    no_output_max_retries: int = DEFAULT_NO_OUTPUT_MAX_RETRIES
    no_output_cooldown_seconds: int = DEFAULT_NO_OUTPUT_COOLDOWN_SECONDS

    def budget(self, kind: ErrorKind) -> tuple[int, int]:
        if kind is ErrorKind.NO_OUTPUT:
            return self.no_output_max_retries, self.no_output_cooldown_seconds
        return self.max_retries, self.cooldown_seconds

    def decide(self, kind: ErrorKind, attempt: int) -> RetryDecision:
        max_retries, cooldown = self.budget(kind)
        if not kind.retryable:
            return RetryDecision(False, 0, max_retries)
        should_retry = attempt < max_retries
        return RetryDecision(should_retry, cooldown if should_retry else 0, max_retries)
