"""Detect completion and blocked sentinels in agent output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

SIGNAL_RECORD_TYPE = "story_runner"

# Only exact tokens or whole-line keywords count; conversational text such as
# "I'll complete this task" must never match.
_COMPLETE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<promise>\s*(?:PRD_)?COMPLETE\s*</promise>"),
    re.compile(r"^\s*PRD_COMPLETE\s*$", re.MULTILINE),
)
_ALL_BLOCKED_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<promise>\s*ALL_BLOCKED\s*</promise>"),
    re.compile(r"^\s*ALL_BLOCKED\s*$", re.MULTILINE),
)
_BLOCKED_LINE_RE = re.compile(r"^\s*BLOCKED\s*$", re.MULTILINE)
_BLOCKED_TAG_RE = re.compile(r"<blocked>(.*?)</blocked>", re.DOTALL)


@dataclass
class AgentSignals:
    complete: bool = False
    blocked: bool = False
    all_blocked: bool = False
    blocked_reason: Optional[str] = None
    matched: list[str] = field(default_factory=list)

    @property
    def any(self) -> bool:
        return self.complete or self.blocked or self.all_blocked


def _scan_text(text: str, signals: AgentSignals) -> None:
    for pattern in _COMPLETE_PATTERNS:
        if pattern.search(text):
            signals.complete = True
            signals.matched.append(pattern.pattern)
    for pattern in _ALL_BLOCKED_PATTERNS:
        if pattern.search(text):
            signals.all_blocked = True
            signals.blocked = True
            signals.matched.append(pattern.pattern)
    if _BLOCKED_LINE_RE.search(text):
        signals.blocked = True
        signals.matched.append(_BLOCKED_LINE_RE.pattern)
    tag = _BLOCKED_TAG_RE.search(text)
    if tag:
        signals.blocked = True
        reason = tag.group(1).strip()
        if reason and not signals.blocked_reason:
            signals.blocked_reason = reason
        signals.matched.append(_BLOCKED_TAG_RE.pattern)


def _scan_records(records: list[dict[str, Any]], signals: AgentSignals) -> None:
    for record in records:
        if record.get("type") != SIGNAL_RECORD_TYPE:
            continue
        signal = str(record.get("signal") or "").strip().lower()
        if signal == "complete":
            signals.complete = True
            signals.matched.append("record:complete")
        elif signal in {"blocked", "all_blocked"}:
            signals.blocked = True
            if signal == "all_blocked":
                signals.all_blocked = True
            reason = record.get("reason")
            if isinstance(reason, str) and reason.strip() and not signals.blocked_reason:
                signals.blocked_reason = reason.strip()
            signals.matched.append(f"record:{signal}")


def detect_signals(text: str, records: Optional[list[dict[str, Any]]] = None) -> AgentSignals:
    """Return the sentinels present in agent *text* and structured *records*.

    Args:
        text: Assistant text extracted from the output stream.
        records: Parsed output records; `{"type": "story_runner", "signal": ...}`
            entries are honoured as explicit signals.

    Returns:
        An `AgentSignals` value; all flags are False when nothing matched.
    """
    signals = AgentSignals()
    if text:
        _scan_text(text, signals)
    if records:
        _scan_records(records, signals)
    return signals
