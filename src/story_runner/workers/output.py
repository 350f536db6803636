"""Helpers for parsing the agent's newline-delimited JSON output stream."""

from __future__ import annotations

import json
from typing import Any, Iterable

from loguru import logger


class WorkerOutputError(ValueError):
    pass


def parse_record(line: str) -> dict[str, Any]:
    """Parse one stream line into a record.

    Raises:
        WorkerOutputError: If the line is not a JSON object.
    """
    candidate = line.strip()
    if not candidate:
        raise WorkerOutputError("empty line")
    try:
        obj = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise WorkerOutputError(f"malformed record: {exc}") from None
    if not isinstance(obj, dict):
        raise WorkerOutputError("record must be a JSON object")
    return obj


def parse_records(text: str) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    skipped = 0
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        try:
            records.append(parse_record(line))
        except WorkerOutputError:
            skipped += 1
    if skipped and records:
        logger.debug("Skipped {} malformed output lines", skipped)
    return records


def _content_text(content: Any) -> Iterable[str]:
    if isinstance(content, str):
        yield content
        return
    if not isinstance(content, list):
        return
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                yield text


def extract_assistant_text(records: list[dict[str, Any]]) -> str:
    """Join assistant text blocks and the final `result` field."""
    parts: list[str] = []
    for record in records:
        kind = record.get("type")
        if kind == "assistant":
            message = record.get("message")
            if isinstance(message, dict):
                parts.extend(_content_text(message.get("content")))
        elif kind == "result":
            result = record.get("result")
            if isinstance(result, str) and result not in parts:
                parts.append(result)
        elif kind == "message" and record.get("role") == "assistant":
            parts.extend(_content_text(record.get("content")))
    return "\n".join(part for part in parts if part)


def has_error_result(records: list[dict[str, Any]]) -> bool:
    """Return True when the final result record reports an error."""
    for record in reversed(records):
        if record.get("type") == "result":
            return bool(record.get("is_error"))
    return False
