"""Agent command diagnostics used by `doctor`."""

from __future__ import annotations

import shlex
from shutil import which

from .config import AgentConfig


def check_agent_command(template: str) -> tuple[bool, str]:
    try:
        parts = shlex.split(template)
    except ValueError as exc:
        return False, f"Unparseable command: {exc}"
    if not parts:
        return False, "Missing command"
    exe = parts[0]
    if which(exe):
        return True, f"Found executable in PATH: {exe}"
    return False, f"Executable not found in PATH: {exe}"


def check_agent_config(agent: AgentConfig) -> list[tuple[str, bool, str]]:
    results = [("default", *check_agent_command(agent.command))]
    for prefix, template in sorted(agent.commands.items()):
        results.append((prefix, *check_agent_command(template)))
    return results
