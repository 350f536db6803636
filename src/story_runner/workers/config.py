"""Parse agent command configuration and resolve the execution profile."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from ..constants import DEFAULT_AGENT_COMMAND, DEFAULT_AGENT_COMMANDS, DEFAULT_MODEL, DEFAULT_TYPE_MODELS
from ..models import Story

ProfileSource = Literal["story", "caller", "type", "default"]

_PLACEHOLDERS = ("{prompt}", "{prompt_file}")


@dataclass(frozen=True)
class RoutingConfig:
    """Model routing table: a global default plus per-story-type defaults."""

    default_model: str = DEFAULT_MODEL
    type_models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TYPE_MODELS))


@dataclass(frozen=True)
class AgentConfig:
    command: str = DEFAULT_AGENT_COMMAND
    # Model-name prefix -> command template, e.g. {"gemini": "gemini ..."}.
    commands: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_AGENT_COMMANDS))
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionProfile:
    model: str
    source: ProfileSource
    command_template: str


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_routing_config(config: dict[str, Any]) -> RoutingConfig:
    models_cfg = _as_dict(config.get("models"))
    default_model = _clean(models_cfg.get("default")) or DEFAULT_MODEL
    type_models = dict(DEFAULT_TYPE_MODELS)
    for key, value in _as_dict(models_cfg.get("types")).items():
        model = _clean(value)
        if isinstance(key, str) and key.strip() and model:
            type_models[key.strip().upper()] = model
    return RoutingConfig(default_model=default_model, type_models=type_models)


def get_agent_config(config: dict[str, Any], command_override: Optional[str] = None) -> AgentConfig:
    agent_cfg = _as_dict(config.get("agent"))
    command = _clean(command_override) or _clean(agent_cfg.get("command")) or DEFAULT_AGENT_COMMAND
    commands = dict(DEFAULT_AGENT_COMMANDS)
    for prefix, template in _as_dict(agent_cfg.get("commands")).items():
        cleaned = _clean(template)
        if isinstance(prefix, str) and prefix.strip() and cleaned:
            commands[prefix.strip()] = cleaned
    env = {str(k): str(v) for k, v in _as_dict(agent_cfg.get("env")).items()}
    return AgentConfig(command=command, commands=commands, env=env)


def validate_command_template(template: str) -> None:
    if not any(token in template for token in _PLACEHOLDERS):
        raise ValueError("Agent command must include {prompt} or {prompt_file}")


def select_command_template(agent: AgentConfig, model: str) -> str:
    """Pick the CLI template whose model prefix matches *model*, else the default."""
    best = ""
    for prefix in agent.commands:
        if model.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    return agent.commands[best] if best else agent.command


def resolve_profile(
    story: Story,
    routing: RoutingConfig,
    agent: AgentConfig,
    caller_override: Optional[str] = None,
) -> ExecutionProfile:
    """Resolve the model for *story*.

    Precedence is story override, then caller override, then the per-type
    default keyed by the id prefix, then the global default.
    """
    source: ProfileSource
    if story.model:
        model, source = story.model, "story"
    elif _clean(caller_override):
        model, source = str(caller_override).strip(), "caller"
    elif story.story_type and story.story_type in routing.type_models:
        model, source = routing.type_models[story.story_type], "type"
    else:
        model, source = routing.default_model, "default"
    return ExecutionProfile(model=model, source=source, command_template=select_command_template(agent, model))


def build_agent_command(
    template: str,
    *,
    model: str,
    prompt: str,
    prompt_file: Path,
    story_id: str,
    project_dir: Path,
) -> list[str]:
    """Expand *template* into an argv list.

    The template is split first so a multi-line prompt stays a single argument.
    """
    validate_command_template(template)
    values = {
        "model": model,
        "prompt": prompt,
        "prompt_file": str(prompt_file),
        "story_id": story_id,
        "project_dir": str(project_dir),
    }
    argv: list[str] = []
    for part in shlex.split(template):
        try:
            argv.append(part.format(**values))
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in agent command: {exc}") from exc
    return argv
