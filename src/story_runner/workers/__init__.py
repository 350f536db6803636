"""Agent process integration: command building, spawning and output parsing."""

from .config import (
    AgentConfig,
    ExecutionProfile,
    RoutingConfig,
    build_agent_command,
    get_agent_config,
    get_routing_config,
    resolve_profile,
)
from .output import WorkerOutputError, extract_assistant_text, parse_records
from .run import SpawnResult, run_agent

__all__ = [
    "AgentConfig",
    "ExecutionProfile",
    "RoutingConfig",
    "SpawnResult",
    "WorkerOutputError",
    "build_agent_command",
    "extract_assistant_text",
    "get_agent_config",
    "get_routing_config",
    "parse_records",
    "resolve_profile",
    "run_agent",
]
