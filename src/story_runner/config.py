"""Load optional runner configuration from `.story_runner/config.yaml`."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .classifier import RetryPolicy
from .constants import (
    CONFIG_FILE,
    DEFAULT_GAP_SECONDS,
    DEFAULT_HOME_DIR,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_LIVE_POLL_INTERVAL,
    DEFAULT_LIVE_QUEUE_SIZE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_STORY_FAILURES,
    DEFAULT_NOTIFY_EVENTS,
    DEFAULT_NTFY_SERVER,
    DEFAULT_PRD_DIR,
    DEFAULT_TIMEOUT_SECONDS,
    HOME_ENV_VAR,
    LOGS_DIR,
    PID_REGISTRY_FILE,
    RUNS_DIR,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .ui import DisplayConfig
from .workers.config import AgentConfig, RoutingConfig, get_agent_config, get_routing_config


class ConfigError(ValueError):
    pass


def load_runner_config(project_dir: Path, config_path: Optional[Path] = None) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.
        config_path: Explicit config file; defaults to `.story_runner/config.yaml`.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = config_path or (project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE)
    if not path.exists():
        if config_path is not None:
            return {}, f"{path}: file not found"
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _number(value: Any, default: float, name: str, *, minimum: float = 0, integer: bool = True) -> Any:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        number = int(value) if integer else float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number}")
    return number


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    gap_seconds: float = DEFAULT_GAP_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    max_story_failures: int = DEFAULT_MAX_STORY_FAILURES


@dataclass(frozen=True)
class LiveConfig:
    enabled: bool = True
    poll_interval: float = DEFAULT_LIVE_POLL_INTERVAL
    queue_size: int = DEFAULT_LIVE_QUEUE_SIZE


@dataclass(frozen=True)
class NotificationConfig:
    enabled: bool = False
    server: str = DEFAULT_NTFY_SERVER
    topic: Optional[str] = None
    events: tuple[str, ...] = DEFAULT_NOTIFY_EVENTS
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class PathsConfig:
    project_dir: Path
    prd_dir: Path
    home_dir: Path
    status_dir: Path

    @property
    def pid_registry(self) -> Path:
        return self.home_dir / PID_REGISTRY_FILE

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / LOGS_DIR

    @property
    def runs_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME / RUNS_DIR


@dataclass(frozen=True)
class RunnerConfig:
    """Everything a session needs, resolved once at startup."""

    paths: PathsConfig
    loop: LoopConfig = field(default_factory=LoopConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    live: LiveConfig = field(default_factory=LiveConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    model_override: Optional[str] = None


def resolve_home_dir(config: dict[str, Any]) -> Path:
    """Resolve the shared home dir: env var, then `paths.home`, then default."""
    raw = os.environ.get(HOME_ENV_VAR) or _get_nested(config, "paths", "home") or DEFAULT_HOME_DIR
    return Path(str(raw)).expanduser()


def _resolve_paths(project_dir: Path, config: dict[str, Any], overrides: dict[str, Any]) -> PathsConfig:
    project_dir = project_dir.resolve()
    prd_raw = overrides.get("prd_dir") or _get_nested(config, "paths", "prd_dir") or DEFAULT_PRD_DIR
    prd_dir = Path(str(prd_raw)).expanduser()
    if not prd_dir.is_absolute():
        prd_dir = project_dir / prd_dir
    status_raw = overrides.get("status_dir") or _get_nested(config, "paths", "status_dir")
    status_dir = Path(str(status_raw)).expanduser() if status_raw else Path(tempfile.gettempdir())
    return PathsConfig(
        project_dir=project_dir,
        prd_dir=prd_dir,
        home_dir=resolve_home_dir(config),
        status_dir=status_dir,
    )


def get_loop_config(config: dict[str, Any], overrides: dict[str, Any]) -> LoopConfig:
    def pick(key: str) -> Any:
        value = overrides.get(key)
        return value if value is not None else _get_nested(config, "loop", key)

    return LoopConfig(
        max_iterations=_number(pick("max_iterations"), DEFAULT_MAX_ITERATIONS, "loop.max_iterations", minimum=1),
        gap_seconds=_number(pick("gap_seconds"), DEFAULT_GAP_SECONDS, "loop.gap_seconds", integer=False),
        timeout_seconds=_number(pick("timeout_seconds"), DEFAULT_TIMEOUT_SECONDS, "loop.timeout_seconds", minimum=1),
        kill_grace_seconds=_number(
            pick("kill_grace_seconds"), DEFAULT_KILL_GRACE_SECONDS, "loop.kill_grace_seconds", integer=False
        ),
        max_story_failures=_number(
            pick("max_story_failures"), DEFAULT_MAX_STORY_FAILURES, "loop.max_story_failures"
        ),
    )


def get_retry_policy(config: dict[str, Any]) -> RetryPolicy:
    raw = _get_nested(config, "retry")
    retry = raw if isinstance(raw, dict) else {}
    defaults = RetryPolicy()
    return RetryPolicy(
        max_retries=_number(retry.get("max_retries"), defaults.max_retries, "retry.max_retries"),
        cooldown_seconds=_number(retry.get("cooldown_seconds"), defaults.cooldown_seconds, "retry.cooldown_seconds"),
        no_output_max_retries=_number(
            retry.get("no_output_max_retries"), defaults.no_output_max_retries, "retry.no_output_max_retries"
        ),
        no_output_cooldown_seconds=_number(
            retry.get("no_output_cooldown_seconds"),
            defaults.no_output_cooldown_seconds,
            "retry.no_output_cooldown_seconds",
        ),
    )


def get_live_config(config: dict[str, Any], overrides: dict[str, Any]) -> LiveConfig:
    raw = _get_nested(config, "live")
    live = raw if isinstance(raw, dict) else {}
    enabled = _flag(live.get("enabled"), True)
    if overrides.get("live") is False:
        enabled = False
    return LiveConfig(
        enabled=enabled,
        poll_interval=_number(live.get("poll_interval"), DEFAULT_LIVE_POLL_INTERVAL, "live.poll_interval", integer=False),
        queue_size=_number(live.get("queue_size"), DEFAULT_LIVE_QUEUE_SIZE, "live.queue_size", minimum=1),
    )


def get_notification_config(config: dict[str, Any]) -> NotificationConfig:
    raw = _get_nested(config, "notifications")
    notify = raw if isinstance(raw, dict) else {}
    topic = str(notify.get("topic") or "").strip() or None
    events_raw = notify.get("events")
    if isinstance(events_raw, list):
        events = tuple(str(item).strip() for item in events_raw if str(item).strip())
    else:
        events = DEFAULT_NOTIFY_EVENTS
    return NotificationConfig(
        enabled=_flag(notify.get("enabled"), topic is not None) and topic is not None,
        server=str(notify.get("server") or DEFAULT_NTFY_SERVER).rstrip("/"),
        topic=topic,
        events=events,
        timeout_seconds=_number(notify.get("timeout_seconds"), 10.0, "notifications.timeout_seconds", integer=False),
    )


def get_display_config(config: dict[str, Any], overrides: dict[str, Any]) -> DisplayConfig:
    raw = _get_nested(config, "display")
    display = raw if isinstance(raw, dict) else {}
    color = _flag(display.get("color"), True)
    if os.environ.get("NO_COLOR"):
        color = False
    live = overrides.get("live") is not False and _flag(_get_nested(config, "live", "enabled"), True)
    return DisplayConfig(
        color=color,
        live=live,
        bar_width=_number(display.get("bar_width"), 20, "display.bar_width", minimum=5),
        echo_output=_flag(overrides.get("echo_output"), _flag(display.get("echo_output"), False)),
    )


def build_runner_config(
    project_dir: Path,
    config: dict[str, Any],
    overrides: Optional[dict[str, Any]] = None,
) -> RunnerConfig:
    """Resolve raw config plus CLI *overrides* into a `RunnerConfig`.

    Raises:
        ConfigError: If a value has the wrong type or range.
    """
    overrides = {key: value for key, value in (overrides or {}).items() if value is not None}
    model_override = str(overrides.get("model") or "").strip() or None
    return RunnerConfig(
        paths=_resolve_paths(project_dir, config, overrides),
        loop=get_loop_config(config, overrides),
        retry=get_retry_policy(config),
        routing=get_routing_config(config),
        agent=get_agent_config(config, overrides.get("agent_command")),
        live=get_live_config(config, overrides),
        notifications=get_notification_config(config),
        display=get_display_config(config, overrides),
        model_override=model_override,
    )
