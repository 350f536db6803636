"""Test runner configuration loading and override precedence."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.config import ConfigError, build_runner_config, load_runner_config


def test_missing_default_config_is_empty(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_missing_explicit_config_is_an_error(tmp_path: Path) -> None:
    data, err = load_runner_config(tmp_path, tmp_path / "nope.yaml")
    assert data == {}
    assert err is not None and "not found" in err


def test_yaml_config_is_loaded(tmp_path: Path) -> None:
    state_dir = tmp_path / ".story_runner"
    state_dir.mkdir()
    (state_dir / "config.yaml").write_text("loop:\n  max_iterations: 7\n", encoding="utf-8")

    data, err = load_runner_config(tmp_path)

    assert err is None
    assert data == {"loop": {"max_iterations": 7}}


def test_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STORY_RUNNER_HOME", raising=False)
    monkeypatch.delenv("NO_COLOR", raising=False)

    config = build_runner_config(tmp_path, {})

    assert config.paths.prd_dir == tmp_path.resolve() / "prd-json"
    assert config.paths.runs_dir == tmp_path.resolve() / ".story_runner" / "runs"
    assert config.loop.max_iterations == 50
    assert config.loop.timeout_seconds == 600
    assert config.retry.max_retries == 5
    assert config.retry.no_output_cooldown_seconds == 30
    assert config.notifications.enabled is False
    assert config.display.color is True
    assert config.model_override is None


def test_cli_overrides_beat_config(tmp_path: Path) -> None:
    raw = {
        "loop": {"max_iterations": 10, "gap_seconds": 5},
        "paths": {"prd_dir": "stories-json"},
        "agent": {"command": "from-config {prompt}"},
    }

    config = build_runner_config(
        tmp_path,
        raw,
        {"max_iterations": 3, "prd_dir": None, "agent_command": "from-cli {prompt}", "model": "haiku"},
    )

    assert config.loop.max_iterations == 3
    assert config.loop.gap_seconds == 5
    assert config.paths.prd_dir == tmp_path.resolve() / "stories-json"
    assert config.agent.command == "from-cli {prompt}"
    assert config.model_override == "haiku"


def test_home_dir_env_var_wins(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORY_RUNNER_HOME", str(tmp_path / "env-home"))

    config = build_runner_config(tmp_path, {"paths": {"home": str(tmp_path / "cfg-home")}})

    assert config.paths.home_dir == tmp_path / "env-home"
    assert config.paths.pid_registry == tmp_path / "env-home" / "pids.txt"
    assert config.paths.logs_dir == tmp_path / "env-home" / "logs"


@pytest.mark.parametrize(
    "raw",
    [
        {"loop": {"max_iterations": "many"}},
        {"loop": {"max_iterations": 0}},
        {"loop": {"timeout_seconds": True}},
        {"retry": {"cooldown_seconds": -1}},
    ],
)
def test_invalid_values_raise(tmp_path: Path, raw: dict) -> None:
    with pytest.raises(ConfigError):
        build_runner_config(tmp_path, raw)


def test_no_live_and_no_color(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NO_COLOR", "1")

    config = build_runner_config(tmp_path, {}, {"live": False, "echo_output": True})

    assert config.live.enabled is False
    assert config.display.live is False
    assert config.display.color is False
    assert config.display.echo_output is True


def test_notifications_need_a_topic(tmp_path: Path) -> None:
    assert not build_runner_config(tmp_path, {"notifications": {"enabled": True}}).notifications.enabled

    config = build_runner_config(
        tmp_path,
        {"notifications": {"topic": "my-runs", "server": "https://ntfy.example/", "events": ["error"]}},
    )
    assert config.notifications.enabled
    assert config.notifications.server == "https://ntfy.example"
    assert config.notifications.events == ("error",)


def test_type_model_routing_from_config(tmp_path: Path) -> None:
    config = build_runner_config(tmp_path, {"models": {"default": "sonnet", "types": {"docs": "haiku"}}})

    assert config.routing.default_model == "sonnet"
    assert config.routing.type_models["DOCS"] == "haiku"
    assert config.routing.type_models["US"] == "sonnet"
