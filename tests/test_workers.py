"""Test agent command configuration, model routing and output parsing."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.models import Story
from story_runner.workers.config import (
    AgentConfig,
    build_agent_command,
    get_agent_config,
    get_routing_config,
    resolve_profile,
    select_command_template,
    validate_command_template,
)
from story_runner.workers.diagnostics import check_agent_command
from story_runner.workers.output import (
    WorkerOutputError,
    extract_assistant_text,
    has_error_result,
    parse_record,
    parse_records,
)


def test_resolve_profile_precedence() -> None:
    routing = get_routing_config({"models": {"default": "opus", "types": {"us": "sonnet"}}})
    agent = AgentConfig()

    pinned = resolve_profile(Story(id="US-001", model="haiku"), routing, agent, caller_override="opus")
    assert (pinned.model, pinned.source) == ("haiku", "story")

    caller = resolve_profile(Story(id="US-001"), routing, agent, caller_override="opus")
    assert (caller.model, caller.source) == ("opus", "caller")

    typed = resolve_profile(Story(id="US-001"), routing, agent)
    assert (typed.model, typed.source) == ("sonnet", "type")

    fallback = resolve_profile(Story(id="CHORE-1"), routing, agent)
    assert (fallback.model, fallback.source) == ("opus", "default")


def test_builtin_type_defaults() -> None:
    routing = get_routing_config({})
    agent = AgentConfig()

    assert resolve_profile(Story(id="V-3"), routing, agent).model == "haiku"
    assert resolve_profile(Story(id="AUDIT-1"), routing, agent).model == "opus"


def test_select_command_template_prefers_longest_prefix() -> None:
    agent = AgentConfig(
        command="claude {prompt}",
        commands={"gemini": "gemini {prompt}", "gemini-2.5": "gemini25 {prompt}"},
    )

    assert select_command_template(agent, "gemini-2.5-pro") == "gemini25 {prompt}"
    assert select_command_template(agent, "gemini-flash") == "gemini {prompt}"
    assert select_command_template(agent, "sonnet") == "claude {prompt}"


def test_get_agent_config_override_and_env() -> None:
    agent = get_agent_config(
        {"agent": {"command": "from-config {prompt}", "env": {"DEBUG": 1}}},
        command_override="from-cli {prompt}",
    )

    assert agent.command == "from-cli {prompt}"
    assert agent.env == {"DEBUG": "1"}


def test_build_agent_command_keeps_prompt_as_one_argument(tmp_path: Path) -> None:
    prompt = "line one\nline 'two' with \"quotes\""
    argv = build_agent_command(
        "agent --model {model} --story {story_id} {prompt}",
        model="sonnet",
        prompt=prompt,
        prompt_file=tmp_path / "prompt.txt",
        story_id="US-001",
        project_dir=tmp_path,
    )

    assert argv == ["agent", "--model", "sonnet", "--story", "US-001", prompt]


def test_build_agent_command_rejects_bad_templates(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        validate_command_template("agent --model {model}")
    with pytest.raises(ValueError, match="Unknown placeholder"):
        build_agent_command(
            "agent {nope} {prompt}",
            model="m",
            prompt="p",
            prompt_file=tmp_path / "p.txt",
            story_id="US-1",
            project_dir=tmp_path,
        )


def test_check_agent_command_reports_missing_binary() -> None:
    ok, detail = check_agent_command("definitely-not-a-real-agent-binary {prompt}")
    assert not ok
    assert "not found" in detail

    ok, _detail = check_agent_command(f"{sys.executable} {{prompt}}")
    assert ok


def test_parse_record_errors() -> None:
    with pytest.raises(WorkerOutputError):
        parse_record("not json")
    with pytest.raises(WorkerOutputError):
        parse_record("[1, 2]")


def test_parse_records_and_extract_text() -> None:
    stdout = "\n".join(
        [
            '{"type": "system", "subtype": "init"}',
            "garbage line",
            '{"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"},'
            ' {"type": "tool_use", "name": "Edit"}]}}',
            '{"type": "result", "result": "<promise>COMPLETE</promise>", "total_cost_usd": 0.42}',
        ]
    )

    records = parse_records(stdout)

    assert len(records) == 3
    assert extract_assistant_text(records) == "Working\n<promise>COMPLETE</promise>"
    assert not has_error_result(records)


def test_has_error_result_uses_last_result() -> None:
    records = [{"type": "result", "is_error": False}, {"type": "result", "is_error": True}]
    assert has_error_result(records)
