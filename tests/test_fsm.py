"""Test the pure iteration decisions: selection, retry reduction and result outcome."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.classifier import ErrorKind, RetryPolicy
from story_runner.fsm import (
    Aborted,
    Exhausted,
    Halt,
    Proceed,
    ResultOutcome,
    Retry,
    SelectStory,
    SpawnOutcome,
    decide_result,
    exceeds_failure_budget,
    halt_exit_code,
    reduce_spawn,
    select_item,
)
from story_runner.models import AcceptanceCriterion, HaltReason, PrdIndex, Story
from story_runner.signals import AgentSignals, detect_signals


def test_select_item_picks_first_pending() -> None:
    index = PrdIndex(pending=["US-002", "US-003"], completed=["US-001"])
    assert select_item(index) == SelectStory("US-002")
    assert select_item(index, {"US-002"}) == SelectStory("US-003")


@pytest.mark.parametrize(
    ("index", "reason", "exit_code"),
    [
        (PrdIndex(completed=["US-001"]), HaltReason.COMPLETE, 0),
        (PrdIndex(blocked=["US-001"], completed=["US-002"]), HaltReason.ALL_BLOCKED, 2),
        (PrdIndex(), HaltReason.COMPLETE, 0),
    ],
)
def test_select_item_halts(index: PrdIndex, reason: HaltReason, exit_code: int) -> None:
    result = select_item(index)
    assert isinstance(result, Halt)
    assert result.reason is reason
    assert halt_exit_code(result.reason) == exit_code


def test_select_item_no_runnable_when_everything_skipped() -> None:
    result = select_item(PrdIndex(pending=["US-001"]), {"US-001"})
    assert isinstance(result, Halt) and result.reason is HaltReason.NO_RUNNABLE


def test_reduce_spawn_paths() -> None:
    policy = RetryPolicy()
    assert reduce_spawn(SpawnOutcome(ErrorKind.NONE, 0), policy) == Proceed()
    assert reduce_spawn(SpawnOutcome(ErrorKind.TIMEOUT, 0, aborted=True), policy) == Aborted()
    assert reduce_spawn(SpawnOutcome(ErrorKind.RATE_LIMITED, 1), policy) == Retry(15, 2, 5)
    assert reduce_spawn(SpawnOutcome(ErrorKind.NO_OUTPUT, 3), policy) == Exhausted(ErrorKind.NO_OUTPUT, 3)


def _story(*checked: bool, blocked_by: str | None = None) -> Story:
    return Story(
        id="US-001",
        acceptance_criteria=[AcceptanceCriterion(f"c{i}", value) for i, value in enumerate(checked)],
        blocked_by=blocked_by,
    )


def test_completion_claim_without_checked_criteria_is_incomplete() -> None:
    decision = decide_result(_story(True, False), detect_signals("<promise>COMPLETE</promise>"))
    assert decision.outcome is ResultOutcome.INCOMPLETE
    assert "claimed" in (decision.reason or "")


def test_ground_truth_completes_without_any_signal() -> None:
    assert decide_result(_story(True, True), AgentSignals()).outcome is ResultOutcome.COMPLETED


def test_blocked_by_field_or_signal_blocks() -> None:
    assert decide_result(_story(False, blocked_by="US-009"), AgentSignals()).reason == "US-009"
    signal = detect_signals("<blocked>needs keys</blocked>")
    decision = decide_result(_story(False), signal)
    assert decision.outcome is ResultOutcome.BLOCKED
    assert decision.reason == "needs keys"


def test_unreadable_story_is_incomplete() -> None:
    assert decide_result(None, AgentSignals()).outcome is ResultOutcome.INCOMPLETE


def test_failure_budget() -> None:
    story = Story(id="US-001", failed_attempts=10)
    assert exceeds_failure_budget(story, 10)
    assert not exceeds_failure_budget(story, 0)
    assert not exceeds_failure_budget(Story(id="US-001", failed_attempts=9), 10)
