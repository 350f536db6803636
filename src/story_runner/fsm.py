from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .classifier import ErrorKind, RetryPolicy
from .constants import EXIT_ALL_BLOCKED, EXIT_FATAL, EXIT_OK
from .models import HaltReason, PrdIndex, Story
from .signals import AgentSignals


class ResultOutcome(str, Enum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class SelectStory:
    story_id: str


@dataclass(frozen=True)
class Halt:
    reason: HaltReason
    message: str = ""


@dataclass(frozen=True)
class SpawnOutcome:
    kind: ErrorKind
    attempt: int
    aborted: bool = False


@dataclass(frozen=True)
class Retry:
    cooldown_seconds: int
    next_attempt: int
    max_retries: int


@dataclass(frozen=True)
class Exhausted:
    kind: ErrorKind
    max_retries: int


@dataclass(frozen=True)
class Proceed:
    pass


@dataclass(frozen=True)
class Aborted:
    pass


SpawnAction = Union[Retry, Exhausted, Proceed, Aborted]


@dataclass(frozen=True)
class ResultDecision:
    outcome: ResultOutcome
    reason: Optional[str] = None


_EXIT_CODES: dict[HaltReason, int] = {
    HaltReason.COMPLETE: EXIT_OK,
    HaltReason.MAX_ITERATIONS: EXIT_OK,
    HaltReason.USER_QUIT: EXIT_OK,
    HaltReason.NO_RUNNABLE: EXIT_OK,
    HaltReason.ALL_BLOCKED: EXIT_ALL_BLOCKED,
    HaltReason.RETRY_EXHAUSTED: EXIT_FATAL,
    HaltReason.STORE_ERROR: EXIT_FATAL,
    HaltReason.CRASHED: EXIT_FATAL,
}


def halt_exit_code(reason: HaltReason) -> int:
    return _EXIT_CODES[reason]


def select_item(index: PrdIndex, skipped: frozenset[str] | set[str] = frozenset()) -> Union[SelectStory, Halt]:
    if not index.pending:
        if index.blocked:
            return Halt(HaltReason.ALL_BLOCKED, f"{len(index.blocked)} stories blocked")
        return Halt(HaltReason.COMPLETE, "All stories complete")
    for story_id in index.pending:
        if story_id not in skipped:
            return SelectStory(story_id)
    return Halt(HaltReason.NO_RUNNABLE, "Every pending story was skipped this session")


def reduce_spawn(outcome: SpawnOutcome, policy: RetryPolicy) -> SpawnAction:
    if outcome.aborted:
        return Aborted()
    if outcome.kind is ErrorKind.NONE:
        return Proceed()
    decision = policy.decide(outcome.kind, outcome.attempt)
    if decision.should_retry:
        return Retry(
            cooldown_seconds=decision.cooldown_seconds,
            next_attempt=outcome.attempt + 1,
            max_retries=decision.max_retries,
        )
    return Exhausted(kind=outcome.kind, max_retries=decision.max_retries)


def decide_result(story: Optional[Story], signals: AgentSignals) -> ResultDecision:
    """Decide the story's fate from on-disk state; text claims never complete it."""
    if story is None:
        return ResultDecision(ResultOutcome.INCOMPLETE, "story file unreadable")
    if story.is_complete:
        return ResultDecision(ResultOutcome.COMPLETED)
    if story.blocked_by:
        return ResultDecision(ResultOutcome.BLOCKED, story.blocked_by)
    if signals.blocked:
        return ResultDecision(ResultOutcome.BLOCKED, signals.blocked_reason or "agent reported blocked")
    if signals.complete:
        return ResultDecision(ResultOutcome.INCOMPLETE, "completion claimed but criteria unchecked")
    return ResultDecision(ResultOutcome.INCOMPLETE)


def exceeds_failure_budget(story: Story, max_story_failures: int) -> bool:
    return max_story_failures > 0 and story.failed_attempts >= max_story_failures
