"""Define the task-store records, session status, and run outcome models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .utils import _coerce_int, _coerce_string_list


class StoryStatus(str, Enum):
    """Represent which index queue a story currently sits in."""

    PENDING = "pending"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class StatusState(str, Enum):
    """Enumerate session states published through the status file."""

    RUNNING = "running"
    CR_REVIEW = "cr_review"
    ERROR = "error"
    RETRY = "retry"
    IDLE = "idle"


class HaltReason(str, Enum):
    """Describe why the scheduler stopped looping."""

    COMPLETE = "complete"
    ALL_BLOCKED = "all_blocked"
    NO_RUNNABLE = "no_runnable"
    MAX_ITERATIONS = "max_iterations"
    USER_QUIT = "user_quit"
    RETRY_EXHAUSTED = "retry_exhausted"
    STORE_ERROR = "store_error"
    CRASHED = "crashed"


@dataclass
class AcceptanceCriterion:
    text: str
    checked: bool = False

    @classmethod
    def from_value(cls, value: Any) -> "AcceptanceCriterion":
        if isinstance(value, dict):
            return cls(text=str(value.get("text") or ""), checked=bool(value.get("checked", False)))
        return cls(text=str(value or ""), checked=False)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "checked": self.checked}


def merge_criteria(
    previous: list[AcceptanceCriterion],
    current: list[AcceptanceCriterion],
) -> tuple[list[AcceptanceCriterion], list[str]]:
    """Carry `checked=True` forward from *previous* into *current*.

    Criteria are matched by text. Returns the merged list and the texts of
    criteria that had been unchecked in *current* despite being checked before.
    """
    checked_before = {item.text for item in previous if item.checked}
    merged: list[AcceptanceCriterion] = []
    reverted: list[str] = []
    for item in current:
        if not item.checked and item.text in checked_before:
            reverted.append(item.text)
            merged.append(AcceptanceCriterion(text=item.text, checked=True))
        else:
            merged.append(AcceptanceCriterion(text=item.text, checked=item.checked))
    return merged, reverted


@dataclass
class Story:
    """Store one work item as persisted in `stories/<id>.json`."""

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    passes: bool = False
    failed_attempts: int = 0
    blocked_by: Optional[str] = None
    model: Optional[str] = None
    completed_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Story":
        """Create a `Story` from a persisted dictionary.

        Args:
            data: Raw story payload from the task store.

        Returns:
            A `Story` instance with unknown keys preserved in `extra`.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        criteria_raw = _pop("acceptanceCriteria", None) or []
        if not isinstance(criteria_raw, list):
            criteria_raw = []
        blocked_by = _pop("blockedBy", None)
        model = _pop("model", None)
        return cls(
            id=str(_pop("id", "")),
            title=str(_pop("title", "") or ""),
            description=str(_pop("description", "") or ""),
            acceptance_criteria=[AcceptanceCriterion.from_value(item) for item in criteria_raw],
            passes=bool(_pop("passes", False)),
            failed_attempts=_coerce_int(_pop("failedAttempts", 0)),
            blocked_by=str(blocked_by) if blocked_by else None,
            model=str(model).strip() if model and str(model).strip() else None,
            completed_at=_pop("completedAt", None),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": [item.to_dict() for item in self.acceptance_criteria],
            "passes": self.passes,
            "failedAttempts": self.failed_attempts,
        }
        if self.blocked_by:
            data["blockedBy"] = self.blocked_by
        if self.model:
            data["model"] = self.model
        if self.completed_at:
            data["completedAt"] = self.completed_at
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @property
    def story_type(self) -> str:
        """Return the id prefix used for model routing (`US-012` -> `US`)."""
        head, sep, _rest = self.id.partition("-")
        return head.upper() if sep else ""

    @property
    def criteria_checked(self) -> int:
        return sum(1 for item in self.acceptance_criteria if item.checked)

    @property
    def criteria_total(self) -> int:
        return len(self.acceptance_criteria)

    @property
    def is_complete(self) -> bool:
        """Return whether on-disk ground truth says this story is done."""
        if self.acceptance_criteria:
            return all(item.checked for item in self.acceptance_criteria)
        return self.passes


@dataclass
class PrdIndex:
    """Store the queue arrays persisted in `index.json`."""

    next_item: Optional[str] = None
    story_order: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    generated_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrdIndex":
        extra = dict(data)
        next_item = extra.pop("nextItem", None)
        legacy_next = extra.pop("nextStory", None)
        # Counters are always derived from story files, never trusted from disk.
        extra.pop("stats", None)
        return cls(
            next_item=next_item or legacy_next or None,
            story_order=_coerce_string_list(extra.pop("storyOrder", [])),
            pending=_coerce_string_list(extra.pop("pending", [])),
            blocked=_coerce_string_list(extra.pop("blocked", [])),
            completed=_coerce_string_list(extra.pop("completed", [])),
            generated_at=extra.pop("generatedAt", None),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.generated_at:
            data["generatedAt"] = self.generated_at
        data.update(
            {
                "nextItem": self.next_item,
                "storyOrder": list(self.story_order),
                "pending": list(self.pending),
                "blocked": list(self.blocked),
                "completed": list(self.completed),
            }
        )
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    def status_of(self, story_id: str) -> Optional[StoryStatus]:
        if story_id in self.completed:
            return StoryStatus.COMPLETED
        if story_id in self.blocked:
            return StoryStatus.BLOCKED
        if story_id in self.pending:
            return StoryStatus.PENDING
        return None

    def known_ids(self) -> list[str]:
        seen: set[str] = set()
        ordered: list[str] = []
        for story_id in [*self.story_order, *self.pending, *self.blocked, *self.completed]:
            if story_id not in seen:
                seen.add(story_id)
                ordered.append(story_id)
        return ordered

    def place(self, story_id: str, status: StoryStatus) -> None:
        """Move *story_id* into exactly one queue, keeping `story_order` a superset."""
        for queue in (self.pending, self.blocked, self.completed):
            while story_id in queue:
                queue.remove(story_id)
        target = {
            StoryStatus.PENDING: self.pending,
            StoryStatus.BLOCKED: self.blocked,
            StoryStatus.COMPLETED: self.completed,
        }[status]
        target.append(story_id)
        if story_id not in self.story_order:
            self.story_order.append(story_id)

    def refresh_next_item(self) -> None:
        self.next_item = self.pending[0] if self.pending else None


@dataclass
class UpdateQueue:
    """Transient inbox persisted in `update.json`."""

    new_stories: list[dict[str, Any]] = field(default_factory=list)
    update_stories: list[dict[str, Any]] = field(default_factory=list)
    move_to_pending: list[str] = field(default_factory=list)
    move_to_blocked: list[tuple[str, str]] = field(default_factory=list)
    remove_stories: list[str] = field(default_factory=list)
    story_order: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UpdateQueue":
        def _dicts(value: Any) -> list[dict[str, Any]]:
            if not isinstance(value, list):
                return []
            return [item for item in value if isinstance(item, dict) and item.get("id")]

        move_to_blocked: list[tuple[str, str]] = []
        for item in data.get("moveToBlocked") or []:
            if isinstance(item, (list, tuple)) and item:
                reason = str(item[1]) if len(item) > 1 else "blocked"
                move_to_blocked.append((str(item[0]), reason))
            elif isinstance(item, str) and item.strip():
                move_to_blocked.append((item.strip(), "blocked"))

        return cls(
            new_stories=_dicts(data.get("newStories")),
            update_stories=_dicts(data.get("updateStories")),
            move_to_pending=_coerce_string_list(data.get("moveToPending")),
            move_to_blocked=move_to_blocked,
            remove_stories=_coerce_string_list(data.get("removeStories")),
            story_order=_coerce_string_list(data.get("storyOrder")),
            pending=_coerce_string_list(data.get("pending")),
        )


@dataclass
class UpdateResult:
    applied: bool
    changes: list[str] = field(default_factory=list)
    stats: Optional["StoryStats"] = None


@dataclass(frozen=True)
class StoryStats:
    """Counts recomputed from story files on demand."""

    pending: int = 0
    blocked: int = 0
    completed: int = 0
    total: int = 0
    criteria_checked: int = 0
    criteria_total: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class StatusRecord:
    """Ephemeral per-session status published for external monitors."""

    state: StatusState
    last_activity: int
    pid: int
    error: Optional[str] = None
    retry_in: int = 0
    iteration: Optional[int] = None
    story_id: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusRecord":
        try:
            state = StatusState(str(data.get("state") or "idle"))
        except ValueError:
            state = StatusState.IDLE
        iteration = data.get("iteration")
        return cls(
            state=state,
            last_activity=_coerce_int(data.get("lastActivity"), 0),
            pid=_coerce_int(data.get("pid"), 0),
            error=data.get("error") or None,
            retry_in=_coerce_int(data.get("retryIn"), 0),
            iteration=_coerce_int(iteration) if iteration is not None else None,
            story_id=data.get("storyId") or None,
            model=data.get("model") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "lastActivity": self.last_activity,
            "error": self.error,
            "retryIn": self.retry_in,
            "pid": self.pid,
            "iteration": self.iteration,
            "storyId": self.story_id,
            "model": self.model,
        }


@dataclass(frozen=True)
class PidRecord:
    """One row of the cross-session PID registry."""

    pid: int
    tag: str
    registered_at: int
    owner_pid: int

    @classmethod
    def from_line(cls, line: str) -> Optional["PidRecord"]:
        parts = line.split()
        if len(parts) != 4:
            return None
        pid, tag, registered_at, owner_pid = parts
        if not (pid.isdigit() and registered_at.isdigit() and owner_pid.isdigit()):
            return None
        return cls(pid=int(pid), tag=tag, registered_at=int(registered_at), owner_pid=int(owner_pid))

    def to_line(self) -> str:
        return f"{self.pid} {self.tag} {self.registered_at} {self.owner_pid}"


@dataclass
class IterationRecord:
    """Summarize one finished iteration for history and crash logs."""

    iteration: int
    story_id: str
    model: str
    outcome: str
    attempts: int = 1
    error_kind: Optional[str] = None
    criteria: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunSummary:
    halt_reason: HaltReason
    iterations: int
    exit_code: int
    message: str = ""
    history: list[IterationRecord] = field(default_factory=list)
