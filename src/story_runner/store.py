"""JSON-backed task store: the index, one file per story, and the update inbox."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import INDEX_FILE, STORIES_DIR, UPDATE_QUEUE_FILE
from .io_utils import _atomic_write_json, _is_temp_file, _load_data_with_error
from .models import (
    PrdIndex,
    Story,
    StoryStats,
    StoryStatus,
    UpdateQueue,
    UpdateResult,
    merge_criteria,
)
from .utils import _now_iso


class TaskStoreError(RuntimeError):
    """Raised when a store file is missing or cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class TaskStore:
    def __init__(self, prd_dir: Path) -> None:
        self.prd_dir = Path(prd_dir)
        self.index_path = self.prd_dir / INDEX_FILE
        self.stories_dir = self.prd_dir / STORIES_DIR
        self.update_path = self.prd_dir / UPDATE_QUEUE_FILE

    def story_path(self, story_id: str) -> Path:
        return self.stories_dir / f"{story_id}.json"

    def exists(self) -> bool:
        return self.index_path.exists()

    # Reads ---------------------------------------------------------------

    def _read(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise TaskStoreError(path, "file not found")
        data, err = _load_data_with_error(path, {})
        if err:
            raise TaskStoreError(path, err)
        return data

    def load_index(self) -> PrdIndex:
        return PrdIndex.from_dict(self._read(self.index_path))

    def load_story(self, story_id: str) -> Story:
        path = self.story_path(story_id)
        story = Story.from_dict(self._read(path))
        if not story.id:
            story.id = story_id
        elif story.id != story_id:
            raise TaskStoreError(path, f"id mismatch: file holds {story.id!r}")
        return story

    def try_load_story(self, story_id: str) -> Optional[Story]:
        """Load a story, returning None on any store error.

        Safe to call from background threads: nothing is raised.
        """
        try:
            return self.load_story(story_id)
        except TaskStoreError as exc:
            logger.debug("Story {} unreadable: {}", story_id, exc.reason)
            return None

    def list_story_ids(self) -> list[str]:
        """Ids of the story files on disk, indexed or not."""
        if not self.stories_dir.exists():
            return []
        return sorted(
            path.stem
            for path in self.stories_dir.glob("*.json")
            if path.is_file() and not _is_temp_file(path)
        )

    # Writes --------------------------------------------------------------

    def save_index(self, index: PrdIndex) -> None:
        index.refresh_next_item()
        _atomic_write_json(self.index_path, index.to_dict())

    def save_story(self, story: Story) -> list[str]:
        """Persist *story*, never letting a checked criterion revert.

        Returns the texts of criteria whose `checked` flag was restored.
        """
        reverted: list[str] = []
        previous = self.try_load_story(story.id) if self.story_path(story.id).exists() else None
        if previous is not None:
            story.acceptance_criteria, reverted = merge_criteria(
                previous.acceptance_criteria, story.acceptance_criteria
            )
            if reverted:
                logger.warning(
                    "Restored {} checked criteria on {}: {}",
                    len(reverted),
                    story.id,
                    "; ".join(reverted),
                )
        _atomic_write_json(self.story_path(story.id), story.to_dict())
        return reverted

    def restore_checked(self, before: Story) -> list[str]:
        """Re-assert `checked` flags from a snapshot taken before a spawn."""
        current = self.try_load_story(before.id)
        if current is None:
            return []
        merged, reverted = merge_criteria(before.acceptance_criteria, current.acceptance_criteria)
        if reverted:
            current.acceptance_criteria = merged
            _atomic_write_json(self.story_path(current.id), current.to_dict())
            logger.warning("Agent unchecked {} criteria on {}; restored", len(reverted), current.id)
        return reverted

    # Update inbox --------------------------------------------------------

    def load_update_queue(self) -> Optional[UpdateQueue]:
        if not self.update_path.exists():
            return None
        return UpdateQueue.from_dict(self._read(self.update_path))

    def apply_update_queue(self) -> UpdateResult:
        """Merge `update.json` into the store and delete it.

        Story files are written before the index and the inbox is removed
        last, so replaying the same inbox after a crash converges to the same
        state without duplicating ids.
        """
        queue = self.load_update_queue()
        if queue is None:
            return UpdateResult(applied=False)

        index = self.load_index() if self.index_path.exists() else PrdIndex(generated_at=_now_iso())
        changes: list[str] = []

        for payload in queue.new_stories:
            story_id = str(payload["id"])
            if self.story_path(story_id).exists():
                self._merge_story_fields(story_id, payload)
            else:
                self.save_story(Story.from_dict(payload))
            if index.status_of(story_id) is None:
                index.place(story_id, StoryStatus.PENDING)
            elif story_id not in index.story_order:
                index.story_order.append(story_id)
            changes.append(f"Added story: {story_id}")

        for payload in queue.update_stories:
            story_id = str(payload["id"])
            if not self.story_path(story_id).exists():
                logger.warning("Update for unknown story {} ignored", story_id)
                continue
            self._merge_story_fields(story_id, payload)
            changes.append(f"Updated story: {story_id}")

        for story_id in queue.move_to_pending:
            if index.status_of(story_id) == StoryStatus.COMPLETED:
                continue
            index.place(story_id, StoryStatus.PENDING)
            story = self.try_load_story(story_id)
            if story is not None and story.blocked_by:
                story.blocked_by = None
                self.save_story(story)
            changes.append(f"Unblocked story: {story_id}")

        for story_id, reason in queue.move_to_blocked:
            if index.status_of(story_id) == StoryStatus.COMPLETED:
                continue
            index.place(story_id, StoryStatus.BLOCKED)
            story = self.try_load_story(story_id)
            if story is not None:
                story.blocked_by = reason
                self.save_story(story)
            changes.append(f"Blocked story: {story_id} ({reason})")

        for story_id in queue.remove_stories:
            for ids in (index.pending, index.blocked, index.completed, index.story_order):
                while story_id in ids:
                    ids.remove(story_id)
            changes.append(f"Removed story: {story_id}")

        for story_id in queue.story_order:
            if story_id not in index.story_order:
                index.story_order.append(story_id)
                changes.append(f"Added to storyOrder: {story_id}")

        for story_id in queue.pending:
            if index.status_of(story_id) is None:
                index.place(story_id, StoryStatus.PENDING)
                changes.append(f"Added to pending: {story_id}")

        # An id named only in storyOrder still needs a list.
        for story_id in queue.story_order:
            if story_id not in index.story_order or index.status_of(story_id) is not None:
                continue
            if self.story_path(story_id).exists():
                index.place(story_id, StoryStatus.PENDING)
                changes.append(f"Added to pending: {story_id}")
            else:
                index.story_order.remove(story_id)
                logger.warning("storyOrder entry {} has no story file; ignored", story_id)

        self.save_index(index)
        self.update_path.unlink(missing_ok=True)
        for change in changes:
            logger.info("Update queue: {}", change)
        return UpdateResult(applied=True, changes=changes, stats=self.derive_stats(index))

    def _merge_story_fields(self, story_id: str, payload: dict[str, Any]) -> None:
        current = self.load_story(story_id)
        merged = current.to_dict()
        merged.update(payload)
        self.save_story(Story.from_dict(merged))

    # Derived state -------------------------------------------------------

    def derive_stats(self, index: Optional[PrdIndex] = None) -> StoryStats:
        """Count stories and criteria from the story files themselves."""
        if index is None:
            index = self.load_index()
        pending = blocked = completed = 0
        checked = total_criteria = 0
        ids = index.known_ids()
        for story_id in ids:
            story = self.try_load_story(story_id)
            if story is None:
                status = index.status_of(story_id)
                if status == StoryStatus.BLOCKED:
                    blocked += 1
                else:
                    pending += 1
                continue
            checked += story.criteria_checked
            total_criteria += story.criteria_total
            if story.is_complete:
                completed += 1
            elif story_id in index.blocked:
                blocked += 1
            else:
                pending += 1
        return StoryStats(
            pending=pending,
            blocked=blocked,
            completed=completed,
            total=len(ids),
            criteria_checked=checked,
            criteria_total=total_criteria,
        )

    def validate_index(self, index: Optional[PrdIndex] = None) -> list[str]:
        """Return a list of invariant violations; empty means healthy."""
        if index is None:
            index = self.load_index()
        problems: list[str] = []
        seen: dict[str, str] = {}
        for name, ids in (("pending", index.pending), ("blocked", index.blocked), ("completed", index.completed)):
            for story_id in ids:
                if story_id in seen:
                    problems.append(f"{story_id} appears in both {seen[story_id]} and {name}")
                else:
                    seen[story_id] = name
        order = set(index.story_order)
        for story_id in seen:
            if story_id not in order:
                problems.append(f"{story_id} missing from storyOrder")
        for story_id in dict.fromkeys(index.story_order):
            if story_id not in seen:
                problems.append(f"{story_id} is in storyOrder but not in pending, blocked or completed")
        for story_id in index.completed:
            story = self.try_load_story(story_id)
            if story is not None and not story.is_complete:
                problems.append(f"{story_id} is completed but has unchecked criteria")
        for story_id in [*index.pending, *index.blocked]:
            if not self.story_path(story_id).exists():
                problems.append(f"{story_id} has no story file")
        return problems

    # Status moves --------------------------------------------------------

    def complete_story(self, story_id: str) -> list[str]:
        """Mark *story_id* completed and unblock stories waiting on it.

        Returns the ids that were unblocked.
        """
        index = self.load_index()
        story = self.load_story(story_id)
        story.passes = True
        story.blocked_by = None
        story.completed_at = story.completed_at or _now_iso()
        self.save_story(story)
        index.place(story_id, StoryStatus.COMPLETED)

        unblocked: list[str] = []
        for other_id in list(index.blocked):
            other = self.try_load_story(other_id)
            if other is None or other.blocked_by != story_id:
                continue
            other.blocked_by = None
            self.save_story(other)
            index.place(other_id, StoryStatus.PENDING)
            unblocked.append(other_id)
            logger.info("Unblocked {} (blocker {} completed)", other_id, story_id)

        self.save_index(index)
        return unblocked

    def block_story(self, story_id: str, reason: str) -> None:
        index = self.load_index()
        story = self.load_story(story_id)
        story.blocked_by = reason
        self.save_story(story)
        index.place(story_id, StoryStatus.BLOCKED)
        self.save_index(index)

    def unblock_story(self, story_id: str) -> None:
        index = self.load_index()
        story = self.load_story(story_id)
        story.blocked_by = None
        self.save_story(story)
        index.place(story_id, StoryStatus.PENDING)
        self.save_index(index)

    def auto_block_if_needed(self, story_id: str) -> bool:
        """Block a pending story that names a blocker; return True if it moved.

        When the named blocker is already completed the field is cleared
        instead and the story stays pending.
        """
        story = self.load_story(story_id)
        if not story.blocked_by:
            return False
        index = self.load_index()
        if index.status_of(story.blocked_by) == StoryStatus.COMPLETED:
            story.blocked_by = None
            self.save_story(story)
            return False
        self.block_story(story_id, story.blocked_by)
        return True

    def record_failed_attempt(self, story_id: str) -> int:
        story = self.load_story(story_id)
        story.failed_attempts += 1
        self.save_story(story)
        return story.failed_attempts


def criteria_label(story: Story) -> str:
    return f"{story.criteria_checked}/{story.criteria_total}"

