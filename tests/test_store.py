"""Test the JSON task store: index partition, update inbox, stats and status moves."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.io_utils import _atomic_write_json
from story_runner.models import AcceptanceCriterion, Story
from story_runner.store import TaskStore, TaskStoreError


def _story(story_id: str, checked: list[bool], **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": story_id,
        "title": f"Story {story_id}",
        "description": "",
        "acceptanceCriteria": [{"text": f"{story_id} c{i}", "checked": value} for i, value in enumerate(checked)],
        "passes": bool(checked) and all(checked),
    }
    data.update(extra)
    return data


def _make_store(tmp_path: Path, stories: list[dict[str, Any]], **index: list[str]) -> TaskStore:
    prd_dir = tmp_path / "prd-json"
    (prd_dir / "stories").mkdir(parents=True)
    for story in stories:
        (prd_dir / "stories" / f"{story['id']}.json").write_text(json.dumps(story))
    pending = index.get("pending", [])
    blocked = index.get("blocked", [])
    completed = index.get("completed", [])
    payload = {
        "nextItem": pending[0] if pending else None,
        "storyOrder": index.get("storyOrder", pending + blocked + completed),
        "pending": pending,
        "blocked": blocked,
        "completed": completed,
    }
    (prd_dir / "index.json").write_text(json.dumps(payload))
    return TaskStore(prd_dir)


def _partitioned(store: TaskStore) -> bool:
    index = store.load_index()
    for story_id in index.story_order:
        hits = sum(story_id in ids for ids in (index.pending, index.blocked, index.completed))
        if hits != 1:
            return False
    return True


def test_load_index_accepts_legacy_next_story(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False])], pending=["US-001"])
    raw = json.loads(store.index_path.read_text())
    raw.pop("nextItem")
    raw["nextStory"] = "US-001"
    store.index_path.write_text(json.dumps(raw))

    assert store.load_index().next_item == "US-001"


def test_missing_and_corrupt_files_raise_with_path(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "nope")
    with pytest.raises(TaskStoreError) as excinfo:
        store.load_index()
    assert excinfo.value.path == store.index_path

    store = _make_store(tmp_path, [_story("US-001", [False])], pending=["US-001"])
    store.story_path("US-001").write_text("{not json")
    with pytest.raises(TaskStoreError) as excinfo:
        store.load_story("US-001")
    assert "JSONDecodeError" in excinfo.value.reason
    assert store.try_load_story("US-001") is None


def test_unknown_story_keys_survive_a_save(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False], priority="high")], pending=["US-001"])
    story = store.load_story("US-001")
    story.failed_attempts = 2
    store.save_story(story)

    raw = json.loads(store.story_path("US-001").read_text())
    assert raw["priority"] == "high"
    assert raw["failedAttempts"] == 2


def test_save_story_never_unchecks_a_criterion(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [True, False])], pending=["US-001"])
    story = store.load_story("US-001")
    story.acceptance_criteria = [
        AcceptanceCriterion("US-001 c0", checked=False),
        AcceptanceCriterion("US-001 c1", checked=True),
    ]

    reverted = store.save_story(story)

    assert reverted == ["US-001 c0"]
    assert [c.checked for c in store.load_story("US-001").acceptance_criteria] == [True, True]


def test_restore_checked_repairs_agent_edits(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [True, False])], pending=["US-001"])
    snapshot = store.load_story("US-001")
    # Simulate the agent writing the file directly.
    raw = _story("US-001", [False, True])
    store.story_path("US-001").write_text(json.dumps(raw))

    assert store.restore_checked(snapshot) == ["US-001 c0"]
    assert store.load_story("US-001").is_complete


def test_apply_update_queue_adds_stories_and_deletes_inbox(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False])], pending=["US-001"])
    inbox = {
        "newStories": [_story("US-002", [False, False])],
        "updateStories": [{"id": "US-001", "title": "Renamed"}],
        "stats": {"total": 999},
    }
    store.update_path.write_text(json.dumps(inbox))

    result = store.apply_update_queue()

    assert result.applied
    assert not store.update_path.exists()
    index = store.load_index()
    assert index.pending == ["US-001", "US-002"]
    assert index.story_order == ["US-001", "US-002"]
    assert store.load_story("US-001").title == "Renamed"
    assert result.stats is not None and result.stats.total == 2
    assert "nextItem" in json.loads(store.index_path.read_text())


def test_apply_update_queue_is_idempotent(tmp_path: Path) -> None:
    store = _make_store(
        tmp_path,
        [_story("US-001", [True], passes=True), _story("US-002", [False])],
        pending=["US-002"],
        completed=["US-001"],
    )
    inbox = {
        "newStories": [_story("US-003", [False]), _story("US-001", [True])],
        "moveToBlocked": [["US-002", "waiting on API"]],
        "storyOrder": ["US-003"],
        "pending": ["US-003", "US-001"],
    }
    store.update_path.write_text(json.dumps(inbox))
    store.apply_update_queue()
    once = store.index_path.read_text()

    # Replay the same inbox, as after a crash before the inbox was deleted.
    store.update_path.write_text(json.dumps(inbox))
    store.apply_update_queue()

    assert store.index_path.read_text() == once
    index = store.load_index()
    assert index.completed == ["US-001"]
    assert index.blocked == ["US-002"]
    assert index.pending == ["US-003"]
    assert _partitioned(store)


def test_inbox_story_order_id_with_story_file_lands_in_pending(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False]), _story("US-009", [False])], pending=["US-001"])
    store.update_path.write_text(json.dumps({"storyOrder": ["US-009", "US-404"]}))

    store.apply_update_queue()

    index = store.load_index()
    assert index.pending == ["US-001", "US-009"]
    assert index.story_order == ["US-001", "US-009"]
    assert store.validate_index(index) == []
    assert _partitioned(store)


def test_validate_index_reports_story_order_id_in_no_list(tmp_path: Path) -> None:
    store = _make_store(
        tmp_path,
        [_story("US-001", [False]), _story("US-002", [False])],
        pending=["US-001"],
        storyOrder=["US-001", "US-002"],
    )

    problems = store.validate_index()

    assert problems == ["US-002 is in storyOrder but not in pending, blocked or completed"]


def test_list_story_ids_skips_temp_files(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-002", [False]), _story("US-001", [True])], pending=["US-002"])
    (store.stories_dir / ".US-003.json.abc123.tmp").write_text("{")
    (store.stories_dir / "notes.txt").write_text("scratch")

    assert store.list_story_ids() == ["US-001", "US-002"]
    assert TaskStore(tmp_path / "missing").list_story_ids() == []


def test_apply_update_queue_without_inbox_is_noop(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False])], pending=["US-001"])
    before = store.index_path.read_text()

    result = store.apply_update_queue()

    assert not result.applied
    assert store.index_path.read_text() == before


def test_remove_stories_keeps_story_file(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False]), _story("US-002", [False])], pending=["US-001", "US-002"])
    store.update_path.write_text(json.dumps({"removeStories": ["US-001"]}))

    store.apply_update_queue()

    index = store.load_index()
    assert "US-001" not in index.known_ids()
    assert store.story_path("US-001").exists()


@pytest.mark.parametrize(
    "stories",
    [
        [[True, True], [False, True], [False]],
        [[True], [True], []],
        [[False, False, False], [True, False, True, True]],
    ],
)
def test_derive_stats_matches_manual_count(tmp_path: Path, stories: list[list[bool]]) -> None:
    payloads = [_story(f"US-{i:03d}", checked) for i, checked in enumerate(stories)]
    ids = [p["id"] for p in payloads]
    store = _make_store(tmp_path, payloads, pending=ids)

    stats = store.derive_stats()

    assert stats.total == len(stories)
    assert stats.criteria_total == sum(len(c) for c in stories)
    assert stats.criteria_checked == sum(sum(c) for c in stories)
    # A story with no criteria counts as complete only via passes.
    expected_complete = sum(1 for c in stories if (all(c) if c else False))
    assert stats.completed == expected_complete
    assert stats.pending == len(stories) - expected_complete


def test_derive_stats_ignores_stale_counters_in_index(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [True])], pending=["US-001"])
    raw = json.loads(store.index_path.read_text())
    raw["stats"] = {"completed": 0, "total": 40}
    store.index_path.write_text(json.dumps(raw))

    stats = store.derive_stats()

    assert (stats.completed, stats.total) == (1, 1)


def test_complete_story_unblocks_dependents_and_advances_next_item(tmp_path: Path) -> None:
    store = _make_store(
        tmp_path,
        [_story("US-001", [True]), _story("US-002", [False]), _story("US-003", [False], blockedBy="US-001")],
        pending=["US-001", "US-002"],
        blocked=["US-003"],
    )

    unblocked = store.complete_story("US-001")

    assert unblocked == ["US-003"]
    index = store.load_index()
    assert index.completed == ["US-001"]
    assert index.pending == ["US-002", "US-003"]
    assert index.next_item == "US-002"
    assert store.load_story("US-001").passes
    assert store.load_story("US-003").blocked_by is None
    assert _partitioned(store)


def test_auto_block_if_needed(tmp_path: Path) -> None:
    store = _make_store(
        tmp_path,
        [
            _story("US-001", [True]),
            _story("US-002", [False], blockedBy="US-001"),
            _story("US-003", [False], blockedBy="US-009"),
        ],
        pending=["US-002", "US-003"],
        completed=["US-001"],
    )

    assert store.auto_block_if_needed("US-002") is False
    assert store.load_story("US-002").blocked_by is None

    assert store.auto_block_if_needed("US-003") is True
    index = store.load_index()
    assert index.blocked == ["US-003"]
    assert index.pending == ["US-002"]


def test_block_then_unblock_round_trips_index_lists(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False]), _story("US-002", [False])], pending=["US-001", "US-002"])

    store.block_story("US-001", "needs credentials")
    assert store.load_index().blocked == ["US-001"]
    assert store.load_story("US-001").blocked_by == "needs credentials"

    store.unblock_story("US-001")
    index = store.load_index()
    assert index.blocked == []
    assert set(index.pending) == {"US-001", "US-002"}
    assert store.load_story("US-001").blocked_by is None
    assert _partitioned(store)


def test_validate_index_reports_duplicates_without_repair(tmp_path: Path) -> None:
    store = _make_store(
        tmp_path,
        [_story("US-001", [False]), _story("US-002", [False])],
        pending=["US-001", "US-002"],
        blocked=["US-002"],
        storyOrder=["US-001"],
    )
    before = store.index_path.read_text()

    problems = store.validate_index()

    assert any("US-002 appears in both pending and blocked" in p for p in problems)
    assert any("US-002 missing from storyOrder" in p for p in problems)
    assert store.index_path.read_text() == before


def test_record_failed_attempt_persists(tmp_path: Path) -> None:
    store = _make_store(tmp_path, [_story("US-001", [False])], pending=["US-001"])

    assert store.record_failed_attempt("US-001") == 1
    assert store.record_failed_attempt("US-001") == 2
    assert store.load_story("US-001").failed_attempts == 2


def test_concurrent_readers_never_see_a_partial_index(tmp_path: Path) -> None:
    path = tmp_path / "index.json"
    big = {"pending": [f"US-{i:05d}" for i in range(5000)]}
    _atomic_write_json(path, big)
    errors: list[str] = []
    stop = threading.Event()

    def _reader() -> None:
        while not stop.is_set():
            try:
                data = json.loads(path.read_text())
            except json.JSONDecodeError as exc:
                errors.append(str(exc))
                return
            if len(data["pending"]) not in (5000, 4999):
                errors.append("unexpected length")

    reader = threading.Thread(target=_reader)
    reader.start()
    try:
        for i in range(50):
            _atomic_write_json(path, {"pending": big["pending"][: 5000 - (i % 2)]})
    finally:
        stop.set()
        reader.join()

    assert errors == []
    assert not list(tmp_path.glob("*.tmp"))


def test_story_type_prefix() -> None:
    assert Story(id="US-012").story_type == "US"
    assert Story(id="bug-3").story_type == "BUG"
    assert Story(id="plain").story_type == ""
