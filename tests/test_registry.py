"""Test the cross-session PID registry and orphan detection."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.models import PidRecord
from story_runner.registry import PidRegistry


def test_track_and_untrack(tmp_path: Path) -> None:
    registry = PidRegistry(tmp_path / "pids", owner_pid=100, is_alive=lambda pid: True)

    registry.track(200, "agent")
    registry.track(201, "agent worker")

    rows = registry.rows()
    assert [row.pid for row in rows] == [200, 201]
    assert rows[1].tag == "agent_worker"
    assert all(row.owner_pid == 100 for row in rows)

    registry.untrack(200)
    assert [row.pid for row in registry.rows()] == [201]
    registry.untrack(201)
    assert not (tmp_path / "pids").exists()


def test_malformed_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "pids"
    path.write_text("200 agent 1700000000 100\nnot a row\n201 agent x 100\n", encoding="utf-8")

    rows = PidRegistry(path, owner_pid=1, is_alive=lambda pid: True).rows()

    assert rows == [PidRecord(pid=200, tag="agent", registered_at=1700000000, owner_pid=100)]


def test_find_orphans_requires_dead_owner_and_live_child(tmp_path: Path) -> None:
    alive = {10, 20, 30}
    registry = PidRegistry(tmp_path / "pids", owner_pid=10, is_alive=lambda pid: pid in alive)
    registry.track(20, "agent")
    PidRegistry(tmp_path / "pids", owner_pid=99, is_alive=lambda pid: pid in alive).track(30, "agent")
    PidRegistry(tmp_path / "pids", owner_pid=98, is_alive=lambda pid: pid in alive).track(40, "agent")

    orphans = registry.find_orphans()

    assert [row.pid for row in orphans] == [30]


def test_sweep_dead_and_untrack_session(tmp_path: Path) -> None:
    alive = {1, 2}
    registry = PidRegistry(tmp_path / "pids", owner_pid=1, is_alive=lambda pid: pid in alive)
    registry.track(2, "agent")
    registry.track(3, "agent")

    assert registry.sweep_dead() == 1
    assert [row.pid for row in registry.rows()] == [2]
    assert registry.untrack_session() == 1
    assert registry.rows() == []


def test_kill_orphans_terminates_real_child(tmp_path: Path) -> None:
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    dead_owner = 4_000_000

    def _is_alive(pid: int) -> bool:
        if pid == child.pid:
            return child.poll() is None
        return False

    try:
        PidRegistry(tmp_path / "pids", owner_pid=dead_owner, is_alive=_is_alive).track(child.pid, "agent")
        registry = PidRegistry(tmp_path / "pids", owner_pid=1, is_alive=_is_alive)

        killed = registry.kill_orphans(grace_seconds=5)

        assert [row.pid for row in killed] == [child.pid]
        assert child.wait(timeout=5) is not None
        assert registry.rows() == []
    finally:
        if child.poll() is None:
            child.kill()
            child.wait()
