"""Test progress bar rendering and header output."""

from __future__ import annotations

import io
import sys
from pathlib import Path

from rich.console import Console

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from story_runner.models import AcceptanceCriterion, Story, StoryStats
from story_runner.ui import DisplayConfig, RunnerUI, criteria_text, progress_bar, stories_text


def test_progress_bar_bounds() -> None:
    assert progress_bar(0, 4, 8) == "░" * 8
    assert progress_bar(2, 4, 8) == "█" * 4 + "░" * 4
    assert progress_bar(9, 4, 8) == "█" * 8
    assert progress_bar(0, 0, 3) == "░░░"


def test_criteria_and_stories_text() -> None:
    story = Story(id="US-001", acceptance_criteria=[AcceptanceCriterion("a", True), AcceptanceCriterion("b")])
    assert criteria_text(story, 4).plain == "Criteria: ██░░ 1/2"
    assert criteria_text(None).plain == "Criteria: (unavailable)"

    stats = StoryStats(pending=1, blocked=1, completed=2, total=4)
    assert stories_text(stats, 4).plain == "Stories:  ██░░ 2/4 (1 blocked)"


def test_print_header_without_terminal_returns_no_rows() -> None:
    buffer = io.StringIO()
    ui = RunnerUI(DisplayConfig(color=False), console=Console(file=buffer, width=80, force_terminal=False))
    story = Story(id="US-001", title="Login", acceptance_criteria=[AcceptanceCriterion("a")])

    rows = ui.print_header(iteration=1, max_iterations=5, story=story, model="sonnet", stats=StoryStats(total=1))

    assert rows is None
    out = buffer.getvalue()
    assert "Iteration 1/5" in out
    assert "Model: sonnet" in out
    assert "0/1" in out


def test_render_inline_without_colour_is_plain() -> None:
    ui = RunnerUI(DisplayConfig(color=False), console=Console(file=io.StringIO(), width=80, force_terminal=False))
    assert ui.render_inline(criteria_text(None)) == "Criteria: (unavailable)"
