"""Rich rendering for the run loop and the inspection subcommands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import IterationRecord, PidRecord, RunSummary, StatusRecord, Story, StoryStats
from .terminal import query_cursor_row
from .utils import _format_age, _now_epoch

# Header panel: top border, iteration, model, criteria bar, stories bar, bottom border.
HEADER_HEIGHT = 6
CRITERIA_LINE_OFFSET = 3
STORIES_LINE_OFFSET = 4
HEADER_CONTENT_COL = 3


@dataclass(frozen=True)
class DisplayConfig:
    color: bool = True
    live: bool = True
    bar_width: int = 20
    echo_output: bool = False


@dataclass(frozen=True)
class HeaderRows:
    criteria_row: int
    stories_row: int
    col: int = HEADER_CONTENT_COL


def progress_bar(done: int, total: int, width: int = 20) -> str:
    if total <= 0:
        return "░" * width
    filled = max(0, min(width, round(width * done / total)))
    return "█" * filled + "░" * (width - filled)


def criteria_text(story: Optional[Story], width: int = 20) -> Text:
    if story is None:
        return Text("Criteria: (unavailable)", style="dim")
    done, total = story.criteria_checked, story.criteria_total
    line = Text("Criteria: ")
    line.append(progress_bar(done, total, width), style="green" if total and done == total else "cyan")
    line.append(f" {done}/{total}")
    return line


def stories_text(stats: Optional[StoryStats], width: int = 20) -> Text:
    if stats is None:
        return Text("Stories:  (unavailable)", style="dim")
    line = Text("Stories:  ")
    line.append(progress_bar(stats.completed, stats.total, width), style="magenta")
    line.append(f" {stats.completed}/{stats.total}")
    if stats.blocked:
        line.append(f" ({stats.blocked} blocked)", style="yellow")
    return line


class RunnerUI:
    def __init__(self, display: DisplayConfig, console: Optional[Console] = None) -> None:
        self.display = display
        self.console = console or Console(no_color=not display.color, highlight=False)

    def render_inline(self, text: Text) -> str:
        """Render *text* to a string (with ANSI styling when colour is on)."""
        with self.console.capture() as capture:
            self.console.print(text, end="", no_wrap=True, overflow="ellipsis", soft_wrap=True)
        return capture.get()

    def print_header(
        self,
        *,
        iteration: int,
        max_iterations: int,
        story: Story,
        model: str,
        stats: Optional[StoryStats],
        attempt: int = 0,
    ) -> Optional[HeaderRows]:
        """Print the iteration header and return the rows live repaints target.

        Returns None when the terminal cannot report cursor positions.
        """
        width = self.display.bar_width
        title = Text(f"Iteration {iteration}/{max_iterations}  ", style="bold")
        title.append(story.id, style="bold cyan")
        if story.title:
            title.append(f"  {story.title}")
        model_line = Text(f"Model: {model}", style="dim")
        if attempt:
            model_line.append(f"  retry {attempt}", style="yellow")
        body = Text("\n").join(
            [title, model_line, criteria_text(story, width), stories_text(stats, width)]
        )
        body.no_wrap = True
        body.overflow = "ellipsis"
        self.console.print(Panel(body, border_style="blue"))

        if not (self.display.live and self.console.is_terminal):
            return None
        end_row = query_cursor_row(self.console.file)
        if end_row is None or end_row <= HEADER_HEIGHT:
            return None
        top = end_row - HEADER_HEIGHT
        return HeaderRows(criteria_row=top + CRITERIA_LINE_OFFSET, stories_row=top + STORIES_LINE_OFFSET)

    def print_iteration_summary(self, record: IterationRecord, story: Optional[Story], stats: Optional[StoryStats]) -> None:
        style = {
            "completed": "green",
            "blocked": "yellow",
            "failed": "red",
            "skipped": "dim",
        }.get(record.outcome, "white")
        line = Text(f"#{record.iteration} {record.story_id}: ", style="bold")
        line.append(record.outcome, style=style)
        line.append(f"  ({record.duration_ms / 1000:.1f}s, {record.model})", style="dim")
        self.console.print(line)
        width = self.display.bar_width
        self.console.print(criteria_text(story, width))
        self.console.print(stories_text(stats, width))

    def print_retry(self, kind: str, reason: str, attempt: int, max_retries: int, cooldown: int) -> None:
        self.console.print(
            f"[yellow]{reason} ({kind}); retry {attempt}/{max_retries} in {cooldown}s[/yellow]"
        )

    def print_final(self, summary: RunSummary, stats: Optional[StoryStats]) -> None:
        style = "green" if summary.exit_code == 0 else "red"
        body = Text(f"{summary.halt_reason.value}", style=f"bold {style}")
        if summary.message:
            body.append(f"\n{summary.message}")
        body.append(f"\nIterations: {summary.iterations}")
        if stats is not None:
            body.append("\n")
            body.append_text(stories_text(stats, self.display.bar_width))
        self.console.print(Panel(body, title="story-runner", border_style=style))

    def print_crash_notice(self, path: Path, age_seconds: float) -> None:
        self.console.print(
            Panel(
                f"A previous session crashed {_format_age(age_seconds)} ago.\n"
                f"Report: {path}\nRun [bold]story-runner logs[/bold] to view it.",
                title="Recent crash",
                border_style="red",
            )
        )

    def print_markdown_log(self, text: str) -> None:
        self.console.print(Markdown(text))

    def stats_table(self, stats: StoryStats) -> Table:
        table = Table(title="Stories", show_header=True)
        table.add_column("Pending", justify="right")
        table.add_column("Blocked", justify="right")
        table.add_column("Completed", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Criteria", justify="right")
        table.add_row(
            str(stats.pending),
            str(stats.blocked),
            str(stats.completed),
            str(stats.total),
            f"{stats.criteria_checked}/{stats.criteria_total}",
        )
        return table

    def story_table(self, stories: list[tuple[str, Optional[Story]]]) -> Table:
        table = Table(show_header=True)
        table.add_column("Status")
        table.add_column("Story")
        table.add_column("Title")
        table.add_column("Criteria", justify="right")
        table.add_column("Failures", justify="right")
        for status, story in stories:
            if story is None:
                continue
            table.add_row(
                status,
                story.id,
                story.title,
                f"{story.criteria_checked}/{story.criteria_total}",
                str(story.failed_attempts),
            )
        return table

    def sessions_table(self, sessions: list[tuple[Path, StatusRecord]]) -> Table:
        now = _now_epoch()
        table = Table(title="Running sessions", show_header=True)
        table.add_column("PID", justify="right")
        table.add_column("State")
        table.add_column("Story")
        table.add_column("Iteration", justify="right")
        table.add_column("Last activity")
        table.add_column("Error")
        for _path, record in sessions:
            table.add_row(
                str(record.pid),
                record.state.value,
                record.story_id or "",
                "" if record.iteration is None else str(record.iteration),
                f"{_format_age(now - record.last_activity)} ago" if record.last_activity else "",
                record.error or "",
            )
        return table

    def orphans_table(self, rows: list[PidRecord]) -> Table:
        now = _now_epoch()
        table = Table(title="Orphaned processes", show_header=True)
        table.add_column("PID", justify="right")
        table.add_column("Tag")
        table.add_column("Owner", justify="right")
        table.add_column("Age")
        for row in rows:
            table.add_row(str(row.pid), row.tag, str(row.owner_pid), _format_age(now - row.registered_at))
        return table
