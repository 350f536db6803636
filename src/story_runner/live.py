"""Live progress while an agent runs: a filesystem watcher feeding a repaint poller.

The watcher turns task-store writes into `ChangeEvent`s on a bounded queue;
the poller drains it and repaints the criteria or stories bar in place. Both
run only for the duration of one spawn and are owned by `LiveProgress`.
"""

from __future__ import annotations

import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, TextIO

from loguru import logger
from rich.text import Text
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .constants import DEFAULT_LIVE_POLL_INTERVAL, DEFAULT_LIVE_QUEUE_SIZE, INDEX_FILE, STORIES_DIR
from .io_utils import _is_temp_file
from .models import Story, StoryStats
from .store import TaskStore, TaskStoreError
from .terminal import RESTORE_CURSOR, SAVE_CURSOR, move_to
from .ui import HeaderRows, criteria_text, stories_text


@dataclass(frozen=True)
class ChangeEvent:
    path: Path


class _StoreEventHandler(FileSystemEventHandler):
    def __init__(self, sink: Callable[[Path], None]) -> None:
        super().__init__()
        self._sink = sink

    def _emit(self, event: FileSystemEvent, raw_path: Any) -> None:
        if event.is_directory or not raw_path:
            return
        path = Path(os.fsdecode(raw_path))
        if path.suffix != ".json" or _is_temp_file(path):
            return
        self._sink(path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(event, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._emit(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes land as a rename of the temp file onto the target.
        self._emit(event, getattr(event, "dest_path", ""))


class StoryWatcher:
    """Watch the task store and publish one event per changed JSON file.

    Publishing never blocks: when the queue is full the event is dropped and
    counted in `dropped`.
    """

    def __init__(self, store: TaskStore, events: "queue.Queue[ChangeEvent]", observer_factory: Callable[[], Any] = Observer) -> None:
        self.store = store
        self.events = events
        self.dropped = 0
        self._observer_factory = observer_factory
        self._observer: Optional[Any] = None
        self._handler = _StoreEventHandler(self.publish)

    def publish(self, path: Path) -> bool:
        try:
            self.events.put_nowait(ChangeEvent(path))
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def start(self) -> None:
        observer = self._observer_factory()
        observer.schedule(self._handler, str(self.store.prd_dir), recursive=False)
        if self.store.stories_dir.is_dir():
            observer.schedule(self._handler, str(self.store.stories_dir), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop(self, timeout: float = 1.0) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout)

    @property
    def running(self) -> bool:
        return self._observer is not None


class ProgressRepainter:
    """Overwrite single header rows in place: save cursor, move, write, restore."""

    def __init__(
        self,
        stream: TextIO,
        rows: HeaderRows,
        render: Callable[[Text], str],
        *,
        bar_width: int = 20,
        line_width: int = 60,
    ) -> None:
        self.stream = stream
        self.rows = rows
        self.render = render
        self.bar_width = bar_width
        self.line_width = line_width
        self._lock = threading.Lock()

    def paint(self, row: int, text: Text) -> None:
        padded = text.copy()
        if len(padded.plain) < self.line_width:
            padded.pad_right(self.line_width - len(padded.plain))
        else:
            padded.truncate(self.line_width)
        content = self.render(padded)
        with self._lock:
            self.stream.write(f"{SAVE_CURSOR}{move_to(row, self.rows.col)}{content}{RESTORE_CURSOR}")
            self.stream.flush()

    def paint_criteria(self, story: Optional[Story]) -> None:
        self.paint(self.rows.criteria_row, criteria_text(story, self.bar_width))

    def paint_stories(self, stats: Optional[StoryStats]) -> None:
        self.paint(self.rows.stories_row, stories_text(stats, self.bar_width))


class ProgressPoller(threading.Thread):
    """Drain change events and trigger targeted repaints until stopped."""

    def __init__(
        self,
        events: "queue.Queue[ChangeEvent]",
        store: TaskStore,
        story_id: str,
        repainter: ProgressRepainter,
        stop_event: threading.Event,
        poll_interval: float = DEFAULT_LIVE_POLL_INTERVAL,
    ) -> None:
        super().__init__(name="story-runner-poller", daemon=True)
        self.events = events
        self.store = store
        self.story_id = story_id
        self.repainter = repainter
        self.stop_event = stop_event
        self.poll_interval = poll_interval
        self.repaints = 0

    def run(self) -> None:
        while not self.stop_event.is_set():
            try:
                event = self.events.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            try:
                if self.dispatch(event):
                    self.repaints += 1
            except Exception as exc:
                logger.debug("Live repaint failed for {}: {}", event.path, exc)

    def dispatch(self, event: ChangeEvent) -> Optional[str]:
        """Repaint whatever *event* affects; return which bar was repainted."""
        path = event.path
        if path.parent.name == STORIES_DIR and path.stem == self.story_id:
            story = self.store.try_load_story(self.story_id)
            if story is None:
                return None
            self.repainter.paint_criteria(story)
            return "criteria"
        if path.name == INDEX_FILE:
            try:
                stats = self.store.derive_stats()
            except TaskStoreError as exc:
                logger.debug("Index unreadable during repaint: {}", exc.reason)
                return None
            self.repainter.paint_stories(stats)
            return "stories"
        return None


class LiveProgress:
    """Supervise one watcher/poller pair around a single spawn.

    Use as a context manager; `stop()` is idempotent. When disabled (no
    terminal, no known header rows) both calls are no-ops.
    """

    def __init__(
        self,
        store: TaskStore,
        story_id: str,
        rows: Optional[HeaderRows],
        *,
        stream: TextIO,
        render: Callable[[Text], str],
        bar_width: int = 20,
        line_width: int = 60,
        poll_interval: float = DEFAULT_LIVE_POLL_INTERVAL,
        queue_size: int = DEFAULT_LIVE_QUEUE_SIZE,
        enabled: bool = True,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.store = store
        self.story_id = story_id
        self.rows = rows
        self.poll_interval = poll_interval
        self.enabled = enabled and rows is not None
        self.events: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=max(1, queue_size))
        self._stop_event = threading.Event()
        self.watcher = StoryWatcher(store, self.events, observer_factory=observer_factory)
        self.poller: Optional[ProgressPoller] = None
        if self.enabled and rows is not None:
            self.repainter: Optional[ProgressRepainter] = ProgressRepainter(
                stream, rows, render, bar_width=bar_width, line_width=line_width
            )
        else:
            self.repainter = None

    @property
    def running(self) -> bool:
        return self.poller is not None and self.poller.is_alive()

    @property
    def dropped(self) -> int:
        return self.watcher.dropped

    def start(self) -> None:
        if not self.enabled or self.repainter is None or self.poller is not None:
            return
        self._stop_event.clear()
        try:
            self.watcher.start()
        except OSError as exc:
            logger.warning("Live progress disabled: cannot watch {}: {}", self.store.prd_dir, exc)
            self.enabled = False
            return
        self.poller = ProgressPoller(
            self.events,
            self.store,
            self.story_id,
            self.repainter,
            self._stop_event,
            poll_interval=self.poll_interval,
        )
        self.poller.start()

    def stop(self) -> None:
        self._stop_event.set()
        self.watcher.stop(timeout=max(1.0, self.poll_interval * 5))
        poller, self.poller = self.poller, None
        if poller is not None:
            poller.join(timeout=max(1.0, self.poll_interval * 5))
            if poller.is_alive():
                logger.warning("Live progress poller did not stop in time")
        if self.dropped:
            logger.debug("Live progress dropped {} change events", self.dropped)

    def __enter__(self) -> "LiveProgress":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()
