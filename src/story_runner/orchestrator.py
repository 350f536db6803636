"""Run stories one per iteration until the queue is done, blocked, or stopped."""

from __future__ import annotations

import os
import signal
import sys
import threading
import time
import traceback
from datetime import datetime
from typing import Any, Callable, Optional, Union

from loguru import logger

from .classifier import ErrorKind, classify, describe
from .config import RunnerConfig
from .constants import DEFAULT_KEY_POLL_INTERVAL
from .crash import find_recent_crash, write_crash_log
from .fsm import (
    Aborted,
    Exhausted,
    Halt,
    Retry,
    ResultOutcome,
    SelectStory,
    SpawnOutcome,
    decide_result,
    exceeds_failure_budget,
    halt_exit_code,
    reduce_spawn,
    select_item,
)
from .live import LiveProgress
from .models import HaltReason, IterationRecord, RunSummary, StatusState, Story, StoryStats
from .notifications import NotificationManager
from .prompts import build_story_prompt
from .registry import PidRegistry, terminate_pid
from .signals import detect_signals
from .status import StatusFile
from .store import TaskStore, TaskStoreError, criteria_label
from .terminal import is_interactive, poll_key
from .ui import HeaderRows, RunnerUI
from .utils import _pid_is_running
from .workers.config import ExecutionProfile, build_agent_command, resolve_profile, validate_command_template
from .workers.output import extract_assistant_text, has_error_result, parse_records
from .workers.run import SpawnResult, run_agent

SpawnFn = Callable[..., SpawnResult]
LiveFactory = Callable[[str, Optional[HeaderRows]], Any]


class UserControls:
    """Pause/skip/quit requests coming from keys and Ctrl+C."""

    def __init__(self) -> None:
        self.paused = False
        self.skip_requested = False
        self.quit_requested = False
        self.abort_spawn = False
        self.interrupts = 0

    def handle_key(self, key: str) -> Optional[str]:
        key = key.lower()
        if key == "p":
            self.paused = not self.paused
            return "pause" if self.paused else "resume"
        if key == "s":
            self.skip_requested = True
            return "skip"
        if key == "q":
            self.quit_requested = True
            return "quit"
        return None

    def handle_interrupt(self) -> None:
        self.interrupts += 1
        self.quit_requested = True
        if self.interrupts >= 2:
            self.abort_spawn = True


class IterationScheduler:
    """Drive the select, spawn, classify, record loop for one session."""

    def __init__(
        self,
        config: RunnerConfig,
        *,
        store: Optional[TaskStore] = None,
        ui: Optional[RunnerUI] = None,
        registry: Optional[PidRegistry] = None,
        status: Optional[StatusFile] = None,
        notifier: Optional[NotificationManager] = None,
        spawn_fn: SpawnFn = run_agent,
        sleep_fn: Callable[[float], None] = time.sleep,
        key_fn: Callable[[float], Optional[str]] = poll_key,
        input_fn: Callable[[str], str] = input,
        interactive: Optional[bool] = None,
        live_factory: Optional[LiveFactory] = None,
        user_prompt: Optional[str] = None,
    ) -> None:
        self.config = config
        self.store = store or TaskStore(config.paths.prd_dir)
        self.ui = ui or RunnerUI(config.display)
        self.registry = registry or PidRegistry(config.paths.pid_registry)
        self.status = status or StatusFile(config.paths.status_dir)
        self.notifier = notifier or NotificationManager(
            config.notifications, project=config.paths.project_dir.name
        )
        self.spawn_fn = spawn_fn
        self.sleep_fn = sleep_fn
        self.key_fn = key_fn
        self.input_fn = input_fn
        self.interactive = is_interactive() if interactive is None else interactive
        self.live_factory = live_factory or self._make_live
        self.user_prompt = user_prompt

        self.controls = UserControls()
        self.iteration = 0
        self.history: list[IterationRecord] = []
        self.skipped: set[str] = set()
        self.current_story_id: Optional[str] = None
        self._current_model: Optional[str] = None
        self._active_pid: Optional[int] = None
        self._live: Optional[Any] = None
        self._previous_handlers: dict[int, Any] = {}

    # Lifecycle -----------------------------------------------------------

    def preflight(self) -> None:
        """Validate agent command templates before anything is spawned.

        Raises:
            ValueError: If a template has no prompt placeholder.
        """
        validate_command_template(self.config.agent.command)
        for template in self.config.agent.commands.values():
            validate_command_template(template)

    def run(self) -> RunSummary:
        self.preflight()
        self._install_signal_handlers()
        summary: Optional[RunSummary] = None
        try:
            self._startup()
            summary = self._loop()
        except Exception as exc:
            summary = self._handle_crash(exc)
        finally:
            self._shutdown()
        try:
            self._finish(summary)
        finally:
            self.notifier.close()
        return summary

    def _startup(self) -> None:
        paths = self.config.paths
        logger.info("Project directory: {}", paths.project_dir)
        logger.info("Task store: {}", self.store.prd_dir)
        logger.info("Max iterations: {}", self.config.loop.max_iterations)

        recent = find_recent_crash(paths.logs_dir)
        if recent is not None:
            self.ui.print_crash_notice(recent, time.time() - recent.stat().st_mtime)

        self.registry.sweep_dead()
        orphans = self.registry.find_orphans()
        if orphans:
            self.ui.console.print(self.ui.orphans_table(orphans))
            kill = True
            if self.interactive:
                answer = self.input_fn(f"Kill {len(orphans)} orphaned process(es)? [Y/n] ")
                kill = answer.strip().lower() in {"", "y", "yes"}
            if kill:
                killed = self.registry.kill_orphans(grace_seconds=self.config.loop.kill_grace_seconds)
                logger.info("Killed {} orphaned process(es)", len(killed))
            else:
                logger.warning("Leaving {} orphaned process(es) running", len(orphans))

        if self.status.consume_stop_request():
            logger.debug("Discarded stale stop request {}", self.status.stop_path)
        self.status.write(StatusState.RUNNING, iteration=0)

    def _shutdown(self) -> None:
        self._restore_signal_handlers()
        if self._live is not None:
            self._live.stop()
            self._live = None
        if self._active_pid is not None and _pid_is_running(self._active_pid):
            logger.warning("Terminating agent pid={} on shutdown", self._active_pid)
            terminate_pid(self._active_pid, self.config.loop.kill_grace_seconds)
        self._active_pid = None
        self.status.cleanup()
        self.registry.untrack_session()

    def _finish(self, summary: RunSummary) -> None:
        stats = self._safe_stats()
        if summary.halt_reason is HaltReason.COMPLETE:
            self.notifier.notify_all_complete(stats, summary.iterations)
        elif summary.halt_reason is HaltReason.ALL_BLOCKED:
            self.notifier.notify_all_blocked(stats.blocked if stats else 0)
        elif summary.halt_reason is HaltReason.MAX_ITERATIONS:
            self.notifier.notify_max_iterations(summary.iterations, stats)
        elif summary.exit_code != 0:
            self.notifier.notify_error(summary.message or summary.halt_reason.value, self.current_story_id)
        log = logger.info if summary.exit_code == 0 else logger.error
        log("Run finished: {} after {} iterations {}", summary.halt_reason.value, summary.iterations, summary.message)
        self.ui.print_final(summary, stats)

    def _summary(self, reason: HaltReason, message: str = "") -> RunSummary:
        return RunSummary(
            halt_reason=reason,
            iterations=self.iteration,
            exit_code=halt_exit_code(reason),
            message=message,
            history=list(self.history),
        )

    # Signals -------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        handlers: dict[int, Callable[..., Any]] = {signal.SIGINT: self._on_interrupt, signal.SIGTERM: self._on_terminate}
        if hasattr(signal, "SIGHUP"):
            handlers[signal.SIGHUP] = self._on_terminate
        for signum, handler in handlers.items():
            self._previous_handlers[signum] = signal.signal(signum, handler)

    def _restore_signal_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def _on_interrupt(self, signum: int, frame: Any) -> None:
        self.controls.handle_interrupt()
        if self.controls.abort_spawn:
            logger.warning("Second interrupt: stopping the agent")
        else:
            logger.warning("Quit requested; finishing the current iteration (Ctrl+C again to stop now)")

    def _on_terminate(self, signum: int, frame: Any) -> None:
        raise SystemExit(128 + signum)

    # Loop ----------------------------------------------------------------

    def _loop(self) -> RunSummary:
        max_iterations = self.config.loop.max_iterations
        while True:
            if self._check_stop_request():
                return self._summary(HaltReason.USER_QUIT, "Stopped by user")
            if self.iteration >= max_iterations:
                return self._summary(HaltReason.MAX_ITERATIONS, f"Reached {max_iterations} iterations")

            try:
                selected = self._select()
            except TaskStoreError as exc:
                logger.error("Task store error: {}", exc)
                self.status.write(StatusState.ERROR, error=str(exc), iteration=self.iteration)
                return self._summary(HaltReason.STORE_ERROR, str(exc))
            if isinstance(selected, Halt):
                return self._summary(selected.reason, selected.message)
            if selected is None:
                continue

            self.iteration += 1
            try:
                halt = self._run_iteration(selected)
            except TaskStoreError as exc:
                logger.error("Task store error: {}", exc)
                self.status.write(StatusState.ERROR, error=str(exc), iteration=self.iteration)
                return self._summary(HaltReason.STORE_ERROR, str(exc))
            if halt is not None:
                return self._summary(halt.reason, halt.message)

            self._between_iterations()

    def _check_stop_request(self) -> bool:
        """Fold a stop file written by `story-runner stop` into the quit flag."""
        if not self.controls.quit_requested and self.status.consume_stop_request():
            logger.warning("Stop requested by another process; quitting after this iteration")
            self.controls.quit_requested = True
        return self.controls.quit_requested

    def _select(self) -> Union[Story, Halt, None]:
        """Pick the next story, or return a halt; None means re-select."""
        update = self.store.apply_update_queue()
        if update.applied:
            logger.info("Applied update queue ({} changes)", len(update.changes))
        index = self.store.load_index()
        problems = self.store.validate_index(index)
        if problems:
            for problem in problems:
                logger.error("Index problem: {}", problem)
            return Halt(HaltReason.STORE_ERROR, "; ".join(problems))

        selection = select_item(index, self.skipped)
        if isinstance(selection, Halt):
            return selection
        assert isinstance(selection, SelectStory)
        story = self.store.load_story(selection.story_id)

        if story.blocked_by:
            if self.store.auto_block_if_needed(story.id):
                logger.info("{} is blocked by {}", story.id, story.blocked_by)
                return None
            story = self.store.load_story(story.id)

        if exceeds_failure_budget(story, self.config.loop.max_story_failures):
            reason = f"failed {story.failed_attempts} attempts"
            logger.warning("Blocking {}: {}", story.id, reason)
            self.store.block_story(story.id, reason)
            return None
        return story

    def _run_iteration(self, story: Story) -> Optional[Halt]:
        self.current_story_id = story.id
        self.controls.skip_requested = False
        profile = resolve_profile(story, self.config.routing, self.config.agent, self.config.model_override)
        self._current_model = profile.model
        logger.info(
            "Iteration {}: {} with {} ({})", self.iteration, story.id, profile.model, profile.source
        )
        snapshot = Story.from_dict(story.to_dict())
        started = time.monotonic()
        attempt = 0

        while True:
            self.status.write(
                StatusState.RUNNING,
                iteration=self.iteration,
                story_id=story.id,
                model=profile.model,
            )
            stats = self._safe_stats()
            rows = self.ui.print_header(
                iteration=self.iteration,
                max_iterations=self.config.loop.max_iterations,
                story=story,
                model=profile.model,
                stats=stats,
                attempt=attempt,
            )
            result = self._spawn(story, profile, rows, attempt)
            self.store.restore_checked(snapshot)

            records = parse_records(result.stdout)
            kind = classify(
                result.stdout,
                result.stderr,
                result.exit_code,
                timed_out=result.timed_out,
                has_records=bool(records) and not has_error_result(records),
            )
            action = reduce_spawn(SpawnOutcome(kind, attempt, aborted=result.aborted), self.config.retry)

            if isinstance(action, Aborted):
                self._record(story.id, profile, "aborted", attempt, started, None)
                return Halt(HaltReason.USER_QUIT, "Agent stopped by user")

            # Ctrl+C reaches the agent too; its failed exit is not the story's fault.
            if isinstance(action, (Retry, Exhausted)) and self._check_stop_request():
                logger.info(
                    "{} exited with {} after a quit request; not counted as a failure", story.id, result.exit_code
                )
                self._record(story.id, profile, "interrupted", attempt + 1, started, None)
                return Halt(HaltReason.USER_QUIT, "Stopped by user")

            if isinstance(action, Retry):
                failures = self.store.record_failed_attempt(story.id)
                reason = describe(kind)
                logger.warning(
                    "{} on {} (exit {}); retry {}/{} in {}s (failedAttempts={})",
                    reason,
                    story.id,
                    result.exit_code,
                    action.next_attempt,
                    action.max_retries,
                    action.cooldown_seconds,
                    failures,
                )
                self.status.write(
                    StatusState.RETRY,
                    error=reason,
                    retry_in=action.cooldown_seconds,
                    iteration=self.iteration,
                    story_id=story.id,
                    model=profile.model,
                )
                self.ui.print_retry(kind.value, reason, action.next_attempt, action.max_retries, action.cooldown_seconds)
                self._wait(action.cooldown_seconds)
                if self.controls.quit_requested:
                    self._record(story.id, profile, "interrupted", attempt + 1, started, kind)
                    return Halt(HaltReason.USER_QUIT, "Stopped by user during retry cooldown")
                if self.controls.skip_requested:
                    self.skipped.add(story.id)
                    self._record(story.id, profile, "skipped", attempt + 1, started, kind)
                    return None
                attempt = action.next_attempt
                continue

            if isinstance(action, Exhausted):
                failures = self.store.record_failed_attempt(story.id)
                message = f"{describe(kind)}: retries exhausted after {action.max_retries} attempts on {story.id}"
                logger.error("{} (failedAttempts={})", message, failures)
                self.status.write(
                    StatusState.ERROR,
                    error=message,
                    iteration=self.iteration,
                    story_id=story.id,
                    model=profile.model,
                )
                self._record(story.id, profile, "failed", attempt + 1, started, kind)
                return Halt(HaltReason.RETRY_EXHAUSTED, message)
            break

        self._record_result(story, profile, result, records, attempt + 1, started)
        return None

    def _record_result(
        self,
        story: Story,
        profile: ExecutionProfile,
        result: SpawnResult,
        records: list[dict[str, Any]],
        attempts: int,
        started: float,
    ) -> None:
        text = extract_assistant_text(records) if records else result.stdout
        signals = detect_signals(text, records)
        after = self.store.try_load_story(story.id)
        decision = decide_result(after, signals)
        if signals.complete and decision.outcome is not ResultOutcome.COMPLETED:
            logger.info("{} claimed completion but on-disk criteria say otherwise", story.id)

        if decision.outcome is ResultOutcome.COMPLETED:
            unblocked = self.store.complete_story(story.id)
            logger.info("Completed {}", story.id)
            if unblocked:
                logger.info("Unblocked: {}", ", ".join(unblocked))
            self.notifier.notify_story_complete(story.id, story.title)
        elif decision.outcome is ResultOutcome.BLOCKED:
            logger.warning("Blocked {}: {}", story.id, decision.reason)
            self.store.block_story(story.id, decision.reason or "blocked")
        else:
            logger.info(
                "{} still pending ({} criteria){}",
                story.id,
                criteria_label(after) if after else "?",
                f": {decision.reason}" if decision.reason else "",
            )

        if self.controls.skip_requested:
            self.skipped.add(story.id)
        record = self._record(story.id, profile, decision.outcome.value, attempts, started, None)
        self.ui.print_iteration_summary(record, self.store.try_load_story(story.id), self._safe_stats())
        self.status.write(StatusState.RUNNING, iteration=self.iteration, story_id=story.id, model=profile.model)

    def _record(
        self,
        story_id: str,
        profile: ExecutionProfile,
        outcome: str,
        attempts: int,
        started: float,
        kind: Optional[ErrorKind],
    ) -> IterationRecord:
        story = self.store.try_load_story(story_id)
        record = IterationRecord(
            iteration=self.iteration,
            story_id=story_id,
            model=profile.model,
            outcome=outcome,
            attempts=attempts,
            error_kind=kind.value if kind else None,
            criteria=criteria_label(story) if story else "",
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self.history.append(record)
        return record

    # Spawning ------------------------------------------------------------

    def _spawn(self, story: Story, profile: ExecutionProfile, rows: Optional[HeaderRows], attempt: int) -> SpawnResult:
        paths = self.config.paths
        stamp = datetime.now().strftime("%Y%m%dT%H%M%S")
        run_dir = paths.runs_dir / f"{stamp}-{story.id}-i{self.iteration}-a{attempt}"
        run_dir.mkdir(parents=True, exist_ok=True)
        prompt = build_story_prompt(
            story,
            self.store.story_path(story.id),
            self.store.update_path,
            user_prompt=self.user_prompt,
            attempt=attempt,
        )
        prompt_file = run_dir / "prompt.txt"
        prompt_file.write_text(prompt, encoding="utf-8")
        argv = build_agent_command(
            profile.command_template,
            model=profile.model,
            prompt=prompt,
            prompt_file=prompt_file,
            story_id=story.id,
            project_dir=paths.project_dir,
        )
        env = {**os.environ, **self.config.agent.env} if self.config.agent.env else None

        live = self.live_factory(story.id, rows)
        self._live = live
        try:
            live.start()
            return self.spawn_fn(
                argv,
                cwd=paths.project_dir,
                timeout_seconds=self.config.loop.timeout_seconds,
                env=env,
                kill_grace_seconds=self.config.loop.kill_grace_seconds,
                log_dir=run_dir,
                on_spawn=self._on_spawn,
                on_line=self._echo_line if self.config.display.echo_output else None,
                should_abort=lambda: self.controls.abort_spawn,
            )
        finally:
            live.stop()
            self._live = None
            if self._active_pid is not None:
                self.registry.untrack(self._active_pid)
                self._active_pid = None

    def _on_spawn(self, pid: int) -> None:
        self._active_pid = pid
        self.registry.track(pid, "agent")

    def _echo_line(self, label: str, line: str) -> None:
        stream = sys.stderr if label == "stderr" else sys.stdout
        text = extract_assistant_text(parse_records(line)) if label == "stdout" else line
        if text:
            stream.write(text if text.endswith("\n") else text + "\n")
            stream.flush()

    def _make_live(self, story_id: str, rows: Optional[HeaderRows]) -> LiveProgress:
        display = self.config.display
        return LiveProgress(
            self.store,
            story_id,
            rows,
            stream=self.ui.console.file,
            render=self.ui.render_inline,
            bar_width=display.bar_width,
            line_width=max(20, self.ui.console.width - 4),
            poll_interval=self.config.live.poll_interval,
            queue_size=self.config.live.queue_size,
            enabled=self.config.live.enabled and display.live and self.interactive and not display.echo_output,
        )

    # Waiting and keys ----------------------------------------------------

    def _handle_key(self, key: str) -> None:
        action = self.controls.handle_key(key)
        if action == "pause":
            self.ui.console.print("[yellow]Paused after this iteration (p to resume, q to quit)[/yellow]")
        elif action == "resume":
            self.ui.console.print("[green]Resumed[/green]")
        elif action == "skip":
            self.ui.console.print(f"[yellow]Skipping {self.current_story_id or 'current story'} for this session[/yellow]")
        elif action == "quit":
            self.ui.console.print("[yellow]Quitting after this iteration[/yellow]")

    def _wait(self, seconds: float) -> None:
        """Wait *seconds*, polling keys when interactive; returns early on quit or skip."""
        if seconds <= 0:
            return
        if not self.interactive:
            remaining = float(seconds)
            while remaining > 0 and not self._check_stop_request():
                step = min(remaining, 1.0)
                self.sleep_fn(step)
                remaining -= step
            return
        deadline = time.monotonic() + seconds
        while not (self._check_stop_request() or self.controls.skip_requested):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            key = self.key_fn(min(remaining, DEFAULT_KEY_POLL_INTERVAL))
            if key:
                self._handle_key(key)

    def _between_iterations(self) -> None:
        self._wait(self.config.loop.gap_seconds)
        # Skip pressed between iterations applies to the story that just ran.
        if self.controls.skip_requested and self.current_story_id:
            self.skipped.add(self.current_story_id)
            self.controls.skip_requested = False
        if not self.controls.paused or not self.interactive:
            return
        self.status.write(StatusState.IDLE, iteration=self.iteration, story_id=self.current_story_id)
        while self.controls.paused and not self._check_stop_request():
            key = self.key_fn(DEFAULT_KEY_POLL_INTERVAL)
            if key:
                self._handle_key(key)

    # Crash ---------------------------------------------------------------

    def _handle_crash(self, exc: Exception) -> RunSummary:
        error = f"{exc.__class__.__name__}: {exc}"
        logger.error("Main loop crashed: {}", error)
        story = self.store.try_load_story(self.current_story_id) if self.current_story_id else None
        try:
            path = write_crash_log(
                self.config.paths.logs_dir,
                iteration=self.iteration,
                story=story,
                error=error,
                history=self.history,
                traceback_text=traceback.format_exc(),
            )
            logger.error("Crash log written to {}", path)
        except OSError as write_exc:
            logger.error("Failed to write crash log: {}", write_exc)
        self.status.write(StatusState.ERROR, error=error, iteration=self.iteration, story_id=self.current_story_id)
        return self._summary(HaltReason.CRASHED, error)

    def _safe_stats(self) -> Optional[StoryStats]:
        try:
            return self.store.derive_stats()
        except TaskStoreError as exc:
            logger.debug("Stats unavailable: {}", exc.reason)
            return None
