"""Command-line entry point for `story-runner`."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console

from .config import ConfigError, RunnerConfig, build_runner_config, load_runner_config
from .crash import list_crash_logs
from .orchestrator import IterationScheduler
from .registry import PidRegistry
from .status import list_sessions, request_stop
from .store import TaskStore, TaskStoreError
from .ui import RunnerUI
from .workers.diagnostics import check_agent_config


def _configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
        "{message}"
    )
    logger.add(sys.stderr, level=level.upper(), format=log_format)
    if log_file is not None:
        logger.add(str(log_file), level="DEBUG", format=log_format, colorize=False)


_configure_logging()


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--prd-dir",
        type=Path,
        default=None,
        help="Task store directory (default: prd-json under the project)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: .story_runner/config.yaml)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="story-runner run",
        description="Story Runner - run an AI coding agent over a queue of stories",
    )
    parser.add_argument(
        "max_iterations",
        nargs="?",
        type=int,
        default=None,
        help="Maximum iterations for this session (default from config, 50)",
    )
    _add_common_arguments(parser)
    parser.add_argument("--model", default=None, help="Model override for stories without their own")
    parser.add_argument("--agent-command", default=None, help="Agent command template override")
    parser.add_argument("--timeout-seconds", type=int, default=None, help="Hard timeout per agent spawn")
    parser.add_argument("--gap-seconds", type=float, default=None, help="Pause between iterations")
    parser.add_argument("--prompt", default=None, help="Extra instructions appended to every story prompt")
    parser.add_argument("--no-live", action="store_true", help="Disable live progress repaint")
    parser.add_argument("--echo-output", action="store_true", help="Echo agent output while it runs")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also write DEBUG logs to this file")
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-runner status", description="Show running sessions and store stats")
    _add_common_arguments(parser)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def _build_stats_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-runner stats", description="Show stats derived from story files")
    _add_common_arguments(parser)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def _build_orphans_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-runner orphans", description="List or kill orphaned helper processes")
    _add_common_arguments(parser)
    parser.add_argument("--kill", action="store_true", help="Terminate orphaned processes")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def _build_logs_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-runner logs", description="Show the most recent crash log")
    _add_common_arguments(parser)
    parser.add_argument("--list", action="store_true", help="List crash logs instead of showing the latest")
    return parser


def _build_stop_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="story-runner stop",
        description="Ask running sessions to quit after their current iteration",
    )
    _add_common_arguments(parser)
    parser.add_argument("--pid", type=int, default=None, help="Stop only this session (default: all sessions)")
    return parser


def _build_doctor_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="story-runner doctor", description="Check agent command and task store")
    _add_common_arguments(parser)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def _resolve_config(args: argparse.Namespace, overrides: Optional[dict[str, Any]] = None) -> RunnerConfig:
    """Load YAML config and apply CLI overrides.

    Raises:
        ConfigError: If the config file is unreadable or holds invalid values.
    """
    project_dir = Path(args.project_dir)
    raw, err = load_runner_config(project_dir, args.config)
    if err:
        raise ConfigError(f"Invalid config: {err}")
    merged = {"prd_dir": args.prd_dir}
    merged.update(overrides or {})
    return build_runner_config(project_dir, raw, merged)


def _run_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(
            args,
            {
                "max_iterations": args.max_iterations,
                "model": args.model,
                "agent_command": args.agent_command,
                "timeout_seconds": args.timeout_seconds,
                "gap_seconds": args.gap_seconds,
                "live": False if args.no_live else None,
                "echo_output": True if args.echo_output else None,
            },
        )
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1

    store = TaskStore(config.paths.prd_dir)
    if not store.exists():
        logger.error("No task store found at {}", store.index_path)
        return 1

    scheduler = IterationScheduler(config, store=store, user_prompt=args.prompt)
    try:
        summary = scheduler.run()
    except ValueError as exc:
        logger.error("{}", exc)
        return 1
    return summary.exit_code


def _status_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1
    sessions = list_sessions(config.paths.status_dir)
    store = TaskStore(config.paths.prd_dir)
    errors: list[str] = []
    stats = None
    if store.exists():
        try:
            stats = store.derive_stats()
        except TaskStoreError as exc:
            errors.append(str(exc))
    else:
        errors.append(f"No task store found at {store.index_path}")

    if args.json:
        payload = {
            "project_dir": str(config.paths.project_dir),
            "prd_dir": str(config.paths.prd_dir),
            "state": sessions[0][1].state.value if sessions else "idle",
            "sessions": [record.to_dict() for _path, record in sessions],
            "stats": stats.to_dict() if stats else None,
            "errors": errors,
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 2 if errors else 0

    ui = RunnerUI(config.display, Console(highlight=False))
    if sessions:
        ui.console.print(ui.sessions_table(sessions))
    else:
        ui.console.print("No running sessions (idle)")
    if stats is not None:
        ui.console.print(ui.stats_table(stats))
    for err in errors:
        ui.console.print(f"[red]{err}[/red]")
    return 2 if errors else 0


def _stats_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1
    store = TaskStore(config.paths.prd_dir)
    try:
        index = store.load_index()
        stats = store.derive_stats(index)
    except TaskStoreError as exc:
        logger.error("{}", exc)
        return 1

    if args.json:
        payload = {
            "stats": stats.to_dict(),
            "next_item": index.pending[0] if index.pending else None,
            "pending": index.pending,
            "blocked": index.blocked,
            "completed": index.completed,
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0

    ui = RunnerUI(config.display, Console(highlight=False))
    ui.console.print(ui.stats_table(stats))
    rows = [("pending", store.try_load_story(story_id)) for story_id in index.pending]
    rows += [("blocked", store.try_load_story(story_id)) for story_id in index.blocked]
    rows += [("completed", store.try_load_story(story_id)) for story_id in index.completed]
    if rows:
        ui.console.print(ui.story_table(rows))
    return 0


def _orphans_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1
    registry = PidRegistry(config.paths.pid_registry)
    registry.sweep_dead()
    orphans = registry.kill_orphans(config.loop.kill_grace_seconds) if args.kill else registry.find_orphans()

    if args.json:
        payload = {
            "killed" if args.kill else "orphans": [
                {"pid": row.pid, "tag": row.tag, "registered_at": row.registered_at, "owner_pid": row.owner_pid}
                for row in orphans
            ]
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0

    ui = RunnerUI(config.display, Console(highlight=False))
    if not orphans:
        ui.console.print("No orphaned processes")
        return 0
    ui.console.print(ui.orphans_table(orphans))
    if args.kill:
        ui.console.print(f"Killed {len(orphans)} orphaned process(es)")
    return 0


def _logs_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1
    logs = list_crash_logs(config.paths.logs_dir)
    ui = RunnerUI(config.display, Console(highlight=False))
    if not logs:
        ui.console.print(f"No crash logs in {config.paths.logs_dir}")
        return 0
    if args.list:
        for path in logs:
            ui.console.print(str(path))
        return 0
    ui.console.print(f"[dim]{logs[0]}[/dim]")
    ui.print_markdown_log(logs[0].read_text(encoding="utf-8"))
    return 0


def _stop_command(args: argparse.Namespace) -> int:
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("{}", exc)
        return 1
    pids = [record.pid for _path, record in list_sessions(config.paths.status_dir)]
    console = Console(highlight=False)
    if args.pid is not None:
        if args.pid not in pids:
            console.print(f"[red]No running session with pid {args.pid}[/red]")
            return 1
        pids = [args.pid]
    if not pids:
        console.print("No running sessions (idle)")
        return 0
    for pid in pids:
        path = request_stop(config.paths.status_dir, pid)
        logger.debug("Wrote stop request {}", path)
        console.print(f"Stop requested for session {pid}; it will exit after the current iteration")
    return 0


def _doctor_command(args: argparse.Namespace) -> int:
    checks: list[dict[str, Any]] = []
    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        checks.append({"check": "config", "ok": False, "detail": str(exc)})
        config = None

    if config is not None:
        checks.append({"check": "config", "ok": True, "detail": "loaded"})
        for name, ok, detail in check_agent_config(config.agent):
            checks.append({"check": f"agent:{name}", "ok": ok, "detail": detail})
        store = TaskStore(config.paths.prd_dir)
        try:
            problems = store.validate_index()
        except TaskStoreError as exc:
            checks.append({"check": "store", "ok": False, "detail": str(exc)})
        else:
            detail = "; ".join(problems) if problems else f"{store.index_path} valid"
            checks.append({"check": "store", "ok": not problems, "detail": detail})
            known = set(store.load_index().known_ids())
            unindexed = [story_id for story_id in store.list_story_ids() if story_id not in known]
            if unindexed:
                checks.append(
                    {"check": "unindexed", "ok": True, "detail": f"story files not in the index: {', '.join(unindexed)}"}
                )

    # Only the default agent command and the store are required to pass.
    required = [c for c in checks if c["check"] in {"config", "store", "agent:default"}]
    ok = all(c["ok"] for c in required)
    if args.json:
        sys.stdout.write(json.dumps({"ok": ok, "checks": checks}, indent=2, sort_keys=True) + "\n")
        return 0 if ok else 1

    console = Console(highlight=False)
    for check in checks:
        mark = "[green]ok[/green]" if check["ok"] else "[red]FAIL[/red]"
        console.print(f"{mark}  {check['check']}: {check['detail']}")
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> None:
    """Run the `story-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args))
        if argv[0] == "stats":
            args = _build_stats_parser().parse_args(argv[1:])
            raise SystemExit(_stats_command(args))
        if argv[0] == "orphans":
            args = _build_orphans_parser().parse_args(argv[1:])
            raise SystemExit(_orphans_command(args))
        if argv[0] == "logs":
            args = _build_logs_parser().parse_args(argv[1:])
            raise SystemExit(_logs_command(args))
        if argv[0] == "stop":
            args = _build_stop_parser().parse_args(argv[1:])
            raise SystemExit(_stop_command(args))
        if argv[0] == "doctor":
            args = _build_doctor_parser().parse_args(argv[1:])
            raise SystemExit(_doctor_command(args))
        if argv[0] == "run":
            argv = argv[1:]

    args = _build_run_parser().parse_args(argv)
    _configure_logging(args.log_level, args.log_file)
    raise SystemExit(_run_command(args))


if __name__ == "__main__":
    main()
