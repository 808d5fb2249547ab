"""CLI entry point: run, start, stop, sync, checkpoints, version."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional

from github_audit import __version__
from github_audit.checkpoint import CheckpointStore
from github_audit.config import AuditConfig, ConfigError, DEFAULT_CONFIG_PATH, load_config
from github_audit.configurator import NoTaskConfiguredError, create_tasks
from github_audit.logging_config import configure_logging
from github_audit.task_manager import start_tasks

logger = logging.getLogger("audit.cli")

PID_FILE = "github-audit.pid"


def _load(args: argparse.Namespace) -> AuditConfig:
    config = load_config(args.config)
    configure_logging(config.loglevel, config.logpath)
    return config


def cmd_run(args: argparse.Namespace) -> int:
    """Run the scheduler in the foreground until SIGINT/SIGTERM."""
    config = _load(args)
    store = CheckpointStore(config.checkpoint_file)
    tasks = create_tasks(config, store)

    stop_event = threading.Event()

    def _on_signal(signum, _frame) -> None:
        logger.info("Stopping github-audit on signal %s", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    logger.info("Starting github-audit with %d tasks", len(tasks))
    start_tasks(stop_event, tasks, store)
    return 0


def _running_pid(pid_path: Path) -> Optional[int]:
    """Pid recorded in ``pid_path`` if that process is still alive."""
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        # Exists but belongs to another user
        pass
    return pid


def cmd_start(args: argparse.Namespace) -> int:
    """Launch ``run`` as a detached background process and record its pid."""
    pid = _running_pid(Path(args.pid_file))
    if pid is not None:
        logger.error("github-audit is already running with pid %d (%s)", pid, args.pid_file)
        return 1

    cmd = [sys.executable, "-m", "github_audit", "run", "--config", args.config]
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    Path(args.pid_file).write_text(str(proc.pid), encoding="utf-8")
    logger.info("github-audit started in background with pid %d", proc.pid)
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    """Send SIGTERM to the process recorded in the pid file."""
    pid_path = Path(args.pid_file)
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError) as exc:
        logger.error("Cannot read pid file %s: %s", pid_path, exc)
        return 1

    logger.info("Stopping github-audit process %d", pid)
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        logger.warning("No process with pid %d", pid)
    except OSError as exc:
        logger.error("Failed to stop process %d: %s", pid, exc)
        return 1

    try:
        pid_path.unlink()
    except OSError as exc:
        logger.error("Failed to remove pid file %s: %s", pid_path, exc)
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    """Run every task's pipeline once, then flush checkpoints."""
    config = _load(args)
    store = CheckpointStore(config.checkpoint_file)
    tasks = create_tasks(config, store)

    failed = 0
    for task in tasks:
        logger.info("Starting sync", extra={"task_id": task.id})
        try:
            results = task.start()
        except Exception as exc:
            logger.error("Sync failed: %s", exc, exc_info=True, extra={"task_id": task.id})
            failed += 1
            continue
        failed += sum(1 for r in results if not r.ok)

    store.save()
    return 1 if failed else 0


def cmd_checkpoints(args: argparse.Namespace) -> int:
    """Show the stored checkpoint of every task."""
    path = args.file
    if not path:
        path = _load(args).checkpoint_file
    records = CheckpointStore(path).snapshot()
    if not records:
        print("No checkpoints found.")
        return 0

    fmt = "{:<40}  {:<25}  {:>7}  {:<25}  {}"
    print(fmt.format("TASK ID", "LAST RUN", "LAST PR", "LAST ISSUE", "LAST COMMIT"))
    print("-" * 140)
    for task_id, record in sorted(records.items()):
        commits = ", ".join(
            f"{branch}={ts.isoformat()[:19]}"
            for branch, ts in sorted(record.last_commit_time.items())
        )
        print(fmt.format(
            task_id[:40],
            record.last_run_time.isoformat()[:19],
            record.last_pr_number,
            record.last_issue_time.isoformat()[:19],
            commits,
        ))
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(f"github-audit {__version__}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    configure_logging(os.environ.get("GITHUB_AUDIT_LOG_LEVEL", "INFO"))

    parser = argparse.ArgumentParser(
        prog="github-audit",
        description="Relay GitHub commits, pull requests and issues to observability sinks",
    )
    parser.add_argument(
        "--config", "-c",
        default=os.environ.get("GITHUB_AUDIT_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to config.yaml (default: %(default)s)",
    )
    parser.add_argument(
        "--pid-file",
        default=PID_FILE,
        help="Pid file used by start/stop (default: %(default)s)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the scheduler in the foreground")
    run_parser.set_defaults(func=cmd_run)

    start_parser = subparsers.add_parser("start", help="Start the scheduler in the background")
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser("stop", help="Stop the background scheduler")
    stop_parser.set_defaults(func=cmd_stop)

    sync_parser = subparsers.add_parser("sync", help="Run every audit job once")
    sync_parser.set_defaults(func=cmd_sync)

    cp_parser = subparsers.add_parser("checkpoints", help="Show stored sync progress")
    cp_parser.add_argument(
        "--file", "-f",
        default=None,
        help="Checkpoint file to read (default: from config)",
    )
    cp_parser.set_defaults(func=cmd_checkpoints)

    version_parser = subparsers.add_parser("version", help="Print the version")
    version_parser.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except (ConfigError, NoTaskConfiguredError) as exc:
        logger.error("%s", exc)
        return 1
