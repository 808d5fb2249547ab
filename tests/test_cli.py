# tests/test_cli.py

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone

import pytest

from github_audit import __version__, cli
from github_audit.checkpoint import CheckpointRecord, CheckpointStore
from github_audit.logging_config import JsonFormatter

from .fakes import CONFIG_YAML, FakeConnector, gh_pull


@pytest.fixture(autouse=True)
def _reset_audit_logger():
    yield
    audit = logging.getLogger("audit")
    for handler in list(audit.handlers):
        audit.removeHandler(handler)
    audit.propagate = True


def test_version(capsys) -> None:
    assert cli.main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"github-audit {__version__}"


def test_missing_config_is_reported(tmp_path) -> None:
    assert cli.main(["--config", str(tmp_path / "absent.yaml"), "sync"]) == 1


def test_checkpoints_lists_stored_records(tmp_path, capsys) -> None:
    path = tmp_path / "taskStats.json"
    store = CheckpointStore(path)
    ts = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
    store.set("job1$acme$repo", CheckpointRecord(
        last_run_time=ts, last_pr_number=12, last_commit_time={"main": ts}, last_issue_time=ts,
    ))
    store.save()

    assert cli.main(["checkpoints", "--file", str(path)]) == 0
    out = capsys.readouterr().out
    assert "job1$acme$repo" in out
    assert "main=2024-01-10T12:00:00" in out
    assert " 12 " in out


def test_checkpoints_empty(tmp_path, capsys) -> None:
    assert cli.main(["checkpoints", "-f", str(tmp_path / "none.json")]) == 0
    assert "No checkpoints found." in capsys.readouterr().out


def test_stop_without_pid_file(tmp_path) -> None:
    assert cli.main(["--pid-file", str(tmp_path / "none.pid"), "stop"]) == 1


def test_sync_runs_each_task_once_and_saves(tmp_path, monkeypatch, make_task) -> None:
    config_path = tmp_path / "config.yaml"
    checkpoint_path = tmp_path / "state" / "taskStats.json"
    config_path.write_text(
        CONFIG_YAML.replace("state/taskStats.json", str(checkpoint_path)), encoding="utf-8"
    )
    connector = FakeConnector(pulls=[gh_pull(5)])
    created: list = []

    def _create_tasks(config, store):
        task = make_task(connector, target_names=["es-a"])
        task.store = store
        created.append(task)
        return [task]

    monkeypatch.setattr(cli, "create_tasks", _create_tasks)

    assert cli.main(["--config", str(config_path), "sync"]) == 0
    assert len(created) == 1
    saved = CheckpointStore(checkpoint_path).get("job1$acme$repo")
    assert saved.last_pr_number == 5


def test_sync_reports_failed_units(tmp_path, monkeypatch, make_task) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        CONFIG_YAML.replace("state/taskStats.json", str(tmp_path / "taskStats.json")),
        encoding="utf-8",
    )
    connector = FakeConnector(failing_branches=("main",))
    monkeypatch.setattr(
        cli, "create_tasks", lambda config, store: [make_task(connector, target_names=["es-a"])]
    )

    assert cli.main(["--config", str(config_path), "sync"]) == 1


def test_json_formatter_includes_context_fields() -> None:
    record = logging.LogRecord("audit.task", logging.INFO, __file__, 1, "done %d", (3,), None)
    record.task_id = "job1$acme$repo"
    record.records = 3

    entry = json.loads(JsonFormatter().format(record))

    assert entry["message"] == "done 3"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "audit.task"
    assert entry["task_id"] == "job1$acme$repo"
    assert entry["records"] == 3
    assert "branch" not in entry


class _Popen:
    launched: list = []

    def __init__(self, cmd, **kwargs) -> None:
        self.pid = 4242
        _Popen.launched.append(cmd)


def test_start_refuses_when_recorded_process_is_alive(tmp_path, monkeypatch) -> None:
    _Popen.launched = []
    monkeypatch.setattr(cli.subprocess, "Popen", _Popen)
    pid_file = tmp_path / "github-audit.pid"
    pid_file.write_text(str(os.getpid()), encoding="utf-8")

    assert cli.main(["--pid-file", str(pid_file), "start"]) == 1
    assert _Popen.launched == []
    assert pid_file.read_text(encoding="utf-8") == str(os.getpid())


def test_start_replaces_stale_pid_file(tmp_path, monkeypatch) -> None:
    _Popen.launched = []
    monkeypatch.setattr(cli.subprocess, "Popen", _Popen)

    def _kill(pid, sig):
        raise ProcessLookupError(pid)

    monkeypatch.setattr(cli.os, "kill", _kill)
    pid_file = tmp_path / "github-audit.pid"
    pid_file.write_text("99999", encoding="utf-8")

    assert cli.main(["--pid-file", str(pid_file), "start"]) == 0
    assert len(_Popen.launched) == 1
    assert pid_file.read_text(encoding="utf-8") == "4242"
