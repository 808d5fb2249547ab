# tests/conftest.py

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from github_audit.checkpoint import CheckpointStore
from github_audit.config import AuditJob, RepositoryCredentials, Target
from github_audit.task import Task, TaskParams

from .fakes import FakeConnector, PublisherRegistry

T0 = datetime(2024, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by tasks and the manager."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "taskStats.json")


@pytest.fixture()
def job() -> AuditJob:
    return AuditJob(
        name="job1",
        polling_interval="30s",
        repo_type="github",
        repo_name="repo",
        repo_owner="acme",
        repo_url="https://github.com/acme/repo",
        credentials=RepositoryCredentials(access_token="dG9rZW4=", username="octocat"),
        target_names=["es-a", "es-b"],
        branches=["main", "dev"],
        tags={"team": "platform"},
    )


@pytest.fixture()
def targets() -> list[Target]:
    return [
        Target(name="es-a", type="elasticsearch", config={"host": "a"}),
        Target(name="es-b", type="elasticsearch", config={"host": "b"}),
    ]


@pytest.fixture()
def make_task(job, targets, store, clock) -> Callable[..., Task]:
    def _make(
        connector: FakeConnector,
        publishers: PublisherRegistry | None = None,
        interval: timedelta = timedelta(seconds=30),
        **job_overrides,
    ) -> Task:
        task_job = replace(job, **job_overrides) if job_overrides else job
        task_targets = [t for t in targets if t.name in task_job.target_names]
        return Task(
            TaskParams(job=task_job, targets=task_targets, access_token="token"),
            interval,
            store,
            connector_factory=lambda *args, **kwargs: connector,
            publisher_factory=publishers or PublisherRegistry(),
            clock=clock,
        )

    return _make
