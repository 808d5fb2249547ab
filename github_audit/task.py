"""Task: one audit job's schedule state and its sync pipeline.

A pass loads the task's checkpoint, then for every target (in parallel)
publishes new commits per branch (in parallel), new pull requests and new
issues. Each unit advances only its own marker, and only after a
successful publish. A failing unit is logged and skipped; the rest of the
pass carries on and the unit is retried on the next run.

Markers advance to the maximum ordering key in the published batch, so the
result does not depend on the order the provider returns items in.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from github_audit.checkpoint import CheckpointRecord, CheckpointStore
from github_audit.config import AuditJob, Target
from github_audit.connectors import SourceConnector, new_source_connector
from github_audit.processor import GitHubProcessor, MetricFormatter, new_data_processor
from github_audit.publishers import Publisher, new_publisher

logger = logging.getLogger("audit.task")

ConnectorFactory = Callable[..., SourceConnector]
PublisherFactory = Callable[..., Publisher]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_concurrency() -> int:
    """Twice the available CPUs."""
    return 2 * (os.cpu_count() or 1)


def make_task_id(job: AuditJob) -> str:
    return f"{job.name}${job.repo_owner}${job.repo_name}"


@dataclass(frozen=True)
class TaskParams:
    job: AuditJob
    targets: list[Target]
    access_token: str = ""


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one unit of a pass (a branch's commits, PRs or issues)."""

    target: str
    unit: str
    published: int = 0
    marker: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Task:
    def __init__(
        self,
        params: TaskParams,
        interval: timedelta,
        store: CheckpointStore,
        *,
        connector_factory: ConnectorFactory = new_source_connector,
        publisher_factory: PublisherFactory = new_publisher,
        formatter: Optional[MetricFormatter] = None,
        max_workers: Optional[int] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.params = params
        self.id = make_task_id(params.job)
        self.interval = interval
        self.store = store
        self._connector_factory = connector_factory
        self._publisher_factory = publisher_factory
        self._formatter = formatter
        self._max_workers = max_workers or default_concurrency()
        self._clock = clock

        # Scheduling state, mutated by the TaskManager under its registry lock
        now = clock()
        self.is_running = False
        self.previous_run_time = now - interval
        self.next_run_time = now
        # Floor for markers this task has never recorded: one cadence back
        # from the current dispatch
        self.window_start = now - interval

    def __repr__(self) -> str:
        return f"Task(id={self.id!r}, interval={self.interval}, running={self.is_running})"

    @property
    def job(self) -> AuditJob:
        return self.params.job

    # ------------------------------------------------------------------
    # Scheduling (called by TaskManager while holding its lock)
    # ------------------------------------------------------------------

    def is_ready(self, now: datetime) -> bool:
        return not self.is_running and now >= self.next_run_time

    def mark_running(self, now: datetime) -> None:
        self.is_running = True
        self.window_start = now - self.interval
        self.next_run_time = now + self.interval
        self.previous_run_time = now

    def mark_idle(self) -> None:
        self.is_running = False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def start(self) -> list[PipelineResult]:
        """Run one incremental sync pass."""
        started = time.monotonic()
        job = self.job
        record = self.store.get_or_create(self.id, self.window_start, job.branches)

        connector = self._connector_factory(
            job.repo_type,
            job.repo_owner,
            job.repo_name,
            job.credentials.username,
            self.params.access_token,
            job.api_base_url,
        )
        processor = new_data_processor(job.repo_type, job.repo_name, job.repo_url, self._formatter)
        until = self._clock()

        results: list[PipelineResult] = []
        targets = self.params.targets
        if targets:
            workers = min(self._max_workers, len(targets))
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix=f"{job.name}-target"
            ) as pool:
                futures = [
                    pool.submit(self._sync_target, target, connector, processor, record, until)
                    for target in targets
                ]
                for future in futures:
                    results.extend(future.result())

        self.store.mark_run_complete(self.id, self._clock())
        failed = sum(1 for r in results if not r.ok)
        logger.info(
            "Task pass complete: %d units, %d failed",
            len(results), failed,
            extra={
                "task_id": self.id,
                "records": sum(r.published for r in results),
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return results

    def _sync_target(
        self,
        target: Target,
        connector: SourceConnector,
        processor: GitHubProcessor,
        record: CheckpointRecord,
        until: datetime,
    ) -> list[PipelineResult]:
        try:
            publisher = self._publisher_factory(target.type, target.config)
        except Exception as exc:
            logger.error(
                "Failed to create publisher: %s", exc,
                extra={"task_id": self.id, "target": target.name},
            )
            return [PipelineResult(target.name, "publisher", error=str(exc))]

        results = self._sync_commits(target, connector, processor, publisher, record, until)
        results.append(self._sync_pull_requests(target, connector, processor, publisher, record))
        results.append(self._sync_issues(target, connector, processor, publisher, record))
        return results

    def _sync_commits(
        self,
        target: Target,
        connector: SourceConnector,
        processor: GitHubProcessor,
        publisher: Publisher,
        record: CheckpointRecord,
        until: datetime,
    ) -> list[PipelineResult]:
        branches = self.job.branches
        workers = min(self._max_workers, len(branches)) or 1
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"{self.job.name}-branch"
        ) as pool:
            futures = [
                pool.submit(
                    self._sync_branch, branch, target, connector, processor, publisher, record, until
                )
                for branch in branches
            ]
            return [future.result() for future in futures]

    def _sync_branch(
        self,
        branch: str,
        target: Target,
        connector: SourceConnector,
        processor: GitHubProcessor,
        publisher: Publisher,
        record: CheckpointRecord,
        until: datetime,
    ) -> PipelineResult:
        unit = f"commits:{branch}"
        since = record.last_commit_time.get(branch, self.window_start)
        try:
            raw = connector.get_commits(since, until, branch)
            # The provider's ``since`` is inclusive
            commits = [c for c in processor.process_commits(raw) if c.marker > since]
            publisher.publish(processor.to_documents(commits, self.job.tags))
        except Exception as exc:
            logger.error(
                "Commit sync failed: %s", exc,
                extra={"task_id": self.id, "target": target.name, "branch": branch},
            )
            return PipelineResult(target.name, unit, error=str(exc))

        marker = None
        if commits:
            marker = max(c.marker for c in commits)
            self.store.advance_commit_time(self.id, branch, marker)
        logger.debug(
            "Published %d commits", len(commits),
            extra={"task_id": self.id, "target": target.name, "branch": branch,
                   "records": len(commits)},
        )
        return PipelineResult(target.name, unit, published=len(commits), marker=marker)

    def _sync_pull_requests(
        self,
        target: Target,
        connector: SourceConnector,
        processor: GitHubProcessor,
        publisher: Publisher,
        record: CheckpointRecord,
    ) -> PipelineResult:
        after = record.last_pr_number
        try:
            raw = connector.get_pull_requests(after)
            pulls = [p for p in processor.process_pull_requests(raw) if p.marker > after]
            publisher.publish(processor.to_documents(pulls, self.job.tags))
        except Exception as exc:
            logger.error(
                "Pull request sync failed: %s", exc,
                extra={"task_id": self.id, "target": target.name},
            )
            return PipelineResult(target.name, "pull_requests", error=str(exc))

        marker = None
        if pulls:
            marker = max(p.marker for p in pulls)
            self.store.advance_pr_number(self.id, marker)
        return PipelineResult(target.name, "pull_requests", published=len(pulls), marker=marker)

    def _sync_issues(
        self,
        target: Target,
        connector: SourceConnector,
        processor: GitHubProcessor,
        publisher: Publisher,
        record: CheckpointRecord,
    ) -> PipelineResult:
        since = record.last_issue_time
        try:
            raw = connector.get_issues(since)
            # Also inclusive; only issues changed after the marker are new
            issues = [
                i for i in processor.process_issues(raw)
                if (i.updated_at or i.created_at) > since
            ]
            publisher.publish(processor.to_documents(issues, self.job.tags))
        except Exception as exc:
            logger.error(
                "Issue sync failed: %s", exc,
                extra={"task_id": self.id, "target": target.name},
            )
            return PipelineResult(target.name, "issues", error=str(exc))

        marker = None
        if issues:
            marker = max(i.marker for i in issues)
            self.store.advance_issue_time(self.id, marker)
        return PipelineResult(target.name, "issues", published=len(issues), marker=marker)
