"""Build schedulable Tasks from the configured audit jobs."""

from __future__ import annotations

import logging
from typing import Optional

from github_audit.checkpoint import CheckpointStore
from github_audit.config import AuditConfig, AuditJob, Target, parse_polling_interval
from github_audit.connectors import new_source_connector
from github_audit.processor import MetricFormatter
from github_audit.secrets import decode_access_token
from github_audit.task import ConnectorFactory, Task, TaskParams, make_task_id

logger = logging.getLogger("audit.configurator")


class NoTaskConfiguredError(RuntimeError):
    """Raised when no audit job could be turned into a Task."""


def resolve_targets(job: AuditJob, targets: list[Target]) -> list[Target]:
    """Targets named in the job's output, in the job's order."""
    by_name = {t.name: t for t in targets}
    resolved = []
    for name in job.target_names:
        target = by_name.get(name)
        if target is None:
            logger.warning("Audit job %s references unknown target %s", job.name, name)
            continue
        resolved.append(target)
    if not resolved:
        raise ValueError(f"audit job {job.name!r} has no known output targets")
    return resolved


def create_task(
    job: AuditJob,
    targets: list[Target],
    store: CheckpointStore,
    *,
    formatter: Optional[MetricFormatter] = None,
    connector_factory: ConnectorFactory = new_source_connector,
) -> Task:
    """Decode credentials, verify them with the provider and build the Task.

    Raises on any construction error.
    """
    token = decode_access_token(job.credentials.access_token)
    connector = connector_factory(
        job.repo_type,
        job.repo_owner,
        job.repo_name,
        job.credentials.username,
        token,
        job.api_base_url,
    )
    connector.check_credentials()

    params = TaskParams(job=job, targets=resolve_targets(job, targets), access_token=token)
    return Task(
        params,
        parse_polling_interval(job.polling_interval),
        store,
        connector_factory=connector_factory,
        formatter=formatter,
    )


def create_tasks(
    config: AuditConfig,
    store: CheckpointStore,
    *,
    connector_factory: ConnectorFactory = new_source_connector,
) -> list[Task]:
    """Return a Task for every audit job that can be scheduled.

    Failing jobs are logged and skipped. Raises NoTaskConfiguredError when
    none survive.
    """
    logger.info("Creating tasks for %d audit jobs", len(config.audit_jobs))
    formatter = MetricFormatter.from_file(config.metric_formatter_file)
    tasks: list[Task] = []
    seen: set[str] = set()

    for job in config.audit_jobs:
        task_id = make_task_id(job)
        if task_id in seen:
            logger.warning("Skipping duplicate audit job", extra={"task_id": task_id})
            continue
        try:
            task = create_task(
                job,
                config.targets,
                store,
                formatter=formatter,
                connector_factory=connector_factory,
            )
        except Exception as exc:
            logger.error("Failed to create task for audit job %s: %s", job.name, exc)
            continue
        seen.add(task_id)
        tasks.append(task)
        logger.info(
            "Configured audit job %s every %s", job.name, task.interval,
            extra={"task_id": task.id},
        )

    if not tasks:
        raise NoTaskConfiguredError("no audit task configured")
    return tasks
