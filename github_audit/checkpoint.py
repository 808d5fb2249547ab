"""Checkpoint store: per-task sync progress, snapshotted to a JSON file.

Persistence is asynchronous. The whole map is written on an interval by a
background APScheduler job, and stopping that job does *not* force a final
flush. Markers advanced in memory after the last snapshot are lost on a
crash or shutdown, so the next run re-fetches and re-publishes those
records (at-least-once delivery relative to the last snapshot).
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("audit.checkpoint")

DEFAULT_FLUSH_INTERVAL_SECONDS = 30

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _dump_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _load_time(value: Any) -> datetime:
    if not value:
        return _EPOCH
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class CheckpointRecord:
    """Progress markers for one task."""

    last_run_time: datetime = _EPOCH
    last_pr_number: int = 0
    last_commit_time: dict[str, datetime] = field(default_factory=dict)
    last_issue_time: datetime = _EPOCH

    @classmethod
    def default(cls, floor: datetime, branches: Iterable[str]) -> CheckpointRecord:
        """First-run record: every time marker starts at ``floor``."""
        return cls(
            last_run_time=_EPOCH,
            last_pr_number=0,
            last_commit_time={branch: floor for branch in branches},
            last_issue_time=floor,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_run_time": _dump_time(self.last_run_time),
            "last_pr_number": self.last_pr_number,
            "last_commit_time": {
                branch: _dump_time(ts) for branch, ts in self.last_commit_time.items()
            },
            "last_issue_time": _dump_time(self.last_issue_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointRecord:
        return cls(
            last_run_time=_load_time(data.get("last_run_time")),
            last_pr_number=int(data.get("last_pr_number") or 0),
            last_commit_time={
                str(branch): _load_time(ts)
                for branch, ts in (data.get("last_commit_time") or {}).items()
            },
            last_issue_time=_load_time(data.get("last_issue_time")),
        )


class CheckpointStore:
    """Lock-guarded map of task id -> CheckpointRecord.

    Reads hand out copies, so callers never hold a reference into the map.
    All mutation goes through ``set`` or ``update``, each fully serialized.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, CheckpointRecord] = {}
        self._scheduler: Optional[BackgroundScheduler] = None
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Replace the in-memory map with the file contents.

        A missing file means no progress is known yet. An unreadable or
        malformed file is logged and treated the same way.
        """
        records: dict[str, CheckpointRecord] = {}
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                if not isinstance(raw, dict):
                    raise ValueError("checkpoint file must contain a JSON object")
                records = {
                    str(task_id): CheckpointRecord.from_dict(value or {})
                    for task_id, value in raw.items()
                }
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                logger.error("Failed to load checkpoint file %s: %s", self._path, exc)
                records = {}
        with self._lock:
            self._records = records
        logger.info("Loaded %d checkpoint records from %s", len(records), self._path)

    def get(self, task_id: str) -> Optional[CheckpointRecord]:
        with self._lock:
            record = self._records.get(task_id)
            return copy.deepcopy(record) if record is not None else None

    def set(self, task_id: str, record: CheckpointRecord) -> None:
        with self._lock:
            self._records[task_id] = copy.deepcopy(record)

    def update(
        self, task_id: str, mutate: Callable[[CheckpointRecord], None]
    ) -> CheckpointRecord:
        """Apply ``mutate`` to the stored record under the lock.

        Unknown task ids start from an empty record. Returns a copy of the
        result.
        """
        with self._lock:
            record = self._records.setdefault(task_id, CheckpointRecord())
            mutate(record)
            return copy.deepcopy(record)

    def get_or_create(
        self, task_id: str, floor: datetime, branches: Iterable[str]
    ) -> CheckpointRecord:
        """Return the record for ``task_id``, storing first-run defaults if absent.

        Branches missing from an existing record get ``floor`` as their marker.
        """
        branches = list(branches)
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                record = CheckpointRecord.default(floor, branches)
                self._records[task_id] = record
                logger.info(
                    "Created default checkpoint", extra={"task_id": task_id}
                )
            else:
                for branch in branches:
                    record.last_commit_time.setdefault(branch, floor)
            return copy.deepcopy(record)

    # ------------------------------------------------------------------
    # Field-level marker advances; each only moves forward
    # ------------------------------------------------------------------

    def advance_commit_time(self, task_id: str, branch: str, ts: datetime) -> None:
        def _mutate(record: CheckpointRecord) -> None:
            current = record.last_commit_time.get(branch)
            if current is None or ts > current:
                record.last_commit_time[branch] = ts

        self.update(task_id, _mutate)

    def advance_pr_number(self, task_id: str, number: int) -> None:
        def _mutate(record: CheckpointRecord) -> None:
            if number > record.last_pr_number:
                record.last_pr_number = number

        self.update(task_id, _mutate)

    def advance_issue_time(self, task_id: str, ts: datetime) -> None:
        def _mutate(record: CheckpointRecord) -> None:
            if ts > record.last_issue_time:
                record.last_issue_time = ts

        self.update(task_id, _mutate)

    def mark_run_complete(self, task_id: str, ts: datetime) -> None:
        def _mutate(record: CheckpointRecord) -> None:
            record.last_run_time = ts

        self.update(task_id, _mutate)

    def snapshot(self) -> dict[str, CheckpointRecord]:
        with self._lock:
            return copy.deepcopy(self._records)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> bool:
        """Write the whole map to the checkpoint file.

        Errors are logged, not raised; the in-memory map keeps serving and
        the next successful save heals the file. Returns True on success.
        """
        with self._lock:
            payload = {
                task_id: record.to_dict() for task_id, record in self._records.items()
            }
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write checkpoint file %s: %s", self._path, exc)
            return False
        logger.debug("Saved %d checkpoint records to %s", len(payload), self._path)
        return True

    def start_periodic_save(
        self, interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS
    ) -> None:
        """Snapshot the map every ``interval_seconds`` on a background thread."""
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
        scheduler.add_job(
            self.save,
            "interval",
            seconds=interval_seconds,
            id="checkpoint_flush",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Checkpoint flush every %ss to %s", interval_seconds, self._path
        )

    def stop_periodic_save(self) -> None:
        """Stop the flush job. Does not write a final snapshot."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Stopped periodic checkpoint flush")


def _on_job_error(event) -> None:
    logger.error("Checkpoint job %s raised an exception: %s", event.job_id, event.exception)
