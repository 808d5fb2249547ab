"""Fixed-cadence scheduler for audit tasks.

Every tick the manager collects the tasks that are due and not running,
marks them running and reschedules them in one critical section, then
hands each to a worker thread once a concurrency slot is free. A full
pool blocks dispatch until a running task finishes.

Stopping the manager ends the tick loop only. Pipelines already running
finish their network calls; each call carries its own timeout.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Sequence

from github_audit.checkpoint import DEFAULT_FLUSH_INTERVAL_SECONDS, CheckpointStore
from github_audit.task import Clock, Task, default_concurrency, utcnow

logger = logging.getLogger("audit.task_manager")

TICK_INTERVAL_SECONDS = 1.0


class TaskManager:
    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        self.max_concurrency = max_concurrency or default_concurrency()
        self.tick_interval = tick_interval
        self._clock = clock
        self._tasks: list[Task] = []
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self.max_concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="audit-task"
        )

    @property
    def tasks(self) -> list[Task]:
        with self._lock:
            return list(self._tasks)

    def add_task(self, task: Task) -> None:
        with self._lock:
            self._tasks.append(task)
        logger.debug("Added task", extra={"task_id": task.id})

    def get_ready_tasks(self, now: Optional[datetime] = None) -> list[Task]:
        """Return due, idle tasks after marking them running and rescheduling them."""
        ready: list[Task] = []
        with self._lock:
            now = now or self._clock()
            for task in self._tasks:
                if not task.is_ready(now):
                    continue
                task.mark_running(now)
                ready.append(task)
        return ready

    def run_ready_tasks(self, stop_event: Optional[threading.Event] = None) -> int:
        """Dispatch every ready task; blocks while all slots are taken.

        If ``stop_event`` fires while waiting for a slot, the tasks not yet
        dispatched are returned to idle. Returns the number dispatched.
        """
        ready = self.get_ready_tasks()
        if not ready:
            logger.debug("No ready tasks to schedule")
            return 0

        dispatched = 0
        for index, task in enumerate(ready):
            if not self._acquire_slot(stop_event):
                self._release_tasks(ready[index:])
                break
            try:
                self._executor.submit(self._run, task)
            except RuntimeError as exc:
                logger.error("Failed to dispatch task: %s", exc, extra={"task_id": task.id})
                self._finish(task)
                self._release_tasks(ready[index + 1:])
                break
            dispatched += 1
        return dispatched

    def _acquire_slot(self, stop_event: Optional[threading.Event]) -> bool:
        if stop_event is None:
            return self._slots.acquire()
        while not self._slots.acquire(timeout=self.tick_interval):
            if stop_event.is_set():
                return False
        return True

    def _release_tasks(self, tasks: Sequence[Task]) -> None:
        with self._lock:
            for task in tasks:
                task.mark_idle()

    def _finish(self, task: Task) -> None:
        with self._lock:
            task.mark_idle()
        self._slots.release()

    def _run(self, task: Task) -> None:
        logger.debug("Running task", extra={"task_id": task.id})
        try:
            task.start()
        except Exception as exc:
            logger.error("Task failed: %s", exc, exc_info=True, extra={"task_id": task.id})
        finally:
            self._finish(task)
        logger.debug("Completed task", extra={"task_id": task.id})

    def start_scheduling(self, stop_event: threading.Event) -> None:
        """Tick until ``stop_event`` is set."""
        logger.info(
            "Starting task manager with %d tasks, max concurrency %d",
            len(self.tasks), self.max_concurrency,
        )
        while not stop_event.wait(self.tick_interval):
            try:
                self.run_ready_tasks(stop_event)
            except Exception as exc:
                logger.error("Scheduler tick failed: %s", exc, exc_info=True)
        logger.info("Stopped task manager")

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting work; running pipelines are not cancelled."""
        self._executor.shutdown(wait=wait)


def start_tasks(
    stop_event: threading.Event,
    tasks: Sequence[Task],
    store: CheckpointStore,
    *,
    max_concurrency: Optional[int] = None,
    flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
) -> None:
    """Schedule ``tasks`` and block until ``stop_event`` is set.

    The checkpoint flush runs on its own timer and is stopped without a
    final flush when this returns.
    """
    manager = TaskManager(max_concurrency)
    for task in tasks:
        manager.add_task(task)

    store.start_periodic_save(flush_interval)
    try:
        manager.start_scheduling(stop_event)
    finally:
        store.stop_periodic_save()
        manager.shutdown(wait=False)
