"""
Scheduler

Registry of named recurring tasks bound to crontab expressions. Triggering is
delegated to APScheduler; every firing is recorded as a TaskRun and the
outcome is written back to the ScheduledTask.
"""

import inspect
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from aaronos.jobs.utils import describe_exception, utcnow
from aaronos.schemas import ScheduledTask, ScheduledTaskStatus, TaskRun, TaskRunStatus
from aaronos.storage import Store

logger = logging.getLogger(__name__)

TaskHandler = Callable[[], Union[None, Awaitable[None]]]

RECENT_RUNS_LIMIT = 10


class TaskNotFoundError(LookupError):
    """Raised for an unknown scheduled task name."""


class Scheduler:
    """
    Cron-style scheduler for maintenance tasks.

    At most one run per task is in flight: a firing that arrives while the
    previous run is still going is skipped, not queued.
    """

    def __init__(self, store: Store, timezone: str = "UTC"):
        self.store = store
        self.timezone = timezone
        self._handlers: Dict[str, TaskHandler] = {}
        self._triggers: Dict[str, CronTrigger] = {}
        self._running: Set[str] = set()
        self._started = False
        self._stopped = False
        self._scheduler = AsyncIOScheduler(
            timezone=timezone,
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": 60,
            },
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, name: str, trigger: str, handler: TaskHandler, enabled: bool = True) -> ScheduledTask:
        """
        Register a task. Re-registering an existing name only updates its
        trigger; the stored `enabled` flag is preserved.
        Raises ValueError for an invalid crontab expression.
        """
        cron = CronTrigger.from_crontab(trigger, timezone=self.timezone)

        existing = self.store.get_scheduled_task(name)
        task = self.store.upsert_scheduled_task(name, trigger)
        if existing is None and not enabled:
            task = self.store.update_scheduled_task(task.id, {"enabled": False})

        self._handlers[name] = handler
        self._triggers[name] = cron
        logger.info(f"[Scheduler] Registered: {name} ({trigger})")

        if self._started and not self._stopped:
            self._sync_job(task)
        return task

    def _sync_job(self, task: ScheduledTask):
        """Make the APScheduler job for a task match its enabled flag."""
        if task.enabled and task.name in self._handlers:
            self._scheduler.add_job(
                self._fire,
                trigger=self._triggers[task.name],
                id=task.name,
                name=task.name,
                args=[task.name],
                replace_existing=True,
            )
        else:
            try:
                self._scheduler.remove_job(task.name)
            except JobLookupError:
                pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start triggering. Must be called from within a running event loop."""
        if self._stopped:
            raise RuntimeError("Scheduler has been stopped and cannot be restarted")
        if self._started:
            return

        for name in self._handlers:
            task = self.store.get_scheduled_task(name)
            if task is not None:
                self._sync_job(task)

        self._scheduler.start()
        self._started = True
        logger.info(f"[Scheduler] {len(self._scheduler.get_jobs())} jobs scheduled")

    def stop(self):
        """Stop triggering. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        if self._started:
            self._scheduler.shutdown(wait=False)
        logger.info("[Scheduler] Stopped all jobs")

    @property
    def started(self) -> bool:
        return self._started and not self._stopped

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _fire(self, name: str):
        """Entry point for trigger firings."""
        if self._stopped:
            return
        if name in self._running:
            logger.warning(f"[Scheduler] Skipping {name}: previous run still in progress")
            return

        task = self.store.get_scheduled_task(name)
        if task is None or not task.enabled:
            logger.info(f"[Scheduler] Skipping {name}: task is disabled")
            return

        await self._execute(task)

    async def _execute(self, task: ScheduledTask) -> Optional[TaskRun]:
        name = task.name
        handler = self._handlers[name]

        # Guard is set before the first await
        self._running.add(name)
        started = time.monotonic()
        logger.info(f"[Scheduler] Starting job: {name}")

        try:
            run: Optional[TaskRun] = None
            try:
                run = self.store.create_task_run(task)
            except Exception as e:
                logger.error(f"[Scheduler] Failed to create run record for {name}: {e}")

            status = TaskRunStatus.SUCCESS
            error: Optional[str] = None
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                status = TaskRunStatus.FAILED
                error = describe_exception(e)
                logger.error(f"[Scheduler] Job failed: {name}: {error}", exc_info=True)

            duration_ms = int((time.monotonic() - started) * 1000)
            ended_at = utcnow()

            if status == TaskRunStatus.SUCCESS:
                logger.info(f"[Scheduler] Job completed: {name} ({duration_ms}ms)")

            if run is not None:
                try:
                    run = self.store.update_task_run(run.id, {
                        "status": status,
                        "ended_at": ended_at,
                        "duration_ms": duration_ms,
                        "error": error,
                    })
                except Exception as e:
                    logger.error(f"[Scheduler] Failed to finalize run record for {name}: {e}")

            try:
                self.store.update_scheduled_task(task.id, {
                    "last_run_at": ended_at,
                    "last_status": status,
                })
            except Exception as e:
                logger.error(f"[Scheduler] Failed to update task {name}: {e}")

            return run
        finally:
            self._running.discard(name)

    async def run_now(self, name: str) -> Optional[TaskRun]:
        """
        Run a task immediately, regardless of its trigger or enabled flag.
        Returns None when a run is already in progress.
        """
        if name not in self._handlers:
            raise TaskNotFoundError(f"Scheduled task {name} not found")
        if name in self._running:
            logger.warning(f"[Scheduler] Skipping manual run of {name}: previous run still in progress")
            return None

        task = self.store.get_scheduled_task(name)
        if task is None:
            raise TaskNotFoundError(f"Scheduled task {name} not found")
        return await self._execute(task)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def is_running(self, name: str) -> bool:
        return name in self._running

    def set_enabled(self, name: str, enabled: bool) -> ScheduledTask:
        task = self.store.get_scheduled_task(name)
        if task is None:
            raise TaskNotFoundError(f"Scheduled task {name} not found")

        task = self.store.update_scheduled_task(task.id, {"enabled": enabled})
        if self._started and not self._stopped:
            self._sync_job(task)
        logger.info(f"[Scheduler] {'Enabled' if enabled else 'Disabled'}: {name}")
        return task

    def _next_run_at(self, task: ScheduledTask) -> Optional[datetime]:
        if self._stopped or not task.enabled:
            return None
        if self._started:
            job = self._scheduler.get_job(task.name)
            return job.next_run_time if job else None
        cron = self._triggers.get(task.name)
        if cron is None:
            return None
        return cron.get_next_fire_time(None, datetime.now(cron.timezone))

    def _status(self, task: ScheduledTask, runs_limit: int) -> ScheduledTaskStatus:
        return ScheduledTaskStatus(
            task=task,
            running=task.name in self._running,
            next_run_at=self._next_run_at(task),
            recent_runs=self.store.list_task_runs(task.id, limit=runs_limit),
        )

    def get_status(self, name: str) -> ScheduledTaskStatus:
        """The task, whether it is running, its next fire time and the 10 most recent runs."""
        task = self.store.get_scheduled_task(name)
        if task is None:
            raise TaskNotFoundError(f"Scheduled task {name} not found")
        return self._status(task, RECENT_RUNS_LIMIT)

    def get_all_statuses(self) -> List[ScheduledTaskStatus]:
        """Every task with its latest run."""
        return [self._status(task, 1) for task in self.store.list_scheduled_tasks()]
