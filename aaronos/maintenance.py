"""
Maintenance tasks run by the scheduler.

Each task is a plain async method; register_maintenance_tasks binds them to
their cron triggers. Failures propagate to the scheduler, which records them on
the TaskRun.
"""

import asyncio
import logging
import os
from datetime import timedelta
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from aaronos.config import Settings
from aaronos.health import HealthMonitor
from aaronos.jobs.job_types import WorkKind
from aaronos.jobs.utils import describe_exception, utcnow
from aaronos.scheduler import Scheduler
from aaronos.schemas import BackupRecord
from aaronos.storage import Store

logger = logging.getLogger(__name__)

BACKUP_RETENTION_DAYS = 30
HEALTH_RETENTION_DAYS = 7
TASK_RUN_RETENTION_DAYS = 30
ARCHIVE_AFTER_DAYS = 90

# name -> crontab expression
MAINTENANCE_SCHEDULE = {
    "database_backup": "0 2 * * *",
    "sync_subscriptions": "0 * * * *",
    "cleanup_sessions": "0 */6 * * *",
    "cleanup_password_resets": "0 1 * * *",
    "health_check": "*/5 * * * *",
    "cleanup_health_checks": "0 3 * * *",
    "cleanup_task_runs": "0 4 * * 0",
    "archive_completed_work": "0 5 * * *",
}


class BackupError(Exception):
    """pg_dump could not produce a backup file."""


class MaintenanceTasks:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        health_monitor: HealthMonitor,
        subscription_sync: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.store = store
        self.settings = settings
        self.health_monitor = health_monitor
        self.subscription_sync = subscription_sync

    # =========================================================================
    # BACKUPS
    # =========================================================================

    async def _run_pg_dump(self, database_url: str, path: str):
        process = await asyncio.create_subprocess_exec(
            "pg_dump", database_url, "-f", path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        message = stderr.decode("utf-8", errors="replace").strip() if stderr else ""

        if process.returncode != 0:
            raise BackupError(message or f"pg_dump exited with code {process.returncode}")
        if message:
            logger.warning(f"[Maintenance] Backup warnings: {message}")

    async def backup_database(self) -> BackupRecord:
        if not self.settings.database_url:
            raise BackupError("DATABASE_URL not configured")

        timestamp = utcnow().strftime("%Y-%m-%dT%H-%M-%S")
        filename = f"backup_{timestamp}.sql"
        os.makedirs(self.settings.backup_dir, exist_ok=True)
        path = os.path.join(self.settings.backup_dir, filename)

        logger.info(f"[Maintenance] Creating database backup: {filename}")

        try:
            await self._run_pg_dump(self.settings.database_url, path)
            size = os.path.getsize(path)
        except Exception as e:
            self.store.record_backup(BackupRecord(
                id=str(uuid4()),
                filename=filename,
                size=0,
                status="failed",
                error=describe_exception(e),
                created_at=utcnow(),
            ))
            raise

        record = self.store.record_backup(BackupRecord(
            id=str(uuid4()),
            filename=filename,
            size=size,
            status="success",
            created_at=utcnow(),
        ))
        logger.info(f"[Maintenance] Backup completed: {filename} ({size} bytes)")

        self.purge_old_backups()
        return record

    def purge_old_backups(self) -> int:
        """Delete backup files and records older than the retention window."""
        cutoff = utcnow() - timedelta(days=BACKUP_RETENTION_DAYS)
        deleted = 0

        for backup in self.store.list_backups_before(cutoff):
            path = os.path.join(self.settings.backup_dir, backup.filename)
            try:
                if os.path.exists(path):
                    os.remove(path)
                self.store.delete_backup(backup.id)
                deleted += 1
                logger.info(f"[Maintenance] Deleted old backup: {backup.filename}")
            except OSError as e:
                logger.error(f"[Maintenance] Failed to delete backup {backup.filename}: {e}")

        return deleted

    # =========================================================================
    # HOUSEKEEPING
    # =========================================================================

    async def sync_subscriptions(self):
        if self.subscription_sync is None:
            logger.info("[Maintenance] No subscription sync configured, skipping")
            return
        logger.info("[Maintenance] Syncing subscriptions...")
        await self.subscription_sync()

    async def cleanup_sessions(self) -> int:
        count = self.store.delete_expired_sessions(utcnow())
        logger.info(f"[Maintenance] Deleted {count} expired session(s)")
        return count

    async def cleanup_password_resets(self) -> int:
        count = self.store.delete_expired_password_resets(utcnow())
        logger.info(f"[Maintenance] Deleted {count} expired password reset(s)")
        return count

    async def run_health_check(self):
        await self.health_monitor.perform_health_check()

    async def cleanup_health_checks(self) -> int:
        cutoff = utcnow() - timedelta(days=HEALTH_RETENTION_DAYS)
        count = self.store.delete_health_checks_before(cutoff)
        logger.info(f"[Maintenance] Deleted {count} old health check records")
        return count

    async def cleanup_task_runs(self) -> int:
        cutoff = utcnow() - timedelta(days=TASK_RUN_RETENTION_DAYS)
        count = self.store.delete_task_runs_before(cutoff)
        logger.info(f"[Maintenance] Deleted {count} old task run records")
        return count

    async def archive_completed_work(self) -> dict:
        """Count completed research and books past the archive age. Nothing is moved yet."""
        cutoff = utcnow() - timedelta(days=ARCHIVE_AFTER_DAYS)
        counts = {
            "research": self.store.count_completed_work(WorkKind.RESEARCH, cutoff),
            "books": self.store.count_completed_work(WorkKind.BOOK_GENERATION, cutoff),
        }
        logger.info(
            f"[Maintenance] Found {counts['research']} old research and {counts['books']} old books"
        )
        return counts


def register_maintenance_tasks(scheduler: Scheduler, maintenance: MaintenanceTasks):
    """Bind every maintenance task to its cron trigger."""
    handlers = {
        "database_backup": maintenance.backup_database,
        "sync_subscriptions": maintenance.sync_subscriptions,
        "cleanup_sessions": maintenance.cleanup_sessions,
        "cleanup_password_resets": maintenance.cleanup_password_resets,
        "health_check": maintenance.run_health_check,
        "cleanup_health_checks": maintenance.cleanup_health_checks,
        "cleanup_task_runs": maintenance.cleanup_task_runs,
        "archive_completed_work": maintenance.archive_completed_work,
    }
    for name, trigger in MAINTENANCE_SCHEDULE.items():
        scheduler.register(name, trigger, handlers[name])
