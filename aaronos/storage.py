"""
Persistence layer.

The job core talks to storage only through the Store interface: get/update by
id plus a handful of list/delete queries used by the scheduler and the
maintenance tasks. SupabaseStore is the production implementation;
InMemoryStore backs local development (no Supabase credentials) and tests.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from aaronos.jobs.job_types import WorkKind, WorkRecord, WorkStatus
from aaronos.jobs.utils import safe_json_value, utcnow
from aaronos.schemas import BackupRecord, ScheduledTask, ServiceHealth, TaskRun

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """Raised when an update targets a row that does not exist."""


class Store(ABC):
    """Persistence interface consumed by the job runner, scheduler and maintenance tasks."""

    # -- work records ---------------------------------------------------------

    @abstractmethod
    def create_work(self, record: WorkRecord) -> WorkRecord:
        ...

    @abstractmethod
    def update_work(self, work_id: str, fields: Dict[str, Any]) -> WorkRecord:
        ...

    @abstractmethod
    def get_work(self, work_id: str) -> Optional[WorkRecord]:
        ...

    @abstractmethod
    def list_work(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[WorkKind] = None,
        limit: int = 50,
    ) -> List[WorkRecord]:
        """Newest first."""

    @abstractmethod
    def count_completed_work(self, kind: WorkKind, before: datetime) -> int:
        ...

    # -- scheduled tasks ------------------------------------------------------

    @abstractmethod
    def upsert_scheduled_task(self, name: str, trigger: str) -> ScheduledTask:
        """Insert a task or update the trigger of an existing one; `enabled` is preserved."""

    @abstractmethod
    def get_scheduled_task(self, name: str) -> Optional[ScheduledTask]:
        ...

    @abstractmethod
    def list_scheduled_tasks(self) -> List[ScheduledTask]:
        ...

    @abstractmethod
    def update_scheduled_task(self, task_id: str, fields: Dict[str, Any]) -> ScheduledTask:
        ...

    @abstractmethod
    def create_task_run(self, task: ScheduledTask) -> TaskRun:
        ...

    @abstractmethod
    def update_task_run(self, run_id: str, fields: Dict[str, Any]) -> TaskRun:
        ...

    @abstractmethod
    def list_task_runs(self, task_id: str, limit: int = 10) -> List[TaskRun]:
        """Newest first."""

    @abstractmethod
    def delete_task_runs_before(self, cutoff: datetime) -> int:
        ...

    # -- health / backups / auth housekeeping ---------------------------------

    @abstractmethod
    def record_health_check(self, check: ServiceHealth) -> None:
        ...

    @abstractmethod
    def list_health_checks(self, service: str, since: datetime) -> List[ServiceHealth]:
        """Newest first."""

    @abstractmethod
    def delete_health_checks_before(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    def record_backup(self, backup: BackupRecord) -> BackupRecord:
        ...

    @abstractmethod
    def list_backups_before(self, cutoff: datetime) -> List[BackupRecord]:
        ...

    @abstractmethod
    def delete_backup(self, backup_id: str) -> None:
        ...

    @abstractmethod
    def delete_expired_sessions(self, now: datetime) -> int:
        ...

    @abstractmethod
    def delete_expired_password_resets(self, now: datetime) -> int:
        ...

    @abstractmethod
    def ping(self) -> None:
        """Cheap round-trip; raises when the backing database is unreachable."""


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryStore(Store):
    """
    Dict-backed store. Every read returns a copy so callers can never mutate
    persisted state behind the store's back.
    """

    def __init__(self):
        self.work: Dict[str, WorkRecord] = {}
        self.tasks: Dict[str, ScheduledTask] = {}
        self.runs: Dict[str, TaskRun] = {}
        self.health_checks: List[ServiceHealth] = []
        self.backups: Dict[str, BackupRecord] = {}
        # Rows owned by the auth layer: {"id": ..., "expires_at": datetime}
        self.sessions: List[Dict[str, Any]] = []
        self.password_resets: List[Dict[str, Any]] = []

    # -- work records ---------------------------------------------------------

    def create_work(self, record: WorkRecord) -> WorkRecord:
        self.work[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    def update_work(self, work_id: str, fields: Dict[str, Any]) -> WorkRecord:
        current = self.work.get(work_id)
        if current is None:
            raise RecordNotFoundError(f"Work record {work_id} not found")
        updated = current.model_copy(update=copy.deepcopy(fields), deep=True)
        self.work[work_id] = updated
        return updated.model_copy(deep=True)

    def get_work(self, work_id: str) -> Optional[WorkRecord]:
        record = self.work.get(work_id)
        return record.model_copy(deep=True) if record else None

    def list_work(self, owner_id=None, kind=None, limit=50):
        records = [
            r for r in self.work.values()
            if (owner_id is None or r.owner_id == owner_id) and (kind is None or r.kind == kind)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    def count_completed_work(self, kind, before):
        return sum(
            1 for r in self.work.values()
            if r.kind == kind and r.status == WorkStatus.COMPLETED
            and r.completed_at is not None and r.completed_at < before
        )

    # -- scheduled tasks ------------------------------------------------------

    def upsert_scheduled_task(self, name, trigger):
        existing = self.tasks.get(name)
        if existing is not None:
            existing = existing.model_copy(update={"trigger": trigger})
            self.tasks[name] = existing
            return existing.model_copy()

        task = ScheduledTask(id=str(uuid4()), name=name, trigger=trigger, created_at=utcnow())
        self.tasks[name] = task
        return task.model_copy()

    def get_scheduled_task(self, name):
        task = self.tasks.get(name)
        return task.model_copy() if task else None

    def list_scheduled_tasks(self):
        return [t.model_copy() for t in sorted(self.tasks.values(), key=lambda t: t.name)]

    def update_scheduled_task(self, task_id, fields):
        for name, task in self.tasks.items():
            if task.id == task_id:
                updated = task.model_copy(update=fields)
                self.tasks[name] = updated
                return updated.model_copy()
        raise RecordNotFoundError(f"Scheduled task {task_id} not found")

    def create_task_run(self, task):
        run = TaskRun(id=str(uuid4()), task_id=task.id, task_name=task.name, started_at=utcnow())
        self.runs[run.id] = run
        return run.model_copy()

    def update_task_run(self, run_id, fields):
        run = self.runs.get(run_id)
        if run is None:
            raise RecordNotFoundError(f"Task run {run_id} not found")
        updated = run.model_copy(update=fields)
        self.runs[run_id] = updated
        return updated.model_copy()

    def list_task_runs(self, task_id, limit=10):
        runs = [r for r in self.runs.values() if r.task_id == task_id]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy() for r in runs[:limit]]

    def delete_task_runs_before(self, cutoff):
        stale = [run_id for run_id, r in self.runs.items() if r.started_at < cutoff]
        for run_id in stale:
            del self.runs[run_id]
        return len(stale)

    # -- health / backups / auth housekeeping ---------------------------------

    def record_health_check(self, check):
        self.health_checks.append(check.model_copy(deep=True))

    def list_health_checks(self, service, since):
        checks = [c for c in self.health_checks if c.name == service and c.checked_at >= since]
        checks.sort(key=lambda c: c.checked_at, reverse=True)
        return [c.model_copy(deep=True) for c in checks]

    def delete_health_checks_before(self, cutoff):
        before = len(self.health_checks)
        self.health_checks = [c for c in self.health_checks if c.checked_at >= cutoff]
        return before - len(self.health_checks)

    def record_backup(self, backup):
        self.backups[backup.id] = backup.model_copy()
        return backup.model_copy()

    def list_backups_before(self, cutoff):
        return [b.model_copy() for b in self.backups.values() if b.created_at < cutoff]

    def delete_backup(self, backup_id):
        self.backups.pop(backup_id, None)

    def delete_expired_sessions(self, now):
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s["expires_at"] >= now]
        return before - len(self.sessions)

    def delete_expired_password_resets(self, now):
        before = len(self.password_resets)
        self.password_resets = [p for p in self.password_resets if p["expires_at"] >= now]
        return before - len(self.password_resets)

    def ping(self):
        return None


# =============================================================================
# SUPABASE STORE
# =============================================================================

class SupabaseStore(Store):
    """Store backed by Supabase (PostgREST) tables."""

    WORK_TABLE = "work_records"
    TASKS_TABLE = "scheduled_tasks"
    RUNS_TABLE = "task_runs"
    HEALTH_TABLE = "health_checks"
    BACKUPS_TABLE = "database_backups"
    SESSIONS_TABLE = "sessions"
    RESETS_TABLE = "password_resets"

    def __init__(self, supabase):
        self.supabase = supabase

    @staticmethod
    def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
        return {k: safe_json_value(v.value if hasattr(v, "value") else v) for k, v in fields.items()}

    # -- work records ---------------------------------------------------------

    def create_work(self, record):
        result = self.supabase.table(self.WORK_TABLE)\
            .insert(record.model_dump(mode="json"))\
            .execute()
        return WorkRecord.model_validate(result.data[0]) if result.data else record

    def update_work(self, work_id, fields):
        result = self.supabase.table(self.WORK_TABLE)\
            .update(self._serialize(fields))\
            .eq("id", work_id)\
            .execute()
        if not result.data:
            raise RecordNotFoundError(f"Work record {work_id} not found")
        return WorkRecord.model_validate(result.data[0])

    def get_work(self, work_id):
        result = self.supabase.table(self.WORK_TABLE)\
            .select("*")\
            .eq("id", work_id)\
            .limit(1)\
            .execute()
        return WorkRecord.model_validate(result.data[0]) if result.data else None

    def list_work(self, owner_id=None, kind=None, limit=50):
        query = self.supabase.table(self.WORK_TABLE).select("*")

        if owner_id:
            query = query.eq("owner_id", owner_id)

        if kind:
            query = query.eq("kind", kind.value)

        result = query\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return [WorkRecord.model_validate(row) for row in result.data or []]

    def count_completed_work(self, kind, before):
        result = self.supabase.table(self.WORK_TABLE)\
            .select("id", count="exact")\
            .eq("kind", kind.value)\
            .eq("status", WorkStatus.COMPLETED.value)\
            .lt("completed_at", before.isoformat())\
            .execute()
        return result.count if result.count is not None else len(result.data or [])

    # -- scheduled tasks ------------------------------------------------------

    def upsert_scheduled_task(self, name, trigger):
        existing = self.get_scheduled_task(name)
        if existing is not None:
            return self.update_scheduled_task(existing.id, {"trigger": trigger})

        task = ScheduledTask(id=str(uuid4()), name=name, trigger=trigger, created_at=utcnow())
        result = self.supabase.table(self.TASKS_TABLE)\
            .insert(task.model_dump(mode="json"))\
            .execute()
        return ScheduledTask.model_validate(result.data[0]) if result.data else task

    def get_scheduled_task(self, name):
        result = self.supabase.table(self.TASKS_TABLE)\
            .select("*")\
            .eq("name", name)\
            .limit(1)\
            .execute()
        return ScheduledTask.model_validate(result.data[0]) if result.data else None

    def list_scheduled_tasks(self):
        result = self.supabase.table(self.TASKS_TABLE)\
            .select("*")\
            .order("name")\
            .execute()
        return [ScheduledTask.model_validate(row) for row in result.data or []]

    def update_scheduled_task(self, task_id, fields):
        result = self.supabase.table(self.TASKS_TABLE)\
            .update(self._serialize(fields))\
            .eq("id", task_id)\
            .execute()
        if not result.data:
            raise RecordNotFoundError(f"Scheduled task {task_id} not found")
        return ScheduledTask.model_validate(result.data[0])

    def create_task_run(self, task):
        run = TaskRun(id=str(uuid4()), task_id=task.id, task_name=task.name, started_at=utcnow())
        result = self.supabase.table(self.RUNS_TABLE)\
            .insert(run.model_dump(mode="json"))\
            .execute()
        return TaskRun.model_validate(result.data[0]) if result.data else run

    def update_task_run(self, run_id, fields):
        result = self.supabase.table(self.RUNS_TABLE)\
            .update(self._serialize(fields))\
            .eq("id", run_id)\
            .execute()
        if not result.data:
            raise RecordNotFoundError(f"Task run {run_id} not found")
        return TaskRun.model_validate(result.data[0])

    def list_task_runs(self, task_id, limit=10):
        result = self.supabase.table(self.RUNS_TABLE)\
            .select("*")\
            .eq("task_id", task_id)\
            .order("started_at", desc=True)\
            .limit(limit)\
            .execute()
        return [TaskRun.model_validate(row) for row in result.data or []]

    def delete_task_runs_before(self, cutoff):
        result = self.supabase.table(self.RUNS_TABLE)\
            .delete()\
            .lt("started_at", cutoff.isoformat())\
            .execute()
        return len(result.data or [])

    # -- health / backups / auth housekeeping ---------------------------------

    def record_health_check(self, check):
        self.supabase.table(self.HEALTH_TABLE).insert({
            "service": check.name,
            "status": check.status.value,
            "response_time_ms": check.response_time_ms,
            "details": safe_json_value(check.details),
            "checked_at": check.checked_at.isoformat(),
        }).execute()

    def list_health_checks(self, service, since):
        result = self.supabase.table(self.HEALTH_TABLE)\
            .select("*")\
            .eq("service", service)\
            .gte("checked_at", since.isoformat())\
            .order("checked_at", desc=True)\
            .execute()
        return [
            ServiceHealth(
                name=row["service"],
                status=row["status"],
                response_time_ms=row.get("response_time_ms"),
                details=row.get("details") or {},
                checked_at=row["checked_at"],
            )
            for row in result.data or []
        ]

    def delete_health_checks_before(self, cutoff):
        result = self.supabase.table(self.HEALTH_TABLE)\
            .delete()\
            .lt("checked_at", cutoff.isoformat())\
            .execute()
        return len(result.data or [])

    def record_backup(self, backup):
        result = self.supabase.table(self.BACKUPS_TABLE)\
            .insert(backup.model_dump(mode="json"))\
            .execute()
        return BackupRecord.model_validate(result.data[0]) if result.data else backup

    def list_backups_before(self, cutoff):
        result = self.supabase.table(self.BACKUPS_TABLE)\
            .select("*")\
            .lt("created_at", cutoff.isoformat())\
            .execute()
        return [BackupRecord.model_validate(row) for row in result.data or []]

    def delete_backup(self, backup_id):
        self.supabase.table(self.BACKUPS_TABLE)\
            .delete()\
            .eq("id", backup_id)\
            .execute()

    def delete_expired_sessions(self, now):
        result = self.supabase.table(self.SESSIONS_TABLE)\
            .delete()\
            .lt("expires_at", now.isoformat())\
            .execute()
        return len(result.data or [])

    def delete_expired_password_resets(self, now):
        result = self.supabase.table(self.RESETS_TABLE)\
            .delete()\
            .lt("expires_at", now.isoformat())\
            .execute()
        return len(result.data or [])

    def ping(self):
        self.supabase.table(self.TASKS_TABLE).select("id").limit(1).execute()
