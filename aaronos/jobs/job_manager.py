"""
Job Manager

Handles work record creation and lifecycle transitions. Every status or
progress write goes through here so the transition rules are enforced in one
place, regardless of which Store is underneath.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from aaronos.jobs.job_types import (
    ALLOWED_TRANSITIONS, PARAMS_BY_KIND, RESULT_BY_KIND,
    WorkKind, WorkListResponse, WorkRecord, WorkStatus, WorkStatusResponse,
)
from aaronos.jobs.utils import get_error_hint, utcnow

if TYPE_CHECKING:
    from aaronos.storage import Store

logger = logging.getLogger(__name__)

# Progress stays below 100 until the record is completed
MAX_RUNNING_PROGRESS = 99


class WorkNotFoundError(LookupError):
    """Raised when a work record id is unknown."""


class InvalidTransitionError(Exception):
    """Raised when a write would break the work record state machine."""

    def __init__(self, work_id: str, current: WorkStatus, target: Optional[WorkStatus] = None):
        self.work_id = work_id
        self.current = current
        self.target = target
        if target is None:
            message = f"Work record {work_id} is {current.value} and can no longer be updated"
        else:
            message = f"Cannot move work record {work_id} from {current.value} to {target.value}"
        super().__init__(message)


class JobManager:
    """
    Manages the WorkRecord lifecycle: creation, progress, and terminal
    transitions (completed, failed, cancelled).
    """

    def __init__(self, store: "Store"):
        self.store = store

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_work(
        self,
        kind: WorkKind,
        owner_id: str,
        params: Union[BaseModel, Dict[str, Any]],
    ) -> WorkRecord:
        """
        Validate params for the kind and persist a new pending record.
        Raises pydantic ValidationError before anything is written.
        """
        params_model = PARAMS_BY_KIND[kind]
        if not isinstance(params, params_model):
            params = params_model.model_validate(params)

        now = utcnow()
        record = WorkRecord(
            id=str(uuid4()),
            kind=kind,
            owner_id=owner_id,
            status=WorkStatus.PENDING,
            progress=0,
            params=params.model_dump(mode="json"),
            created_at=now,
            updated_at=now,
        )

        created = self.store.create_work(record)
        logger.info(f"Created work {created.id} of kind {kind.value} for owner {owner_id}")
        return created

    def get_work(self, work_id: str) -> Optional[WorkRecord]:
        return self.store.get_work(work_id)

    def get(self, work_id: str) -> WorkRecord:
        """Like get_work, but raises WorkNotFoundError for unknown ids."""
        record = self.store.get_work(work_id)
        if record is None:
            raise WorkNotFoundError(f"Work record {work_id} not found")
        return record

    def list_work(
        self,
        owner_id: Optional[str] = None,
        kind: Optional[WorkKind] = None,
        limit: int = 50,
    ) -> WorkListResponse:
        items = self.store.list_work(owner_id=owner_id, kind=kind, limit=limit)
        return WorkListResponse(items=items, total_count=len(items))

    def get_status(self, work_id: str) -> WorkStatusResponse:
        """Polling view of a record, with a user-facing hint for failures."""
        record = self.get(work_id)
        hint = None
        if record.status == WorkStatus.FAILED and record.error:
            hint = get_error_hint(record.error_type or "", record.error)

        return WorkStatusResponse(
            work_id=record.id,
            kind=record.kind,
            status=record.status,
            progress=record.progress,
            stage=record.stage,
            error=record.error,
            hint=hint,
            can_cancel=not record.is_terminal,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, work_id: str, target: WorkStatus, fields: Dict[str, Any]) -> WorkRecord:
        record = self.get(work_id)
        if target not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(work_id, record.status, target)

        fields = dict(fields)
        fields["status"] = target
        fields["updated_at"] = utcnow()
        return self.store.update_work(work_id, fields)

    def mark_running(self, work_id: str, progress: int = 0, stage: Optional[str] = None) -> WorkRecord:
        now = utcnow()
        return self._transition(work_id, WorkStatus.RUNNING, {
            "progress": min(max(progress, 0), MAX_RUNNING_PROGRESS),
            "stage": stage,
            "started_at": now,
        })

    def update_progress(self, work_id: str, progress: int, stage: Optional[str] = None) -> WorkRecord:
        """
        Write-through progress update for a running record. Progress never
        moves backwards and never reaches 100 before completion.
        """
        record = self.get(work_id)
        if record.status != WorkStatus.RUNNING:
            raise InvalidTransitionError(work_id, record.status)

        clamped = min(max(int(progress), record.progress), MAX_RUNNING_PROGRESS)
        fields: Dict[str, Any] = {"progress": clamped, "updated_at": utcnow()}
        if stage is not None:
            fields["stage"] = stage
        return self.store.update_work(work_id, fields)

    def mark_completed(
        self,
        work_id: str,
        result: Optional[Union[BaseModel, Dict[str, Any]]],
        warnings: Optional[List[str]] = None,
    ) -> WorkRecord:
        """
        Persist the result and move to completed. The result must be the
        variant that matches the record's kind.
        """
        record = self.get(work_id)
        if record.is_terminal:
            raise InvalidTransitionError(work_id, record.status, WorkStatus.COMPLETED)

        payload: Dict[str, Any] = {}
        if result is not None:
            result_model = RESULT_BY_KIND[record.kind]
            if isinstance(result, BaseModel) and not isinstance(result, result_model):
                raise TypeError(
                    f"{type(result).__name__} is not a valid result for {record.kind.value} work"
                )
            if not isinstance(result, result_model):
                result = result_model.model_validate(result)
            payload = result.model_dump(mode="json")

        now = utcnow()
        updated = self._transition(work_id, WorkStatus.COMPLETED, {
            "progress": 100,
            "stage": "completed",
            "result": payload,
            "error": None,
            "error_type": None,
            "warnings": list(warnings or []),
            "completed_at": now,
        })
        logger.info(f"Work {work_id} completed")
        return updated

    def mark_failed(
        self,
        work_id: str,
        message: str,
        failing_stage: Optional[str] = None,
        stack_trace: Optional[str] = None,
        warnings: Optional[List[str]] = None,
        error_type: Optional[str] = None,
    ) -> WorkRecord:
        """Mark work as failed. Progress keeps its last value."""
        # Don't store stack traces in the DB, only in logs
        if stack_trace:
            logger.error(f"Work {work_id} failed with stack trace:\n{stack_trace}")

        updated = self._transition(work_id, WorkStatus.FAILED, {
            "error": message or "Unknown error",
            "failing_stage": failing_stage,
            "error_type": error_type,
            "warnings": list(warnings or []),
        })
        logger.warning(f"Work {work_id} failed at stage {failing_stage}: {message}")
        return updated

    def mark_cancelled(self, work_id: str, warnings: Optional[List[str]] = None) -> WorkRecord:
        fields: Dict[str, Any] = {"stage": "cancelled"}
        if warnings:
            fields["warnings"] = list(warnings)
        updated = self._transition(work_id, WorkStatus.CANCELLED, fields)
        logger.info(f"Work {work_id} cancelled")
        return updated

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def wait_for_terminal(
        self,
        work_id: str,
        interval: float = 2.0,
        timeout: Optional[float] = None,
    ) -> WorkRecord:
        """
        Poll a record until it reaches a terminal status.
        Raises asyncio.TimeoutError if `timeout` seconds pass first.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            record = self.get(work_id)
            if record.is_terminal:
                return record
            if deadline is not None and time.monotonic() >= deadline:
                raise asyncio.TimeoutError(f"Work {work_id} still {record.status.value} after {timeout}s")
            await asyncio.sleep(interval)
