"""
Job Runner

Executes work records as ordered pipelines with lifecycle management including:
- Weighted progress tracking (write-through after every step)
- Cooperative cancellation
- Error capture at the runner boundary
- A concurrency cap shared by all records in the process
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from aaronos.jobs.job_manager import InvalidTransitionError, JobManager, WorkNotFoundError
from aaronos.jobs.job_types import PARAMS_BY_KIND, WorkKind, WorkRecord, WorkStatus
from aaronos.jobs.utils import ProgressTracker, describe_exception

logger = logging.getLogger(__name__)

# Progress written when a record starts running
PROGRESS_FLOOR = 5


class JobCancelledError(Exception):
    """Raised inside a pipeline when its work record has been cancelled."""


@dataclass
class PipelineStep:
    """One named, weighted unit of a pipeline. `run` returns an optional fragment."""
    name: str
    weight: float
    run: Callable[["JobContext"], Awaitable[Any]]


@dataclass
class Pipeline:
    steps: List[PipelineStep] = field(default_factory=list)
    # Builds the result payload from ctx.state once every step has succeeded
    assemble: Optional[Callable[["JobContext"], Any]] = None
    # Always awaited when the run ends, whatever the outcome
    cleanup: Optional[Callable[[], Awaitable[None]]] = None


PipelineFactory = Callable[[BaseModel], Pipeline]


@dataclass
class JobContext:
    """
    Context object passed to pipeline steps.
    Provides progress reporting, cancellation checks and shared step state.
    """
    work_id: str
    kind: WorkKind
    owner_id: str
    params: Any

    _manager: JobManager = field(repr=False)
    _tracker: ProgressTracker = field(repr=False)
    _cancel_event: asyncio.Event = field(repr=False)
    state: Dict[str, Any] = field(default_factory=dict, repr=False)
    _current_stage: Optional[str] = field(default=None, repr=False)
    _warnings: List[str] = field(default_factory=list, repr=False)

    @property
    def current_stage(self) -> Optional[str]:
        return self._current_stage

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def report(self, current: int, total: int):
        """Report progress within the current step (e.g. chapter 2 of 5)."""
        percent = self._tracker.progress(self._current_stage, current, total)
        self._manager.update_progress(self.work_id, percent, self._current_stage)

    def log(self, message: str):
        """Log an informational message."""
        logger.info(f"[Job {self.work_id}] {message}")

    def warn(self, message: str):
        """Record an advisory warning; it is saved on the record and never fails the run."""
        self._warnings.append(message)
        logger.warning(f"[Job {self.work_id}] Warning: {message}")

    def raise_if_cancelled(self):
        """Call between units of work inside long steps."""
        if self._cancel_event.is_set():
            raise JobCancelledError(f"Work {self.work_id} was cancelled")

    def get_warnings(self) -> List[str]:
        """Get all warnings accumulated during execution."""
        return list(self._warnings)


class JobRunner:
    """
    Executes pipelines for work records with proper lifecycle management.
    """

    def __init__(self, manager: JobManager, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.manager = manager
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._factories: Dict[WorkKind, PipelineFactory] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._active: Set[str] = set()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_pipeline(self, kind: WorkKind, factory: PipelineFactory):
        """Register the pipeline factory used to execute records of a kind."""
        self._factories[kind] = factory
        logger.info(f"Registered pipeline for work kind: {kind.value}")

    def get_factory(self, kind: WorkKind) -> Optional[PipelineFactory]:
        return self._factories.get(kind)

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        """Records currently holding a concurrency slot."""
        return len(self._active)

    @property
    def queued_count(self) -> int:
        return max(0, len(self._tasks) - len(self._active))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, work_id: str) -> Optional[WorkRecord]:
        """
        Execute a pending record with the pipeline registered for its kind.
        Returns the terminal record, or None when the record does not exist.
        """
        record = self.manager.get_work(work_id)
        if record is None:
            logger.error(f"[Job {work_id}] Cannot execute, work record not found")
            self._cancel_events.pop(work_id, None)
            return None
        factory = self.get_factory(record.kind)

        def build(ctx: JobContext) -> Pipeline:
            if factory is None:
                raise RuntimeError(f"No pipeline registered for work kind {record.kind.value}")
            ctx.params = PARAMS_BY_KIND[record.kind].model_validate(record.params)
            return factory(ctx.params)

        return await self._execute(work_id, build)

    async def execute_pipeline(self, work_id: str, pipeline: Pipeline) -> Optional[WorkRecord]:
        """Execute an explicit pipeline against a pending record."""
        return await self._execute(work_id, lambda ctx: pipeline)

    async def _execute(self, work_id: str, build: Callable[[JobContext], Pipeline]) -> Optional[WorkRecord]:
        cancel_event = self._cancel_events.setdefault(work_id, asyncio.Event())
        try:
            async with self._semaphore:
                record = self.manager.get(work_id)
                if record.is_terminal:
                    # Cancelled while waiting for a slot
                    logger.info(f"[Job {work_id}] Not starting, record is already {record.status.value}")
                    return record
                if work_id in self._active:
                    logger.warning(f"[Job {work_id}] Already executing in this process, not starting again")
                    return record
                if cancel_event.is_set():
                    return self._finalize_cancelled(work_id, [])

                self._active.add(work_id)
                try:
                    return await self._run(record, build, cancel_event)
                finally:
                    self._active.discard(work_id)

        except (WorkNotFoundError, InvalidTransitionError) as e:
            logger.warning(f"[Job {work_id}] Not started: {e}")
            return self.manager.get_work(work_id)

        except asyncio.CancelledError:
            logger.info(f"[Job {work_id}] Task cancelled (CancelledError)")
            return self._finalize_cancelled(work_id, [])

        finally:
            # The event belongs to whichever call is still running the record
            if work_id not in self._active:
                self._cancel_events.pop(work_id, None)

    async def _run(
        self,
        record: WorkRecord,
        build: Callable[[JobContext], Pipeline],
        cancel_event: asyncio.Event,
    ) -> WorkRecord:
        work_id = record.id

        self.manager.mark_running(work_id, progress=PROGRESS_FLOOR)
        logger.info(f"Starting work {work_id} of kind {record.kind.value}")

        ctx = JobContext(
            work_id=work_id,
            kind=record.kind,
            owner_id=record.owner_id,
            params=record.params,
            _manager=self.manager,
            _tracker=ProgressTracker([], floor=PROGRESS_FLOOR),
            _cancel_event=cancel_event,
            _current_stage="prepare",
        )

        pipeline: Optional[Pipeline] = None
        try:
            pipeline = build(ctx)
            ctx._tracker = ProgressTracker(
                [(step.name, step.weight) for step in pipeline.steps],
                floor=PROGRESS_FLOOR,
            )

            for step in pipeline.steps:
                ctx.raise_if_cancelled()

                ctx._current_stage = step.name
                self.manager.update_progress(work_id, ctx._tracker.stage(step.name), step.name)

                ctx.state[step.name] = await step.run(ctx)

                self.manager.update_progress(work_id, ctx._tracker.complete(step.name), step.name)

            ctx.raise_if_cancelled()

            ctx._current_stage = "assemble"
            result = pipeline.assemble(ctx) if pipeline.assemble else None

            completed = self.manager.mark_completed(work_id, result, warnings=ctx.get_warnings())
            logger.info(f"Work {work_id} completed successfully")
            return completed

        except JobCancelledError:
            logger.info(f"[Job {work_id}] Cancelled during stage {ctx.current_stage}")
            return self._finalize_cancelled(work_id, ctx.get_warnings())

        except asyncio.CancelledError:
            logger.info(f"[Job {work_id}] Cancelled (CancelledError) during stage {ctx.current_stage}")
            return self._finalize_cancelled(work_id, ctx.get_warnings())

        except Exception as e:
            error_trace = traceback.format_exc()
            message = describe_exception(e)
            logger.error(f"Work {work_id} failed at stage {ctx.current_stage}: {message}")
            return self._finalize_failed(
                work_id, message, ctx.current_stage, error_trace, ctx.get_warnings(), type(e).__name__
            )

        finally:
            if pipeline is not None and pipeline.cleanup is not None:
                try:
                    await pipeline.cleanup()
                except Exception as e:
                    logger.warning(f"[Job {work_id}] Cleanup error: {e}")

    # ------------------------------------------------------------------
    # Terminal writes that must never raise out of the runner
    # ------------------------------------------------------------------

    def _finalize_failed(self, work_id, message, failing_stage, stack_trace, warnings, error_type=None) -> WorkRecord:
        try:
            return self.manager.mark_failed(
                work_id,
                message,
                failing_stage=failing_stage,
                stack_trace=stack_trace,
                warnings=warnings,
                error_type=error_type,
            )
        except Exception as e:
            logger.error(f"Could not record failure for work {work_id}: {e}")
            return self.manager.get_work(work_id)

    def _finalize_cancelled(self, work_id, warnings) -> WorkRecord:
        try:
            return self.manager.mark_cancelled(work_id, warnings=warnings)
        except Exception as e:
            logger.error(f"Could not record cancellation for work {work_id}: {e}")
            return self.manager.get_work(work_id)

    # ------------------------------------------------------------------
    # Background execution and cancellation
    # ------------------------------------------------------------------

    def run_background(self, work_id: str) -> asyncio.Task:
        """Run a record in the background, returns immediately."""
        self._cancel_events.setdefault(work_id, asyncio.Event())
        task = asyncio.create_task(self.execute(work_id))
        self._tasks[work_id] = task

        # Clean up when done
        def on_complete(t):
            self._tasks.pop(work_id, None)

        task.add_done_callback(on_complete)
        return task

    async def submit(self, kind: WorkKind, owner_id: str, params) -> WorkRecord:
        """Create a pending record and start it in the background."""
        record = self.manager.create_work(kind, owner_id, params)
        self.run_background(record.id)
        return record

    def cancel(self, work_id: str) -> WorkRecord:
        """
        Request cancellation. A pending record is cancelled immediately; a
        running one stops at its next cancellation check.
        Raises WorkNotFoundError or InvalidTransitionError (terminal record).
        """
        record = self.manager.get(work_id)
        if record.is_terminal:
            raise InvalidTransitionError(work_id, record.status, WorkStatus.CANCELLED)

        event = self._cancel_events.get(work_id)
        if event is not None:
            event.set()

        if record.status == WorkStatus.PENDING or event is None:
            # Not started yet, or not owned by this process
            return self.manager.mark_cancelled(work_id)

        logger.info(f"[Job {work_id}] Cancellation requested")
        return record

    async def shutdown(self):
        """Cancel all tracked background tasks and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Job runner shut down ({len(tasks)} task(s) cancelled)")
