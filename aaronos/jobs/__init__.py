"""
AaronOS Long-Running Jobs Framework

This package provides the job system behind the AI feature modules: research
reports, eBook generation and accessibility scans.

Key components:
- job_types: Work kinds, statuses, request params and result schemas
- job_manager: WorkRecord creation and lifecycle transitions
- runner: Pipeline execution, progress, cancellation and the concurrency cap
- utils: Shared utilities for progress reporting, JSON decoding and error hints
"""

from aaronos.jobs.job_types import (
    WorkKind,
    WorkStatus,
    WorkRecord,
    WorkResult,
    ResearchParams,
    BookParams,
    ScanParams,
    ResearchResult,
    BookResult,
    ScanResult,
)

from aaronos.jobs.job_manager import (
    JobManager,
    InvalidTransitionError,
    WorkNotFoundError,
)

from aaronos.jobs.runner import (
    JobRunner,
    JobContext,
    JobCancelledError,
    Pipeline,
    PipelineStep,
)

__all__ = [
    # Types
    "WorkKind",
    "WorkStatus",
    "WorkRecord",
    "WorkResult",
    "ResearchParams",
    "BookParams",
    "ScanParams",
    "ResearchResult",
    "BookResult",
    "ScanResult",
    # Manager
    "JobManager",
    "InvalidTransitionError",
    "WorkNotFoundError",
    # Runner
    "JobRunner",
    "JobContext",
    "JobCancelledError",
    "Pipeline",
    "PipelineStep",
]
