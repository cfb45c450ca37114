"""
Background Jobs API Routes

Provides endpoints for:
- Starting research, book generation and accessibility scan jobs
- Polling job status
- Listing jobs
- Cancelling jobs
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from aaronos.jobs.job_manager import InvalidTransitionError, WorkNotFoundError
from aaronos.jobs.job_types import (
    BookParams, ResearchParams, ScanParams, WorkKind, WorkListResponse,
    WorkRecord, WorkStartResponse, WorkStatusResponse,
)
from aaronos.services import AppServices

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api", tags=["jobs"])
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_services(request: Request) -> AppServices:
    return request.app.state.services


# =============================================================================
# REQUEST MODELS
# =============================================================================

class StartResearchRequest(ResearchParams):
    owner_id: str


class StartBookRequest(BookParams):
    owner_id: str


class StartScanRequest(ScanParams):
    owner_id: str


async def _start(services: AppServices, kind: WorkKind, request) -> WorkStartResponse:
    params = request.model_dump(exclude={"owner_id"})
    try:
        record = await services.runner.submit(kind, request.owner_id, params)
    except Exception as e:
        logger.error(f"Error starting {kind.value} job: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start job: {str(e)}")

    logger.info(f"Started background job {record.id} of kind {kind.value}")
    return WorkStartResponse(work_id=record.id, kind=record.kind, status=record.status)


# =============================================================================
# START ENDPOINTS
# =============================================================================

@api_router.post("/research", response_model=WorkStartResponse, status_code=202)
async def start_research(request: StartResearchRequest, services: AppServices = Depends(get_services)):
    """Start a research job. Returns immediately; poll /api/jobs/{id}/status."""
    return await _start(services, WorkKind.RESEARCH, request)


@api_router.post("/ebooks", response_model=WorkStartResponse, status_code=202)
async def start_ebook(request: StartBookRequest, services: AppServices = Depends(get_services)):
    """Start a book generation job."""
    return await _start(services, WorkKind.BOOK_GENERATION, request)


@api_router.post("/scans", response_model=WorkStartResponse, status_code=202)
async def start_scan(request: StartScanRequest, services: AppServices = Depends(get_services)):
    """Start an accessibility scan."""
    return await _start(services, WorkKind.ACCESSIBILITY_SCAN, request)


# =============================================================================
# JOB ENDPOINTS
# =============================================================================

@router.get("", response_model=WorkListResponse)
async def list_jobs(
    owner_id: Optional[str] = Query(None),
    kind: Optional[WorkKind] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    services: AppServices = Depends(get_services),
):
    """List jobs, newest first."""
    return services.manager.list_work(owner_id=owner_id, kind=kind, limit=limit)


@router.get("/{work_id}/status", response_model=WorkStatusResponse)
async def get_job_status(work_id: str, services: AppServices = Depends(get_services)):
    """Polling endpoint: status, progress, stage and, when failed, error and hint."""
    try:
        return services.manager.get_status(work_id)
    except WorkNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/{work_id}", response_model=WorkRecord)
async def get_job(work_id: str, services: AppServices = Depends(get_services)):
    record = services.manager.get_work(work_id)
    if not record:
        raise HTTPException(status_code=404, detail="Job not found")
    return record


@router.post("/{work_id}/cancel", response_model=WorkStatusResponse)
async def cancel_job(work_id: str, services: AppServices = Depends(get_services)):
    """
    Cancel a pending or running job.

    - Pending jobs are cancelled immediately
    - Running jobs stop at the next checkpoint
    """
    try:
        services.runner.cancel(work_id)
        return services.manager.get_status(work_id)
    except WorkNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
