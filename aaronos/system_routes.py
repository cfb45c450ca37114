"""
System Routes - Health & Scheduler

Provides health checks, per-service health history, and scheduled task
inspection and control.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from aaronos import __version__
from aaronos.jobs.utils import utcnow
from aaronos.jobs_routes import get_services
from aaronos.schemas import HealthStatus, ScheduledTask, ScheduledTaskStatus, ServiceHealth, TaskRun
from aaronos.scheduler import TaskNotFoundError
from aaronos.services import AppServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    scheduler_running: bool
    active_jobs: int
    queued_jobs: int


class ServiceHistoryResponse(BaseModel):
    service: str
    hours: int
    checks: List[ServiceHealth]


class ServiceUptimeResponse(BaseModel):
    service: str
    hours: int
    uptime_percent: float


class RunTaskResponse(BaseModel):
    name: str
    skipped: bool
    run: Optional[TaskRun] = None


# =============================================================================
# HEALTH
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health(services: AppServices = Depends(get_services)):
    """
    Basic liveness endpoint. Does not call external services.
    """
    return HealthResponse(
        status="ok",
        timestamp=utcnow(),
        version=__version__,
        environment=services.settings.environment,
        scheduler_running=services.scheduler.started,
        active_jobs=services.runner.active_count,
        queued_jobs=services.runner.queued_count,
    )


@router.get("/health/check", response_model=HealthStatus)
async def health_check(services: AppServices = Depends(get_services)):
    """Run a full health check of every service and record the results."""
    return await services.health.perform_health_check()


@router.get("/health/{service}/history", response_model=ServiceHistoryResponse)
async def service_history(
    service: str,
    hours: int = Query(24, ge=1, le=24 * 30),
    services: AppServices = Depends(get_services),
):
    return ServiceHistoryResponse(
        service=service,
        hours=hours,
        checks=services.health.get_service_history(service, hours),
    )


@router.get("/health/{service}/uptime", response_model=ServiceUptimeResponse)
async def service_uptime(
    service: str,
    hours: int = Query(24, ge=1, le=24 * 30),
    services: AppServices = Depends(get_services),
):
    return ServiceUptimeResponse(
        service=service,
        hours=hours,
        uptime_percent=services.health.get_service_uptime(service, hours),
    )


# =============================================================================
# SCHEDULER
# =============================================================================

@router.get("/scheduler/tasks", response_model=List[ScheduledTaskStatus])
async def list_tasks(services: AppServices = Depends(get_services)):
    """Every scheduled task with its latest run."""
    return services.scheduler.get_all_statuses()


@router.get("/scheduler/tasks/{name}", response_model=ScheduledTaskStatus)
async def get_task(name: str, services: AppServices = Depends(get_services)):
    try:
        return services.scheduler.get_status(name)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Scheduled task not found")


@router.post("/scheduler/tasks/{name}/run", response_model=RunTaskResponse)
async def run_task(name: str, services: AppServices = Depends(get_services)):
    """
    Run a task now and wait for it to finish.
    Skipped when a run of the same task is already in progress.
    """
    try:
        run = await services.scheduler.run_now(name)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Scheduled task not found")

    return RunTaskResponse(name=name, skipped=run is None, run=run)


@router.post("/scheduler/tasks/{name}/enable", response_model=ScheduledTask)
async def enable_task(name: str, services: AppServices = Depends(get_services)):
    try:
        return services.scheduler.set_enabled(name, True)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Scheduled task not found")


@router.post("/scheduler/tasks/{name}/disable", response_model=ScheduledTask)
async def disable_task(name: str, services: AppServices = Depends(get_services)):
    try:
        return services.scheduler.set_enabled(name, False)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail="Scheduled task not found")
