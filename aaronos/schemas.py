from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# SCHEDULER
# =============================================================================

class TaskRunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ScheduledTask(BaseModel):
    id: str
    name: str
    trigger: str
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    last_status: Optional[TaskRunStatus] = None
    created_at: datetime


class TaskRun(BaseModel):
    id: str
    task_id: str
    task_name: str
    status: TaskRunStatus = TaskRunStatus.RUNNING
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class ScheduledTaskStatus(BaseModel):
    task: ScheduledTask
    running: bool = False
    next_run_at: Optional[datetime] = None
    recent_runs: List[TaskRun] = Field(default_factory=list)


# =============================================================================
# HEALTH
# =============================================================================

class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServiceHealth(BaseModel):
    name: str
    status: HealthState
    response_time_ms: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime


class HealthCounts(BaseModel):
    healthy: int = 0
    degraded: int = 0
    unhealthy: int = 0


class HealthStatus(BaseModel):
    status: HealthState
    timestamp: datetime
    services: List[ServiceHealth]
    overall: HealthCounts


# =============================================================================
# BACKUPS
# =============================================================================

class BackupRecord(BaseModel):
    id: str
    filename: str
    size: int = 0
    status: str  # "success" | "failed"
    error: Optional[str] = None
    created_at: datetime
