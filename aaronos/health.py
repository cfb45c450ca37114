"""
Health monitoring.

Checks the database, the generation service and the job runner, records one
health row per service and rolls the results up into an overall status.
"""

import logging
import time
from datetime import timedelta
from typing import List, Optional

from aaronos.jobs.runner import JobRunner
from aaronos.jobs.utils import describe_exception, utcnow
from aaronos.llm import TextGenerator
from aaronos.schemas import HealthCounts, HealthState, HealthStatus, ServiceHealth
from aaronos.storage import Store

logger = logging.getLogger(__name__)

DATABASE_DEGRADED_MS = 100
GENERATION_DEGRADED_MS = 2000


def overall_state(services: List[ServiceHealth]) -> HealthState:
    """Any unhealthy service makes the system unhealthy; otherwise any degraded one degrades it."""
    states = {s.status for s in services}
    if HealthState.UNHEALTHY in states:
        return HealthState.UNHEALTHY
    if HealthState.DEGRADED in states:
        return HealthState.DEGRADED
    return HealthState.HEALTHY


class HealthMonitor:
    def __init__(self, store: Store, generator: Optional[TextGenerator] = None, runner: Optional[JobRunner] = None):
        self.store = store
        self.generator = generator
        self.runner = runner

    async def check_database(self) -> ServiceHealth:
        started = time.monotonic()
        try:
            self.store.ping()
            elapsed = int((time.monotonic() - started) * 1000)
            return ServiceHealth(
                name="database",
                status=HealthState.HEALTHY if elapsed < DATABASE_DEGRADED_MS else HealthState.DEGRADED,
                response_time_ms=elapsed,
                details={"connected": True},
                checked_at=utcnow(),
            )
        except Exception as e:
            return ServiceHealth(
                name="database",
                status=HealthState.UNHEALTHY,
                response_time_ms=int((time.monotonic() - started) * 1000),
                details={"error": describe_exception(e)},
                checked_at=utcnow(),
            )

    async def check_generation(self) -> ServiceHealth:
        if self.generator is None:
            return ServiceHealth(
                name="generation",
                status=HealthState.UNHEALTHY,
                details={"error": "No text generator configured"},
                checked_at=utcnow(),
            )

        started = time.monotonic()
        try:
            elapsed = int(await self.generator.ping())
            return ServiceHealth(
                name="generation",
                status=HealthState.HEALTHY if elapsed < GENERATION_DEGRADED_MS else HealthState.DEGRADED,
                response_time_ms=elapsed,
                checked_at=utcnow(),
            )
        except Exception as e:
            return ServiceHealth(
                name="generation",
                status=HealthState.UNHEALTHY,
                response_time_ms=int((time.monotonic() - started) * 1000),
                details={"error": describe_exception(e)},
                checked_at=utcnow(),
            )

    async def check_job_runner(self) -> ServiceHealth:
        if self.runner is None:
            return ServiceHealth(
                name="job_runner",
                status=HealthState.UNHEALTHY,
                details={"error": "No job runner configured"},
                checked_at=utcnow(),
            )

        active = self.runner.active_count
        capacity = self.runner.max_concurrent
        return ServiceHealth(
            name="job_runner",
            status=HealthState.DEGRADED if active >= capacity else HealthState.HEALTHY,
            details={
                "active": active,
                "queued": self.runner.queued_count,
                "max_concurrent": capacity,
            },
            checked_at=utcnow(),
        )

    async def perform_health_check(self) -> HealthStatus:
        services = [
            await self.check_database(),
            await self.check_generation(),
            await self.check_job_runner(),
        ]

        counts = HealthCounts(
            healthy=sum(1 for s in services if s.status == HealthState.HEALTHY),
            degraded=sum(1 for s in services if s.status == HealthState.DEGRADED),
            unhealthy=sum(1 for s in services if s.status == HealthState.UNHEALTHY),
        )
        status = overall_state(services)

        for service in services:
            try:
                self.store.record_health_check(service)
            except Exception as e:
                logger.error(f"Failed to record health check for {service.name}: {e}")

        if status != HealthState.HEALTHY:
            logger.warning(
                f"Health check: {status.value} "
                f"({counts.healthy} healthy, {counts.degraded} degraded, {counts.unhealthy} unhealthy)"
            )
        else:
            logger.info("Health check: all services healthy")

        return HealthStatus(status=status, timestamp=utcnow(), services=services, overall=counts)

    def get_service_history(self, service: str, hours: int = 24) -> List[ServiceHealth]:
        """Recorded checks for a service within the window, newest first."""
        since = utcnow() - timedelta(hours=hours)
        return self.store.list_health_checks(service, since)

    def get_service_uptime(self, service: str, hours: int = 24) -> float:
        """Percentage of healthy checks in the window; 100 when nothing was recorded."""
        history = self.get_service_history(service, hours)
        if not history:
            return 100.0
        healthy = sum(1 for c in history if c.status == HealthState.HEALTHY)
        return round(healthy / len(history) * 100, 2)
