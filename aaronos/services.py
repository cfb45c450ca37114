"""
Composition root.

AppServices builds the store, job runner, pipelines, health monitor and
scheduler from Settings. The FastAPI lifespan and worker.py each own one
instance and call startup()/shutdown() around its lifetime.
"""

import logging
from typing import Callable, Optional

from aaronos.browser import BrowserAutomation, PlaywrightBrowser
from aaronos.config import Settings
from aaronos.health import HealthMonitor
from aaronos.jobs.job_manager import JobManager
from aaronos.jobs.runner import JobRunner
from aaronos.llm import GeminiGenerator, TextGenerator
from aaronos.maintenance import MaintenanceTasks, register_maintenance_tasks
from aaronos.pipelines import register_all_pipelines
from aaronos.pipelines.research import HttpSourceFetcher, SourceFetcher
from aaronos.scheduler import Scheduler
from aaronos.storage import InMemoryStore, Store, SupabaseStore
from aaronos.supabase_client import create_supabase

logger = logging.getLogger(__name__)


def create_store(settings: Settings) -> Store:
    """Supabase when configured, otherwise an in-process store."""
    supabase = create_supabase(settings)
    if supabase is None:
        logger.warning("Using in-memory store; records will not survive a restart")
        return InMemoryStore()
    return SupabaseStore(supabase)


class AppServices:
    def __init__(
        self,
        settings: Settings,
        store: Optional[Store] = None,
        generator: Optional[TextGenerator] = None,
        fetcher: Optional[SourceFetcher] = None,
        browser_factory: Optional[Callable[[], BrowserAutomation]] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else create_store(settings)
        self.generator = generator or GeminiGenerator(
            settings.gemini_api_key,
            model_name=settings.gemini_model,
            timeout_seconds=settings.generation_timeout_seconds,
        )
        self.fetcher = fetcher or HttpSourceFetcher(settings.research_search_url)
        self.browser_factory = browser_factory or PlaywrightBrowser

        self.manager = JobManager(self.store)
        self.runner = JobRunner(self.manager, max_concurrent=settings.max_concurrent_jobs)
        register_all_pipelines(self.runner, settings, self.generator, self.fetcher, self.browser_factory)

        self.health = HealthMonitor(self.store, self.generator, self.runner)
        self.scheduler = Scheduler(self.store, timezone=settings.scheduler_timezone)
        self.maintenance = MaintenanceTasks(self.store, settings, self.health)
        register_maintenance_tasks(self.scheduler, self.maintenance)

    @classmethod
    def from_env(cls) -> "AppServices":
        return cls(Settings.from_env())

    async def startup(self, start_scheduler: Optional[bool] = None):
        """Start background machinery. Must run inside the event loop."""
        if start_scheduler is None:
            start_scheduler = self.settings.enable_scheduler

        if start_scheduler:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")

    async def shutdown(self):
        self.scheduler.stop()
        await self.runner.shutdown()
        await self.fetcher.close()
        logger.info("Services shut down")
