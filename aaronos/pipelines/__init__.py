"""
Domain pipelines for the AI feature modules.
"""

import logging
from typing import Callable

from aaronos.browser import BrowserAutomation
from aaronos.config import Settings
from aaronos.jobs.job_types import WorkKind
from aaronos.jobs.runner import JobRunner
from aaronos.llm import TextGenerator
from aaronos.pipelines.accessibility import AccessibilityScanPipeline
from aaronos.pipelines.book import BookPipeline
from aaronos.pipelines.research import ResearchPipeline, SourceFetcher

logger = logging.getLogger(__name__)


def register_all_pipelines(
    runner: JobRunner,
    settings: Settings,
    generator: TextGenerator,
    fetcher: SourceFetcher,
    browser_factory: Callable[[], BrowserAutomation],
):
    """Register every pipeline with the runner."""
    runner.register_pipeline(WorkKind.RESEARCH, ResearchPipeline(generator, fetcher).build)
    runner.register_pipeline(WorkKind.BOOK_GENERATION, BookPipeline(generator, settings.ebook_output_dir).build)
    runner.register_pipeline(
        WorkKind.ACCESSIBILITY_SCAN,
        AccessibilityScanPipeline(
            browser_factory,
            discovery_timeout_ms=settings.discovery_timeout_ms,
            scan_timeout_ms=settings.scan_timeout_ms,
        ).build,
    )
    logger.info("All pipelines registered")


__all__ = ["register_all_pipelines"]
