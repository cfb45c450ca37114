"""
Shared fixtures and fakes for the external collaborators (text generation,
source fetching, browser automation).
"""

import os
from typing import Callable, Dict, List, Optional, Union

import pytest

# Set test environment before anything reads it
os.environ["ENVIRONMENT"] = "test"

from aaronos.browser import AuditResult, BrowserAutomation, NavigationError, PageHandle
from aaronos.config import Settings
from aaronos.jobs.job_manager import JobManager
from aaronos.jobs.runner import JobRunner
from aaronos.llm import GenerationError, TextGenerator
from aaronos.pipelines.research import Source, SourceFetcher
from aaronos.storage import InMemoryStore


# =============================================================================
# FAKES
# =============================================================================

class RecordingStore(InMemoryStore):
    """InMemoryStore that remembers every (status, progress) write per record."""

    def __init__(self):
        super().__init__()
        self.history: Dict[str, List[tuple]] = {}

    def create_work(self, record):
        created = super().create_work(record)
        self.history[created.id] = [(created.status, created.progress)]
        return created

    def update_work(self, work_id, fields):
        updated = super().update_work(work_id, fields)
        self.history.setdefault(work_id, []).append((updated.status, updated.progress))
        return updated

    def progress_sequence(self, work_id: str) -> List[int]:
        return [progress for _, progress in self.history.get(work_id, [])]


class ScriptedGenerator(TextGenerator):
    """
    Returns scripted responses in order. A response may be a string, an
    exception instance (raised), or a callable taking the prompt.
    """

    def __init__(self, responses: Optional[List[Union[str, Exception, Callable[[str], str]]]] = None, default: str = ""):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: List[str] = []

    async def generate(self, prompt: str, max_output_tokens: int) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            return self.default
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return response


class FailingGenerator(TextGenerator):
    async def generate(self, prompt: str, max_output_tokens: int) -> str:
        raise GenerationError("quota exceeded")


class FakeFetcher(SourceFetcher):
    """Returns a source for every query except those listed in `failing`."""

    def __init__(self, failing: Optional[List[str]] = None):
        self.failing = set(failing or [])
        self.queries: List[str] = []
        self.closed = False

    async def fetch(self, query: str) -> Source:
        self.queries.append(query)
        if query in self.failing:
            raise ValueError(f"No readable content for query {query!r}")
        slug = query.replace(" ", "-")
        return Source(url=f"https://example.com/{slug}", title=query, content=f"Content about {query}.")

    async def close(self):
        self.closed = True


class FakeBrowser(BrowserAutomation):
    """
    Serves pages from a dict of url -> audit result. URLs missing from the
    dict fail to navigate.
    """

    def __init__(self, pages: Optional[Dict[str, AuditResult]] = None, links: Optional[Dict[str, List[str]]] = None):
        self.pages = pages or {}
        self.links = links or {}
        self.navigated: List[str] = []
        self.closed = False

    async def navigate(self, url: str, timeout_ms: int) -> PageHandle:
        self.navigated.append(url)
        if url not in self.pages:
            raise NavigationError(f"Failed to load {url}: connection refused")
        return PageHandle(url=url, status_code=200)

    async def extract_links(self, page: PageHandle) -> List[str]:
        return list(self.links.get(page.url, []))

    async def run_accessibility_audit(self, page: PageHandle) -> AuditResult:
        return self.pages[page.url]

    async def close(self):
        self.closed = True


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def manager(store):
    return JobManager(store)


@pytest.fixture
def runner(manager):
    return JobRunner(manager, max_concurrent=5)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        ebook_output_dir=str(tmp_path / "ebooks"),
        backup_dir=str(tmp_path / "backups"),
    )
