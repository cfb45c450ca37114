"""
Browser automation capability used by the accessibility scan.

The scan pipeline only needs four operations: navigate to a URL, list the
links on the loaded page, run an accessibility audit, and close.
PlaywrightBrowser drives headless Chromium, so links added by scripts are
discovered, and audits pages with axe-core.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from axe_playwright_python.async_playwright import Axe
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from aaronos.jobs.job_types import AccessibilityIssue, IssueNode

logger = logging.getLogger(__name__)

# axe reports a null impact for some rules; count those with the middle levels
DEFAULT_IMPACT = "moderate"


class NavigationError(Exception):
    """A page could not be loaded."""


@dataclass
class PageHandle:
    """A loaded page. Only valid until the next navigate() on the same browser."""
    url: str
    status_code: Optional[int] = None
    page: Any = field(default=None, repr=False)


@dataclass
class AuditResult:
    violations: List[AccessibilityIssue] = field(default_factory=list)
    passes: int = 0
    incomplete: int = 0


class BrowserAutomation(ABC):
    """Minimal browser surface consumed by the accessibility scan."""

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> PageHandle:
        """Load a page. Raises NavigationError on failure or timeout."""

    @abstractmethod
    async def extract_links(self, page: PageHandle) -> List[str]:
        """Absolute URLs of every <a href> on the page."""

    @abstractmethod
    async def run_accessibility_audit(self, page: PageHandle) -> AuditResult:
        ...

    @abstractmethod
    async def close(self):
        ...


# =============================================================================
# AXE RESULTS
# =============================================================================

def _selector(target: Any) -> str:
    # Targets inside iframes or shadow roots come back as a list of selectors
    if isinstance(target, list):
        return " ".join(str(part) for part in target)
    return str(target)


def parse_axe_response(response: Dict[str, Any]) -> AuditResult:
    """Convert a raw axe-core results object into an AuditResult."""
    violations = []
    for rule in response.get("violations", []):
        violations.append(AccessibilityIssue(
            id=rule["id"],
            impact=rule.get("impact") or DEFAULT_IMPACT,
            description=rule.get("description", ""),
            help=rule.get("help", ""),
            help_url=rule.get("helpUrl", ""),
            wcag_tags=list(rule.get("tags", [])),
            nodes=[
                IssueNode(
                    target=[_selector(t) for t in node.get("target", [])],
                    html=node.get("html", ""),
                    failure_summary=node.get("failureSummary") or "",
                )
                for node in rule.get("nodes", [])
            ],
        ))

    return AuditResult(
        violations=violations,
        passes=len(response.get("passes", [])),
        incomplete=len(response.get("incomplete", [])),
    )


# =============================================================================
# PLAYWRIGHT BROWSER
# =============================================================================

class PlaywrightBrowser(BrowserAutomation):
    """
    BrowserAutomation over headless Chromium.

    The browser is launched lazily on the first navigate(). Each navigate()
    opens a fresh page and closes the previous one.
    """

    USER_AGENT = "AaronOS-AccessibilityScanner/1.0"
    LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._axe = Axe()
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def _get_context(self):
        if self._context is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=self.LAUNCH_ARGS,
            )
            self._context = await self._browser.new_context(user_agent=self.USER_AGENT)
            logger.info("Launched headless Chromium for accessibility scanning")
        return self._context

    async def _close_page(self):
        if self._page is not None:
            page, self._page = self._page, None
            try:
                await page.close()
            except PlaywrightError as e:
                logger.warning(f"Failed to close page: {e}")

    async def navigate(self, url: str, timeout_ms: int) -> PageHandle:
        context = await self._get_context()
        await self._close_page()
        self._page = await context.new_page()

        try:
            response = await self._page.goto(url, timeout=timeout_ms, wait_until="networkidle")
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out loading {url} after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise NavigationError(f"Failed to load {url}: {e.message}") from e

        status = response.status if response is not None else None
        if status is not None and status >= 400:
            raise NavigationError(f"{url} returned HTTP {status}")

        return PageHandle(url=self._page.url, status_code=status, page=self._page)

    async def extract_links(self, page: PageHandle) -> List[str]:
        return await page.page.eval_on_selector_all("a[href]", "els => els.map(e => e.href)")

    async def run_accessibility_audit(self, page: PageHandle) -> AuditResult:
        results = await self._axe.run(page.page)
        return parse_axe_response(results.response)

    async def close(self):
        await self._close_page()
        if self._context is not None:
            await self._context.close()
            self._context = None
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
