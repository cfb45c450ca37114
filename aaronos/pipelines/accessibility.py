"""
Accessibility Scan Pipeline

WCAG compliance scan of a site.

Steps:
1. discover_pages - breadth-first crawl from the seed, restricted to allowed domains
2. scan_pages - accessibility audit per page (failed pages are excluded)
3. compile - per-page scores, overall score and summary
"""

import logging
from collections import deque
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import urldefrag, urlparse

from aaronos.browser import BrowserAutomation
from aaronos.jobs.job_types import AccessibilityIssue, PageScanResult, ScanParams, ScanResult, ScanSummary
from aaronos.jobs.runner import JobContext, Pipeline, PipelineStep
from aaronos.jobs.utils import utcnow

logger = logging.getLogger(__name__)

STEP_WEIGHTS = {
    "discover_pages": 15,
    "scan_pages": 70,
    "compile": 15,
}

IMPACT_LEVELS = ("critical", "serious", "moderate", "minor")
COMMON_ISSUE_LIMIT = 10


def host_allowed(host: Optional[str], domains: List[str]) -> bool:
    """Exact host match or a subdomain of an allowed domain."""
    if not host:
        return False
    host = host.lower().rstrip(".")
    for domain in domains:
        domain = domain.lower().strip(".")
        if host == domain or host.endswith("." + domain):
            return True
    return False


def normalize_link(url: str) -> Optional[str]:
    """Strip the fragment; None for anything that is not an http(s) URL."""
    url, _ = urldefrag(url.strip())
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return url


def page_score(passes: int, violations: int) -> int:
    total = passes + violations
    if total == 0:
        return 100
    return round(100 * passes / total)


def compile_results(pages: List[PageScanResult]) -> ScanResult:
    all_violations = [v for page in pages for v in page.violations]

    by_impact: Dict[str, int] = {level: 0 for level in IMPACT_LEVELS}
    for v in all_violations:
        by_impact[v.impact] = by_impact.get(v.impact, 0) + 1

    by_wcag_level: Dict[str, int] = {}
    for v in all_violations:
        for tag in v.wcag_tags:
            if tag.startswith("wcag"):
                by_wcag_level[tag] = by_wcag_level.get(tag, 0) + 1

    # Dicts keep insertion order, so ties stay in first-encountered order
    issue_counts: Dict[str, int] = {}
    first_seen: Dict[str, AccessibilityIssue] = {}
    for v in all_violations:
        if v.id not in first_seen:
            first_seen[v.id] = v
        issue_counts[v.id] = issue_counts.get(v.id, 0) + 1

    ranked = sorted(issue_counts, key=lambda issue_id: issue_counts[issue_id], reverse=True)
    common_issues = [first_seen[issue_id] for issue_id in ranked[:COMMON_ISSUE_LIMIT]]

    if pages:
        overall = round(sum(p.score for p in pages) / len(pages))
    else:
        overall = 100

    return ScanResult(
        overall_score=min(max(overall, 0), 100),
        pages_scanned=len(pages),
        total_violations=len(all_violations),
        critical_issues=by_impact["critical"],
        results=pages,
        summary=ScanSummary(
            by_impact=by_impact,
            by_wcag_level=by_wcag_level,
            common_issues=common_issues,
        ),
    )


class AccessibilityScanPipeline:
    """Builds the accessibility scan pipeline; one browser per run."""

    def __init__(
        self,
        browser_factory: Callable[[], BrowserAutomation],
        discovery_timeout_ms: int = 10000,
        scan_timeout_ms: int = 15000,
    ):
        self.browser_factory = browser_factory
        self.discovery_timeout_ms = discovery_timeout_ms
        self.scan_timeout_ms = scan_timeout_ms

    def build(self, params: ScanParams) -> Pipeline:
        browser = self.browser_factory()

        async def discover(ctx: JobContext) -> List[str]:
            return await self.discover_pages(ctx, browser)

        async def scan(ctx: JobContext) -> List[PageScanResult]:
            return await self.scan_pages(ctx, browser)

        async def compile_step(ctx: JobContext) -> ScanResult:
            return compile_results(ctx.state["scan_pages"])

        return Pipeline(
            steps=[
                PipelineStep("discover_pages", STEP_WEIGHTS["discover_pages"], discover),
                PipelineStep("scan_pages", STEP_WEIGHTS["scan_pages"], scan),
                PipelineStep("compile", STEP_WEIGHTS["compile"], compile_step),
            ],
            assemble=lambda ctx: ctx.state["compile"],
            cleanup=browser.close,
        )

    async def discover_pages(self, ctx: JobContext, browser: BrowserAutomation) -> List[str]:
        params: ScanParams = ctx.params
        seed = normalize_link(params.target_url) or params.target_url

        discovered: List[str] = [seed]
        seen: Set[str] = {seed}
        visited: Set[str] = set()
        queue = deque([seed])

        while queue and len(discovered) < params.max_pages:
            ctx.raise_if_cancelled()
            url = queue.popleft()
            if url in visited:
                continue
            visited.add(url)

            try:
                page = await browser.navigate(url, self.discovery_timeout_ms)
                links = await browser.extract_links(page)
            except Exception as e:
                logger.warning(f"[Job {ctx.work_id}] Failed to discover links on {url}: {e}")
                continue

            for link in links:
                link = normalize_link(link)
                if link is None or link in seen:
                    continue
                if not host_allowed(urlparse(link).hostname, params.domains):
                    continue
                if len(discovered) >= params.max_pages:
                    break
                seen.add(link)
                discovered.append(link)
                queue.append(link)

            ctx.report(len(discovered), params.max_pages)

        ctx.log(f"Found {len(discovered)} page(s) to scan")
        return discovered

    async def scan_pages(self, ctx: JobContext, browser: BrowserAutomation) -> List[PageScanResult]:
        urls: List[str] = ctx.state["discover_pages"]
        results: List[PageScanResult] = []

        for i, url in enumerate(urls):
            ctx.raise_if_cancelled()
            ctx.log(f"Scanning page {i + 1}/{len(urls)}: {url}")
            try:
                page = await browser.navigate(url, self.scan_timeout_ms)
                audit = await browser.run_accessibility_audit(page)
                results.append(PageScanResult(
                    url=url,
                    score=page_score(audit.passes, len(audit.violations)),
                    violations=audit.violations,
                    passes=audit.passes,
                    incomplete=audit.incomplete,
                    timestamp=utcnow(),
                ))
            except Exception as e:
                logger.warning(f"[Job {ctx.work_id}] Failed to scan {url}: {e}")
            ctx.report(i + 1, len(urls))

        return results
