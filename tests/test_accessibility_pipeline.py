"""
Tests for the accessibility scan pipeline.
"""

import asyncio
from unittest.mock import patch

from aaronos.browser import AuditResult
from aaronos.jobs.job_types import AccessibilityIssue, PageScanResult, ScanResult, WorkKind, WorkStatus
from aaronos.jobs.utils import utcnow
from aaronos.pipelines.accessibility import (
    AccessibilityScanPipeline,
    compile_results,
    host_allowed,
    normalize_link,
    page_score,
)
from conftest import FakeBrowser


def _issue(issue_id, impact="serious", tags=("wcag2a",)):
    return AccessibilityIssue(id=issue_id, impact=impact, wcag_tags=list(tags))


def _run(manager, runner, browser, **params):
    pipeline = AccessibilityScanPipeline(lambda: browser)
    runner.register_pipeline(WorkKind.ACCESSIBILITY_SCAN, pipeline.build)
    record = manager.create_work(WorkKind.ACCESSIBILITY_SCAN, "owner-1", params)
    return asyncio.run(runner.execute(record.id))


def _page(url, score, *issues):
    return PageScanResult(url=url, score=score, violations=list(issues), passes=1, timestamp=utcnow())


GOOD_PAGE = AuditResult(passes=12)

BAD_PAGE = AuditResult(
    violations=[
        _issue("image-alt", "critical", ("wcag2a", "wcag111")),
        _issue("html-has-lang", "serious", ("wcag2a", "wcag311")),
        _issue("document-title", "serious", ("wcag2a", "wcag242")),
        _issue("button-name", "critical", ("wcag2a", "wcag412")),
        _issue("link-name", "serious", ("wcag2a", "wcag244")),
    ],
    passes=3,
    incomplete=1,
)


class TestHelpers:

    def test_host_allowed(self):
        assert host_allowed("example.com", ["example.com"])
        assert host_allowed("docs.example.com", ["example.com"])
        assert host_allowed("EXAMPLE.com", ["example.com"])
        assert not host_allowed("badexample.com", ["example.com"])
        assert not host_allowed("example.org", ["example.com"])
        assert not host_allowed(None, ["example.com"])

    def test_normalize_link(self):
        assert normalize_link("https://example.com/a#top") == "https://example.com/a"
        assert normalize_link("mailto:someone@example.com") is None
        assert normalize_link("ftp://example.com/file") is None

    def test_page_score(self):
        assert page_score(0, 0) == 100
        assert page_score(3, 1) == 75
        assert page_score(0, 5) == 0


class TestCompileResults:

    def test_no_pages(self):
        result = compile_results([])
        assert result.overall_score == 100
        assert result.pages_scanned == 0
        assert result.total_violations == 0
        assert result.summary.by_impact == {"critical": 0, "serious": 0, "moderate": 0, "minor": 0}

    def test_summary_counts(self):
        pages = [
            _page("https://e.com/1", 50, _issue("image-alt", "critical", ("wcag2a", "wcag111")), _issue("link-name")),
            _page("https://e.com/2", 80, _issue("link-name")),
        ]
        result = compile_results(pages)

        assert result.overall_score == 65
        assert result.pages_scanned == 2
        assert result.total_violations == 3
        assert result.critical_issues == 1
        assert result.summary.by_impact["serious"] == 2
        assert result.summary.by_wcag_level == {"wcag2a": 3, "wcag111": 1}
        assert [i.id for i in result.summary.common_issues] == ["link-name", "image-alt"]

    def test_common_issue_ties_keep_first_seen_order(self):
        pages = [_page("https://e.com/1", 10, _issue("b"), _issue("a"), _issue("c"))]
        result = compile_results(pages)
        assert [i.id for i in result.summary.common_issues] == ["b", "a", "c"]

    def test_common_issues_capped_at_ten(self):
        issues = [_issue(f"rule-{i}") for i in range(15)]
        result = compile_results([_page("https://e.com/1", 0, *issues)])
        assert len(result.summary.common_issues) == 10


class TestAccessibilityScanPipeline:

    def test_unreachable_seed_scores_100(self, manager, runner):
        browser = FakeBrowser()

        final = _run(manager, runner, browser, target_url="https://down.example.com", max_pages=1)

        assert final.status == WorkStatus.COMPLETED
        result = final.typed_result()
        assert isinstance(result, ScanResult)
        assert result.pages_scanned == 0
        assert result.overall_score == 100
        assert browser.closed

    def test_crawl_stays_on_allowed_domains(self, manager, runner):
        browser = FakeBrowser(
            pages={
                "https://example.com/": GOOD_PAGE,
                "https://example.com/about": BAD_PAGE,
                "https://blog.example.com/post": GOOD_PAGE,
                "https://other.org/": GOOD_PAGE,
            },
            links={
                "https://example.com/": [
                    "https://example.com/about#team",
                    "https://other.org/",
                    "https://blog.example.com/post",
                    "mailto:hi@example.com",
                ],
            },
        )

        final = _run(manager, runner, browser, target_url="https://example.com/", max_pages=10)

        assert final.status == WorkStatus.COMPLETED
        scanned = [page["url"] for page in final.result["results"]]
        assert scanned == [
            "https://example.com/",
            "https://example.com/about",
            "https://blog.example.com/post",
        ]
        assert "https://other.org/" not in browser.navigated

    def test_max_pages_bounds_discovery(self, manager, runner):
        links = [f"https://example.com/p{i}" for i in range(20)]
        browser = FakeBrowser(
            pages={"https://example.com/": GOOD_PAGE, **{link: GOOD_PAGE for link in links}},
            links={"https://example.com/": links},
        )

        final = _run(manager, runner, browser, target_url="https://example.com/", max_pages=3)

        assert final.result["pages_scanned"] == 3

    def test_page_scores_and_violations(self, manager, runner):
        browser = FakeBrowser(
            pages={"https://example.com/": GOOD_PAGE, "https://example.com/bad": BAD_PAGE},
            links={"https://example.com/": ["https://example.com/bad"]},
        )

        final = _run(manager, runner, browser, target_url="https://example.com/")
        result = final.typed_result()

        good, bad = result.results
        assert good.score == 100
        assert good.violations == []
        violation_ids = {v.id for v in bad.violations}
        assert {"image-alt", "html-has-lang", "document-title", "button-name", "link-name"} <= violation_ids
        assert bad.score == 38
        assert bad.incomplete == 1
        assert result.critical_issues >= 2
        assert result.overall_score == round((good.score + bad.score) / 2)

    def test_failed_pages_are_excluded(self, manager, runner):
        browser = FakeBrowser(
            pages={"https://example.com/": GOOD_PAGE},
            links={"https://example.com/": ["https://example.com/gone"]},
        )

        final = _run(manager, runner, browser, target_url="https://example.com/")

        assert final.status == WorkStatus.COMPLETED
        assert [p["url"] for p in final.result["results"]] == ["https://example.com/"]
        assert browser.closed

    def test_link_extraction_failure_is_not_fatal(self, manager, runner):
        class NoLinksBrowser(FakeBrowser):
            async def extract_links(self, page):
                raise RuntimeError("unexpected markup")

        browser = NoLinksBrowser(pages={"https://example.com/": GOOD_PAGE})

        final = _run(manager, runner, browser, target_url="https://example.com/")

        assert final.status == WorkStatus.COMPLETED
        assert final.result["pages_scanned"] == 1

    def test_browser_closed_on_failure(self, manager, runner):
        browser = FakeBrowser(pages={"https://example.com/": GOOD_PAGE})

        with patch(
            "aaronos.pipelines.accessibility.compile_results",
            side_effect=RuntimeError("compile exploded"),
        ):
            final = _run(manager, runner, browser, target_url="https://example.com/")

        assert final.status == WorkStatus.FAILED
        assert final.failing_stage == "compile"
        assert final.error == "compile exploded"
        assert browser.closed
