"""
Job Types and Schemas

Defines enums, work records, request parameters and the per-kind result
payloads for long-running AI jobs.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator, model_validator


class WorkKind(str, Enum):
    """Kinds of long-running work supported by AaronOS."""
    RESEARCH = "research"
    BOOK_GENERATION = "book_generation"
    ACCESSIBILITY_SCAN = "accessibility_scan"


class WorkStatus(str, Enum):
    """Status of a work record."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({WorkStatus.COMPLETED, WorkStatus.FAILED, WorkStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    WorkStatus.PENDING: frozenset({WorkStatus.RUNNING, WorkStatus.CANCELLED}),
    WorkStatus.RUNNING: frozenset({WorkStatus.COMPLETED, WorkStatus.FAILED, WorkStatus.CANCELLED}),
    WorkStatus.COMPLETED: frozenset(),
    WorkStatus.FAILED: frozenset(),
    WorkStatus.CANCELLED: frozenset(),
}


class WorkRecord(BaseModel):
    """One invocation of a long-running job."""
    id: str
    kind: WorkKind
    owner_id: str
    status: WorkStatus = WorkStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    stage: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    failing_stage: Optional[str] = None
    # Exception class name behind `error`, used to pick a user-facing hint
    error_type: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def typed_result(self) -> Optional["WorkResult"]:
        """Parse the stored payload back into its tagged result variant."""
        if not self.result:
            return None
        return WORK_RESULT_ADAPTER.validate_python(self.result)


# ============================================================================
# Request parameter schemas
# ============================================================================

class ResearchParams(BaseModel):
    """Parameters for a research job."""
    query: str = Field(..., min_length=1, max_length=2000)
    include_competitors: bool = False
    include_market_data: bool = False
    depth: Literal["basic", "standard", "deep"] = "standard"

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v.strip()


class OutlineChapter(BaseModel):
    number: int = Field(..., ge=1)
    title: str = Field(..., min_length=1)
    sections: List[str] = Field(default_factory=list)
    key_points: Optional[List[str]] = None


class BookOutline(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    author: Optional[str] = None
    chapters: List[OutlineChapter] = Field(default_factory=list)
    style: Literal["professional", "casual", "academic", "narrative"] = "professional"
    target_length: int = Field(default=1500, ge=100, le=20000)  # words per chapter


class BookParams(BaseModel):
    """Parameters for a book generation job."""
    outline: BookOutline
    format: Literal["pdf", "docx", "epub"] = "pdf"


class ScanParams(BaseModel):
    """Parameters for an accessibility scan job."""
    target_url: str
    domains: List[str] = Field(default_factory=list)
    benchmark: Optional[str] = None
    max_pages: int = Field(default=10, ge=1, le=100)

    @field_validator("target_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError("target_url must be an absolute http(s) URL")
        return v.strip()

    @model_validator(mode="after")
    def _default_domains(self) -> "ScanParams":
        domains = [d.strip().lower() for d in self.domains if d and d.strip()]
        if not domains:
            domains = [urlparse(self.target_url).hostname.lower()]
        self.domains = domains
        return self


PARAMS_BY_KIND = {
    WorkKind.RESEARCH: ResearchParams,
    WorkKind.BOOK_GENERATION: BookParams,
    WorkKind.ACCESSIBILITY_SCAN: ScanParams,
}


# ============================================================================
# Result payloads (tagged by kind)
# ============================================================================

class CompetitorProfile(BaseModel):
    name: str
    url: str = ""
    description: str = ""
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    market_position: str = Field(default="", validation_alias=AliasChoices("market_position", "marketPosition"))


class MarketData(BaseModel):
    size: str = "Data unavailable"
    growth: str = "Data unavailable"
    trends: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    threats: List[str] = Field(default_factory=list)


class ResearchResult(BaseModel):
    kind: Literal["research"] = "research"
    summary: str
    insights: List[str] = Field(default_factory=list)
    competitors: Optional[List[CompetitorProfile]] = None
    market_data: Optional[MarketData] = None
    sources: List[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)


class GeneratedChapter(BaseModel):
    number: int
    title: str
    content: str
    word_count: int = Field(..., ge=0)


class BookResult(BaseModel):
    kind: Literal["book_generation"] = "book_generation"
    title: str
    chapters: List[GeneratedChapter] = Field(default_factory=list)
    total_words: int = 0
    file_path: str
    format: Literal["pdf", "docx", "epub"]
    quality: float = Field(..., ge=0.0, le=1.0)
    generated_at: datetime


class IssueNode(BaseModel):
    target: List[str] = Field(default_factory=list)
    html: str = ""
    failure_summary: str = ""


class AccessibilityIssue(BaseModel):
    id: str
    impact: Literal["critical", "serious", "moderate", "minor"]
    description: str = ""
    help: str = ""
    help_url: str = ""
    wcag_tags: List[str] = Field(default_factory=list)
    nodes: List[IssueNode] = Field(default_factory=list)


class PageScanResult(BaseModel):
    url: str
    score: int = Field(..., ge=0, le=100)
    violations: List[AccessibilityIssue] = Field(default_factory=list)
    passes: int = 0
    incomplete: int = 0
    timestamp: datetime


class ScanSummary(BaseModel):
    by_impact: Dict[str, int] = Field(default_factory=dict)
    by_wcag_level: Dict[str, int] = Field(default_factory=dict)
    common_issues: List[AccessibilityIssue] = Field(default_factory=list)


class ScanResult(BaseModel):
    kind: Literal["accessibility_scan"] = "accessibility_scan"
    overall_score: int = Field(..., ge=0, le=100)
    pages_scanned: int = 0
    total_violations: int = 0
    critical_issues: int = 0
    results: List[PageScanResult] = Field(default_factory=list)
    summary: ScanSummary = Field(default_factory=ScanSummary)


WorkResult = Annotated[Union[ResearchResult, BookResult, ScanResult], Field(discriminator="kind")]
WORK_RESULT_ADAPTER = TypeAdapter(WorkResult)

RESULT_BY_KIND = {
    WorkKind.RESEARCH: ResearchResult,
    WorkKind.BOOK_GENERATION: BookResult,
    WorkKind.ACCESSIBILITY_SCAN: ScanResult,
}


# ============================================================================
# API Response Schemas
# ============================================================================

class WorkStartResponse(BaseModel):
    """Response when starting a job."""
    work_id: str
    kind: WorkKind
    status: WorkStatus


class WorkStatusResponse(BaseModel):
    """Polling view of a job."""
    work_id: str
    kind: WorkKind
    status: WorkStatus
    progress: int
    stage: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None
    can_cancel: bool = False


class WorkListResponse(BaseModel):
    items: List[WorkRecord]
    total_count: int
