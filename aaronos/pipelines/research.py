"""
Research Pipeline

Competitor analysis and market research for a free-text query.

Steps:
1. plan - generate 5-8 search sub-queries
2. gather - fetch one source per sub-query (bounded by depth)
3. competitors - competitor profiles (optional)
4. market - market size, growth, trends (optional)
5. synthesize - executive summary and key insights
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import quote_plus

import httpx
from bs4 import BeautifulSoup
from pydantic import AliasChoices, BaseModel, Field, ValidationError

from aaronos.jobs.job_types import CompetitorProfile, MarketData, ResearchParams, ResearchResult
from aaronos.jobs.runner import JobContext, Pipeline, PipelineStep
from aaronos.jobs.utils import decode_json_block
from aaronos.llm import TextGenerator

logger = logging.getLogger(__name__)

PLAN_TOKENS = 2048
ANALYSIS_TOKENS = 4096

SOURCES_BY_DEPTH = {
    "basic": 3,
    "standard": 5,
    "deep": 8,
}

STEP_WEIGHTS = {
    "plan": 15,
    "gather": 25,
    "competitors": 20,
    "market": 15,
    "synthesize": 25,
}

FALLBACK_SUMMARY = "Analysis completed with limited data."
FALLBACK_INSIGHTS = ["Further research recommended"]

# Characters of gathered source text included in each analysis prompt
ANALYSIS_CONTEXT_CHARS = 15000
SYNTHESIS_CONTEXT_CHARS = 10000


# ============================================================================
# Prompts
# ============================================================================

PLAN_PROMPT = """You are a research planning assistant. Given the following research query, generate 5-8 specific search queries that would help gather comprehensive information.

Research Query: {query}

Return ONLY a JSON array of search query strings, no other text.
Example: ["query 1", "query 2", "query 3"]"""

COMPETITORS_PROMPT = """Based on the following research data about "{query}", identify and analyze the top 3-5 competitors.

Research Data:
{data}

Provide analysis in JSON format:
{{
  "competitors": [
    {{
      "name": "Company Name",
      "url": "website",
      "description": "brief description",
      "strengths": ["strength 1", "strength 2"],
      "weaknesses": ["weakness 1", "weakness 2"],
      "market_position": "description of market position"
    }}
  ]
}}

Return ONLY valid JSON."""

MARKET_PROMPT = """Based on the following research data about "{query}", provide market analysis.

Research Data:
{data}

Provide analysis in JSON format:
{{
  "size": "estimated market size",
  "growth": "growth rate and trends",
  "trends": ["trend 1", "trend 2", "trend 3"],
  "opportunities": ["opportunity 1", "opportunity 2"],
  "threats": ["threat 1", "threat 2"]
}}

Return ONLY valid JSON."""

SYNTHESIZE_PROMPT = """You are a strategic business analyst. Synthesize the following research into actionable insights.

Research Query: {query}

Research Data:
{data}{competitors}{market}

Provide a comprehensive analysis with:
1. Executive summary (2-3 paragraphs)
2. 5-7 key strategic insights

Format as JSON:
{{
  "summary": "executive summary text",
  "key_points": ["insight 1", "insight 2", ...]
}}

Return ONLY valid JSON."""


# ============================================================================
# Sources
# ============================================================================

@dataclass
class Source:
    url: str
    title: str
    content: str


class SourceFetcher(ABC):
    """Fetches one source document for a search query."""

    @abstractmethod
    async def fetch(self, query: str) -> Source:
        ...

    async def close(self):
        return None


# Never part of the readable text of a page
SKIPPED_TAGS = ["script", "style", "noscript", "template", "svg"]


def extract_text(html: str) -> Tuple[str, str]:
    """Title and visible text of an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for element in soup(SKIPPED_TAGS + ["title"]):
        element.decompose()
    return title, soup.get_text(" ", strip=True)


class HttpSourceFetcher(SourceFetcher):
    """Fetches the search results page for a query and keeps its visible text."""

    MAX_CONTENT_CHARS = 5000

    def __init__(self, search_url: str, timeout_seconds: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        if "{query}" not in search_url:
            raise ValueError("search_url must contain a {query} placeholder")
        self.search_url = search_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                headers={"user-agent": "AaronOS-Research/1.0"},
            )
        return self._client

    async def fetch(self, query: str) -> Source:
        url = self.search_url.format(query=quote_plus(query))
        response = await self._get_client().get(url, timeout=self.timeout_seconds)
        response.raise_for_status()

        title, text = extract_text(response.text)
        content = text[:self.MAX_CONTENT_CHARS]
        if not content:
            raise ValueError(f"No readable content for query {query!r}")

        return Source(url=url, title=title or query, content=content)

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


# ============================================================================
# Scoring
# ============================================================================

class _Synthesis(BaseModel):
    summary: str = ""
    key_points: List[str] = Field(default_factory=list, validation_alias=AliasChoices("key_points", "keyPoints"))


def calculate_confidence(source_count: int, insight_count: int, summary_length: int) -> float:
    """Confidence in a research result based on data quality."""
    confidence = 0.5

    # More sources = higher confidence
    if source_count >= 5:
        confidence += 0.2
    elif source_count >= 3:
        confidence += 0.1

    # Quality insights = higher confidence
    if insight_count >= 5:
        confidence += 0.15
    if summary_length > 200:
        confidence += 0.15

    return round(min(max(confidence, 0.0), 1.0), 4)


def _data_context(sources: List[Source], limit: int) -> str:
    context = "\n\n---\n\n".join(f"Source: {s.url}\n{s.content}" for s in sources)
    return context[:limit] if context else "No source data could be gathered."


# ============================================================================
# Pipeline
# ============================================================================

class ResearchPipeline:
    """Builds the research pipeline for one set of params."""

    def __init__(self, generator: TextGenerator, fetcher: SourceFetcher):
        self.generator = generator
        self.fetcher = fetcher

    def build(self, params: ResearchParams) -> Pipeline:
        steps = [
            PipelineStep("plan", STEP_WEIGHTS["plan"], self.plan),
            PipelineStep("gather", STEP_WEIGHTS["gather"], self.gather),
        ]
        if params.include_competitors:
            steps.append(PipelineStep("competitors", STEP_WEIGHTS["competitors"], self.analyze_competitors))
        if params.include_market_data:
            steps.append(PipelineStep("market", STEP_WEIGHTS["market"], self.analyze_market))
        steps.append(PipelineStep("synthesize", STEP_WEIGHTS["synthesize"], self.synthesize))

        return Pipeline(steps=steps, assemble=self.assemble)

    async def plan(self, ctx: JobContext) -> List[str]:
        query = ctx.params.query
        fallback = [
            query,
            f"{query} market analysis",
            f"{query} competitors",
            f"{query} trends",
        ]

        text = await self.generator.generate(PLAN_PROMPT.format(query=query), PLAN_TOKENS)
        queries = decode_json_block(text, "array", fallback)
        queries = [q.strip() for q in queries if isinstance(q, str) and q.strip()]
        if not queries:
            queries = fallback

        ctx.log(f"Research plan has {len(queries)} search queries")
        return queries

    async def gather(self, ctx: JobContext) -> List[Source]:
        limit = SOURCES_BY_DEPTH[ctx.params.depth]
        queries = ctx.state["plan"][:limit]
        sources: List[Source] = []

        for i, query in enumerate(queries):
            ctx.raise_if_cancelled()
            try:
                sources.append(await self.fetcher.fetch(query))
            except Exception as e:
                logger.warning(f"[Job {ctx.work_id}] Failed to fetch data for query {query!r}: {e}")
            ctx.report(i + 1, len(queries))

        ctx.log(f"Gathered {len(sources)} of {len(queries)} sources")
        return sources

    async def analyze_competitors(self, ctx: JobContext) -> List[CompetitorProfile]:
        prompt = COMPETITORS_PROMPT.format(
            query=ctx.params.query,
            data=_data_context(ctx.state["gather"], ANALYSIS_CONTEXT_CHARS),
        )
        text = await self.generator.generate(prompt, ANALYSIS_TOKENS)

        decoded = decode_json_block(text, "object", {})
        raw_competitors = decoded.get("competitors") if isinstance(decoded, dict) else None
        if not isinstance(raw_competitors, list):
            return []

        competitors = []
        for item in raw_competitors:
            try:
                competitors.append(CompetitorProfile.model_validate(item))
            except ValidationError:
                logger.warning(f"[Job {ctx.work_id}] Skipping malformed competitor entry")
        return competitors

    async def analyze_market(self, ctx: JobContext) -> MarketData:
        prompt = MARKET_PROMPT.format(
            query=ctx.params.query,
            data=_data_context(ctx.state["gather"], ANALYSIS_CONTEXT_CHARS),
        )
        text = await self.generator.generate(prompt, ANALYSIS_TOKENS)
        return decode_json_block(text, "object", MarketData(), model=MarketData)

    async def synthesize(self, ctx: JobContext) -> _Synthesis:
        competitors = ctx.state.get("competitors")
        market = ctx.state.get("market")

        competitor_context = ""
        if competitors is not None:
            competitor_context = "\n\nCompetitor Analysis:\n" + json.dumps(
                [c.model_dump() for c in competitors], indent=2
            )
        market_context = ""
        if market is not None:
            market_context = "\n\nMarket Data:\n" + json.dumps(market.model_dump(), indent=2)

        prompt = SYNTHESIZE_PROMPT.format(
            query=ctx.params.query,
            data=_data_context(ctx.state["gather"], SYNTHESIS_CONTEXT_CHARS),
            competitors=competitor_context,
            market=market_context,
        )
        text = await self.generator.generate(prompt, ANALYSIS_TOKENS)

        fallback = _Synthesis(summary=FALLBACK_SUMMARY, key_points=list(FALLBACK_INSIGHTS))
        synthesis = decode_json_block(text, "object", fallback, model=_Synthesis)
        if not synthesis.summary.strip():
            return fallback
        return synthesis

    def assemble(self, ctx: JobContext) -> ResearchResult:
        sources: List[Source] = ctx.state["gather"]
        synthesis: _Synthesis = ctx.state["synthesize"]

        return ResearchResult(
            summary=synthesis.summary,
            insights=synthesis.key_points,
            competitors=ctx.state.get("competitors"),
            market_data=ctx.state.get("market"),
            sources=[s.url for s in sources],
            confidence=calculate_confidence(len(sources), len(synthesis.key_points), len(synthesis.summary)),
        )
