"""
Book Generation Pipeline

Turns an outline into a complete eBook file.

Steps:
1. enhance_outline - editor pass over the outline (original kept on failure)
2. chapters - one generation call per chapter, in order
3. quality_check - advisory length and consistency warnings
4. export - PDF / DOCX / EPUB written to the output directory
"""

import asyncio
import functools
import json
import logging
from typing import List

from pydantic import ValidationError

from aaronos.jobs.job_types import BookOutline, BookParams, BookResult, GeneratedChapter, OutlineChapter
from aaronos.jobs.runner import JobContext, Pipeline, PipelineStep
from aaronos.jobs.utils import count_words, decode_json_block, utcnow
from aaronos.llm import GenerationError, TextGenerator
from aaronos.pipelines.exporters import write_book

logger = logging.getLogger(__name__)

OUTLINE_TOKENS = 4096
CHAPTER_TOKENS = 8192

STEP_WEIGHTS = {
    "enhance_outline": 10,
    "chapters": 70,
    "quality_check": 5,
    "export": 15,
}

MIN_CHAPTER_WORDS = 500
DEFAULT_AUTHOR = "Unknown"

STYLE_GUIDES = {
    "professional": "Clear, authoritative, business-appropriate. Use active voice and concrete examples.",
    "casual": "Friendly, conversational, relatable. Feel free to use personal anecdotes and humor.",
    "academic": "Scholarly, well-researched, citation-based. Formal tone with analytical depth.",
    "narrative": "Story-driven, engaging, character-focused. Use vivid descriptions and compelling storytelling.",
}


class ChapterGenerationError(Exception):
    """A chapter came back empty or could not be generated."""


ENHANCE_PROMPT = """You are an expert book editor. Review and enhance this eBook outline to ensure logical flow and comprehensive coverage.

Current Outline:
{outline}

Provide an enhanced version with:
1. Validated chapter order
2. Additional key points for each chapter if needed
3. Suggested improvements to section structure

Return the enhanced outline in the same JSON format."""

CHAPTER_PROMPT = """You are a professional writer creating content for an eBook titled "{book_title}".

Write Chapter {number}: "{title}"

Style: {style_guide}
Target Length: Approximately {target_length} words
Sections to Cover: {sections}
Key Points: {key_points}

Requirements:
- Engaging and well-structured content
- Clear transitions between sections
- Practical examples and insights where appropriate
- Professional tone appropriate for the subject matter
- {register}

Write the complete chapter content now."""


def calculate_quality(word_counts: List[int], target_length: int) -> float:
    """
    Overall quality score in [0, 1].

    Base 0.7, +0.15 for consistent chapter lengths (population variance below
    30% of the mean), +0.15 when at least 80% of chapters reach 80% of the
    target length. No chapters scores the base.
    """
    quality = 0.7
    if not word_counts:
        return quality

    n = len(word_counts)
    mean = sum(word_counts) / n
    variance = sum((w - mean) ** 2 for w in word_counts) / n
    if variance < mean * 0.3:
        quality += 0.15

    target_met = sum(1 for w in word_counts if w >= target_length * 0.8)
    if target_met / n >= 0.8:
        quality += 0.15

    return round(min(max(quality, 0.0), 1.0), 4)


def quality_warnings(chapters: List[GeneratedChapter], target_length: int) -> List[str]:
    """Advisory messages about chapter length; never fatal."""
    warnings: List[str] = []
    if not chapters:
        return warnings

    too_short = [ch for ch in chapters if ch.word_count < MIN_CHAPTER_WORDS]
    if too_short:
        warnings.append(f"{len(too_short)} chapter(s) are shorter than {MIN_CHAPTER_WORDS} words")

    under_target = [ch for ch in chapters if ch.word_count < target_length / 2]
    if under_target:
        numbers = ", ".join(str(ch.number) for ch in under_target)
        warnings.append(f"Chapter(s) {numbers} are under half the target length of {target_length} words")

    mean = sum(ch.word_count for ch in chapters) / len(chapters)
    inconsistent = [ch for ch in chapters if abs(ch.word_count - mean) > mean * 0.5]
    if len(inconsistent) > 2:
        warnings.append("Chapter lengths vary significantly")

    return warnings


class BookPipeline:
    """Builds the book generation pipeline for one set of params."""

    def __init__(self, generator: TextGenerator, output_dir: str):
        self.generator = generator
        self.output_dir = output_dir

    def build(self, params: BookParams) -> Pipeline:
        return Pipeline(
            steps=[
                PipelineStep("enhance_outline", STEP_WEIGHTS["enhance_outline"], self.enhance_outline),
                PipelineStep("chapters", STEP_WEIGHTS["chapters"], self.generate_chapters),
                PipelineStep("quality_check", STEP_WEIGHTS["quality_check"], self.quality_check),
                PipelineStep("export", STEP_WEIGHTS["export"], self.export),
            ],
            assemble=self.assemble,
        )

    async def enhance_outline(self, ctx: JobContext) -> BookOutline:
        outline: BookOutline = ctx.params.outline
        prompt = ENHANCE_PROMPT.format(outline=json.dumps(outline.model_dump(), indent=2))
        text = await self.generator.generate(prompt, OUTLINE_TOKENS)

        enhanced = decode_json_block(text, "object", None)
        if not enhanced:
            ctx.log("Failed to parse enhanced outline, using original")
            return outline

        try:
            merged = BookOutline.model_validate({**outline.model_dump(), **enhanced})
        except ValidationError as e:
            ctx.log(f"Enhanced outline failed validation ({e.error_count()} error(s)), using original")
            return outline

        ctx.log(f"Outline enhanced: {len(merged.chapters)} chapter(s)")
        return merged

    async def _generate_chapter(self, outline: BookOutline, chapter: OutlineChapter) -> GeneratedChapter:
        prompt = CHAPTER_PROMPT.format(
            book_title=outline.title,
            number=chapter.number,
            title=chapter.title,
            style_guide=STYLE_GUIDES.get(outline.style, STYLE_GUIDES["professional"]),
            target_length=outline.target_length,
            sections=", ".join(chapter.sections) or "None specified",
            key_points="; ".join(chapter.key_points or []) or "None specified",
            register=(
                "Citations and references where needed"
                if outline.style == "academic"
                else "Conversational yet authoritative"
            ),
        )

        try:
            text = await self.generator.generate(prompt, CHAPTER_TOKENS)
        except GenerationError as e:
            raise ChapterGenerationError(f"Chapter {chapter.number} ({chapter.title}) could not be generated: {e}") from e

        word_count = count_words(text)
        if word_count == 0:
            raise ChapterGenerationError(f"Chapter {chapter.number} ({chapter.title}) generated no content")

        return GeneratedChapter(
            number=chapter.number,
            title=chapter.title,
            content=text.strip(),
            word_count=word_count,
        )

    async def generate_chapters(self, ctx: JobContext) -> List[GeneratedChapter]:
        outline: BookOutline = ctx.state["enhance_outline"]
        total = len(outline.chapters)
        generated: List[GeneratedChapter] = []

        for i, chapter in enumerate(outline.chapters):
            ctx.raise_if_cancelled()
            ctx.log(f"Generating chapter {i + 1}/{total}: {chapter.title}")
            generated.append(await self._generate_chapter(outline, chapter))
            ctx.report(i + 1, total)

        return generated

    async def quality_check(self, ctx: JobContext):
        outline: BookOutline = ctx.state["enhance_outline"]
        for message in quality_warnings(ctx.state["chapters"], outline.target_length):
            ctx.warn(message)

    async def export(self, ctx: JobContext) -> str:
        outline: BookOutline = ctx.state["enhance_outline"]
        fmt = ctx.params.format
        ctx.log(f"Exporting to {fmt.upper()}...")

        # Rendering and the file write are blocking, keep them off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(
            write_book,
            self.output_dir,
            ctx.work_id,
            fmt,
            outline.title,
            outline.author or DEFAULT_AUTHOR,
            ctx.state["chapters"],
        ))

    def assemble(self, ctx: JobContext) -> BookResult:
        outline: BookOutline = ctx.state["enhance_outline"]
        chapters: List[GeneratedChapter] = ctx.state["chapters"]

        return BookResult(
            title=outline.title,
            chapters=chapters,
            total_words=sum(ch.word_count for ch in chapters),
            file_path=ctx.state["export"],
            format=ctx.params.format,
            quality=calculate_quality([ch.word_count for ch in chapters], outline.target_length),
            generated_at=utcnow(),
        )
