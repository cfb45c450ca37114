"""
Job Utilities

Shared utilities for job pipelines including progress helpers, decoding of
structured output embedded in generated text, and error formatting.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def safe_json_value(value: Any) -> Any:
    """Convert value to JSON-safe format."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [safe_json_value(v) for v in value]
    if isinstance(value, dict):
        return {k: safe_json_value(v) for k, v in value.items()}
    return str(value)


def count_words(text: str) -> int:
    """Whitespace-delimited word count; empty or blank text has zero words."""
    return len(text.split()) if text else 0


def decode_json_block(
    text: Optional[str],
    expect: str,
    fallback: T,
    model: Optional[Type[BaseModel]] = None,
) -> Any:
    """
    Best-effort extraction of a JSON value embedded in free-form generated text.

    Looks inside ```json fences first, then scans for the outermost {...}
    (expect="object") or [...] (expect="array") span. When a pydantic model is
    given the decoded value is validated with it (lists validate element-wise).
    Any failure returns the fallback unchanged.
    """
    if expect not in ("object", "array"):
        raise ValueError(f"expect must be 'object' or 'array', got {expect!r}")

    if not text:
        return fallback

    candidates: List[str] = [m.group(1) for m in _FENCE_RE.finditer(text)]
    candidates.append(text)

    pattern = _OBJECT_RE if expect == "object" else _ARRAY_RE
    wanted = dict if expect == "object" else list

    for candidate in candidates:
        match = pattern.search(candidate)
        if not match:
            continue
        try:
            value = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if not isinstance(value, wanted):
            continue
        if model is None:
            return value
        try:
            if isinstance(value, list):
                return [model.model_validate(item) for item in value]
            return model.model_validate(value)
        except ValidationError as e:
            logger.warning(f"Decoded JSON failed validation against {model.__name__}: {e.error_count()} error(s)")
            return fallback

    logger.warning(f"No usable JSON {expect} found in generated text ({len(text)} chars)")
    return fallback


class ProgressTracker:
    """
    Maps weighted pipeline steps onto the 0-100 progress scale.

    Usage:
        tracker = ProgressTracker([
            ("plan", 15),
            ("gather", 25),
            ("synthesize", 25),
        ], floor=5)

        tracker.stage("plan")          # percent when the step starts
        tracker.complete("plan")       # percent when the step ends
        tracker.progress("gather", 2, 5)  # percent part-way through a step

    Weights are normalized, so they do not need to sum to 100. The last step
    always completes at exactly 100.
    """

    def __init__(self, stages: Sequence[Tuple[str, float]], floor: int = 0):
        self.floor = floor
        self.stages: Dict[str, Dict[str, float]] = {}

        total = sum(max(0.0, float(weight)) for _, weight in stages)
        span = 100 - floor
        cumulative = 0.0

        for name, weight in stages:
            weight = max(0.0, float(weight))
            start = floor + (span * cumulative / total if total else span)
            cumulative += weight
            end = floor + (span * cumulative / total if total else span)
            self.stages[name] = {"start": start, "weight": end - start, "end": end}

    def stage(self, name: str) -> int:
        """Percent at the start of a step."""
        if name not in self.stages:
            return self.floor
        return int(round(self.stages[name]["start"]))

    def complete(self, name: str) -> int:
        """Percent at the end of a step."""
        if name not in self.stages:
            return 100
        return int(round(self.stages[name]["end"]))

    def progress(self, name: str, current: int, total: int) -> int:
        """Percent for progress within a step."""
        if name not in self.stages:
            return self.floor
        if total <= 0:
            return self.complete(name)

        stage = self.stages[name]
        stage_progress = min(max(current / total, 0.0), 1.0)
        return int(round(stage["start"] + stage["weight"] * stage_progress))


def get_error_hint(error_type: str, message: str) -> str:
    """Get a user-friendly hint based on error type and message."""
    message_lower = message.lower()

    if "quota" in message_lower or "rate limit" in message_lower:
        return "AI service quota exceeded. Please wait a few minutes and try again."

    if "timeout" in message_lower or "timed out" in message_lower:
        return "The operation timed out. Try a smaller request or try again later."

    if "permission" in message_lower or "unauthorized" in message_lower:
        return "Permission denied. Please ensure you have access to the required resources."

    if "not found" in message_lower:
        return "A required resource was not found. It may have been deleted or moved."

    if error_type == "ValidationError":
        return "The input data is invalid. Please check the data format and try again."

    if error_type in ("ConnectionError", "ConnectError", "NavigationError"):
        return "Could not connect to required services. Please check the target address and try again."

    if error_type == "ChapterGenerationError":
        return "A chapter could not be generated. Please start a new generation."

    return "An error occurred while processing. Please start a new job or contact support if the issue persists."


def describe_exception(exc: BaseException) -> str:
    """Human-readable message for an exception; never empty."""
    message = str(exc).strip()
    return message or type(exc).__name__
