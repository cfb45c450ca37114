"""
Text generation capability used by the job pipelines.

Pipelines only depend on TextGenerator.generate(prompt, max_output_tokens).
GeminiGenerator is the production implementation on google-generativeai.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import google.generativeai as genai

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """The generation service failed or returned no text."""


class GenerationTimeoutError(GenerationError):
    """The generation service did not answer within the configured timeout."""


class TextGenerator(ABC):
    """Generate text for a prompt within a token budget."""

    @abstractmethod
    async def generate(self, prompt: str, max_output_tokens: int) -> str:
        ...

    async def ping(self) -> float:
        """Round-trip a tiny prompt; returns elapsed milliseconds."""
        started = time.monotonic()
        await self.generate("Reply with the single word: ok", max_output_tokens=8)
        return (time.monotonic() - started) * 1000


class GeminiGenerator(TextGenerator):
    """TextGenerator backed by a Gemini model."""

    def __init__(self, api_key: Optional[str], model_name: str = "gemini-2.0-flash", timeout_seconds: float = 120.0):
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self._model = None
        self._model_error: Optional[str] = None

        if not api_key:
            self._model_error = "No Gemini API key configured"
            logger.warning(f"{self._model_error}. Generation requests will fail.")
            return

        try:
            genai.configure(api_key=api_key)
            self._model = genai.GenerativeModel(model_name)
            logger.info(f"Gemini model initialized: {model_name}")
        except Exception as e:
            self._model_error = f"Failed to initialize AI model: {str(e)}"
            logger.error(self._model_error)

    @property
    def available(self) -> bool:
        return self._model is not None

    async def generate(self, prompt: str, max_output_tokens: int) -> str:
        if self._model is None:
            raise GenerationError(self._model_error or "AI model not initialized")

        try:
            response = await asyncio.wait_for(
                self._model.generate_content_async(
                    prompt,
                    generation_config=genai.types.GenerationConfig(
                        max_output_tokens=max_output_tokens,
                    ),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(
                f"Generation timed out after {self.timeout_seconds:.0f}s"
            )
        except Exception as e:
            logger.error(f"Gemini generation failed: {e}")
            raise GenerationError(f"Generation failed: {e}") from e

        try:
            text = response.text if response else ""
        except ValueError as e:
            # .text raises when the candidate was blocked or has no parts
            raise GenerationError(f"Generation returned no text: {e}") from e

        if not text or not text.strip():
            raise GenerationError("Generation returned an empty response")

        return text
