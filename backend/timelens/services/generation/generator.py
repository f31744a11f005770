"""Image generation with transient-error backoff and a one-shot refusal fallback"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from timelens.core.config import settings
from timelens.core.errors import GenerationFailed
from timelens.core.metrics import generation_attempts_counter
from timelens.services.generation.gemini_client import (
    GeneratedImage, GenerationOutcome, Refused, TransientFailure, get_gemini_client
)
from timelens.services.generation.prompts import PromptSpec

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    data: bytes
    mime_type: str
    prompt_text: str
    used_fallback: bool = False


def _cause(outcome: GenerationOutcome) -> Optional[BaseException]:
    return getattr(outcome, "cause", None)


class ImageGenerator:
    """Runs a prompt against the image client.

    Two independent failure axes:
    - transient errors are retried with exponential backoff, prompt unchanged
    - a refusal is never retried as-is; theme prompts get one fallback prompt
    """

    def __init__(
        self,
        client=None,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.client = client or get_gemini_client()
        self.max_attempts = max_attempts or settings.GENERATION_MAX_ATTEMPTS
        self.initial_delay = settings.GENERATION_INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        self.sleep = sleep

    def _call_with_retry(self, image_bytes: bytes, mime_type: str, prompt_text: str) -> GenerationOutcome:
        outcome = None
        for attempt in range(1, self.max_attempts + 1):
            outcome = self.client.generate(image_bytes, mime_type, prompt_text)
            generation_attempts_counter.labels(outcome=outcome.kind).inc()

            if isinstance(outcome, TransientFailure) and attempt < self.max_attempts:
                delay = self.initial_delay * (2 ** (attempt - 1))
                logger.info(
                    f"Transient generation error (attempt {attempt}/{self.max_attempts}), retrying in {delay:.1f}s: {outcome.cause}"
                )
                self.sleep(delay)
                continue
            return outcome
        return outcome

    def generate(self, image_bytes: bytes, mime_type: str, prompt: PromptSpec) -> GenerationResult:
        """Generate an image for the prompt.

        Raises:
            GenerationFailed: When no image was produced, carrying the last underlying error
        """
        outcome = self._call_with_retry(image_bytes, mime_type, prompt.text)
        if isinstance(outcome, GeneratedImage):
            return GenerationResult(outcome.data, outcome.mime_type, prompt.text)

        fallback_text = prompt.fallback_text
        if isinstance(outcome, Refused) and fallback_text:
            logger.warning(f"Prompt for theme '{prompt.theme}' was refused, trying fallback prompt")
            fallback = self._call_with_retry(image_bytes, mime_type, fallback_text)
            if isinstance(fallback, GeneratedImage):
                return GenerationResult(fallback.data, fallback.mime_type, fallback_text, used_fallback=True)
            logger.error(f"Fallback prompt for theme '{prompt.theme}' also failed ({fallback.kind})")
            raise GenerationFailed(
                "The image model failed with both the original and fallback prompts",
                cause=_cause(fallback)
            )

        logger.error(f"Image generation failed ({outcome.kind}): {_cause(outcome)}")
        raise GenerationFailed("The image model failed to generate an image", cause=_cause(outcome))
