"""Gemini image client.

Every call returns exactly one outcome: a generated image, a refusal (the model
answered with text only), a transient failure or a permanent failure. The retry
and fallback policy in generator.py dispatches on the outcome kind only.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from timelens.core.config import settings

logger = logging.getLogger(__name__)


class ContentRefused(Exception):
    """The model returned text instead of an image"""


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str
    kind: str = "image"


@dataclass
class Refused:
    text: Optional[str] = None
    kind: str = "refused"

    @property
    def cause(self) -> ContentRefused:
        return ContentRefused(f"The model responded with text instead of an image: {self.text or 'no text'}")


@dataclass
class TransientFailure:
    cause: BaseException
    kind: str = "transient"


@dataclass
class PermanentFailure:
    cause: BaseException
    kind: str = "permanent"


GenerationOutcome = Union[GeneratedImage, Refused, TransientFailure, PermanentFailure]


def classify_error(error: BaseException) -> GenerationOutcome:
    """Transient: provider 5xx, timeouts, connection drops. Everything else is permanent."""
    if isinstance(error, genai_errors.ServerError):
        return TransientFailure(error)
    if isinstance(error, genai_errors.ClientError):
        return PermanentFailure(error)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return TransientFailure(error)
    return PermanentFailure(error)


def parse_response(response) -> Union[GeneratedImage, Refused]:
    """Pull the first inline image out of a generate_content response"""
    candidates = getattr(response, "candidates", None) or []
    content = getattr(candidates[0], "content", None) if candidates else None
    parts = getattr(content, "parts", None) or []

    texts = []
    for part in parts:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            return GeneratedImage(data=inline.data, mime_type=inline.mime_type or "image/png")
        if getattr(part, "text", None):
            texts.append(part.text)

    return Refused(text=" ".join(texts) or None)


class GeminiImageClient:
    """Thin wrapper over google-genai for image-to-image generation"""

    def __init__(self, client: Optional[genai.Client] = None, model: Optional[str] = None):
        self.model = model or settings.GEMINI_MODEL
        if client is not None:
            self.client = client
            return
        if not settings.GEMINI_API_KEY:
            raise ValueError("GEMINI_API_KEY is not set")
        self.client = genai.Client(
            api_key=settings.GEMINI_API_KEY,
            http_options=types.HttpOptions(timeout=int(settings.GEMINI_TIMEOUT_SECONDS * 1000))
        )

    def generate(self, image_bytes: bytes, mime_type: str, prompt_text: str) -> GenerationOutcome:
        try:
            response = self.client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    prompt_text,
                ],
                config=types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"])
            )
        except Exception as e:
            outcome = classify_error(e)
            logger.warning(f"Gemini call failed ({outcome.kind}): {e}")
            return outcome

        outcome = parse_response(response)
        if isinstance(outcome, Refused):
            logger.warning(f"Gemini returned no image: {outcome.text}")
        return outcome


# Global client instance (lazy initialization)
_gemini_client: Optional[GeminiImageClient] = None


def get_gemini_client() -> GeminiImageClient:
    global _gemini_client
    if _gemini_client is None:
        _gemini_client = GeminiImageClient()
    return _gemini_client
