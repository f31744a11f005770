"""Image generation module - public API exports"""

from timelens.services.generation.prompts import (
    CUSTOM_THEME,
    PromptSpec,
    list_themes,
    resolve_prompt,
)

from timelens.services.generation.gemini_client import (
    GeminiImageClient,
    GeneratedImage,
    Refused,
    TransientFailure,
    PermanentFailure,
    get_gemini_client,
)

from timelens.services.generation.generator import (
    GenerationResult,
    ImageGenerator,
)

__all__ = [
    "CUSTOM_THEME",
    "PromptSpec",
    "list_themes",
    "resolve_prompt",
    "GeminiImageClient",
    "GeneratedImage",
    "Refused",
    "TransientFailure",
    "PermanentFailure",
    "get_gemini_client",
    "GenerationResult",
    "ImageGenerator",
]
