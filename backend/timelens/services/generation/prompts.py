"""Era prompt templates and prompt resolution"""
from dataclasses import dataclass
from typing import List, Optional

from timelens.core.errors import InvalidRequest

CUSTOM_THEME = "custom"
MAX_CUSTOM_PROMPT_LENGTH = 2000


def _lines(*parts: str) -> str:
    return "\n".join(parts)


ERA_PROMPTS = {
    "medieval": _lines(
        "Transform this person into a medieval knight or noble from the 14th-15th century.",
        "Style: Realistic medieval portraiture with authentic period clothing including chainmail, leather armor, or rich velvet garments with intricate embroidery.",
        "Lighting: Dramatic candlelit or torch-lit atmosphere with warm golden tones.",
        "Background: Stone castle walls, medieval architecture, or a royal court setting.",
        "Details: Keep the person's facial features while adding period hairstyles, facial hair, and accessories like crowns, helmets, or jewelry.",
        "Quality: High-resolution, photorealistic, cinematic composition, professional photography style.",
    ),
    "cyberpunk": _lines(
        "Transform this person into a cyberpunk character from a futuristic dystopian world.",
        "Style: Neon-lit cyberpunk look with high-tech elements and urban decay.",
        "Lighting: Electric blue, purple, and pink neon with dramatic shadows and glowing elements.",
        "Background: Rainy neon cityscape, high-tech laboratory, or a cyberpunk street scene.",
        "Details: Cybernetic implants, glowing circuits, holographic displays, clothing with LED strips, and high-tech accessories.",
        "Quality: High-resolution, cinematic lighting, professional photography.",
    ),
    "anime": _lines(
        "Transform this person into an anime character in Japanese animation style.",
        "Style: Classic anime art with clean lines, vibrant colors, and expressive features.",
        "Lighting: Soft, even lighting with gentle shadows and bright highlights.",
        "Background: Simple anime-style scenery or abstract colorful patterns.",
        "Details: Large expressive eyes, stylized vibrant hair, smooth skin texture, and anime proportions.",
        "Quality: High-quality anime art, clean vector-style lines, professional illustration.",
    ),
    "renaissance": _lines(
        "Transform this person into a Renaissance noble or artist from 15th-16th century Italy.",
        "Style: Classical Renaissance portraiture with rich, detailed clothing and painterly composition.",
        "Lighting: Soft natural light with gentle shadows, like a classical oil painting.",
        "Background: Renaissance architecture, classical columns, or an elegant interior.",
        "Details: Period clothing with rich fabrics, jewelry, and accessories. Keep the person's facial features while adding Renaissance hairstyles.",
        "Quality: High-resolution, classical art style, museum-quality portraiture.",
    ),
    "vintage": _lines(
        "Transform this person into a vintage character from the 1920s-1950s.",
        "Style: Classic vintage photography in sepia or black-and-white, or a vibrant 1950s color palette.",
        "Lighting: Soft, flattering studio lighting typical of the period.",
        "Background: Art Deco interiors, vintage cars, or classic Americana settings.",
        "Details: Period clothing, hairstyles, and accessories with vintage film grain.",
        "Quality: High-resolution, authentic vintage look, professional photography style.",
    ),
    "futuristic": _lines(
        "Transform this person into a character from a high-tech utopian society.",
        "Style: Clean, minimalist futuristic design with sleek advanced technology.",
        "Lighting: Bright, clean lighting with subtle blue or white glows and smooth gradients.",
        "Background: Futuristic cityscape, space station, or advanced laboratory.",
        "Details: Subtle tech enhancements, clothing with clean lines, and advanced accessories.",
        "Quality: High-resolution, clean design, professional photography, sci-fi look.",
    ),
    "space": _lines(
        "Transform this person into a space explorer or astronaut.",
        "Style: Sci-fi space setting with advanced space technology and cosmic elements.",
        "Lighting: Dramatic light from stars, nebulas, and spacecraft.",
        "Background: Space station, alien planet, or deep space.",
        "Details: Space suit elements, helmets, and exploration equipment.",
        "Quality: High-resolution, cinematic space photography.",
    ),
    "steampunk": _lines(
        "Transform this person into a steampunk character from a Victorian-era alternate history.",
        "Style: Brass, copper, and leather combined with steam-powered technology.",
        "Lighting: Warm golden light with dramatic shadows and steam effects.",
        "Background: Victorian workshop, airship, or steampunk cityscape.",
        "Details: Brass goggles, mechanical gadgets, and Victorian clothing with technological modifications.",
        "Quality: High-resolution, detailed steampunk art, professional photography style.",
    ),
}

# Plainer wording used once when the main prompt is refused
FALLBACK_PROMPTS = {
    "medieval": "Create a realistic photograph of this person dressed as a medieval noble from the 14th century, wearing period clothing in a castle setting. High quality, photorealistic style.",
    "cyberpunk": "Create a realistic photograph of this person in a futuristic neon-lit city, wearing high-tech clothing with glowing elements. High quality, cinematic style.",
    "anime": "Create an anime-style illustration of this person with classic Japanese animation features and vibrant colors. High quality, clean art style.",
    "renaissance": "Create a realistic photograph of this person dressed as a Renaissance noble in classical period clothing, in elegant Renaissance architecture. High quality, classical style.",
    "vintage": "Create a realistic vintage photograph of this person from the 1920s-1950s, wearing period clothing. High quality, classic style.",
    "futuristic": "Create a realistic photograph of this person in futuristic clothing and setting with clean modern design. High quality, sci-fi style.",
    "space": "Create a realistic photograph of this person as a space explorer wearing advanced space equipment. High quality, sci-fi style.",
    "steampunk": "Create a realistic photograph of this person in steampunk attire with brass, copper, and leather elements in a Victorian workshop. High quality, steampunk style.",
}


@dataclass(frozen=True)
class PromptSpec:
    """Resolved prompt text plus where it came from"""

    text: str
    theme: Optional[str] = None
    is_custom: bool = False

    @property
    def fallback_text(self) -> Optional[str]:
        """Fallback prompt for theme-derived prompts, None for custom ones"""
        if self.is_custom or not self.theme:
            return None
        return FALLBACK_PROMPTS.get(self.theme)

    @property
    def label(self) -> str:
        return CUSTOM_THEME if self.is_custom else self.theme


def list_themes() -> List[str]:
    return list(ERA_PROMPTS)


def resolve_prompt(theme: Optional[str] = None, custom_prompt: Optional[str] = None) -> PromptSpec:
    """Pick the prompt for a request. A custom prompt takes precedence over the theme.

    Raises:
        InvalidRequest: If neither is given, the theme is unknown or the custom prompt is too long
    """
    custom_prompt = (custom_prompt or "").strip()
    if custom_prompt:
        if len(custom_prompt) > MAX_CUSTOM_PROMPT_LENGTH:
            raise InvalidRequest(f"Custom prompt must be at most {MAX_CUSTOM_PROMPT_LENGTH} characters")
        return PromptSpec(text=custom_prompt, theme=None, is_custom=True)

    theme = (theme or "").strip().lower()
    if not theme:
        raise InvalidRequest("A theme or a custom prompt is required")
    if theme not in ERA_PROMPTS:
        raise InvalidRequest(f"Unknown theme '{theme}'. Available: {', '.join(list_themes())}")
    return PromptSpec(text=ERA_PROMPTS[theme], theme=theme, is_custom=False)
