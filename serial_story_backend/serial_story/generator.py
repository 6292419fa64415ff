"""
Content generator collaborator.

Workers depend only on the three coroutines of ``ContentGenerator``; the
OpenAI/Replicate implementation lives behind them and any failure surfaces
as ``GenerationError``.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from .errors import GenerationError
from .llm import generate_episode_markdown, generate_story_markdown
from .prompts import IMAGE_PROMPT_TEMPLATE, IMAGE_STYLE_SUFFIX
from .replicate_client import generate_image_bytes

logger = logging.getLogger(__name__)


@dataclass
class GeneratedContent:
    content: str
    model: str = ""
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedImage:
    data: bytes
    content_type: str = "image/png"


def build_image_prompt(description: str, art_style: str) -> str:
    style = IMAGE_STYLE_SUFFIX.get(art_style, "manga illustration")
    return IMAGE_PROMPT_TEMPLATE.format(description=description, style=style)


class ContentGenerator:
    async def generate_story(self, preferences, insights: Dict[str, Any]) -> GeneratedContent:
        try:
            result = await generate_story_markdown(preferences, insights)
        except Exception as e:
            raise GenerationError(f"Story generation failed: {e}") from e
        return self._content(result)

    async def generate_episode(self, story_title: str, story_content: str, episode_number: int, preferences) -> GeneratedContent:
        try:
            result = await generate_episode_markdown(story_title, story_content, episode_number, preferences)
        except Exception as e:
            raise GenerationError(f"Episode generation failed: {e}") from e
        return self._content(result)

    async def generate_image(self, description: str, art_style: str) -> GeneratedImage:
        try:
            data = await generate_image_bytes(build_image_prompt(description, art_style))
        except Exception as e:
            raise GenerationError(f"Image generation failed: {e}") from e
        return GeneratedImage(data=data)

    @staticmethod
    def _content(result: Dict[str, Any]) -> GeneratedContent:
        if not result.get("content", "").strip():
            raise GenerationError("Generator returned empty content")
        return GeneratedContent(
            content=result["content"],
            model=result.get("model", ""),
            usage={"inputTokens": result.get("input_tokens", 0), "outputTokens": result.get("output_tokens", 0)},
        )
