import json, logging
from .prompts import STORY_SYSTEM_PROMPT, STORY_PROMPT_TEMPLATE, EPISODE_SYSTEM_PROMPT, EPISODE_PROMPT_TEMPLATE
from .settings import OPENAI_API_KEY, OPENAI_MODEL

logger = logging.getLogger(__name__)

_client = None

def _get_client():
    global _client
    if _client is None:
        from openai import AsyncOpenAI
        if not OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set; please configure your .env")
        _client = AsyncOpenAI(api_key=OPENAI_API_KEY)
    return _client

def build_story_prompt(preferences, insights: dict) -> str:
    return STORY_PROMPT_TEMPLATE.format(
        genres=", ".join(preferences.genres),
        themes=", ".join(preferences.themes) or "any",
        art_style=preferences.art_style,
        target_audience=preferences.target_audience,
        content_rating=preferences.content_rating,
        insights=json.dumps(insights or {}, indent=2),
    )

def build_episode_prompt(story_title: str, story_content: str, episode_number: int, preferences) -> str:
    return EPISODE_PROMPT_TEMPLATE.format(
        story_title=story_title,
        story_content=story_content,
        episode_number=episode_number,
        genres=", ".join(preferences.genres),
        themes=", ".join(preferences.themes) or "any",
        target_audience=preferences.target_audience,
        content_rating=preferences.content_rating,
    )

async def complete(system_prompt: str, user_prompt: str, temperature: float = 0.7) -> dict:
    """One chat completion. Returns the Markdown text plus token usage."""
    logger.info(f"Calling OpenAI API ({OPENAI_MODEL})")
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]
    try:
        client = _get_client()
        resp = await client.chat.completions.create(
            model=OPENAI_MODEL,
            messages=messages,
            temperature=temperature,
        )
        content = resp.choices[0].message.content or ""
        usage = resp.usage
        logger.info("Successfully received response from OpenAI")
        return {
            "content": content,
            "model": resp.model,
            "input_tokens": usage.prompt_tokens if usage else 0,
            "output_tokens": usage.completion_tokens if usage else 0,
        }
    except Exception as e:
        logger.error(f"OpenAI API call failed: {str(e)}")
        raise

async def generate_story_markdown(preferences, insights: dict) -> dict:
    return await complete(STORY_SYSTEM_PROMPT, build_story_prompt(preferences, insights))

async def generate_episode_markdown(story_title: str, story_content: str, episode_number: int, preferences) -> dict:
    return await complete(
        EPISODE_SYSTEM_PROMPT,
        build_episode_prompt(story_title, story_content, episode_number, preferences),
    )
