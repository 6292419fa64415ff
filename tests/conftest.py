import asyncio
import base64

import pytest

from serial_story.blob_storage import LocalBlobStore
from serial_story.errors import GenerationError
from serial_story.event_bus import LocalEventBus
from serial_story.generator import GeneratedContent, GeneratedImage
from serial_story.kv_storage import InMemoryKVStorage
from serial_story.models import UserPreferences, UserPreferencesData
from serial_story.runtime import build_services

PNG_1X1 = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

SAMPLE_PREFERENCES = {
    "genres": ["Fantasy", "Adventure"],
    "themes": ["Friendship"],
    "artStyle": "Modern",
    "targetAudience": "Teens",
    "contentRating": "PG",
}

EPISODE_MARKDOWN = """# Episode {n}: The Gate

[A stone gate glowing under a red moon in a misty forest]

Kai walked toward the gate slowly, the fog curling around his boots.

---

[A crowded night market with paper lanterns]

The market was loud and bright, full of traders shouting their prices.
"""


class FakeGenerator:
    def __init__(self):
        self.story_calls = 0
        self.episode_calls = []
        self.image_calls = 0
        self.fail_story_calls = set()
        self.fail_image_calls = set()

    async def generate_story(self, preferences, insights):
        self.story_calls += 1
        if self.story_calls in self.fail_story_calls:
            raise GenerationError("model overloaded")
        n = self.story_calls
        return GeneratedContent(
            content=f"# Story {n}\n\nOnce upon a time a courier found a map.\n\nThe map pointed north.",
            model="fake-model",
        )

    async def generate_episode(self, story_title, story_content, episode_number, preferences):
        self.episode_calls.append((story_title, episode_number))
        return GeneratedContent(content=EPISODE_MARKDOWN.format(n=episode_number), model="fake-model")

    async def generate_image(self, description, art_style):
        self.image_calls += 1
        if self.image_calls in self.fail_image_calls:
            raise GenerationError("image backend unavailable")
        return GeneratedImage(data=PNG_1X1)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def bus():
    return LocalEventBus(auto_drain=False)


@pytest.fixture
def services(tmp_path, generator, bus):
    return build_services(
        kv=InMemoryKVStorage(),
        blobs=LocalBlobStore(str(tmp_path / "blobs")),
        bus=bus,
        generator=generator,
        image_delay_s=0,
    )


@pytest.fixture
def save_preferences(services):
    def _save(user_id="user-1", **overrides):
        data = UserPreferencesData.model_validate({**SAMPLE_PREFERENCES, **overrides})
        prefs = UserPreferences(user_id=user_id, preferences=data, insights={"recommendations": []})
        return asyncio.run(services.preferences.save(prefs))
    return _save
