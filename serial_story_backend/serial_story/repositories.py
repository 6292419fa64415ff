"""
Story, episode and preference records in the KV store, with the secondary
indexes the workers and the status aggregator read through.

Keys:
  story:{storyId}                     Story
  episode:{storyId}:{episodeNumber}   Episode (slot is unique per story)
  episode-id:{episodeId}              -> {storyId, episodeNumber}
  preferences:{userId}                latest UserPreferences
Index sets:
  user:{userId}:stories, workflow:{workflowId}:stories, story:{storyId}:episodes
"""
import uuid
import logging
from typing import Any, Callable, List, Optional

from .kv_storage import update_versioned
from .models import Episode, Story, UserPreferences, utc_now_iso

logger = logging.getLogger(__name__)


# Ids derived from the work item so redelivered events land on the same records
def workflow_story_id(workflow_id: str, index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"workflow:{workflow_id}:story:{index}"))


def request_story_id(request_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"request:{request_id}:story"))


def regular_episode_id(story_id: str, episode_number: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"story:{story_id}:episode:{episode_number}"))


def _stamp(mutate: Callable[[Any], None], model_cls):
    def apply(doc):
        record = model_cls.model_validate(doc)
        mutate(record)
        record.updated_at = utc_now_iso()
        return record.to_json_dict()
    return apply


class StoryRepository:
    def __init__(self, kv):
        self.kv = kv

    async def create_if_absent(self, story: Story) -> bool:
        created = await self.kv.put(f"story:{story.story_id}", story.to_json_dict(), only_if_absent=True)
        if created:
            await self.kv.add_to_index(f"user:{story.user_id}:stories", story.story_id)
            if story.workflow_id:
                await self.kv.add_to_index(f"workflow:{story.workflow_id}:stories", story.story_id)
        return created

    async def get(self, story_id: str) -> Optional[Story]:
        doc = await self.kv.get(f"story:{story_id}")
        return Story.model_validate(doc) if doc else None

    async def update(self, story_id: str, mutate: Callable[[Story], None]) -> Optional[Story]:
        doc = await update_versioned(self.kv, f"story:{story_id}", _stamp(mutate, Story))
        return Story.model_validate(doc) if doc else None

    async def _load_all(self, index_key: str) -> List[Story]:
        stories = []
        for story_id in await self.kv.index_members(index_key):
            story = await self.get(story_id)
            if story:
                stories.append(story)
        return stories

    async def list_for_user(self, user_id: str) -> List[Story]:
        stories = await self._load_all(f"user:{user_id}:stories")
        return sorted(stories, key=lambda s: s.created_at, reverse=True)

    async def list_for_workflow(self, workflow_id: str) -> List[Story]:
        stories = await self._load_all(f"workflow:{workflow_id}:stories")
        return sorted(stories, key=lambda s: s.created_at)


class EpisodeRepository:
    def __init__(self, kv):
        self.kv = kv

    @staticmethod
    def _key(story_id: str, episode_number: int) -> str:
        return f"episode:{story_id}:{episode_number}"

    async def create_if_absent(self, episode: Episode) -> bool:
        """
        Claim the (storyId, episodeNumber) slot. False when another writer already holds it.

        The id pointer and the story index are written before the slot, so an
        occupied slot is always indexed. A failure part way leaves at most an
        index entry without a slot, which readers skip as a gap.
        """
        await self.kv.put(
            f"episode-id:{episode.episode_id}",
            {"storyId": episode.story_id, "episodeNumber": episode.episode_number},
        )
        await self.kv.add_to_index(f"story:{episode.story_id}:episodes", str(episode.episode_number))
        return await self.kv.put(
            self._key(episode.story_id, episode.episode_number), episode.to_json_dict(), only_if_absent=True
        )

    async def get(self, story_id: str, episode_number: int) -> Optional[Episode]:
        doc = await self.kv.get(self._key(story_id, episode_number))
        return Episode.model_validate(doc) if doc else None

    async def get_by_id(self, episode_id: str) -> Optional[Episode]:
        pointer = await self.kv.get(f"episode-id:{episode_id}")
        if not pointer:
            return None
        episode = await self.get(pointer["storyId"], pointer["episodeNumber"])
        if episode and episode.episode_id != episode_id:
            return None
        return episode

    async def episode_numbers(self, story_id: str) -> List[int]:
        return sorted(int(n) for n in await self.kv.index_members(f"story:{story_id}:episodes"))

    async def list_for_story(self, story_id: str) -> List[Episode]:
        episodes = []
        for number in await self.episode_numbers(story_id):
            episode = await self.get(story_id, number)
            if episode:
                episodes.append(episode)
        return episodes

    async def update(self, story_id: str, episode_number: int, mutate: Callable[[Episode], None]) -> Optional[Episode]:
        doc = await update_versioned(self.kv, self._key(story_id, episode_number), _stamp(mutate, Episode))
        return Episode.model_validate(doc) if doc else None


class PreferencesRepository:
    def __init__(self, kv):
        self.kv = kv

    async def save(self, prefs: UserPreferences) -> UserPreferences:
        await self.kv.put(f"preferences:{prefs.user_id}", prefs.to_json_dict())
        logger.info(f"Stored preferences for user {prefs.user_id}")
        return prefs

    async def latest(self, user_id: str) -> Optional[UserPreferences]:
        doc = await self.kv.get(f"preferences:{user_id}")
        return UserPreferences.model_validate(doc) if doc else None
