import logging
from typing import Optional

from .blob_storage import episode_key
from .errors import ConflictError, NotFoundError, ValidationError
from .events import (
    ContinueEpisodeDetail,
    ContinueEpisodeRequested,
    EpisodeGenerationDetail,
    EpisodeGenerationRequested,
    ImageGenerationDetail,
    ImageGenerationRequested,
)
from .ledger import accepts_delivery
from .models import Episode, GenerationStatus, Story, utc_now_iso
from .parsing import parse_episode_content
from .repositories import regular_episode_id

logger = logging.getLogger(__name__)


class EpisodeWorker:
    def __init__(self, ledger, stories, episodes, preferences, blobs, generator, publisher):
        self.ledger = ledger
        self.stories = stories
        self.episodes = episodes
        self.preferences = preferences
        self.blobs = blobs
        self.generator = generator
        self.publisher = publisher

    async def handle(self, envelope) -> None:
        if isinstance(envelope, ContinueEpisodeRequested):
            await self.handle_continuation(envelope.detail)
        elif isinstance(envelope, EpisodeGenerationRequested):
            await self.handle_regular(envelope.detail)
        else:
            raise TypeError(f"EpisodeWorker cannot handle {envelope.detail_type}")

    async def _completed_story(self, story_id: str, user_id: str) -> Story:
        story = await self.stories.get(story_id)
        if story is None or story.user_id != user_id:
            raise NotFoundError(f"Story {story_id} not found", code="STORY_NOT_FOUND")
        if story.status != GenerationStatus.COMPLETED or not story.content_key:
            raise ConflictError(f"Story {story_id} is not completed", code="STORY_NOT_COMPLETED")
        return story

    async def handle_regular(self, detail: EpisodeGenerationDetail) -> None:
        story = await self._completed_story(detail.story_id, detail.user_id)
        episode_id = regular_episode_id(detail.story_id, detail.episode_number)

        await self.episodes.create_if_absent(Episode(
            episode_id=episode_id,
            story_id=detail.story_id,
            user_id=detail.user_id,
            episode_number=detail.episode_number,
        ))
        episode = await self.episodes.get(detail.story_id, detail.episode_number)
        if episode.episode_id != episode_id:
            logger.warning(
                f"Episode {detail.episode_number} of story {detail.story_id} is held by episode "
                f"{episode.episode_id}; leaving it to its own request"
            )
            return
        await self._generate(story, episode, preferences=None, request_id=None)

    async def handle_continuation(self, detail: ContinueEpisodeDetail) -> None:
        request = await self.ledger.get(detail.request_id)
        if request is None:
            raise NotFoundError(f"Generation request {detail.request_id} not found", code="REQUEST_NOT_FOUND")
        if not accepts_delivery(request):
            return

        try:
            await self.ledger.transition(detail.request_id, GenerationStatus.PROCESSING,
                                         related_entity_id=detail.episode_id)
            story = await self._completed_story(detail.story_id, detail.user_id)
            episode = await self.episodes.get(detail.story_id, detail.next_episode_number)
            if episode is None or episode.episode_id != detail.episode_id:
                raise ConflictError(
                    f"Episode slot {detail.next_episode_number} of story {detail.story_id} "
                    f"is not reserved for episode {detail.episode_id}",
                    code="EPISODE_CONFLICT",
                )
        except Exception as e:
            await self.ledger.mark_failed(detail.request_id, f"Episode generation failed: {e}")
            raise
        await self._generate(story, episode, preferences=detail.original_preferences, request_id=detail.request_id)

    async def _resolve_preferences(self, story: Story, preferences):
        if preferences is not None:
            return preferences
        if story.preferences is not None:
            return story.preferences
        latest = await self.preferences.latest(story.user_id)
        if latest is None:
            raise ValidationError(f"No preferences available for user {story.user_id}", code="PREFERENCES_NOT_FOUND")
        return latest.preferences

    async def _generate(self, story: Story, episode: Episode, preferences, request_id: Optional[str]) -> None:
        n = episode.episode_number
        if episode.status == GenerationStatus.COMPLETED:
            logger.info(f"Episode {episode.episode_id} already completed; re-requesting illustrations")
            await self.publisher.publish(self._image_event(episode, request_id))
            return

        try:
            await self.episodes.update(story.story_id, n, _mark_processing)
            story_content = self.blobs.get_text(story.content_key)
            prefs = await self._resolve_preferences(story, preferences)
            generated = await self.generator.generate_episode(story.title, story_content, n, prefs)
            title, body = parse_episode_content(generated.content, n)
            key = self.blobs.put_text(episode_key(story.user_id, story.story_id, n), f"# {title}\n\n{body}\n")

            def complete(e: Episode):
                e.title = title
                e.content_key = key
                e.status = GenerationStatus.COMPLETED
                e.error_message = None

            episode = await self.episodes.update(story.story_id, n, complete)
            logger.info(f"Episode {n} '{title}' generated for story {story.story_id} ({generated.usage})")
            await self.publisher.publish(self._image_event(episode, request_id))
        except Exception as e:
            message = f"Failed to generate episode {n} of story {story.story_id}: {e}"
            logger.error(message)
            await self._mark_failed(story.story_id, n, message)
            if request_id:
                await self.ledger.mark_failed(request_id, message)
            raise

    async def _mark_failed(self, story_id: str, episode_number: int, message: str) -> None:
        def fail(e: Episode):
            e.status = GenerationStatus.FAILED
            e.error_message = message

        try:
            await self.episodes.update(story_id, episode_number, fail)
        except Exception as cleanup_error:
            logger.error(f"Could not mark episode {episode_number} of story {story_id} failed: {cleanup_error}")

    @staticmethod
    def _image_event(episode: Episode, request_id: Optional[str]) -> ImageGenerationRequested:
        return ImageGenerationRequested(
            detail=ImageGenerationDetail(
                user_id=episode.user_id,
                story_id=episode.story_id,
                episode_id=episode.episode_id,
                episode_number=episode.episode_number,
                episode_key=episode.content_key,
                request_id=request_id,
                timestamp=utc_now_iso(),
            )
        )


def _mark_processing(e: Episode):
    e.status = GenerationStatus.PROCESSING
    e.error_message = None
