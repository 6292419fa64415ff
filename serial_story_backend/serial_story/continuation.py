import uuid
import logging

from .coordinator import estimate_completion
from .errors import ConflictError, EventPublishError, NotFoundError, TransportError, ValidationError
from .events import ContinueEpisodeDetail, ContinueEpisodeRequested
from .models import ContinueEpisodeResponse, Episode, GenerationStatus, GenerationType, Story, utc_now_iso
from .settings import MINUTES_PER_EPISODE

logger = logging.getLogger(__name__)

RESERVE_ATTEMPTS = 2


class EpisodeContinuationResolver:
    """Adds the next episode to a finished story and re-enters the pipeline at the episode stage."""

    def __init__(self, ledger, stories, episodes, preferences, publisher, rate_limiter):
        self.ledger = ledger
        self.stories = stories
        self.episodes = episodes
        self.preferences = preferences
        self.publisher = publisher
        self.rate_limiter = rate_limiter

    async def next_episode_number(self, story_id: str) -> int:
        # Numbers may have gaps, so this is max + 1 and never count + 1
        numbers = await self.episodes.episode_numbers(story_id)
        return max(numbers) + 1 if numbers else 1

    async def _reserve_slot(self, story: Story) -> Episode:
        number = 0
        for attempt in range(1, RESERVE_ATTEMPTS + 1):
            # never retry a slot already seen taken, even if the index does not list it
            number = max(await self.next_episode_number(story.story_id), number + 1)
            episode = Episode(
                episode_id=str(uuid.uuid4()),
                story_id=story.story_id,
                user_id=story.user_id,
                episode_number=number,
                status=GenerationStatus.PENDING,
            )
            if await self.episodes.create_if_absent(episode):
                return episode
            logger.warning(f"Episode slot {number} of story {story.story_id} taken (attempt {attempt}); trying the next one")
        raise ConflictError(
            f"Another episode is being created for story {story.story_id}; please retry",
            code="EPISODE_CONFLICT",
        )

    async def continue_story(self, user_id: str, story_id: str) -> ContinueEpisodeResponse:
        await self.rate_limiter.hit(user_id)

        story = await self.stories.get(story_id)
        if story is None or story.user_id != user_id:
            raise NotFoundError("Story not found", code="STORY_NOT_FOUND")
        if story.status != GenerationStatus.COMPLETED:
            raise ValidationError("Story must be completed before adding episodes", code="STORY_NOT_COMPLETED")

        preferences = story.preferences
        if preferences is None:
            latest = await self.preferences.latest(user_id)
            if latest is None:
                raise ValidationError(
                    "User preferences not found. Please submit preferences first.",
                    code="PREFERENCES_NOT_FOUND",
                )
            preferences = latest.preferences

        episode = await self._reserve_slot(story)
        try:
            request = await self.ledger.create(user_id, GenerationType.EPISODE)
        except Exception as e:
            await self._release_slot(episode, f"Failed to record request for episode {episode.episode_number}: {e}")
            raise
        logger.info(
            f"Continuing story {story_id} with episode {episode.episode_number} "
            f"(episode {episode.episode_id}, request {request.request_id})"
        )

        event = ContinueEpisodeRequested(
            detail=ContinueEpisodeDetail(
                user_id=user_id,
                story_id=story_id,
                story_key=story.content_key,
                episode_id=episode.episode_id,
                request_id=request.request_id,
                next_episode_number=episode.episode_number,
                original_preferences=preferences,
                timestamp=utc_now_iso(),
            )
        )
        try:
            await self.publisher.publish(event)
        except TransportError as e:
            message = f"Failed to request episode {episode.episode_number}: {e.message}"
            await self.ledger.mark_failed(request.request_id, message)
            await self._release_slot(episode, message)
            if isinstance(e, EventPublishError):
                raise
            raise EventPublishError(message) from e

        return ContinueEpisodeResponse(
            episode_id=episode.episode_id,
            episode_number=episode.episode_number,
            request_id=request.request_id,
            estimated_completion_time=estimate_completion(MINUTES_PER_EPISODE),
        )

    async def _release_slot(self, episode: Episode, message: str) -> None:
        def fail(e: Episode):
            e.status = GenerationStatus.FAILED
            e.error_message = message

        try:
            await self.episodes.update(episode.story_id, episode.episode_number, fail)
        except Exception as cleanup_error:
            logger.error(f"Could not mark episode {episode.episode_id} failed: {cleanup_error}")
