"""
Image stage: illustrate each scene of a completed episode and render the
episode PDF. This is the last stage for an episode.
"""
import asyncio
import logging
from typing import List, Optional

from .blob_storage import episode_pdf_key, image_key
from .errors import ConflictError, GenerationError, NotFoundError
from .events import ImageGenerationDetail
from .ledger import accepts_delivery
from .models import Episode, GenerationStatus, TERMINAL_STATUSES
from .parsing import parse_episode_content, parse_episode_scenes
from .pdf import EpisodePDFBuilder
from .settings import IMAGE_REQUEST_DELAY_S, MAX_SCENES

logger = logging.getLogger(__name__)

DEFAULT_ART_STYLE = "Modern"


class ImageWorker:
    def __init__(self, ledger, stories, episodes, blobs, generator,
                 pdf_builder: Optional[EpisodePDFBuilder] = None,
                 delay_s: float = IMAGE_REQUEST_DELAY_S, max_scenes: int = MAX_SCENES):
        self.ledger = ledger
        self.stories = stories
        self.episodes = episodes
        self.blobs = blobs
        self.generator = generator
        self.pdf_builder = pdf_builder or EpisodePDFBuilder()
        self.delay_s = delay_s
        self.max_scenes = max_scenes

    async def handle(self, envelope) -> None:
        await self.illustrate(envelope.detail)

    async def illustrate(self, detail: ImageGenerationDetail) -> None:
        if detail.request_id:
            request = await self.ledger.get(detail.request_id)
            if request is not None and not accepts_delivery(request):
                return

        episode = await self.episodes.get(detail.story_id, detail.episode_number)
        if episode is None or episode.episode_id != detail.episode_id:
            raise NotFoundError(f"Episode {detail.episode_id} not found", code="EPISODE_NOT_FOUND")
        if episode.artifact_key:
            logger.info(f"Episode {episode.episode_id} already rendered at {episode.artifact_key}")
            await self._complete_request(detail.request_id, episode.episode_id)
            return
        if episode.status != GenerationStatus.COMPLETED:
            raise ConflictError(
                f"Episode {episode.episode_id} is {episode.status.value}, not ready for illustration",
                code="EPISODE_NOT_READY",
            )

        try:
            story = await self.stories.get(detail.story_id)
            art_style = story.preferences.art_style if story and story.preferences else DEFAULT_ART_STYLE
            content = self.blobs.get_text(detail.episode_key)
            images = await self._generate_images(episode, content, art_style)

            title, body = parse_episode_content(content, episode.episode_number)
            pdf = self.pdf_builder.build(story.title if story else "", episode.title or title, body, images)
            artifact_key = self.blobs.put_bytes(
                episode_pdf_key(episode.user_id, episode.story_id, episode.episode_number), pdf
            )

            def rendered(e: Episode):
                e.artifact_key = artifact_key
                e.image_count = len(images)
                e.status = GenerationStatus.COMPLETED

            await self.episodes.update(episode.story_id, episode.episode_number, rendered)
        except Exception as e:
            message = f"Failed to illustrate episode {episode.episode_number} of story {episode.story_id}: {e}"
            logger.error(message)
            await self._mark_failed(episode, message)
            if detail.request_id:
                await self.ledger.mark_failed(detail.request_id, message)
            raise

        logger.info(f"Episode {episode.episode_id} rendered with {len(images)} image(s)")
        await self._complete_request(detail.request_id, episode.episode_id)

    async def _generate_images(self, episode: Episode, content: str, art_style: str) -> List[bytes]:
        scenes = parse_episode_scenes(content, self.max_scenes)
        logger.info(f"Generating {len(scenes)} image(s) for episode {episode.episode_id}")
        images = []
        for i, description in enumerate(scenes, start=1):
            if i > 1 and self.delay_s > 0:
                await asyncio.sleep(self.delay_s)
            try:
                image = await self.generator.generate_image(description, art_style)
            except GenerationError as e:
                logger.warning(f"Image {i}/{len(scenes)} for episode {episode.episode_id} failed, skipping: {e.message}")
                continue
            self.blobs.put_bytes(image_key(episode.user_id, episode.story_id, episode.episode_number, i), image.data)
            images.append(image.data)

        if not images:
            raise GenerationError(f"No images could be generated for episode {episode.episode_id}")
        return images

    async def _complete_request(self, request_id: Optional[str], episode_id: str) -> None:
        if not request_id:
            return
        request = await self.ledger.get(request_id)
        if request is None or request.status in TERMINAL_STATUSES:
            return
        await self.ledger.transition(request_id, GenerationStatus.COMPLETED, related_entity_id=episode_id)

    async def _mark_failed(self, episode: Episode, message: str) -> None:
        def fail(e: Episode):
            e.status = GenerationStatus.FAILED
            e.error_message = message

        try:
            await self.episodes.update(episode.story_id, episode.episode_number, fail)
        except Exception as cleanup_error:
            logger.error(f"Could not mark episode {episode.episode_id} failed: {cleanup_error}")
