"""
Story stage.

A batch event generates the stories of one batch, then hands the workflow on
by publishing the next batch event (or the completion event) together with
the episode-1 events for its stories. Batches therefore run strictly one after
another without any long-lived loop.
"""
import logging
from typing import List, Optional

from .blob_storage import story_key
from .errors import NotFoundError, ServiceError
from .events import (
    BatchStoryGenerationDetail,
    BatchStoryGenerationRequested,
    BatchWorkflowCompleted,
    BatchWorkflowCompletedDetail,
    EpisodeGenerationDetail,
    EpisodeGenerationRequested,
    GenerationStatusDetail,
    GenerationStatusUpdated,
    StoryGenerationDetail,
    StoryGenerationRequested,
)
from .ledger import accepts_delivery
from .models import GenerationRequest, GenerationStatus, GenerationType, Story, utc_now_iso
from .parsing import parse_story_content
from .repositories import request_story_id, workflow_story_id

logger = logging.getLogger(__name__)


class StoryWorker:
    def __init__(self, ledger, stories, blobs, generator, publisher):
        self.ledger = ledger
        self.stories = stories
        self.blobs = blobs
        self.generator = generator
        self.publisher = publisher

    async def handle(self, envelope) -> None:
        if isinstance(envelope, BatchStoryGenerationRequested):
            await self.handle_batch(envelope.detail)
        elif isinstance(envelope, StoryGenerationRequested):
            await self.handle_single(envelope.detail)
        else:
            raise TypeError(f"StoryWorker cannot handle {envelope.detail_type}")

    async def _open_request(self, request_id: str) -> Optional[GenerationRequest]:
        request = await self.ledger.get(request_id)
        if request is None:
            raise NotFoundError(f"Generation request {request_id} not found", code="REQUEST_NOT_FOUND")
        return request if accepts_delivery(request) else None

    async def handle_single(self, detail: StoryGenerationDetail) -> None:
        if not await self._open_request(detail.request_id):
            return
        story_id = request_story_id(detail.request_id)
        try:
            await self.ledger.transition(detail.request_id, GenerationStatus.PROCESSING, related_entity_id=story_id)
            story = await self._produce_story(story_id, detail.user_id, detail.preferences, detail.insights,
                                              request_id=detail.request_id)
            await self.publisher.publish(self._episode_event(story))
        except Exception as e:
            message = f"Story generation failed: {e}"
            await self.ledger.mark_failed(detail.request_id, message)
            await self._publish_status(detail.user_id, detail.request_id, GenerationStatus.FAILED, story_id, message)
            raise
        await self.ledger.transition(detail.request_id, GenerationStatus.COMPLETED, related_entity_id=story_id)
        await self._publish_status(detail.user_id, detail.request_id, GenerationStatus.COMPLETED, story_id)

    async def handle_batch(self, detail: BatchStoryGenerationDetail) -> None:
        if not await self._open_request(detail.request_id):
            return
        logger.info(
            f"Workflow {detail.workflow_id}: processing batch {detail.current_batch}/{detail.total_batches} "
            f"(stories {detail.story_indexes().start}-{detail.story_indexes().stop - 1} of {detail.number_of_stories})"
        )

        stories: List[Story] = []
        for index in detail.story_indexes():
            story_id = workflow_story_id(detail.workflow_id, index)
            item = (f"story {index} of {detail.number_of_stories} "
                    f"(batch {detail.current_batch}/{detail.total_batches})")
            try:
                await self.ledger.transition(detail.request_id, GenerationStatus.PROCESSING, related_entity_id=story_id)
                story = await self._produce_story(
                    story_id, detail.user_id, detail.preferences, detail.insights,
                    request_id=detail.request_id, workflow_id=detail.workflow_id,
                )
            except Exception as e:
                logger.error(f"Workflow {detail.workflow_id}: {item} failed: {e}")
                message = f"Failed to generate {item}: {e}"
                await self.ledger.mark_failed(detail.request_id, message)
                await self._publish_status(detail.user_id, detail.request_id, GenerationStatus.FAILED, story_id, message)
                raise
            stories.append(story)

        completed = detail.completed_stories + len(stories)
        events = [self._episode_event(story, detail.workflow_id) for story in stories]
        events.append(self._advance_event(detail, completed))
        try:
            await self.publisher.publish_batch(events)
        except Exception as e:
            logger.error(f"Workflow {detail.workflow_id}: failed to advance after batch {detail.current_batch}: {e}")
            message = f"Failed to advance workflow after batch {detail.current_batch}/{detail.total_batches}: {e}"
            await self.ledger.mark_failed(detail.request_id, message)
            await self._publish_status(detail.user_id, detail.request_id, GenerationStatus.FAILED,
                                       stories[-1].story_id if stories else None, message)
            raise

        if detail.is_last_batch:
            await self.ledger.transition(detail.request_id, GenerationStatus.COMPLETED,
                                         related_entity_id=stories[-1].story_id)
            await self._publish_status(detail.user_id, detail.request_id, GenerationStatus.COMPLETED,
                                       stories[-1].story_id)
            logger.info(f"Workflow {detail.workflow_id} completed with {completed} stories")

    async def _publish_status(self, user_id: str, request_id: str, status: GenerationStatus,
                              story_id: Optional[str] = None, error_message: Optional[str] = None) -> None:
        """Announce a finished story request. Best effort: the ledger already holds the outcome."""
        event = GenerationStatusUpdated(
            detail=GenerationStatusDetail(
                user_id=user_id,
                request_id=request_id,
                type=GenerationType.STORY,
                status=status,
                entity_id=story_id,
                error_message=error_message,
                timestamp=utc_now_iso(),
            )
        )
        try:
            await self.publisher.publish(event)
        except ServiceError as e:
            logger.error(f"Could not publish {status.value} status for request {request_id}: {e.message}")

    def _advance_event(self, detail: BatchStoryGenerationDetail, completed: int):
        if detail.is_last_batch:
            return BatchWorkflowCompleted(
                detail=BatchWorkflowCompletedDetail(
                    user_id=detail.user_id,
                    workflow_id=detail.workflow_id,
                    request_id=detail.request_id,
                    total_batches=detail.total_batches,
                    completed_stories=completed,
                    failed_stories=detail.failed_stories,
                    story_ids=[workflow_story_id(detail.workflow_id, i) for i in range(1, detail.number_of_stories + 1)],
                    timestamp=utc_now_iso(),
                )
            )
        return BatchStoryGenerationRequested(
            detail=detail.model_copy(update={
                "current_batch": detail.current_batch + 1,
                "completed_stories": completed,
                "timestamp": utc_now_iso(),
            })
        )

    @staticmethod
    def _episode_event(story: Story, workflow_id: Optional[str] = None) -> EpisodeGenerationRequested:
        return EpisodeGenerationRequested(
            detail=EpisodeGenerationDetail(
                user_id=story.user_id,
                story_id=story.story_id,
                story_key=story.content_key,
                episode_number=1,
                workflow_id=workflow_id,
                timestamp=utc_now_iso(),
            )
        )

    async def _produce_story(self, story_id: str, user_id: str, preferences, insights,
                             request_id: str, workflow_id: Optional[str] = None) -> Story:
        existing = await self.stories.get(story_id)
        if existing and existing.status == GenerationStatus.COMPLETED:
            logger.info(f"Story {story_id} already completed; reusing it")
            return existing

        if existing is None:
            await self.stories.create_if_absent(Story(
                story_id=story_id,
                user_id=user_id,
                status=GenerationStatus.PROCESSING,
                workflow_id=workflow_id,
                request_id=request_id,
                preferences=preferences,
            ))
        else:
            await self.stories.update(story_id, _mark_processing)

        try:
            generated = await self.generator.generate_story(preferences, insights)
            title, body = parse_story_content(generated.content)
            key = self.blobs.put_text(story_key(user_id, story_id), f"# {title}\n\n{body}\n")

            def complete(story: Story):
                story.title = title
                story.content_key = key
                story.status = GenerationStatus.COMPLETED
                story.error_message = None

            story = await self.stories.update(story_id, complete)
        except Exception as e:
            await self._mark_story_failed(story_id, str(e))
            raise
        logger.info(f"Story {story_id} '{title}' generated for user {user_id} ({generated.usage})")
        return story

    async def _mark_story_failed(self, story_id: str, message: str) -> None:
        def fail(story: Story):
            story.status = GenerationStatus.FAILED
            story.error_message = message

        try:
            await self.stories.update(story_id, fail)
        except Exception as cleanup_error:
            logger.error(f"Could not mark story {story_id} failed: {cleanup_error}")


def _mark_processing(story: Story):
    story.status = GenerationStatus.PROCESSING
    story.error_message = None
