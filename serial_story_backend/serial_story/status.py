"""
Status aggregator.

Reconstructs progress for a generation request from the ledger and the
story/episode records it points at. The mapping itself is pure and carries no
wall-clock values besides the request's ``updatedAt``, so polling without new
events returns identical responses.
"""
import uuid
import logging
from typing import List, Optional, Tuple

from .errors import ForbiddenError, NotFoundError, ValidationError
from .ledger import DEFAULT_FAILURE_MESSAGE
from .models import (
    Episode,
    GenerationRequest,
    GenerationStatus,
    GenerationType,
    ProgressInfo,
    StatusResponse,
    StatusResult,
    Story,
)

logger = logging.getLogger(__name__)

STORY_STEPS = 3
EPISODE_STEPS = 2

Progress = Tuple[ProgressInfo, Optional[StatusResult]]


def story_download_url(story_id: str) -> str:
    return f"/stories/{story_id}/download"


def episode_download_url(episode_id: str) -> str:
    return f"/episodes/{episode_id}/download"


def _progress(step: str, total: int, completed: int) -> ProgressInfo:
    return ProgressInfo(current_step=step, total_steps=total, completed_steps=completed)


def describe_story_progress(request: GenerationRequest, story: Optional[Story],
                            stories: List[Story], episodes: List[Episode]) -> Progress:
    """
    ``story`` is the record ``relatedEntityId`` points at; ``stories`` are all
    stories of the request (the workflow's, or just ``story``) and ``episodes``
    all of their episodes.
    """
    if not request.related_entity_id:
        return _progress("Initializing story generation", STORY_STEPS, 0), None
    if story is None:
        return _progress("Story generation in progress", STORY_STEPS, 1), None
    if story.status == GenerationStatus.FAILED:
        return _progress("Story generation failed", STORY_STEPS, 0), StatusResult(story_id=story.story_id)
    if story.status != GenerationStatus.COMPLETED:
        return _progress("Generating story content", STORY_STEPS, 1), StatusResult(story_id=story.story_id)

    expected = 0
    for s in stories:
        expected += max(1, sum(1 for e in episodes if e.story_id == s.story_id))
    done = sum(1 for e in episodes if e.status == GenerationStatus.COMPLETED)
    story_ids = [s.story_id for s in stories] if request.workflow_id else None

    if request.status == GenerationStatus.COMPLETED and done >= expected:
        return (
            _progress("All episodes completed", STORY_STEPS, STORY_STEPS),
            StatusResult(story_id=story.story_id, story_ids=story_ids, download_url=story_download_url(story.story_id)),
        )
    return (
        _progress(f"Generating episodes ({done}/{expected})", STORY_STEPS, 2),
        StatusResult(story_id=story.story_id, story_ids=story_ids),
    )


def describe_episode_progress(request: GenerationRequest, episode: Optional[Episode]) -> Progress:
    if not request.related_entity_id:
        return _progress("Initializing episode generation", EPISODE_STEPS, 0), None
    if episode is None:
        return _progress("Episode generation in progress", EPISODE_STEPS, 1), None
    result = StatusResult(episode_id=episode.episode_id)
    if episode.status == GenerationStatus.FAILED:
        return _progress("Episode generation failed", EPISODE_STEPS, 0), result
    if episode.status == GenerationStatus.COMPLETED:
        if episode.artifact_key:
            result.download_url = episode_download_url(episode.episode_id)
            return _progress("Episode completed", EPISODE_STEPS, EPISODE_STEPS), result
        return _progress("Generating illustrations", EPISODE_STEPS, 1), result
    return _progress("Generating episode content", EPISODE_STEPS, 1), result


class StatusAggregator:
    def __init__(self, ledger, stories, episodes):
        self.ledger = ledger
        self.stories = stories
        self.episodes = episodes

    async def get_status(self, request_id: str, user_id: str) -> StatusResponse:
        try:
            uuid.UUID(request_id)
        except ValueError:
            raise ValidationError("Invalid request ID format", code="INVALID_REQUEST")

        request = await self.ledger.get(request_id)
        if request is None:
            raise NotFoundError("Request not found", code="REQUEST_NOT_FOUND")
        if request.user_id != user_id:
            raise ForbiddenError("Access denied to this request")

        response = StatusResponse(
            request_id=request.request_id,
            status=request.status,
            type=request.type,
            timestamp=request.updated_at,
        )
        if request.status == GenerationStatus.FAILED:
            response.error = request.error_message or DEFAULT_FAILURE_MESSAGE
            return response

        total = STORY_STEPS if request.type == GenerationType.STORY else EPISODE_STEPS
        try:
            response.progress, response.result = await self._describe(request)
        except Exception as e:
            logger.error(f"Error retrieving progress for request {request_id}: {e}")
            response.progress = _progress("Error retrieving progress", total, 0)
        return response

    async def _describe(self, request: GenerationRequest) -> Progress:
        if request.type != GenerationType.STORY:
            episode = None
            if request.related_entity_id:
                episode = await self.episodes.get_by_id(request.related_entity_id)
            return describe_episode_progress(request, episode)

        story = None
        stories: List[Story] = []
        if request.related_entity_id:
            story = await self.stories.get(request.related_entity_id)
            if request.workflow_id:
                stories = await self.stories.list_for_workflow(request.workflow_id)
            elif story:
                stories = [story]
        episodes: List[Episode] = []
        for s in stories:
            episodes.extend(await self.episodes.list_for_story(s.story_id))
        return describe_story_progress(request, story, stories, episodes)
