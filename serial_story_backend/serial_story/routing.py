import logging
from typing import Dict, NamedTuple, Optional

from .events import (
    BATCH_STORY_GENERATION_REQUESTED,
    CONTINUE_EPISODE_REQUESTED,
    EPISODE_GENERATION_REQUESTED,
    IMAGE_GENERATION_REQUESTED,
    STORY_GENERATION_REQUESTED,
)
from .settings import EPISODE_RETRY_ATTEMPTS, IMAGE_RETRY_ATTEMPTS, MAX_EVENT_AGE_S, STORY_RETRY_ATTEMPTS

logger = logging.getLogger(__name__)


class Consumer(NamedTuple):
    name: str
    handler: object
    retry_attempts: int


class EventRouter:
    """Which worker consumes which detailType. Events without a consumer (workflow completion, status updates) are only recorded."""

    def __init__(self, story_worker, episode_worker, image_worker):
        story = Consumer("story-generation", story_worker.handle, STORY_RETRY_ATTEMPTS)
        episode = Consumer("episode-generation", episode_worker.handle, EPISODE_RETRY_ATTEMPTS)
        image = Consumer("image-generation", image_worker.handle, IMAGE_RETRY_ATTEMPTS)
        self.consumers: Dict[str, Consumer] = {
            STORY_GENERATION_REQUESTED: story,
            BATCH_STORY_GENERATION_REQUESTED: story,
            EPISODE_GENERATION_REQUESTED: episode,
            CONTINUE_EPISODE_REQUESTED: episode,
            IMAGE_GENERATION_REQUESTED: image,
        }

    def consumer_for(self, detail_type: str) -> Optional[Consumer]:
        return self.consumers.get(detail_type)

    async def dispatch(self, envelope) -> bool:
        consumer = self.consumer_for(envelope.detail_type)
        if consumer is None:
            logger.info(f"No consumer for {envelope.detail_type}; event recorded only")
            return False
        logger.info(f"Dispatching {envelope.detail_type} to {consumer.name}")
        await consumer.handler(envelope)
        return True

    def register(self, bus, max_event_age_s: float = MAX_EVENT_AGE_S) -> None:
        for detail_type, consumer in self.consumers.items():
            bus.add_route(detail_type, consumer.name, consumer.handler, consumer.retry_attempts, max_event_age_s)
