import logging
from dataclasses import dataclass
from typing import Any, Optional

from .blob_storage import LocalBlobStore
from .continuation import EpisodeContinuationResolver
from .coordinator import WorkflowCoordinator
from .episode_worker import EpisodeWorker
from .event_bus import HttpEventBus, LocalEventBus
from .generator import ContentGenerator
from .image_worker import ImageWorker
from .kv_storage import create_kv_storage
from .ledger import GenerationRequestLedger
from .publisher import EventPublisher
from .rate_limiter import SlidingWindowRateLimiter
from .repositories import EpisodeRepository, PreferencesRepository, StoryRepository
from .routing import EventRouter
from .settings import (
    BLOB_STORAGE_DIR,
    CONTINUE_RATE_LIMIT,
    CONTINUE_RATE_WINDOW_S,
    EVENT_BUS_NAME,
    EVENT_BUS_TOKEN,
    EVENT_BUS_URL,
    IMAGE_REQUEST_DELAY_S,
    WORKFLOW_RATE_LIMIT,
    WORKFLOW_RATE_WINDOW_S,
)
from .status import StatusAggregator
from .story_worker import StoryWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    kv: Any
    blobs: LocalBlobStore
    bus: Any
    publisher: EventPublisher
    ledger: GenerationRequestLedger
    stories: StoryRepository
    episodes: EpisodeRepository
    preferences: PreferencesRepository
    coordinator: WorkflowCoordinator
    continuation: EpisodeContinuationResolver
    status: StatusAggregator
    story_worker: StoryWorker
    episode_worker: EpisodeWorker
    image_worker: ImageWorker
    router: EventRouter


def build_services(kv=None, blobs: Optional[LocalBlobStore] = None, bus=None, generator=None,
                   image_delay_s: float = IMAGE_REQUEST_DELAY_S) -> Services:
    """Wire every component. Anything not passed in comes from settings."""
    if kv is None:
        kv = create_kv_storage()
    if blobs is None:
        blobs = LocalBlobStore(BLOB_STORAGE_DIR)
    if bus is None:
        if EVENT_BUS_URL:
            bus = HttpEventBus(EVENT_BUS_URL, EVENT_BUS_TOKEN)
        else:
            logger.warning("EVENT_BUS_URL not configured - delivering events in-process")
            bus = LocalEventBus(auto_drain=True)
    if generator is None:
        generator = ContentGenerator()

    publisher = EventPublisher(bus, EVENT_BUS_NAME)
    ledger = GenerationRequestLedger(kv)
    stories = StoryRepository(kv)
    episodes = EpisodeRepository(kv)
    preferences = PreferencesRepository(kv)

    story_worker = StoryWorker(ledger, stories, blobs, generator, publisher)
    episode_worker = EpisodeWorker(ledger, stories, episodes, preferences, blobs, generator, publisher)
    image_worker = ImageWorker(ledger, stories, episodes, blobs, generator, delay_s=image_delay_s)
    router = EventRouter(story_worker, episode_worker, image_worker)
    if isinstance(bus, LocalEventBus):
        router.register(bus)

    return Services(
        kv=kv,
        blobs=blobs,
        bus=bus,
        publisher=publisher,
        ledger=ledger,
        stories=stories,
        episodes=episodes,
        preferences=preferences,
        coordinator=WorkflowCoordinator(
            ledger, preferences, publisher,
            SlidingWindowRateLimiter(kv, "workflow-start", WORKFLOW_RATE_LIMIT, WORKFLOW_RATE_WINDOW_S),
        ),
        continuation=EpisodeContinuationResolver(
            ledger, stories, episodes, preferences, publisher,
            SlidingWindowRateLimiter(kv, "continue-episode", CONTINUE_RATE_LIMIT, CONTINUE_RATE_WINDOW_S),
        ),
        status=StatusAggregator(ledger, stories, episodes),
        story_worker=story_worker,
        episode_worker=episode_worker,
        image_worker=image_worker,
        router=router,
    )
