"""
Event bus adapters.

``HttpEventBus`` hands entries to an external at-least-once bus that pushes
deliveries back to ``POST /events``. ``LocalEventBus`` keeps the same contract
inside one process: entries are queued, delivered to the worker registered
for their ``DetailType``, retried up to the route's attempt budget and moved
to that route's dead-letter list once attempts or max event age run out.
"""
import time
import uuid
import httpx
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import EventValidationError, TransportError
from .events import parse_entry
from .settings import EVENT_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class PutEventsResultEntry(BaseModel):
    event_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PutEventsResult(BaseModel):
    failed_entry_count: int = 0
    entries: List[PutEventsResultEntry] = Field(default_factory=list)


class HttpEventBus:
    def __init__(self, url: str, token: str = "", timeout: float = 10):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def put_events(self, entries: List[Dict[str, Any]]) -> PutEventsResult:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(f"{self.url}/events", headers=self._headers(), json={"Entries": entries})
        except httpx.HTTPError as e:
            logger.error(f"Event bus request failed: {e}")
            raise TransportError(f"Event bus request failed: {e}") from e
        if r.status_code >= 400:
            logger.error(f"Event bus rejected entries {r.status_code}: {r.text}")
            raise TransportError(f"Event bus rejected entries {r.status_code}: {r.text}")
        body = r.json()
        return PutEventsResult(
            failed_entry_count=int(body.get("FailedEntryCount", 0)),
            entries=[
                PutEventsResultEntry(
                    event_id=e.get("EventId"),
                    error_code=e.get("ErrorCode"),
                    error_message=e.get("ErrorMessage"),
                )
                for e in body.get("Entries", [])
            ],
        )


@dataclass
class Route:
    name: str
    handler: Callable[[Any], Awaitable[None]]
    retry_attempts: int
    max_event_age_s: float


@dataclass
class Delivery:
    event_id: str
    entry: Dict[str, Any]
    route: Route
    enqueued_at: float
    attempts: int = 0


@dataclass
class DeadLetter:
    event_id: str
    entry: Dict[str, Any]
    attempts: int
    error: str


class LocalEventBus:
    def __init__(self, auto_drain: bool = False, clock: Callable[[], float] = time.monotonic,
                 history_limit: int = EVENT_HISTORY_LIMIT):
        self.auto_drain = auto_drain
        self.routes: Dict[str, Route] = {}
        # most recent envelopes only, oldest dropped first
        self.published: Deque[Dict[str, Any]] = deque(maxlen=history_limit)
        self.dead_letters: Dict[str, List[DeadLetter]] = {}
        self._queue: Deque[Delivery] = deque()
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._clock = clock

    def add_route(self, detail_type: str, name: str, handler, retry_attempts: int, max_event_age_s: float) -> None:
        self.routes[detail_type] = Route(name, handler, retry_attempts, max_event_age_s)
        self.dead_letters.setdefault(name, [])

    async def put_events(self, entries: List[Dict[str, Any]]) -> PutEventsResult:
        results = []
        for entry in entries:
            event_id = str(uuid.uuid4())
            self.published.append({**entry, "EventId": event_id})
            route = self.routes.get(entry.get("DetailType"))
            if route:
                self._queue.append(Delivery(event_id, entry, route, self._clock()))
            else:
                logger.info(f"No route for {entry.get('DetailType')}; event {event_id} recorded only")
            results.append(PutEventsResultEntry(event_id=event_id))
        if self.auto_drain and self._queue and not self._draining:
            self._drain_task = asyncio.get_running_loop().create_task(self.drain())
        return PutEventsResult(failed_entry_count=0, entries=results)

    def pending(self) -> int:
        return len(self._queue)

    def events(self, detail_type: Optional[str] = None) -> List[Any]:
        """Published envelopes, oldest first."""
        return [
            parse_entry(e) for e in self.published
            if detail_type is None or e.get("DetailType") == detail_type
        ]

    async def drain(self) -> int:
        """Deliver queued events (including ones published by handlers) until the queue is empty."""
        if self._draining:
            return 0
        self._draining = True
        delivered = 0
        try:
            while self._queue:
                await self._deliver(self._queue.popleft())
                delivered += 1
        finally:
            self._draining = False
        return delivered

    def _dead_letter(self, delivery: Delivery, error: str) -> None:
        logger.error(
            f"Event {delivery.event_id} ({delivery.entry.get('DetailType')}) moved to DLQ "
            f"{delivery.route.name} after {delivery.attempts} attempt(s): {error}"
        )
        self.dead_letters[delivery.route.name].append(
            DeadLetter(delivery.event_id, delivery.entry, delivery.attempts, error)
        )

    async def _deliver(self, delivery: Delivery) -> None:
        route = delivery.route
        if self._clock() - delivery.enqueued_at > route.max_event_age_s:
            self._dead_letter(delivery, "maximum event age exceeded")
            return

        delivery.attempts += 1
        try:
            envelope = parse_entry(delivery.entry)
            await route.handler(envelope)
        except EventValidationError as e:
            self._dead_letter(delivery, str(e))
        except Exception as e:
            # retry_attempts counts retries after the first delivery
            if delivery.attempts > route.retry_attempts:
                self._dead_letter(delivery, str(e) or type(e).__name__)
            else:
                logger.warning(
                    f"Delivery of event {delivery.event_id} to {route.name} failed "
                    f"(attempt {delivery.attempts}): {e}; retrying"
                )
                self._queue.append(delivery)
