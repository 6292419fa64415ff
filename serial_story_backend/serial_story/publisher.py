import logging
from typing import Any, List, Sequence

from .errors import EventPublishError, EventValidationError
from .events import validate_envelope
from .settings import EVENT_BUS_NAME, MAX_EVENTS_PER_BATCH

logger = logging.getLogger(__name__)


class EventPublisher:
    """Validates envelopes and hands them to the bus; nothing invalid is ever sent."""

    def __init__(self, bus, event_bus_name: str = EVENT_BUS_NAME):
        self.bus = bus
        self.event_bus_name = event_bus_name
        logger.info(f"EventPublisher initialized with bus: {self.event_bus_name}")

    async def publish(self, envelope) -> str:
        envelope = validate_envelope(envelope)
        result = await self.bus.put_events([envelope.to_entry(self.event_bus_name)])
        if result.failed_entry_count > 0:
            failed = result.entries[0] if result.entries else None
            reason = f"{failed.error_code}: {failed.error_message}" if failed else "unknown error"
            logger.error(f"Failed to publish {envelope.detail_type}: {reason}")
            raise EventPublishError(f"Failed to publish {envelope.detail_type}: {reason}")
        event_id = result.entries[0].event_id if result.entries else None
        logger.info(f"Published event {envelope.detail_type} from {envelope.source} (eventId={event_id})")
        return event_id

    async def publish_batch(self, envelopes: Sequence[Any]) -> List[str]:
        if not envelopes:
            return []
        if len(envelopes) > MAX_EVENTS_PER_BATCH:
            raise EventValidationError(f"Cannot publish more than {MAX_EVENTS_PER_BATCH} events in a single batch")

        validated = []
        errors = []
        for i, envelope in enumerate(envelopes):
            try:
                validated.append(validate_envelope(envelope))
            except EventValidationError as e:
                errors.append(f"Event {i}: {e.message}")
        if errors:
            raise EventValidationError(f"Batch event validation failed: {'; '.join(errors)}")

        result = await self.bus.put_events([e.to_entry(self.event_bus_name) for e in validated])
        if result.failed_entry_count > 0:
            failures = [
                f"{env.detail_type} ({entry.error_code}: {entry.error_message})"
                for env, entry in zip(validated, result.entries) if entry.error_code
            ]
            message = f"{result.failed_entry_count} of {len(validated)} entries failed"
            if failures:
                message += ": " + ", ".join(failures)
            logger.error(f"Failed to publish batch: {message}")
            raise EventPublishError(message)

        logger.info(f"Published {len(validated)} events: {[e.detail_type for e in validated]}")
        return [entry.event_id for entry in result.entries]
