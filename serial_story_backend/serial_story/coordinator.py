import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .errors import EventPublishError, TransportError, ValidationError
from .events import BatchStoryGenerationDetail, BatchStoryGenerationRequested, total_batches_for
from .models import (
    GenerationType,
    WorkflowStartRequest,
    WorkflowStartResponse,
    format_validation_errors,
    utc_now_iso,
)
from .settings import MINUTES_PER_STORY

logger = logging.getLogger(__name__)


def estimate_completion(minutes: int) -> str:
    eta = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return eta.isoformat().replace("+00:00", "Z")


class WorkflowCoordinator:
    """Entry point for batch workflows: validate, plan, record, emit the first batch."""

    def __init__(self, ledger, preferences, publisher, rate_limiter):
        self.ledger = ledger
        self.preferences = preferences
        self.publisher = publisher
        self.rate_limiter = rate_limiter

    async def start_workflow(self, user_id: str, payload: Any) -> WorkflowStartResponse:
        await self.rate_limiter.hit(user_id)

        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            request = WorkflowStartRequest.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid workflow request: {format_validation_errors(e)}") from e
        batch_size = request.batch_size or 1

        prefs = await self.preferences.latest(user_id)
        if prefs is None:
            raise ValidationError(
                "User preferences not found. Please submit preferences first.",
                code="PREFERENCES_NOT_FOUND",
            )

        workflow_id = str(uuid.uuid4())
        ledger_entry = await self.ledger.create(user_id, GenerationType.STORY, workflow_id=workflow_id)
        total_batches = total_batches_for(request.number_of_stories, batch_size)
        logger.info(
            f"Starting workflow {workflow_id} for user {user_id}: {request.number_of_stories} stories "
            f"in {total_batches} batch(es) of {batch_size} (request {ledger_entry.request_id})"
        )

        event = BatchStoryGenerationRequested(
            detail=BatchStoryGenerationDetail(
                user_id=user_id,
                workflow_id=workflow_id,
                request_id=ledger_entry.request_id,
                number_of_stories=request.number_of_stories,
                batch_size=batch_size,
                current_batch=1,
                total_batches=total_batches,
                completed_stories=0,
                failed_stories=0,
                preferences=prefs.preferences,
                insights=prefs.insights,
                timestamp=utc_now_iso(),
            )
        )
        try:
            await self.publisher.publish(event)
        except TransportError as e:
            logger.error(f"Failed to start workflow {workflow_id}: {e.message}")
            await self.ledger.mark_failed(ledger_entry.request_id, f"Failed to start workflow: {e.message}")
            if isinstance(e, EventPublishError):
                raise
            raise EventPublishError(f"Failed to start workflow: {e.message}") from e

        return WorkflowStartResponse(
            workflow_id=workflow_id,
            request_id=ledger_entry.request_id,
            number_of_stories=request.number_of_stories,
            estimated_completion_time=estimate_completion(request.number_of_stories * MINUTES_PER_STORY),
        )
