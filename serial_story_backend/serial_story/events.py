"""
Event envelopes exchanged over the event bus.

Each envelope type pins its ``source`` and ``detailType`` and owns a typed
``detail`` model; ``Envelope`` is the tagged union of all of them, keyed by
``detailType``. Anything that does not parse into one of these shapes is
rejected before it is sent.
"""
import json
import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter, ValidationError, model_validator

from .errors import EventValidationError
from .models import CamelModel, GenerationStatus, GenerationType, UserPreferencesData, format_validation_errors

STORY_GENERATION_REQUESTED = "Story Generation Requested"
BATCH_STORY_GENERATION_REQUESTED = "Batch Story Generation Requested"
BATCH_WORKFLOW_COMPLETED = "Batch Workflow Completed"
EPISODE_GENERATION_REQUESTED = "Episode Generation Requested"
CONTINUE_EPISODE_REQUESTED = "Continue Episode Requested"
IMAGE_GENERATION_REQUESTED = "Image Generation Requested"
GENERATION_STATUS_UPDATED = "Generation Status Updated"

Id = Annotated[str, Field(min_length=1)]


def total_batches_for(number_of_stories: int, batch_size: int) -> int:
    return math.ceil(number_of_stories / batch_size)


class EventDetail(CamelModel):
    user_id: Id
    timestamp: str = Field(min_length=1)


class StoryGenerationDetail(EventDetail):
    request_id: Id
    preferences: UserPreferencesData
    insights: Dict[str, Any] = Field(default_factory=dict)


class BatchStoryGenerationDetail(EventDetail):
    workflow_id: Id
    request_id: Id
    number_of_stories: int = Field(ge=1, le=10)
    batch_size: int = Field(default=1, ge=1, le=5)
    current_batch: int = Field(ge=1)
    total_batches: int = Field(ge=1)
    completed_stories: int = Field(default=0, ge=0)
    failed_stories: int = Field(default=0, ge=0)
    preferences: UserPreferencesData
    insights: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_plan(self):
        expected = total_batches_for(self.number_of_stories, self.batch_size)
        if self.total_batches != expected:
            raise ValueError(f"totalBatches must be {expected} for {self.number_of_stories} stories in batches of {self.batch_size}")
        if self.current_batch > self.total_batches:
            raise ValueError("currentBatch cannot exceed totalBatches")
        return self

    @property
    def is_last_batch(self) -> bool:
        return self.current_batch == self.total_batches

    def story_indexes(self) -> range:
        """1-based workflow indexes of the stories this batch produces."""
        first = (self.current_batch - 1) * self.batch_size + 1
        last = min(self.current_batch * self.batch_size, self.number_of_stories)
        return range(first, last + 1)


class BatchWorkflowCompletedDetail(EventDetail):
    workflow_id: Id
    request_id: Id
    total_batches: int = Field(ge=1)
    completed_stories: int = Field(ge=0)
    failed_stories: int = Field(default=0, ge=0)
    story_ids: List[str] = Field(default_factory=list)


class EpisodeGenerationDetail(EventDetail):
    story_id: Id
    story_key: Id
    episode_number: int = Field(ge=1)
    workflow_id: Optional[str] = None


class ContinueEpisodeDetail(EventDetail):
    story_id: Id
    story_key: Id
    episode_id: Id
    request_id: Id
    next_episode_number: int = Field(ge=1)
    original_preferences: UserPreferencesData


class ImageGenerationDetail(EventDetail):
    story_id: Id
    episode_id: Id
    episode_number: int = Field(ge=1)
    episode_key: Id
    request_id: Optional[str] = None


class GenerationStatusDetail(EventDetail):
    request_id: Id
    type: GenerationType
    status: GenerationStatus
    entity_id: Optional[str] = None
    error_message: Optional[str] = None


class BaseEnvelope(CamelModel):
    def to_entry(self, event_bus_name: str) -> Dict[str, Any]:
        return {
            "Source": self.source,
            "DetailType": self.detail_type,
            "Detail": json.dumps(self.detail.to_json_dict(exclude_none=True)),
            "EventBusName": event_bus_name,
        }


class StoryGenerationRequested(BaseEnvelope):
    source: Literal["preferences"] = "preferences"
    detail_type: Literal["Story Generation Requested"] = STORY_GENERATION_REQUESTED
    detail: StoryGenerationDetail


class BatchStoryGenerationRequested(BaseEnvelope):
    source: Literal["workflow"] = "workflow"
    detail_type: Literal["Batch Story Generation Requested"] = BATCH_STORY_GENERATION_REQUESTED
    detail: BatchStoryGenerationDetail


class BatchWorkflowCompleted(BaseEnvelope):
    source: Literal["workflow"] = "workflow"
    detail_type: Literal["Batch Workflow Completed"] = BATCH_WORKFLOW_COMPLETED
    detail: BatchWorkflowCompletedDetail


class EpisodeGenerationRequested(BaseEnvelope):
    source: Literal["story"] = "story"
    detail_type: Literal["Episode Generation Requested"] = EPISODE_GENERATION_REQUESTED
    detail: EpisodeGenerationDetail


class ContinueEpisodeRequested(BaseEnvelope):
    source: Literal["story"] = "story"
    detail_type: Literal["Continue Episode Requested"] = CONTINUE_EPISODE_REQUESTED
    detail: ContinueEpisodeDetail


class ImageGenerationRequested(BaseEnvelope):
    source: Literal["episode"] = "episode"
    detail_type: Literal["Image Generation Requested"] = IMAGE_GENERATION_REQUESTED
    detail: ImageGenerationDetail


class GenerationStatusUpdated(BaseEnvelope):
    source: Literal["generation"] = "generation"
    detail_type: Literal["Generation Status Updated"] = GENERATION_STATUS_UPDATED
    detail: GenerationStatusDetail


Envelope = Annotated[
    Union[
        StoryGenerationRequested,
        BatchStoryGenerationRequested,
        BatchWorkflowCompleted,
        EpisodeGenerationRequested,
        ContinueEpisodeRequested,
        ImageGenerationRequested,
        GenerationStatusUpdated,
    ],
    Field(discriminator="detail_type"),
]

_envelope_adapter = TypeAdapter(Envelope)


def parse_envelope(raw: Dict[str, Any]):
    """Validate a raw ``{source, detailType, detail}`` mapping into its envelope type."""
    try:
        return _envelope_adapter.validate_python(raw)
    except ValidationError as e:
        detail_type = raw.get("detailType") if isinstance(raw, dict) else None
        raise EventValidationError(f"Event validation failed for {detail_type!r}: {format_validation_errors(e)}") from e


def parse_entry(entry: Dict[str, Any]):
    """Inverse of ``BaseEnvelope.to_entry`` for deliveries coming off the bus."""
    try:
        detail = json.loads(entry["Detail"]) if isinstance(entry.get("Detail"), str) else entry.get("Detail")
    except json.JSONDecodeError as e:
        raise EventValidationError(f"Event detail is not valid JSON: {e}") from e
    return parse_envelope({
        "source": entry.get("Source"),
        "detailType": entry.get("DetailType"),
        "detail": detail,
    })


def validate_envelope(envelope):
    """Re-check an envelope that may have been built or mutated without validation."""
    if isinstance(envelope, BaseEnvelope):
        raw = envelope.model_dump(mode="json", by_alias=True, exclude_none=True)
    else:
        raw = envelope
    return parse_envelope(raw)
