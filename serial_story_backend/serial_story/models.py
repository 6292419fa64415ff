from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CamelModel(BaseModel):
    """Records and payloads travel with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self, exclude_none: bool = False) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class GenerationType(str, Enum):
    STORY = "STORY"
    EPISODE = "EPISODE"
    IMAGE = "IMAGE"


class GenerationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = {GenerationStatus.COMPLETED, GenerationStatus.FAILED}

# --- Preferences ---

VALID_GENRES = [
    "Action", "Adventure", "Comedy", "Drama", "Fantasy", "Horror", "Mystery",
    "Romance", "Sci-Fi", "Slice of Life", "Sports", "Supernatural", "Thriller",
    "Historical", "Psychological", "Mecha", "Isekai", "School Life", "Military",
    "Music",
]

VALID_THEMES = [
    "Friendship", "Love", "Betrayal", "Revenge", "Coming of Age", "Good vs Evil",
    "Sacrifice", "Redemption", "Power", "Family", "Honor", "Justice", "Freedom",
    "Survival", "Identity", "Destiny", "War", "Peace", "Magic", "Technology",
]

ArtStyle = Literal[
    "Traditional", "Modern", "Minimalist", "Detailed", "Cartoon",
    "Realistic", "Chibi", "Dark", "Colorful", "Black and White",
]
TargetAudience = Literal["Children", "Teens", "Young Adults", "Adults", "All Ages"]
ContentRating = Literal["G", "PG", "PG-13", "R", "NC-17"]


class UserPreferencesData(CamelModel):
    genres: List[str] = Field(min_length=1, max_length=5)
    themes: List[str] = Field(default_factory=list, max_length=5)
    art_style: ArtStyle
    target_audience: TargetAudience
    content_rating: ContentRating

    @field_validator("genres")
    @classmethod
    def _known_genres(cls, genres: List[str]) -> List[str]:
        invalid = [g for g in genres if g not in VALID_GENRES]
        if invalid:
            raise ValueError(f"Invalid genres: {', '.join(invalid)}")
        return genres

    @field_validator("themes")
    @classmethod
    def _known_themes(cls, themes: List[str]) -> List[str]:
        invalid = [t for t in themes if t not in VALID_THEMES]
        if invalid:
            raise ValueError(f"Invalid themes: {', '.join(invalid)}")
        return themes


class UserPreferences(CamelModel):
    user_id: str
    preferences: UserPreferencesData
    insights: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)


class PreferencesSubmission(CamelModel):
    preferences: UserPreferencesData
    insights: Dict[str, Any] = Field(default_factory=dict)

# --- Stored entities ---

class GenerationRequest(CamelModel):
    request_id: str
    user_id: str
    type: GenerationType
    status: GenerationStatus = GenerationStatus.PENDING
    related_entity_id: Optional[str] = None
    error_message: Optional[str] = None
    workflow_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    version: int = 0


class Story(CamelModel):
    story_id: str
    user_id: str
    title: str = "Untitled Story"
    content_key: Optional[str] = None
    status: GenerationStatus = GenerationStatus.PENDING
    workflow_id: Optional[str] = None
    request_id: Optional[str] = None
    preferences: Optional[UserPreferencesData] = None
    error_message: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    version: int = 0


class Episode(CamelModel):
    episode_id: str
    story_id: str
    user_id: str
    episode_number: int = Field(ge=1)
    title: Optional[str] = None
    content_key: Optional[str] = None
    artifact_key: Optional[str] = None
    image_count: int = 0
    status: GenerationStatus = GenerationStatus.PENDING
    error_message: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    version: int = 0

# --- API payloads ---

class WorkflowStartRequest(CamelModel):
    number_of_stories: StrictInt = Field(ge=1, le=10)
    batch_size: Optional[StrictInt] = Field(default=None, ge=1, le=5)


class WorkflowStartResponse(CamelModel):
    workflow_id: str
    request_id: str
    number_of_stories: int
    status: Literal["STARTED"] = "STARTED"
    estimated_completion_time: str


class ContinueEpisodeResponse(CamelModel):
    episode_id: str
    episode_number: int
    request_id: str
    status: Literal["GENERATING"] = "GENERATING"
    estimated_completion_time: str


class ProgressInfo(CamelModel):
    current_step: str
    total_steps: int
    completed_steps: int


class StatusResult(CamelModel):
    story_id: Optional[str] = None
    story_ids: Optional[List[str]] = None
    episode_id: Optional[str] = None
    download_url: Optional[str] = None


class StatusResponse(CamelModel):
    request_id: str
    status: GenerationStatus
    type: GenerationType
    timestamp: str
    progress: Optional[ProgressInfo] = None
    result: Optional[StatusResult] = None
    error: Optional[str] = None


def format_validation_errors(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)
