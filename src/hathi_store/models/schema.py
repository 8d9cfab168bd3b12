"""Data models for the Hathi storage layer."""

import datetime
import uuid
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes for DateTime(timezone=True) columns;
    those values were written as UTC, so UTC is attached here.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_utc(dt_value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if dt_value is None:
        return None
    return ensure_timezone_aware(dt_value).astimezone(timezone.utc)


def to_epoch_ms(dt_value: Optional[datetime.datetime]) -> Optional[int]:
    """Convert a datetime to integer milliseconds since the Unix epoch."""
    if dt_value is None:
        return None
    return int(round(ensure_timezone_aware(dt_value).timestamp() * 1000))


def from_epoch_ms(value: Optional[Union[int, float]]) -> Optional[datetime.datetime]:
    """Convert milliseconds since the Unix epoch to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def generate_id() -> str:
    """Generate a new note identifier (UUID4 string)."""
    return str(uuid.uuid4())


class NoteType(str, Enum):
    """Closed set of note types."""

    NOTE = "note"
    TODO = "todo"
    AI_TODO = "ai-todo"
    AI_NOTE = "ai-note"


class TodoStatus(str, Enum):
    """Task status for todo notes."""

    TODO = "TODO"
    DOING = "DOING"
    DONE = "DONE"
    OBSOLETE = "OBSOLETE"


FetchMethod = Literal["AND", "OR"]


def _strip_names(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    return [v for v in values if isinstance(v, str) and v.strip()]


class Note(BaseModel):
    """A persisted note with its contexts resolved."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    content: str
    key_context: Optional[str] = None
    contexts: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    suggested_contexts: List[str] = Field(default_factory=list)
    note_type: Optional[NoteType] = None
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    embedding_created_at: Optional[datetime.datetime] = None
    deadline: Optional[datetime.datetime] = None
    status: Optional[TodoStatus] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    @field_validator(
        "created_at", "updated_at", "deadline", "embedding_created_at", mode="after"
    )
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Note":
        if self.created_at > self.updated_at:
            raise ValueError("created_at must not be later than updated_at")
        return self

    def __str__(self) -> str:
        return f"Note(id='{self.id}', key_context='{self.key_context}')"


class SearchResultNote(BaseModel):
    """A note as returned by filter and similarity searches.

    Carries no embedding; ``similarity`` is set only for vector searches.
    """

    id: str
    content: str
    key_context: Optional[str] = None
    contexts: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    suggested_contexts: List[str] = Field(default_factory=list)
    note_type: Optional[NoteType] = None
    deadline: Optional[datetime.datetime] = None
    status: Optional[TodoStatus] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime
    similarity: Optional[float] = None

    @field_validator("created_at", "updated_at", "deadline", mode="after")
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)


class CreateNoteParams(BaseModel):
    """Parameters for creating a new note."""

    id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    key_context: str = Field(min_length=1)
    contexts: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    suggested_contexts: List[str] = Field(default_factory=list)
    note_type: Optional[NoteType] = None
    deadline: Optional[datetime.datetime] = None
    status: Optional[TodoStatus] = None
    created_at: Optional[datetime.datetime] = None

    @field_validator("id", "key_context")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("contexts", "tags", "suggested_contexts", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("contexts", "tags", "suggested_contexts")
    @classmethod
    def _drop_blank(cls, v: List[str]) -> List[str]:
        return _strip_names(v)

    @field_validator("deadline", "created_at", mode="after")
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)


# Columns an update may touch besides the context edges
UPDATABLE_NOTE_FIELDS = (
    "content",
    "tags",
    "suggested_contexts",
    "note_type",
    "deadline",
    "status",
    "embedding",
    "embedding_model",
    "embedding_created_at",
)


class UpdateNoteParams(BaseModel):
    """A partial update to a note.

    Only fields explicitly set on the instance are applied; setting a
    nullable field to ``None`` clears it. ``contexts`` replaces the
    note's edges entirely.
    """

    content: Optional[str] = None
    contexts: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    suggested_contexts: Optional[List[str]] = None
    note_type: Optional[NoteType] = None
    deadline: Optional[datetime.datetime] = None
    status: Optional[TodoStatus] = None
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = Field(default=None, max_length=50)
    embedding_created_at: Optional[datetime.datetime] = None

    @field_validator("content")
    @classmethod
    def _content_not_null(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            raise ValueError("content cannot be cleared")
        return v

    @field_validator("contexts", "tags", "suggested_contexts")
    @classmethod
    def _drop_blank(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _strip_names(v)

    @field_validator("deadline", "embedding_created_at", mode="after")
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)

    @property
    def has_contexts(self) -> bool:
        """Whether the patch replaces the context edges."""
        return "contexts" in self.model_fields_set

    def column_changes(self) -> Dict[str, Any]:
        """Return the explicitly-set non-context fields."""
        return {
            name: getattr(self, name)
            for name in UPDATABLE_NOTE_FIELDS
            if name in self.model_fields_set
        }


class FetchNotesParams(BaseModel):
    """Parameters for fetching notes by context membership."""

    key_context: Optional[str] = None
    contexts: Optional[List[str]] = None
    method: FetchMethod = "OR"


class NotesFilter(BaseModel):
    """Optional-field filter for filter_notes().

    ``contexts`` uses AND semantics (a note must carry every listed
    context) while ``hashtags`` uses OR semantics.
    """

    created_after: Optional[datetime.datetime] = None
    created_before: Optional[datetime.datetime] = None
    contexts: Optional[List[str]] = None
    hashtags: Optional[List[str]] = None
    note_type: Optional[NoteType] = None
    deadline_after: Optional[datetime.datetime] = None
    deadline_before: Optional[datetime.datetime] = None
    deadline_on: Optional[datetime.date] = None
    status: Optional[TodoStatus] = None
    limit: Optional[int] = None

    @field_validator(
        "created_after", "created_before", "deadline_after", "deadline_before",
        mode="after",
    )
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)


class FilterNotesResult(BaseModel):
    """Result of filter_notes()."""

    notes: List[SearchResultNote]
    total_count: int
    applied_filters: Dict[str, Any]


class SemanticSearchResult(BaseModel):
    """Result of a vector similarity search."""

    notes: List[SearchResultNote]
    total_count: int
    applied_filters: Dict[str, Any]


class ContextStats(BaseModel):
    """Usage statistics for a single context."""

    context: str
    count: int
    last_used: Optional[datetime.datetime] = None

    @field_validator("last_used", mode="after")
    @classmethod
    def _attach_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return to_utc(v)


class PaginatedContextStats(BaseModel):
    """A page of context statistics."""

    contexts: List[ContextStats]
    total_count: int
    has_more: bool


class FilterOptions(BaseModel):
    """Distinct values currently in use, for suggestion UIs."""

    available_contexts: List[str] = Field(default_factory=list)
    available_hashtags: List[str] = Field(default_factory=list)
    available_note_types: List[str] = Field(default_factory=list)
    available_statuses: List[TodoStatus] = Field(default_factory=list)
