"""Backend-neutral compiler for note filters.

compile_filters() turns an optional-field NotesFilter into an ordered list
of predicate objects plus the resolved page size and an echo of the fields
that were actually supplied. Each adapter translates the predicates into
its own SQL; the AND-composition of the list is implied.
"""
import datetime
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from hathi_store.models.schema import NotesFilter

DEFAULT_LIMIT = 20
MAX_LIMIT = 50


@dataclass(frozen=True)
class CreatedRange:
    """Inclusive bounds on notes.created_at (either side may be open)."""
    after: Optional[datetime.datetime] = None
    before: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class DeadlineRange:
    """Inclusive bounds on notes.deadline (either side may be open)."""
    after: Optional[datetime.datetime] = None
    before: Optional[datetime.datetime] = None


@dataclass(frozen=True)
class HasAllContexts:
    """Note is linked to every named context."""
    names: Tuple[str, ...]


@dataclass(frozen=True)
class HasAnyTag:
    """Note carries at least one of the tags."""
    tags: Tuple[str, ...]


@dataclass(frozen=True)
class FieldEquals:
    """Equality on a scalar notes column."""
    column: str
    value: str


Predicate = Union[CreatedRange, DeadlineRange, HasAllContexts, HasAnyTag, FieldEquals]


@dataclass
class CompiledFilter:
    """Output of compile_filters()."""
    predicates: List[Predicate] = field(default_factory=list)
    limit: int = DEFAULT_LIMIT
    applied_filters: Dict[str, Any] = field(default_factory=dict)


def clamp_limit(limit: Optional[int]) -> int:
    """Resolve a requested page size to [1, MAX_LIMIT].

    Unset or non-positive values fall back to DEFAULT_LIMIT.
    """
    if limit is None or limit <= 0:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def day_bounds(day: datetime.date) -> Tuple[datetime.datetime, datetime.datetime]:
    """Return [00:00:00.000Z, 23:59:59.999Z] of a calendar day in UTC."""
    start = datetime.datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    end = start + datetime.timedelta(days=1) - datetime.timedelta(milliseconds=1)
    return start, end


def compile_filters(filters: Optional[NotesFilter] = None) -> CompiledFilter:
    """Compile a NotesFilter into predicates, a limit and an applied-filter echo.

    Semantics:
        - created_after / created_before: inclusive bounds
        - contexts: AND (note must carry every listed context)
        - hashtags: OR (any listed tag)
        - note_type, status: equality
        - deadline_after / deadline_before: inclusive bounds
        - deadline_on: the whole UTC calendar day
        - limit: clamped to [1, 50], default 20

    Args:
        filters: The filter object; None means "no filters".

    Returns:
        CompiledFilter with predicates in a stable order.
    """
    filters = filters or NotesFilter()
    compiled = CompiledFilter(limit=clamp_limit(filters.limit))
    applied: Dict[str, Any] = {}

    if filters.created_after or filters.created_before:
        compiled.predicates.append(
            CreatedRange(after=filters.created_after, before=filters.created_before)
        )
        if filters.created_after:
            applied["created_after"] = filters.created_after
        if filters.created_before:
            applied["created_before"] = filters.created_before

    if filters.contexts:
        compiled.predicates.append(HasAllContexts(names=tuple(filters.contexts)))
        applied["contexts"] = list(filters.contexts)

    if filters.hashtags:
        compiled.predicates.append(HasAnyTag(tags=tuple(filters.hashtags)))
        applied["hashtags"] = list(filters.hashtags)

    if filters.note_type:
        compiled.predicates.append(FieldEquals("note_type", filters.note_type.value))
        applied["note_type"] = filters.note_type.value

    if filters.deadline_after or filters.deadline_before:
        compiled.predicates.append(
            DeadlineRange(after=filters.deadline_after, before=filters.deadline_before)
        )
        if filters.deadline_after:
            applied["deadline_after"] = filters.deadline_after
        if filters.deadline_before:
            applied["deadline_before"] = filters.deadline_before

    if filters.deadline_on:
        start, end = day_bounds(filters.deadline_on)
        compiled.predicates.append(DeadlineRange(after=start, before=end))
        applied["deadline_on"] = filters.deadline_on

    if filters.status:
        compiled.predicates.append(FieldEquals("status", filters.status.value))
        applied["status"] = filters.status.value

    applied["limit"] = compiled.limit
    compiled.applied_filters = applied
    return compiled
