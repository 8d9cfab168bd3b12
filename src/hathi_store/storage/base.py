"""Base classes for note storage adapters."""
import logging
import threading
import weakref
from abc import ABC, abstractmethod
from contextlib import ExitStack, contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Type, TypeVar, Union

import pydantic
from sqlalchemy.exc import SQLAlchemyError

from hathi_store.exceptions import (
    ErrorCode,
    NotFoundError,
    PersistenceError,
    TransactionError,
    ValidationError,
)
from hathi_store.models.schema import (
    ContextStats,
    CreateNoteParams,
    FetchNotesParams,
    FilterNotesResult,
    FilterOptions,
    Note,
    NotesFilter,
    PaginatedContextStats,
    SemanticSearchResult,
    UpdateNoteParams,
)
from hathi_store.observability import traced
from hathi_store.services.search_service import SemanticSearchExecutor
from hathi_store.storage.context_merge import (
    MergePrimitives,
    RenameOutcome,
    run_context_rename,
)

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=pydantic.BaseModel)


@contextmanager
def wrap_db_errors(
    operation: str, code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED
) -> Iterator[None]:
    """Re-raise SQLAlchemy errors as PersistenceError, keeping the cause."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise PersistenceError(
            f"Database error during {operation}: {e}",
            operation=operation,
            code=code,
            original_error=e,
        ) from e


def enum_value(value: Any) -> Any:
    """Store enums by their string value."""
    return value.value if isinstance(value, Enum) else value


def coerce_params(model: Type[P], value: Union[P, Mapping[str, Any], None]) -> P:
    """Accept either a parameter model or a plain dict.

    Dict keys become the model's explicitly-set fields, so a dict patch
    behaves like a model patch.
    """
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value if value is not None else {})
    except pydantic.ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {model.__name__}: {first.get('msg', str(e))}",
            field=field,
            value=first.get("input"),
        ) from e


class NoteStorageAdapter(ABC):
    """Backend-agnostic contract for persisting notes and contexts.

    Subclasses implement the CRUD, query and statistics operations plus
    two hooks used by the shared operations here: ``_similarity_rows``
    (the backend's vector primitive) and ``_rename_transaction`` (a
    transaction-bound MergePrimitives implementation).
    """

    backend_name = "abstract"

    def __init__(self, embedding_dim: Optional[int] = None):
        self.embedding_dim = embedding_dim
        # Per-context locks serialize renames touching the same names
        self._context_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._context_locks_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Notes

    @abstractmethod
    def create_note(self, params: Union[CreateNoteParams, Mapping[str, Any]]) -> Note:
        """Insert a note, upsert its contexts and link them.

        Raises:
            ValidationError: If required fields are missing or blank.
            PersistenceError: On duplicate id or backend rejection.
        """
        pass

    @abstractmethod
    def update_note(
        self, note_id: str, patch: Union[UpdateNoteParams, Mapping[str, Any]]
    ) -> Note:
        """Apply a partial update; ``contexts`` replaces all edges.

        Raises:
            NoOpError: If the patch sets no field.
            NoteNotFoundError: If the note does not exist.
            PersistenceError: On backend rejection.
        """
        pass

    @abstractmethod
    def delete_note(self, note_id: str) -> str:
        """Delete a note and its edges. A missing id is a no-op.

        Returns:
            The id passed in.
        """
        pass

    @abstractmethod
    def fetch_notes(self, params: Union[FetchNotesParams, Mapping[str, Any]]) -> List[Note]:
        """Fetch notes by context membership, newest first."""
        pass

    @abstractmethod
    def fetch_notes_by_ids(self, ids: Sequence[str]) -> List[Note]:
        """Fetch notes by id; unknown ids are skipped."""
        pass

    @abstractmethod
    def filter_notes(
        self, filters: Union[NotesFilter, Mapping[str, Any], None] = None
    ) -> FilterNotesResult:
        """Run a compiled filter, newest first, with an unlimited total count."""
        pass

    @abstractmethod
    def get_filter_options(self) -> FilterOptions:
        """Return distinct context names, tags, note types and statuses."""
        pass

    # ------------------------------------------------------------------
    # Contexts

    @abstractmethod
    def fetch_context_stats_paginated(
        self, limit: int = 30, offset: int = 0
    ) -> PaginatedContextStats:
        """Return a page of per-context note counts."""
        pass

    @abstractmethod
    def search_contexts(self, term: str, limit: int = 20) -> List[ContextStats]:
        """Find contexts whose name contains ``term`` (case-insensitive)."""
        pass

    @abstractmethod
    def context_exists(self, name: str) -> bool:
        """Probe for a context name; returns False on any failure."""
        pass

    # ------------------------------------------------------------------
    # Backend hooks

    @abstractmethod
    def _similarity_rows(
        self, vector: List[float], threshold: float, limit: int
    ) -> List[Dict[str, Any]]:
        """Return raw note rows with ``similarity >= threshold``, best first."""
        pass

    @abstractmethod
    def _rename_transaction(self, old_name: str, new_name: str):
        """Context manager yielding MergePrimitives bound to one transaction.

        Commits on normal exit, rolls back when the block raises.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the engine and its pooled connections."""
        pass

    # ------------------------------------------------------------------
    # Shared operations

    @staticmethod
    def _validate_fetch_params(params: FetchNotesParams) -> None:
        if not params.contexts and not params.key_context:
            raise ValidationError(
                "Either contexts or key_context must be provided",
                field="contexts",
                code=ErrorCode.INVALID_ARGUMENT,
            )

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit is None or limit < 1:
            raise ValidationError(
                "limit must be a positive integer", field="limit", value=limit,
                code=ErrorCode.OUT_OF_RANGE,
            )
        if offset is None or offset < 0:
            raise ValidationError(
                "offset must be >= 0", field="offset", value=offset,
                code=ErrorCode.OUT_OF_RANGE,
            )

    def _check_embedding(self, embedding: Optional[List[float]]) -> None:
        if embedding is None:
            return
        if not embedding:
            raise ValidationError(
                "embedding must not be empty", field="embedding",
                code=ErrorCode.SEARCH_INVALID_VECTOR,
            )
        if self.embedding_dim is not None and len(embedding) != self.embedding_dim:
            raise ValidationError(
                f"embedding has {len(embedding)} dimensions, expected {self.embedding_dim}",
                field="embedding",
                value=len(embedding),
                code=ErrorCode.SEARCH_INVALID_VECTOR,
            )

    @traced("execute_semantic_search")
    def execute_semantic_search(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> SemanticSearchResult:
        """Vector similarity search over notes with stored embeddings.

        Args:
            vector: Query embedding.
            threshold: Minimum similarity in [0, 1].
            limit: Maximum number of results in [1, 1000].

        Returns:
            Notes ordered by similarity descending, all >= threshold.
        """
        executor = SemanticSearchExecutor(self._similarity_rows, self.embedding_dim)
        return executor.execute(vector, threshold, limit)

    def _get_context_lock(self, name: str) -> threading.RLock:
        """Get or create the lock for a context name."""
        with self._context_locks_lock:
            lock = self._context_locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._context_locks[name] = lock
            return lock

    @contextmanager
    def _locked_contexts(self, *names: str) -> Iterator[None]:
        # Fixed acquisition order avoids deadlock between opposite renames
        with ExitStack() as stack:
            for name in sorted(set(names)):
                stack.enter_context(self._get_context_lock(name))
            yield

    @traced("rename_context")
    def rename_context(self, old_name: str, new_name: str) -> RenameOutcome:
        """Rename a context, merging it into ``new_name`` when that exists.

        Runs as one transaction: edges, the context row and the affected
        notes' inline references and key_context change together or not
        at all.

        Raises:
            ValidationError: If either name is blank.
            ContextNotFoundError: If ``old_name`` does not exist.
            TransactionError: For any other failure (after rollback).
        """
        for field, value in (("old_name", old_name), ("new_name", new_name)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(
                    f"{field} must be a non-empty string", field=field, value=value,
                    code=ErrorCode.INVALID_ARGUMENT,
                )

        if old_name == new_name:
            logger.info(f"Context '{old_name}' renamed to itself; nothing to do")
            return RenameOutcome(mode="noop", old_name=old_name, new_name=new_name)

        with self._locked_contexts(old_name, new_name):
            try:
                with self._rename_transaction(old_name, new_name) as primitives:
                    return run_context_rename(primitives, old_name, new_name)
            except NotFoundError:
                raise
            except Exception as e:
                logger.error(
                    f"Context rename '{old_name}' -> '{new_name}' failed, "
                    f"rolled back: {e}"
                )
                raise TransactionError(
                    f"Failed to rename context '{old_name}' to '{new_name}'",
                    operation="rename_context",
                    original_error=e,
                ) from e


__all__ = [
    "MergePrimitives",
    "NoteStorageAdapter",
    "coerce_params",
    "enum_value",
    "wrap_db_errors",
]
