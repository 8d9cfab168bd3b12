"""Semantic similarity search over stored note embeddings."""

from __future__ import annotations

import datetime
import json
import logging
import math
from decimal import Decimal
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
)

import numpy as np

from hathi_store.config import HathiConfig
from hathi_store.config import config as default_config
from hathi_store.exceptions import (
    ConfigurationError,
    ErrorCode,
    NoteNotFoundError,
    PersistenceError,
    ValidationError,
)
from hathi_store.models.schema import (
    NoteType,
    SearchResultNote,
    SemanticSearchResult,
    TodoStatus,
    UpdateNoteParams,
    from_epoch_ms,
    to_utc,
    utc_now,
)

if TYPE_CHECKING:
    from hathi_store.services.embedding_types import EmbeddingProvider
    from hathi_store.storage.base import NoteStorageAdapter

logger = logging.getLogger(__name__)

MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 1000

# (vector, threshold, limit) -> raw rows sorted by similarity descending
SimilarityPrimitive = Callable[[List[float], float, int], Iterable[Mapping[str, Any]]]


def validate_search_vector(vector: Any, dimension: Optional[int] = None) -> List[float]:
    """Check a query vector and return it as a list of Python floats.

    Raises:
        ValidationError: If the vector is empty, not one-dimensional,
            non-numeric, contains NaN/inf, or has the wrong length.
    """
    if vector is None:
        raise ValidationError(
            "Query vector is required", field="vector",
            code=ErrorCode.SEARCH_INVALID_VECTOR,
        )
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Query vector must contain only numbers: {e}", field="vector",
            code=ErrorCode.SEARCH_INVALID_VECTOR,
        ) from e
    if array.ndim != 1 or array.size == 0:
        raise ValidationError(
            "Query vector must be a non-empty one-dimensional sequence",
            field="vector",
            value=f"shape={array.shape}",
            code=ErrorCode.SEARCH_INVALID_VECTOR,
        )
    if not np.all(np.isfinite(array)):
        raise ValidationError(
            "Query vector contains NaN or infinite values", field="vector",
            code=ErrorCode.SEARCH_INVALID_VECTOR,
        )
    if dimension is not None and array.size != dimension:
        raise ValidationError(
            f"Query vector has {array.size} dimensions, expected {dimension}",
            field="vector",
            value=array.size,
            code=ErrorCode.SEARCH_INVALID_VECTOR,
        )
    return array.tolist()


def _coerce_list(value: Any) -> List[str]:
    """Normalize array columns: list/tuple, JSON text, or NULL."""
    if value is None:
        return []
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value]
        if value is None:
            return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def _coerce_datetime(value: Any) -> Optional[datetime.datetime]:
    """Normalize timestamps: datetime, ISO-8601 text or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return to_utc(value)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return from_epoch_ms(float(value))
    if isinstance(value, str):
        return to_utc(datetime.datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _coerce_enum(enum_cls, value: Any):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Ignoring unknown {enum_cls.__name__} value {value!r}")
        return None


def normalize_search_row(row: Mapping[str, Any]) -> SearchResultNote:
    """Convert one raw similarity row into a SearchResultNote."""
    return SearchResultNote(
        id=str(row["id"]),
        content=str(row["content"]),
        key_context=row.get("key_context") or None,
        contexts=_coerce_list(row.get("contexts")),
        tags=_coerce_list(row.get("tags")),
        suggested_contexts=_coerce_list(row.get("suggested_contexts")),
        note_type=_coerce_enum(NoteType, row.get("note_type")),
        deadline=_coerce_datetime(row.get("deadline")),
        status=_coerce_enum(TodoStatus, row.get("status")),
        created_at=_coerce_datetime(row["created_at"]),
        updated_at=_coerce_datetime(row["updated_at"]),
        similarity=float(row["similarity"]),
    )


class SemanticSearchExecutor:
    """Validates search input, runs a backend similarity primitive and
    normalizes its rows into SearchResultNote objects.

    The primitive is opaque: a server-side SQL function, a vec0 KNN scan
    or anything else returning rows already filtered to
    ``similarity >= threshold`` and sorted descending.
    """

    def __init__(self, primitive: SimilarityPrimitive, dimension: Optional[int] = None):
        self._primitive = primitive
        self._dimension = dimension

    @staticmethod
    def validate(threshold: float, limit: int) -> None:
        """Check threshold in [0, 1] and limit in [1, 1000]."""
        if (
            threshold is None
            or isinstance(threshold, bool)
            or not isinstance(threshold, (int, float))
            or math.isnan(threshold)
            or not 0.0 <= threshold <= 1.0
        ):
            raise ValidationError(
                "Similarity threshold must be between 0.0 and 1.0",
                field="threshold",
                value=threshold,
                code=ErrorCode.OUT_OF_RANGE,
            )
        if (
            limit is None
            or isinstance(limit, bool)
            or not isinstance(limit, int)
            or not MIN_SEARCH_LIMIT <= limit <= MAX_SEARCH_LIMIT
        ):
            raise ValidationError(
                f"Limit must be between {MIN_SEARCH_LIMIT} and {MAX_SEARCH_LIMIT}",
                field="limit",
                value=limit,
                code=ErrorCode.OUT_OF_RANGE,
            )

    def execute(
        self, vector: Sequence[float], threshold: float, limit: int
    ) -> SemanticSearchResult:
        """Run a similarity search.

        Args:
            vector: Precomputed query embedding.
            threshold: Minimum similarity in [0, 1].
            limit: Maximum number of results in [1, 1000].

        Returns:
            SemanticSearchResult ordered by similarity descending.

        Raises:
            ValidationError: Before any I/O, on bad arguments.
            PersistenceError: If the backend query fails.
        """
        self.validate(threshold, limit)
        query = validate_search_vector(vector, self._dimension)

        try:
            rows = list(self._primitive(query, float(threshold), limit))
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Error executing semantic search query: {e}")
            raise PersistenceError(
                f"Database query failed: {e}",
                operation="execute_semantic_search",
                code=ErrorCode.SEARCH_FAILED,
                original_error=e,
            ) from e

        notes = [normalize_search_row(row) for row in rows]
        # Both backends already honour this; re-asserted so callers get one contract
        notes = [n for n in notes if n.similarity >= threshold]
        notes.sort(key=lambda n: n.similarity, reverse=True)
        notes = notes[:limit]

        return SemanticSearchResult(
            notes=notes,
            total_count=len(notes),
            applied_filters={"similarity_threshold": float(threshold), "limit": limit},
        )


class NoteSearchService:
    """Text-level semantic search built on an adapter and an embedding provider."""

    def __init__(
        self,
        adapter: "NoteStorageAdapter",
        embedder: "EmbeddingProvider",
        default_threshold: float = 0.7,
        default_limit: int = 10,
        embedding_model: Optional[str] = None,
    ):
        """Initialize the search service.

        Args:
            adapter: Storage adapter that owns the similarity primitive.
            embedder: External collaborator producing vectors from text.
            default_threshold: Threshold used when none is passed.
            default_limit: Result cap used when none is passed.
            embedding_model: Name recorded with stored embeddings; the
                embedder's own model_name when None.
        """
        self.adapter = adapter
        self.embedder = embedder
        self.default_threshold = default_threshold
        self.default_limit = default_limit
        self.embedding_model = embedding_model or embedder.model_name

    def search_notes_by_similarity(
        self,
        query: str,
        similarity_threshold: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> SemanticSearchResult:
        """Embed ``query`` and return the most similar notes.

        ``applied_filters`` additionally echoes the query text.
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError(
                "Query parameter is required and must be a non-empty string",
                field="query",
                code=ErrorCode.INVALID_ARGUMENT,
            )
        threshold = (
            self.default_threshold if similarity_threshold is None else similarity_threshold
        )
        limit = self.default_limit if limit is None else limit
        SemanticSearchExecutor.validate(threshold, limit)

        vector = self.embedder.generate_query_embedding(query.strip())
        result = self.adapter.execute_semantic_search(vector, threshold, limit)
        result.applied_filters = {"query": query, **result.applied_filters}
        logger.debug(
            f"Semantic search '{query[:50]}' returned {result.total_count} notes"
        )
        return result

    def embed_note(self, note_id: str):
        """Generate and store the embedding of a note's current content.

        Returns:
            The updated Note.
        """
        notes = self.adapter.fetch_notes_by_ids([note_id])
        if not notes:
            raise NoteNotFoundError(note_id)
        vector = self.embedder.generate_embedding(notes[0].content)
        embedding = validate_search_vector(vector, self.embedder.dimension)
        return self.adapter.update_note(
            note_id,
            UpdateNoteParams(
                embedding=embedding,
                embedding_model=self.embedding_model,
                embedding_created_at=utc_now(),
            ),
        )


def create_search_service(
    adapter: "NoteStorageAdapter",
    embedder: "EmbeddingProvider",
    cfg: Optional[HathiConfig] = None,
) -> NoteSearchService:
    """Build a NoteSearchService with the configured search defaults.

    Raises:
        ConfigurationError: If the embedder's dimension differs from the
            configured embedding dimension.
    """
    cfg = cfg or default_config
    if embedder.dimension != cfg.embedding_dim:
        raise ConfigurationError(
            f"Embedder produces {embedder.dimension}-dimensional vectors, "
            f"configured dimension is {cfg.embedding_dim}",
            config_key="embedding_dim",
        )
    return NoteSearchService(
        adapter,
        embedder,
        default_threshold=cfg.search_threshold,
        default_limit=cfg.search_limit,
        embedding_model=cfg.embedding_model,
    )
