"""Services built on top of the storage adapters."""

from hathi_store.services.embedding_types import EmbeddingProvider
from hathi_store.services.search_service import (
    NoteSearchService,
    SemanticSearchExecutor,
    create_search_service,
)

__all__ = [
    "EmbeddingProvider",
    "NoteSearchService",
    "SemanticSearchExecutor",
    "create_search_service",
]
