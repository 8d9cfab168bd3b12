"""Type protocol for the external embedding collaborator.

The storage layer never computes vectors itself; anything satisfying
EmbeddingProvider (a hosted API client, a local model, a test fake)
can be plugged into NoteSearchService. Uses Protocol (PEP 544) for
structural subtyping, so implementations don't need to inherit from it.
"""
from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for turning text into fixed-length dense vectors."""

    @property
    def model_name(self) -> str:
        """Identifier stored alongside generated embeddings."""
        ...

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def generate_embedding(self, text: str) -> Sequence[float]:
        """Embed note content for storage.

        Args:
            text: Note content.

        Returns:
            Vector of length ``dimension``.
        """
        ...

    def generate_query_embedding(self, text: str) -> Sequence[float]:
        """Embed a search query.

        Some models use a different prefix/prompt for queries than for
        documents, hence the separate entry point.
        """
        ...
