"""Context rename / merge engine.

run_context_rename() holds the algorithm; adapters hand it a
MergePrimitives implementation bound to an open database transaction
and are responsible for commit/rollback around the call.

Rename path (target name unused): the context row is renamed in place.
Merge path (target name exists): edges already present on the target are
dropped, the rest are re-pointed at the target, and the old context row
is deleted. Either way, inline ``[[Display Name]]`` references and
``key_context`` of every affected note are rewritten to the new name.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from hathi_store.exceptions import ContextNotFoundError
from hathi_store.utils import slug_to_sentence_case

logger = logging.getLogger(__name__)


class MergePrimitives(Protocol):
    """Storage operations the engine needs, all inside one transaction."""

    def get_context_id(self, name: str) -> Optional[str]:
        """Return the id of the context with this exact name, or None."""
        ...

    def note_ids_for_context(self, context_id: str) -> List[str]:
        """Return ids of notes linked to the context."""
        ...

    def delete_edges(self, note_ids: Sequence[str], context_id: str) -> int:
        """Delete edges (note_id, context_id) for the given notes."""
        ...

    def relink_edges(
        self, note_ids: Sequence[str], old_context_id: str, new_context_id: str
    ) -> int:
        """Point edges of the given notes from old_context_id to new_context_id."""
        ...

    def rename_context_row(self, context_id: str, new_name: str) -> None:
        """Change the name of a context row in place."""
        ...

    def delete_context_row(self, context_id: str) -> None:
        """Delete a context row."""
        ...

    def load_notes(self, note_ids: Sequence[str]) -> List[Tuple[str, str, Optional[str]]]:
        """Return (id, content, key_context) for the given notes."""
        ...

    def update_note_text(
        self, note_id: str, content: str, key_context: Optional[str]
    ) -> None:
        """Write new content and key_context for a note."""
        ...


@dataclass
class RenameOutcome:
    """Summary of a completed rename or merge."""
    mode: str  # "rename", "merge" or "noop"
    old_name: str
    new_name: str
    edges_relinked: int = 0
    duplicate_edges_removed: int = 0
    notes_rewritten: int = 0


def reference_pattern(name: str) -> "re.Pattern[str]":
    """Compile the case-insensitive ``[[Display Name]]`` pattern for a slug."""
    display = slug_to_sentence_case(name)
    return re.compile(r"\[\[" + re.escape(display) + r"\]\]", re.IGNORECASE)


def rewrite_context_references(
    content: str,
    key_context: Optional[str],
    old_name: str,
    new_name: str,
) -> Tuple[str, Optional[str]]:
    """Rewrite inline references and key_context from old_name to new_name.

    Inline references are matched case-insensitively against the
    title-cased form of the old slug (``test-context-a`` matches
    ``[[Test Context A]]`` and ``[[test context a]]``) and replaced with
    the title-cased new slug. ``key_context`` is replaced only on exact
    equality with the old slug.

    Returns:
        (new_content, new_key_context)
    """
    replacement = "[[" + slug_to_sentence_case(new_name) + "]]"
    new_content = reference_pattern(old_name).sub(lambda _m: replacement, content)
    new_key_context = new_name if key_context == old_name else key_context
    return new_content, new_key_context


def _rewrite_notes(
    primitives: MergePrimitives,
    note_ids: Iterable[str],
    old_name: str,
    new_name: str,
) -> int:
    """Rewrite affected notes, issuing an update only when something changed."""
    note_ids = list(note_ids)
    if not note_ids:
        return 0
    rewritten = 0
    for note_id, content, key_context in primitives.load_notes(note_ids):
        new_content, new_key_context = rewrite_context_references(
            content, key_context, old_name, new_name
        )
        if new_content != content or new_key_context != key_context:
            primitives.update_note_text(note_id, new_content, new_key_context)
            rewritten += 1
    return rewritten


def run_context_rename(
    primitives: MergePrimitives, old_name: str, new_name: str
) -> RenameOutcome:
    """Rename old_name to new_name, merging into new_name when it exists.

    Must be called inside a transaction; raises ContextNotFoundError
    before any write when old_name does not exist.
    """
    old_id = primitives.get_context_id(old_name)
    if old_id is None:
        raise ContextNotFoundError(old_name)

    new_id = primitives.get_context_id(new_name)
    outcome = RenameOutcome(
        mode="merge" if new_id is not None else "rename",
        old_name=old_name,
        new_name=new_name,
    )

    if new_id is None:
        primitives.rename_context_row(old_id, new_name)
        linked = primitives.note_ids_for_context(old_id)
        outcome.notes_rewritten = _rewrite_notes(primitives, linked, old_name, new_name)
        logger.info(
            f"Renamed context '{old_name}' -> '{new_name}' "
            f"({len(linked)} notes linked, {outcome.notes_rewritten} rewritten)"
        )
        return outcome

    old_links = primitives.note_ids_for_context(old_id)
    if old_links:
        already_linked = set(primitives.note_ids_for_context(new_id))
        duplicates = [nid for nid in old_links if nid in already_linked]
        migratable = [nid for nid in old_links if nid not in already_linked]

        if duplicates:
            outcome.duplicate_edges_removed = primitives.delete_edges(duplicates, old_id)
        if migratable:
            outcome.edges_relinked = primitives.relink_edges(migratable, old_id, new_id)

        outcome.notes_rewritten = _rewrite_notes(primitives, old_links, old_name, new_name)

    primitives.delete_context_row(old_id)
    logger.info(
        f"Merged context '{old_name}' into '{new_name}' "
        f"(relinked={outcome.edges_relinked}, "
        f"duplicates_removed={outcome.duplicate_edges_removed}, "
        f"rewritten={outcome.notes_rewritten})"
    )
    return outcome
