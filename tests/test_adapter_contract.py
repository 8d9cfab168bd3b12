"""Behaviour shared by every storage adapter, run against each backend."""
import datetime
from datetime import timezone

import pytest

from hathi_store.exceptions import (
    ErrorCode,
    NoOpError,
    NoteNotFoundError,
    PersistenceError,
    ValidationError,
)
from hathi_store.models.schema import (
    FetchNotesParams,
    NotesFilter,
    NoteType,
    TodoStatus,
    UpdateNoteParams,
)
from tests.fakes import TEST_DIM, unit


def ts(day, hour=0, minute=0, second=0, ms=0):
    return datetime.datetime(
        2025, 3, day, hour, minute, second, ms * 1000, tzinfo=timezone.utc
    )


def ids(notes):
    return sorted(n.id for n in notes)


class TestCreateNote:
    """Tests for create_note."""

    def test_create_returns_persisted_note(self, adapter):
        note = adapter.create_note(
            {
                "id": "n1",
                "content": "Plan for [[Project X]]",
                "key_context": "project-x",
                "contexts": ["project-x", "planning"],
                "tags": ["urgent", "q1"],
                "suggested_contexts": ["roadmap"],
                "note_type": "todo",
                "status": "TODO",
                "deadline": ts(10, 12),
            }
        )
        assert note.id == "n1"
        assert note.content == "Plan for [[Project X]]"
        assert note.key_context == "project-x"
        assert sorted(note.contexts) == ["planning", "project-x"]
        assert sorted(note.tags) == ["q1", "urgent"]
        assert note.suggested_contexts == ["roadmap"]
        assert note.note_type == NoteType.TODO
        assert note.status == TodoStatus.TODO
        assert note.deadline == ts(10, 12)
        assert note.embedding is None
        assert note.created_at <= note.updated_at
        assert note.created_at.tzinfo is not None

    def test_created_note_is_fetchable(self, adapter, make_note):
        make_note("n1", ["alpha"])
        fetched = adapter.fetch_notes_by_ids(["n1"])
        assert len(fetched) == 1
        assert fetched[0].contexts == ["alpha"]

    def test_contexts_are_upserted(self, adapter, make_note):
        assert not adapter.context_exists("alpha")
        make_note("n1", ["alpha"])
        make_note("n2", ["alpha", "beta"])
        assert adapter.context_exists("alpha")
        assert adapter.context_exists("beta")
        options = adapter.get_filter_options()
        assert options.available_contexts == ["alpha", "beta"]

    def test_key_context_is_not_linked(self, adapter, make_note):
        make_note("n1", ["alpha"], key_context="primary")
        assert not adapter.context_exists("primary")

    def test_duplicate_context_names_collapse(self, adapter, make_note):
        note = make_note("n1", ["alpha", "alpha", "beta"])
        assert sorted(note.contexts) == ["alpha", "beta"]
        stats = adapter.fetch_context_stats_paginated()
        assert {s.context: s.count for s in stats.contexts} == {"alpha": 1, "beta": 1}

    def test_duplicate_id_raises_persistence_error(self, adapter, make_note):
        make_note("n1", ["alpha"])
        with pytest.raises(PersistenceError) as exc_info:
            make_note("n1", ["beta"])
        assert exc_info.value.code == ErrorCode.NOTE_ALREADY_EXISTS
        # The failed write left nothing behind
        assert not adapter.context_exists("beta")

    @pytest.mark.parametrize("missing", ["id", "content", "key_context"])
    def test_required_fields(self, adapter, missing):
        params = {"id": "n1", "content": "text", "key_context": "ctx"}
        del params[missing]
        with pytest.raises(ValidationError):
            adapter.create_note(params)

    def test_blank_key_context_rejected(self, adapter):
        with pytest.raises(ValidationError):
            adapter.create_note({"id": "n1", "content": "text", "key_context": "   "})

    def test_explicit_created_at(self, adapter, make_note):
        note = make_note("n1", ["alpha"], created_at=ts(1, 8))
        assert note.created_at == ts(1, 8)
        assert note.updated_at >= note.created_at


class TestUpdateNote:
    """Tests for update_note."""

    def test_update_content(self, adapter, make_note):
        original = make_note("n1", ["alpha"], created_at=ts(1))
        updated = adapter.update_note("n1", {"content": "New text"})
        assert updated.content == "New text"
        assert updated.contexts == ["alpha"]
        assert updated.updated_at >= original.updated_at
        assert updated.created_at == original.created_at

    def test_contexts_replace_all_edges(self, adapter, make_note):
        make_note("n1", ["alpha", "beta"])
        updated = adapter.update_note("n1", UpdateNoteParams(contexts=["beta", "gamma"]))
        assert sorted(updated.contexts) == ["beta", "gamma"]
        assert adapter.fetch_notes({"contexts": ["alpha"]}) == []
        assert ids(adapter.fetch_notes({"contexts": ["gamma"]})) == ["n1"]

    def test_empty_contexts_clears_edges(self, adapter, make_note):
        make_note("n1", ["alpha"])
        updated = adapter.update_note("n1", {"contexts": []})
        assert updated.contexts == []
        # The context row itself survives
        assert adapter.context_exists("alpha")

    def test_explicit_none_clears_nullable_field(self, adapter, make_note):
        make_note("n1", ["alpha"], status="DOING", note_type="todo")
        updated = adapter.update_note("n1", {"status": None})
        assert updated.status is None
        assert updated.note_type == NoteType.TODO

    def test_unset_fields_untouched(self, adapter, make_note):
        make_note("n1", ["alpha"], tags=["keep"], status="TODO")
        updated = adapter.update_note("n1", {"status": "DONE"})
        assert updated.tags == ["keep"]
        assert updated.status == TodoStatus.DONE
        assert updated.contexts == ["alpha"]

    def test_empty_patch_raises_noop(self, adapter, make_note):
        make_note("n1", ["alpha"])
        with pytest.raises(NoOpError):
            adapter.update_note("n1", {})

    def test_missing_note_raises_not_found(self, adapter):
        with pytest.raises(NoteNotFoundError):
            adapter.update_note("ghost", {"content": "x"})

    def test_contexts_only_patch_on_missing_note(self, adapter):
        with pytest.raises(NoteNotFoundError):
            adapter.update_note("ghost", {"contexts": ["alpha"]})
        assert not adapter.context_exists("alpha")

    def test_content_cannot_be_cleared(self, adapter, make_note):
        make_note("n1", ["alpha"])
        with pytest.raises(ValidationError):
            adapter.update_note("n1", {"content": None})

    def test_store_embedding(self, adapter, make_note):
        make_note("n1", ["alpha"])
        vector = unit(TEST_DIM, 0.5, 0.25, 1.0)
        updated = adapter.update_note(
            "n1",
            {
                "embedding": vector,
                "embedding_model": "fake-embedder",
                "embedding_created_at": ts(2),
            },
        )
        assert updated.embedding == pytest.approx(vector)
        assert updated.embedding_model == "fake-embedder"
        assert updated.embedding_created_at == ts(2)

    def test_wrong_embedding_dimension_rejected(self, adapter, make_note):
        make_note("n1", ["alpha"])
        with pytest.raises(ValidationError):
            adapter.update_note("n1", {"embedding": [1.0, 2.0]})


class TestDeleteNote:
    """Tests for delete_note."""

    def test_delete_removes_note_and_edges(self, adapter, make_note):
        make_note("n1", ["alpha", "beta"])
        make_note("n2", ["alpha"])
        before = {
            s.context: s.count for s in adapter.fetch_context_stats_paginated().contexts
        }
        assert adapter.delete_note("n1") == "n1"

        assert adapter.fetch_notes_by_ids(["n1"]) == []
        after = {
            s.context: s.count for s in adapter.fetch_context_stats_paginated().contexts
        }
        assert after["alpha"] == before["alpha"] - 1
        assert "beta" not in after
        # Context rows persist without edges
        assert adapter.context_exists("beta")

    def test_delete_missing_note_is_noop(self, adapter):
        assert adapter.delete_note("ghost") == "ghost"


class TestFetchNotes:
    """Tests for fetch_notes and fetch_notes_by_ids."""

    @pytest.fixture
    def graph(self, make_note):
        make_note("both", ["A", "B"], created_at=ts(1))
        make_note("only-a", ["A"], created_at=ts(2))
        make_note("only-c", ["C"], created_at=ts(3))

    def test_and_requires_every_context(self, adapter, graph):
        notes = adapter.fetch_notes(FetchNotesParams(contexts=["A", "B"], method="AND"))
        assert [n.id for n in notes] == ["both"]

    def test_or_is_default(self, adapter, graph):
        notes = adapter.fetch_notes({"contexts": ["A", "B"]})
        assert [n.id for n in notes] == ["only-a", "both"]

    def test_or_across_contexts(self, adapter, graph):
        notes = adapter.fetch_notes({"contexts": ["B", "C"], "method": "OR"})
        assert [n.id for n in notes] == ["only-c", "both"]

    def test_key_context_matches_linked_notes(self, adapter, graph):
        notes = adapter.fetch_notes({"key_context": "A"})
        assert [n.id for n in notes] == ["only-a", "both"]

    def test_contexts_take_precedence_over_key_context(self, adapter, graph):
        notes = adapter.fetch_notes({"key_context": "A", "contexts": ["C"]})
        assert [n.id for n in notes] == ["only-c"]

    def test_requires_a_filter(self, adapter, graph):
        with pytest.raises(ValidationError) as exc_info:
            adapter.fetch_notes({})
        assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT

    def test_unknown_context_returns_empty(self, adapter, graph):
        assert adapter.fetch_notes({"contexts": ["nope"]}) == []

    def test_results_carry_all_contexts(self, adapter, graph):
        notes = adapter.fetch_notes({"contexts": ["B"]})
        assert sorted(notes[0].contexts) == ["A", "B"]

    def test_fetch_by_ids(self, adapter, graph):
        assert ids(adapter.fetch_notes_by_ids(["both", "only-c", "ghost"])) == [
            "both",
            "only-c",
        ]

    def test_fetch_by_ids_empty_input(self, adapter):
        assert adapter.fetch_notes_by_ids([]) == []


class TestFilterNotes:
    """Tests for filter_notes."""

    @pytest.fixture
    def notes(self, make_note):
        make_note("n1", ["work", "ml"], tags=["python"], note_type="note", created_at=ts(1))
        make_note(
            "n2", ["work"], tags=["rust"], note_type="todo", status="TODO",
            deadline=ts(10, 15), created_at=ts(2),
        )
        make_note(
            "n3", ["ml"], tags=["python", "ai"], note_type="todo", status="DONE",
            deadline=ts(10, 23, 59, 59, 999), created_at=ts(3),
        )
        make_note(
            "n4", ["home"], note_type="ai-note", deadline=ts(11), created_at=ts(4),
        )

    def test_no_filters_returns_all_newest_first(self, adapter, notes):
        result = adapter.filter_notes()
        assert [n.id for n in result.notes] == ["n4", "n3", "n2", "n1"]
        assert result.total_count == 4
        assert result.applied_filters == {"limit": 20}

    def test_contexts_use_and_semantics(self, adapter, notes):
        result = adapter.filter_notes(NotesFilter(contexts=["work", "ml"]))
        assert [n.id for n in result.notes] == ["n1"]

    def test_hashtags_use_or_semantics(self, adapter, notes):
        result = adapter.filter_notes({"hashtags": ["rust", "ai"]})
        assert ids(result.notes) == ["n2", "n3"]

    def test_note_type_and_status(self, adapter, notes):
        result = adapter.filter_notes({"note_type": "todo", "status": "DONE"})
        assert [n.id for n in result.notes] == ["n3"]
        assert result.applied_filters == {"note_type": "todo", "status": "DONE", "limit": 20}

    def test_created_range_is_inclusive(self, adapter, notes):
        result = adapter.filter_notes({"created_after": ts(2), "created_before": ts(3)})
        assert ids(result.notes) == ["n2", "n3"]

    def test_deadline_on_covers_whole_day(self, adapter, notes):
        result = adapter.filter_notes({"deadline_on": datetime.date(2025, 3, 10)})
        assert ids(result.notes) == ["n2", "n3"]

    def test_deadline_bounds(self, adapter, notes):
        result = adapter.filter_notes({"deadline_after": ts(10, 16)})
        assert ids(result.notes) == ["n3", "n4"]

    def test_limit_and_total_count(self, adapter, notes):
        result = adapter.filter_notes({"limit": 2})
        assert [n.id for n in result.notes] == ["n4", "n3"]
        assert result.total_count == 4

    @pytest.mark.parametrize("requested,resolved", [(0, 20), (-5, 20), (100000, 50), (7, 7)])
    def test_limit_is_clamped(self, adapter, notes, requested, resolved):
        result = adapter.filter_notes({"limit": requested})
        assert result.applied_filters["limit"] == resolved

    def test_results_have_no_embedding_or_similarity(self, adapter, notes):
        note = adapter.filter_notes({"contexts": ["home"]}).notes[0]
        assert note.similarity is None
        assert not hasattr(note, "embedding")


class TestFilterOptions:
    """Tests for get_filter_options."""

    def test_distinct_trimmed_sorted_values(self, adapter, make_note):
        make_note("n1", ["zeta", "alpha"], tags=["  padded  ", "b"], note_type="todo", status="DOING")
        make_note("n2", ["alpha"], tags=["b", "a"], note_type="note", status="TODO")
        make_note("n3", ["beta"], tags=["   "])

        options = adapter.get_filter_options()
        assert options.available_contexts == ["alpha", "beta", "zeta"]
        assert options.available_hashtags == ["a", "b", "padded"]
        assert options.available_note_types == ["note", "todo"]
        assert options.available_statuses == [TodoStatus.DOING, TodoStatus.TODO]

    def test_empty_store(self, adapter):
        options = adapter.get_filter_options()
        assert options.available_contexts == []
        assert options.available_hashtags == []


class TestContextStats:
    """Tests for fetch_context_stats_paginated, search_contexts and context_exists."""

    @pytest.fixture
    def populated(self, make_note):
        make_note("n1", ["popular", "mid"])
        make_note("n2", ["popular", "mid"])
        make_note("n3", ["popular", "rare"])

    def test_counts_and_order(self, adapter, populated):
        page = adapter.fetch_context_stats_paginated(limit=10, offset=0)
        assert [(s.context, s.count) for s in page.contexts] == [
            ("popular", 3),
            ("mid", 2),
            ("rare", 1),
        ]
        assert page.total_count == 3
        assert page.has_more is False
        assert all(s.last_used is not None for s in page.contexts)

    def test_pagination(self, adapter, populated):
        first = adapter.fetch_context_stats_paginated(limit=2, offset=0)
        assert [s.context for s in first.contexts] == ["popular", "mid"]
        assert first.has_more is True
        second = adapter.fetch_context_stats_paginated(limit=2, offset=2)
        assert [s.context for s in second.contexts] == ["rare"]
        assert second.has_more is False
        assert second.total_count == 3

    def test_orphaned_context_not_counted(self, adapter, populated):
        adapter.update_note("n3", {"contexts": ["popular"]})
        page = adapter.fetch_context_stats_paginated()
        assert "rare" not in [s.context for s in page.contexts]
        assert "rare" in adapter.get_filter_options().available_contexts

    def test_invalid_page(self, adapter):
        with pytest.raises(ValidationError):
            adapter.fetch_context_stats_paginated(limit=0)
        with pytest.raises(ValidationError):
            adapter.fetch_context_stats_paginated(offset=-1)

    def test_search_prefers_prefix_matches(self, adapter, make_note):
        make_note("n1", ["deep-learning"])
        make_note("n2", ["deep-learning"])
        make_note("n3", ["learning-notes"])
        make_note("n4", ["cooking"])

        results = adapter.search_contexts("learn")
        assert [r.context for r in results] == ["learning-notes", "deep-learning"]
        assert results[1].count == 2

    def test_search_is_case_insensitive(self, adapter, make_note):
        make_note("n1", ["Machine-Learning"])
        assert [r.context for r in adapter.search_contexts("machine")] == [
            "Machine-Learning"
        ]

    def test_search_escapes_wildcards(self, adapter, make_note):
        make_note("n1", ["100%-done"])
        make_note("n2", ["snake_case"])
        make_note("n3", ["snakeXcase"])
        assert [r.context for r in adapter.search_contexts("100%")] == ["100%-done"]
        assert [r.context for r in adapter.search_contexts("e_c")] == ["snake_case"]

    def test_search_limit(self, adapter, make_note):
        make_note("n1", ["topic-a", "topic-b", "topic-c"])
        assert len(adapter.search_contexts("topic", limit=2)) == 2

    @pytest.mark.parametrize("term", ["", "   "])
    def test_blank_search_returns_empty(self, adapter, make_note, term):
        make_note("n1", ["alpha"])
        assert adapter.search_contexts(term) == []

    def test_context_exists(self, adapter, make_note):
        make_note("n1", ["Alpha"])
        assert adapter.context_exists("Alpha") is True
        # Names are case-sensitive
        assert adapter.context_exists("alpha") is False

    def test_context_exists_swallows_failures(self, adapter, make_note, monkeypatch):
        make_note("n1", ["alpha"])

        class Unreachable:
            def __call__(self, *args, **kwargs):
                raise RuntimeError("database unreachable")

            connect = __call__

        monkeypatch.setattr(adapter, "engine", Unreachable())
        monkeypatch.setattr(adapter, "session_factory", Unreachable(), raising=False)
        assert adapter.context_exists("alpha") is False
