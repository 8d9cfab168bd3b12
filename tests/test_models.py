# tests/test_models.py
"""Tests for the data models, utilities and exception types."""
import datetime
from datetime import timedelta, timezone

import pydantic
import pytest

from hathi_store.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    PersistenceError,
    TransactionError,
    ValidationError,
)
from hathi_store.models.schema import (
    CreateNoteParams,
    Note,
    NoteType,
    UpdateNoteParams,
    from_epoch_ms,
    generate_id,
    to_epoch_ms,
)
from hathi_store.storage.base import coerce_params
from hathi_store.utils import (
    dedupe_preserving_order,
    escape_like_pattern,
    sentence_case_to_slug,
    slug_to_sentence_case,
)

UTC = timezone.utc


class TestNoteModel:
    """Tests for the Note model."""

    def test_note_defaults(self):
        note = Note(id="n1", content="Body")
        assert note.contexts == []
        assert note.tags == []
        assert note.embedding is None
        assert note.created_at.tzinfo is not None

    def test_created_after_updated_rejected(self):
        now = datetime.datetime.now(UTC)
        with pytest.raises(pydantic.ValidationError):
            Note(id="n1", content="x", created_at=now, updated_at=now - timedelta(seconds=1))

    def test_naive_datetimes_become_utc(self):
        naive = datetime.datetime(2025, 1, 1, 8, 30)
        note = Note(id="n1", content="x", created_at=naive, updated_at=naive, deadline=naive)
        assert note.created_at == datetime.datetime(2025, 1, 1, 8, 30, tzinfo=UTC)
        assert note.deadline.tzinfo is not None

    def test_offset_datetimes_converted(self):
        plus_two = timezone(timedelta(hours=2))
        stamp = datetime.datetime(2025, 1, 1, 10, 0, tzinfo=plus_two)
        note = Note(id="n1", content="x", created_at=stamp, updated_at=stamp)
        assert note.created_at.utcoffset() == timedelta(0)
        assert note.created_at.hour == 8

    def test_unknown_note_type_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Note(id="n1", content="x", note_type="memo")

    def test_str(self):
        assert str(Note(id="n1", content="x", key_context="k")) == "Note(id='n1', key_context='k')"


class TestCreateNoteParams:
    @pytest.mark.parametrize("field", ["id", "content", "key_context"])
    def test_required_fields_not_empty(self, field):
        values = {"id": "n1", "content": "c", "key_context": "k"}
        values[field] = ""
        with pytest.raises(pydantic.ValidationError):
            CreateNoteParams(**values)

    def test_blank_key_context_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            CreateNoteParams(id="n1", content="c", key_context="   ")

    def test_none_lists_become_empty(self):
        params = CreateNoteParams(id="n1", content="c", key_context="k", contexts=None, tags=None)
        assert params.contexts == []
        assert params.tags == []

    def test_blank_names_dropped(self):
        params = CreateNoteParams(id="n1", content="c", key_context="k", contexts=["a", " ", ""])
        assert params.contexts == ["a"]

    def test_note_type_from_string(self):
        params = CreateNoteParams(id="n1", content="c", key_context="k", note_type="ai-todo")
        assert params.note_type == NoteType.AI_TODO


class TestUpdateNoteParams:
    def test_only_explicit_fields_change(self):
        patch = UpdateNoteParams(content="new", deadline=None)
        assert patch.column_changes() == {"content": "new", "deadline": None}
        assert not patch.has_contexts

    def test_empty_patch(self):
        patch = UpdateNoteParams()
        assert patch.column_changes() == {}
        assert not patch.has_contexts

    def test_contexts_replace_flag(self):
        patch = UpdateNoteParams(contexts=[])
        assert patch.has_contexts
        assert "contexts" not in patch.column_changes()

    def test_content_cannot_be_cleared(self):
        with pytest.raises(pydantic.ValidationError):
            UpdateNoteParams(content=None)

    def test_embedding_model_length(self):
        with pytest.raises(pydantic.ValidationError):
            UpdateNoteParams(embedding_model="m" * 51)


class TestCoerceParams:
    def test_dict_accepted(self):
        patch = coerce_params(UpdateNoteParams, {"tags": ["a"]})
        assert patch.column_changes() == {"tags": ["a"]}

    def test_model_passed_through(self):
        patch = UpdateNoteParams(tags=["a"])
        assert coerce_params(UpdateNoteParams, patch) is patch

    def test_invalid_dict_raises_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            coerce_params(CreateNoteParams, {"id": "n1", "content": "", "key_context": "k"})
        assert exc_info.value.field == "content"


class TestHelpers:
    def test_epoch_ms_round_trip(self):
        stamp = datetime.datetime(2025, 2, 3, 4, 5, 6, tzinfo=UTC)
        assert to_epoch_ms(stamp) == 1738555506000
        assert from_epoch_ms(1738555506000) == stamp
        assert to_epoch_ms(None) is None
        assert from_epoch_ms(None) is None

    def test_generate_id_unique(self):
        assert generate_id() != generate_id()

    @pytest.mark.parametrize(
        "slug,display",
        [
            ("test-context-a", "Test Context A"),
            ("machine-learning", "Machine Learning"),
            ("API", "Api"),
            ("single", "Single"),
            ("", ""),
        ],
    )
    def test_slug_to_sentence_case(self, slug, display):
        assert slug_to_sentence_case(slug) == display

    def test_sentence_case_to_slug(self):
        assert sentence_case_to_slug("  Machine   Learning ") == "machine-learning"
        assert sentence_case_to_slug("") == ""

    def test_escape_like_pattern(self):
        assert escape_like_pattern("100% of_it\\") == "100\\% of\\_it\\\\"

    def test_dedupe_preserving_order(self):
        assert dedupe_preserving_order(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestExceptions:
    def test_to_dict(self):
        error = NoteNotFoundError("n1")
        assert error.to_dict() == {
            "error": "NoteNotFoundError",
            "code": ErrorCode.NOTE_NOT_FOUND.value,
            "code_name": "NOTE_NOT_FOUND",
            "message": "Note with ID 'n1' not found",
            "details": {"note_id": "n1"},
        }

    def test_str_includes_details(self):
        error = ValidationError("Bad limit", field="limit", value=0)
        assert str(error) == "[VALIDATION_FAILED] Bad limit (field=limit, value=0)"

    def test_persistence_error_keeps_cause(self):
        cause = RuntimeError("disk full")
        error = PersistenceError("write failed", operation="create_note", original_error=cause)
        assert error.original_error is cause
        assert error.details == {"operation": "create_note", "original_error": "disk full"}

    def test_transaction_error_marks_rollback(self):
        error = TransactionError("merge failed", operation="rename_context")
        assert isinstance(error, PersistenceError)
        assert error.code == ErrorCode.TRANSACTION_FAILED
        assert error.details["rolled_back"] is True
