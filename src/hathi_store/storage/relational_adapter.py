"""Relational storage adapter built on the SQLAlchemy ORM.

Targets PostgreSQL with pgvector in production; any other SQLAlchemy
engine (SQLite in tests and local use) works with JSON arrays and a
Python cosine_similarity SQL function standing in for pgvector.
"""
import json
import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import (
    Float,
    and_,
    case,
    delete,
    exists,
    func,
    insert,
    literal,
    select,
    text,
    type_coerce,
    update,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.types import Text

from hathi_store.exceptions import (
    ErrorCode,
    NoOpError,
    NoteNotFoundError,
    PersistenceError,
)
from hathi_store.models.db_models import (
    DBContext,
    DBNote,
    get_session_factory,
    init_db,
    notes_contexts,
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
    SearchResultNote,
    TodoStatus,
    UpdateNoteParams,
    to_utc,
    utc_now,
)
from hathi_store.observability import traced
from hathi_store.storage.base import (
    NoteStorageAdapter,
    coerce_params,
    enum_value,
    wrap_db_errors,
)
from hathi_store.storage.filters import (
    CreatedRange,
    DeadlineRange,
    FieldEquals,
    HasAllContexts,
    HasAnyTag,
    Predicate,
    compile_filters,
)
from hathi_store.utils import dedupe_preserving_order, escape_like_pattern

logger = logging.getLogger(__name__)

_CONTEXTS_FOR_NOTES = (
    select(notes_contexts.c.note_id, DBContext.name)
    .join(DBContext, DBContext.id == notes_contexts.c.context_id)
)


def _vector_literal(vector: Sequence[float]) -> str:
    """pgvector text form: '[0.1,0.2,...]'."""
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def _not_before_created(model, ts):
    """SQL expression for the later of ``ts`` and the row's created_at."""
    ts = literal(ts, model.created_at.type)
    return case((model.created_at > ts, model.created_at), else_=ts)


class _SessionMergePrimitives:
    """MergePrimitives over an ORM session with an open transaction."""

    def __init__(self, session: Session, lock_rows: bool = False):
        self.session = session
        self.lock_rows = lock_rows

    def get_context_id(self, name: str) -> Optional[str]:
        stmt = select(DBContext.id).where(DBContext.name == name)
        if self.lock_rows:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def note_ids_for_context(self, context_id: str) -> List[str]:
        return list(
            self.session.scalars(
                select(notes_contexts.c.note_id).where(
                    notes_contexts.c.context_id == context_id
                )
            )
        )

    def delete_edges(self, note_ids: Sequence[str], context_id: str) -> int:
        result = self.session.execute(
            delete(notes_contexts).where(
                notes_contexts.c.note_id.in_(list(note_ids)),
                notes_contexts.c.context_id == context_id,
            )
        )
        return result.rowcount

    def relink_edges(
        self, note_ids: Sequence[str], old_context_id: str, new_context_id: str
    ) -> int:
        result = self.session.execute(
            update(notes_contexts)
            .where(
                notes_contexts.c.note_id.in_(list(note_ids)),
                notes_contexts.c.context_id == old_context_id,
            )
            .values(context_id=new_context_id)
        )
        return result.rowcount

    def rename_context_row(self, context_id: str, new_name: str) -> None:
        self.session.execute(
            update(DBContext)
            .where(DBContext.id == context_id)
            .values(name=new_name, updated_at=_not_before_created(DBContext, utc_now()))
        )

    def delete_context_row(self, context_id: str) -> None:
        self.session.execute(delete(DBContext).where(DBContext.id == context_id))

    def load_notes(self, note_ids: Sequence[str]) -> List[Tuple[str, str, Optional[str]]]:
        rows = self.session.execute(
            select(DBNote.id, DBNote.content, DBNote.key_context).where(
                DBNote.id.in_(list(note_ids))
            )
        )
        return [(r.id, r.content, r.key_context) for r in rows]

    def update_note_text(
        self, note_id: str, content: str, key_context: Optional[str]
    ) -> None:
        self.session.execute(
            update(DBNote)
            .where(DBNote.id == note_id)
            .values(
                content=content,
                key_context=key_context,
                updated_at=_not_before_created(DBNote, utc_now()),
            )
        )


class RelationalAdapter(NoteStorageAdapter):
    """Note storage over a relational database.

    Contexts live in their own table and are linked to notes through the
    ``notes_contexts`` junction table.
    """

    backend_name = "relational"

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        embedding_dim: Optional[int] = None,
        echo: bool = False,
    ):
        """Initialize the adapter.

        Args:
            database_url: SQLAlchemy URL; ignored when ``engine`` is given.
            engine: An engine already prepared by init_db().
            embedding_dim: Expected vector length, checked on write and search.
            echo: Log emitted SQL.
        """
        super().__init__(embedding_dim=embedding_dim)
        if engine is None:
            if not database_url:
                raise PersistenceError(
                    "RelationalAdapter requires a database URL",
                    operation="connect",
                    code=ErrorCode.STORAGE_CONNECTION_FAILED,
                )
            with wrap_db_errors("connect", ErrorCode.STORAGE_CONNECTION_FAILED):
                engine = init_db(database_url, echo=echo)
        self.engine = engine
        self.session_factory = get_session_factory(engine)
        logger.info(f"RelationalAdapter ready ({engine.dialect.name})")

    @property
    def _is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Helpers

    def _upsert_contexts(self, session: Session, names: Iterable[str]) -> Dict[str, str]:
        """Ensure a context row exists for every name; return name -> id."""
        names = dedupe_preserving_order(names)
        if not names:
            return {}
        now = utc_now()
        rows = [
            {"id": str(uuid.uuid4()), "name": name, "created_at": now, "updated_at": now}
            for name in names
        ]
        dialect = self.engine.dialect.name
        if dialect in ("postgresql", "sqlite"):
            dialect_insert = pg_insert if dialect == "postgresql" else sqlite_insert
            session.execute(
                dialect_insert(DBContext)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["name"])
            )
        else:
            existing = set(
                session.scalars(select(DBContext.name).where(DBContext.name.in_(names)))
            )
            missing = [row for row in rows if row["name"] not in existing]
            if missing:
                session.execute(insert(DBContext), missing)
        return dict(
            session.execute(
                select(DBContext.name, DBContext.id).where(DBContext.name.in_(names))
            ).all()
        )

    @staticmethod
    def _replace_edges(
        session: Session, note_id: str, context_ids: Iterable[str]
    ) -> None:
        """Delete every edge of the note, then insert the given ones."""
        session.execute(delete(notes_contexts).where(notes_contexts.c.note_id == note_id))
        now = utc_now()
        edges = [
            {"note_id": note_id, "context_id": cid, "created_at": now}
            for cid in dedupe_preserving_order(context_ids)
        ]
        if edges:
            session.execute(insert(notes_contexts), edges)

    @staticmethod
    def _contexts_by_note(session: Session, note_ids: Sequence[str]) -> Dict[str, List[str]]:
        by_note: Dict[str, List[str]] = defaultdict(list)
        if not note_ids:
            return by_note
        rows = session.execute(
            _CONTEXTS_FOR_NOTES.where(notes_contexts.c.note_id.in_(list(note_ids)))
            .order_by(DBContext.name)
        )
        for note_id, name in rows:
            by_note[note_id].append(name)
        return by_note

    @staticmethod
    def _db_note_to_model(db_note: DBNote, contexts: List[str]) -> Note:
        embedding = db_note.embedding
        return Note(
            id=db_note.id,
            content=db_note.content,
            key_context=db_note.key_context,
            contexts=contexts,
            tags=list(db_note.tags or []),
            suggested_contexts=list(db_note.suggested_contexts or []),
            note_type=db_note.note_type,
            embedding=[float(x) for x in embedding] if embedding is not None else None,
            embedding_model=db_note.embedding_model,
            embedding_created_at=db_note.embedding_created_at,
            deadline=db_note.deadline,
            status=db_note.status,
            created_at=db_note.created_at,
            updated_at=db_note.updated_at,
        )

    @staticmethod
    def _db_note_to_search_result(db_note: DBNote, contexts: List[str]) -> SearchResultNote:
        return SearchResultNote(
            id=db_note.id,
            content=db_note.content,
            key_context=db_note.key_context,
            contexts=contexts,
            tags=list(db_note.tags or []),
            suggested_contexts=list(db_note.suggested_contexts or []),
            note_type=db_note.note_type,
            deadline=db_note.deadline,
            status=db_note.status,
            created_at=db_note.created_at,
            updated_at=db_note.updated_at,
        )

    def _load_notes(self, session: Session, stmt) -> List[Note]:
        db_notes = session.scalars(stmt).all()
        contexts = self._contexts_by_note(session, [n.id for n in db_notes])
        return [self._db_note_to_model(n, contexts.get(n.id, [])) for n in db_notes]

    def _has_tag_clause(self, tags: Tuple[str, ...]):
        if self._is_postgres:
            return type_coerce(DBNote.tags, ARRAY(Text)).overlap(list(tags))
        tag_rows = func.json_each(DBNote.tags).table_valued("value")
        return exists(select(literal(1)).select_from(tag_rows).where(tag_rows.c.value.in_(tags)))

    def _predicate_clause(self, predicate: Predicate):
        """Translate one compiled predicate into a SQLAlchemy expression."""
        if isinstance(predicate, (CreatedRange, DeadlineRange)):
            column = DBNote.created_at if isinstance(predicate, CreatedRange) else DBNote.deadline
            clauses = []
            if predicate.after is not None:
                clauses.append(column >= predicate.after)
            if predicate.before is not None:
                clauses.append(column <= predicate.before)
            return and_(*clauses)
        if isinstance(predicate, HasAllContexts):
            return and_(
                *(
                    exists(
                        select(literal(1))
                        .select_from(notes_contexts)
                        .join(DBContext, DBContext.id == notes_contexts.c.context_id)
                        .where(notes_contexts.c.note_id == DBNote.id, DBContext.name == name)
                    )
                    for name in predicate.names
                )
            )
        if isinstance(predicate, HasAnyTag):
            return self._has_tag_clause(predicate.tags)
        if isinstance(predicate, FieldEquals):
            return getattr(DBNote, predicate.column) == predicate.value
        raise TypeError(f"Unsupported predicate: {predicate!r}")

    # ------------------------------------------------------------------
    # Notes

    @traced("create_note")
    def create_note(self, params: Union[CreateNoteParams, Mapping[str, Any]]) -> Note:
        params = coerce_params(CreateNoteParams, params)
        now = utc_now()
        created_at = params.created_at or now
        updated_at = max(created_at, now)

        with self.session_factory() as session:
            with wrap_db_errors("create_note"):
                try:
                    with session.begin():
                        if session.get(DBNote, params.id) is not None:
                            raise PersistenceError(
                                f"Note with ID '{params.id}' already exists",
                                operation="create_note",
                                code=ErrorCode.NOTE_ALREADY_EXISTS,
                            )
                        session.add(
                            DBNote(
                                id=params.id,
                                content=params.content,
                                key_context=params.key_context,
                                tags=list(params.tags),
                                suggested_contexts=list(params.suggested_contexts),
                                note_type=enum_value(params.note_type),
                                deadline=params.deadline,
                                status=enum_value(params.status),
                                created_at=created_at,
                                updated_at=updated_at,
                            )
                        )
                        session.flush()
                        context_ids = self._upsert_contexts(session, params.contexts)
                        self._replace_edges(
                            session, params.id, [context_ids[n] for n in params.contexts]
                        )
                except IntegrityError as e:
                    logger.error(f"Failed to create note {params.id}: {e}")
                    raise PersistenceError(
                        f"Note with ID '{params.id}' already exists or violates a constraint",
                        operation="create_note",
                        code=ErrorCode.NOTE_ALREADY_EXISTS,
                        original_error=e,
                    ) from e

                return self._load_notes(
                    session, select(DBNote).where(DBNote.id == params.id)
                )[0]

    @traced("update_note")
    def update_note(
        self, note_id: str, patch: Union[UpdateNoteParams, Mapping[str, Any]]
    ) -> Note:
        patch = coerce_params(UpdateNoteParams, patch)
        changes = patch.column_changes()
        if not changes and not patch.has_contexts:
            raise NoOpError(note_id=note_id)
        self._check_embedding(changes.get("embedding"))

        with self.session_factory() as session:
            with wrap_db_errors("update_note"):
                with session.begin():
                    db_note = session.get(DBNote, note_id)
                    if db_note is None:
                        raise NoteNotFoundError(note_id)
                    for column, value in changes.items():
                        setattr(db_note, column, enum_value(value))
                    db_note.updated_at = max(utc_now(), to_utc(db_note.created_at))
                    if patch.has_contexts:
                        names = patch.contexts or []
                        context_ids = self._upsert_contexts(session, names)
                        self._replace_edges(session, note_id, [context_ids[n] for n in names])
                    session.flush()

                return self._load_notes(session, select(DBNote).where(DBNote.id == note_id))[0]

    @traced("delete_note")
    def delete_note(self, note_id: str) -> str:
        with self.session_factory() as session:
            with wrap_db_errors("delete_note", ErrorCode.STORAGE_DELETE_FAILED):
                with session.begin():
                    session.execute(
                        delete(notes_contexts).where(notes_contexts.c.note_id == note_id)
                    )
                    result = session.execute(delete(DBNote).where(DBNote.id == note_id))
        if result.rowcount == 0:
            logger.debug(f"delete_note: no note with ID '{note_id}'")
        return note_id

    @traced("fetch_notes")
    def fetch_notes(self, params: Union[FetchNotesParams, Mapping[str, Any]]) -> List[Note]:
        params = coerce_params(FetchNotesParams, params)
        self._validate_fetch_params(params)
        names = dedupe_preserving_order(params.contexts or [params.key_context])

        linked = (
            select(notes_contexts.c.note_id)
            .join(DBContext, DBContext.id == notes_contexts.c.context_id)
            .where(DBContext.name.in_(names))
        )
        if params.method == "AND":
            linked = linked.group_by(notes_contexts.c.note_id).having(
                func.count(func.distinct(DBContext.name)) == len(names)
            )
        stmt = (
            select(DBNote)
            .where(DBNote.id.in_(linked))
            .order_by(DBNote.created_at.desc(), DBNote.id)
        )
        with self.session_factory() as session:
            with wrap_db_errors("fetch_notes", ErrorCode.STORAGE_READ_FAILED):
                return self._load_notes(session, stmt)

    @traced("fetch_notes_by_ids")
    def fetch_notes_by_ids(self, ids: Sequence[str]) -> List[Note]:
        if not ids:
            return []
        with self.session_factory() as session:
            with wrap_db_errors("fetch_notes_by_ids", ErrorCode.STORAGE_READ_FAILED):
                return self._load_notes(
                    session, select(DBNote).where(DBNote.id.in_(list(ids)))
                )

    @traced("filter_notes")
    def filter_notes(
        self, filters: Union[NotesFilter, Mapping[str, Any], None] = None
    ) -> FilterNotesResult:
        compiled = compile_filters(coerce_params(NotesFilter, filters))
        conditions = [self._predicate_clause(p) for p in compiled.predicates]

        stmt = (
            select(DBNote)
            .where(*conditions)
            .order_by(DBNote.created_at.desc(), DBNote.id)
            .limit(compiled.limit)
        )
        count_stmt = select(func.count()).select_from(DBNote).where(*conditions)

        with self.session_factory() as session:
            with wrap_db_errors("filter_notes", ErrorCode.STORAGE_READ_FAILED):
                db_notes = session.scalars(stmt).all()
                total = session.scalar(count_stmt) or 0
                contexts = self._contexts_by_note(session, [n.id for n in db_notes])
                notes = [
                    self._db_note_to_search_result(n, contexts.get(n.id, []))
                    for n in db_notes
                ]

        return FilterNotesResult(
            notes=notes, total_count=total, applied_filters=compiled.applied_filters
        )

    @traced("get_filter_options")
    def get_filter_options(self) -> FilterOptions:
        def clean(values: Iterable[Any]) -> List[str]:
            return sorted(
                {v.strip() for v in values if isinstance(v, str) and v.strip()}
            )

        with self.session_factory() as session:
            with wrap_db_errors("get_filter_options", ErrorCode.STORAGE_READ_FAILED):
                contexts = clean(session.scalars(select(DBContext.name).distinct()))
                tags = clean(
                    tag
                    for tag_list in session.scalars(
                        select(DBNote.tags).where(DBNote.tags.is_not(None))
                    )
                    for tag in (tag_list or [])
                )
                note_types = clean(
                    session.scalars(select(DBNote.note_type).distinct())
                )
                statuses = clean(session.scalars(select(DBNote.status).distinct()))

        valid_statuses = {s.value for s in TodoStatus}
        return FilterOptions(
            available_contexts=contexts,
            available_hashtags=tags,
            available_note_types=note_types,
            available_statuses=[TodoStatus(s) for s in statuses if s in valid_statuses],
        )

    # ------------------------------------------------------------------
    # Contexts

    @traced("fetch_context_stats_paginated")
    def fetch_context_stats_paginated(
        self, limit: int = 30, offset: int = 0
    ) -> PaginatedContextStats:
        self._validate_page(limit, offset)
        note_count = func.count(notes_contexts.c.note_id).label("count")
        last_used = func.max(notes_contexts.c.created_at).label("last_used")
        stmt = (
            select(DBContext.name, note_count, last_used)
            .join(notes_contexts, notes_contexts.c.context_id == DBContext.id)
            .group_by(DBContext.id, DBContext.name)
            .order_by(note_count.desc(), last_used.desc(), DBContext.name)
            .limit(limit)
            .offset(offset)
        )
        total_stmt = select(func.count(func.distinct(notes_contexts.c.context_id)))

        with self.session_factory() as session:
            with wrap_db_errors("fetch_context_stats_paginated", ErrorCode.STORAGE_READ_FAILED):
                rows = session.execute(stmt).all()
                total = session.scalar(total_stmt) or 0

        page = [
            ContextStats(context=r.name, count=r.count, last_used=r.last_used)
            for r in rows
        ]
        return PaginatedContextStats(
            contexts=page, total_count=total, has_more=offset + len(page) < total
        )

    @traced("search_contexts")
    def search_contexts(self, term: str, limit: int = 20) -> List[ContextStats]:
        if not term or not term.strip():
            return []
        self._validate_page(limit, 0)
        needle = escape_like_pattern(term.strip().lower())
        lowered = func.lower(DBContext.name)
        note_count = func.count(notes_contexts.c.note_id).label("count")
        last_used = func.max(notes_contexts.c.created_at).label("last_used")
        prefix_rank = case((lowered.like(f"{needle}%", escape="\\"), 0), else_=1)
        stmt = (
            select(DBContext.name, note_count, last_used)
            .outerjoin(notes_contexts, notes_contexts.c.context_id == DBContext.id)
            .where(lowered.like(f"%{needle}%", escape="\\"))
            .group_by(DBContext.id, DBContext.name)
            .order_by(prefix_rank, note_count.desc(), DBContext.name)
            .limit(limit)
        )
        with self.session_factory() as session:
            with wrap_db_errors("search_contexts", ErrorCode.STORAGE_READ_FAILED):
                rows = session.execute(stmt).all()
        return [
            ContextStats(context=r.name, count=r.count, last_used=r.last_used)
            for r in rows
        ]

    def context_exists(self, name: str) -> bool:
        try:
            with self.session_factory() as session:
                found = session.scalar(
                    select(DBContext.id).where(DBContext.name == name).limit(1)
                )
            return found is not None
        except Exception as e:
            logger.warning(f"context_exists('{name}') probe failed: {e}")
            return False

    @contextmanager
    def _rename_transaction(self, old_name: str, new_name: str):
        with self.session_factory() as session:
            with session.begin():
                yield _SessionMergePrimitives(session, lock_rows=self._is_postgres)

    # ------------------------------------------------------------------
    # Similarity

    def _similarity_rows(
        self, vector: List[float], threshold: float, limit: int
    ) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            with wrap_db_errors("execute_semantic_search", ErrorCode.STORAGE_READ_FAILED):
                if self._is_postgres:
                    rows = session.execute(
                        text(
                            "SELECT * FROM search_notes_by_similarity("
                            "CAST(:query AS vector), :threshold, :match_count)"
                        ),
                        {
                            "query": _vector_literal(vector),
                            "threshold": threshold,
                            "match_count": limit,
                        },
                    ).mappings().all()
                    return [dict(r) for r in rows]

                similarity = func.cosine_similarity(
                    DBNote.embedding, json.dumps(vector), type_=Float
                ).label("similarity")
                stmt = (
                    select(DBNote, similarity)
                    .where(DBNote.embedding.is_not(None), similarity >= threshold)
                    .order_by(similarity.desc(), DBNote.id)
                    .limit(limit)
                )
                results = session.execute(stmt).all()
                contexts = self._contexts_by_note(session, [n.id for n, _ in results])

        rows = []
        for db_note, score in results:
            row = self._db_note_to_search_result(
                db_note, contexts.get(db_note.id, [])
            ).model_dump()
            row["similarity"] = score
            rows.append(row)
        return rows
