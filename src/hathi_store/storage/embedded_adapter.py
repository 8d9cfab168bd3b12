"""Embedded single-file storage adapter (SQLite + sqlite-vec).

Arrays and embeddings are stored as JSON text, timestamps as integer
epoch milliseconds. Embeddings are mirrored into a ``note_embeddings``
vec0 virtual table, which answers k-nearest-neighbour queries under
cosine distance.
"""
import json
import logging
import sqlite3
import uuid
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import sqlite_vec
from sqlalchemy import bindparam, create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from hathi_store.exceptions import (
    ErrorCode,
    NoOpError,
    NoteNotFoundError,
    PersistenceError,
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
    from_epoch_ms,
    to_epoch_ms,
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

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        key_context TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        suggested_contexts TEXT NOT NULL DEFAULT '[]',
        note_type TEXT,
        embedding TEXT,
        embedding_model TEXT,
        embedding_created_at INTEGER,
        deadline INTEGER,
        status TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contexts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notes_contexts (
        note_id TEXT NOT NULL,
        context_id TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (note_id, context_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_notes_key_context ON notes(key_context)",
    "CREATE INDEX IF NOT EXISTS idx_notes_note_type ON notes(note_type)",
    "CREATE INDEX IF NOT EXISTS idx_notes_deadline ON notes(deadline)",
    "CREATE INDEX IF NOT EXISTS idx_notes_status ON notes(status)",
    "CREATE INDEX IF NOT EXISTS idx_notes_created_at ON notes(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_notes_contexts_note_id ON notes_contexts(note_id)",
    "CREATE INDEX IF NOT EXISTS idx_notes_contexts_context_id ON notes_contexts(context_id)",
)

VEC_TABLE_SQL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS note_embeddings USING vec0("
    "note_id TEXT PRIMARY KEY, "
    "embedding float[{dim}] distance_metric=cosine)"
)

NOTE_COLUMNS = (
    "n.id, n.content, n.key_context, n.tags, n.suggested_contexts, n.note_type, "
    "n.embedding, n.embedding_model, n.embedding_created_at, n.deadline, "
    "n.status, n.created_at, n.updated_at"
)

CONTEXTS_FOR_NOTES_SQL = text(
    "SELECT nc.note_id, c.name FROM notes_contexts nc "
    "JOIN contexts c ON c.id = nc.context_id "
    "WHERE nc.note_id IN :ids ORDER BY c.name"
).bindparams(bindparam("ids", expanding=True))

_JSON_COLUMNS = ("tags", "suggested_contexts")
_TIMESTAMP_COLUMNS = ("deadline", "embedding_created_at")
_EQUALITY_COLUMNS = ("note_type", "status")


def _json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    parsed = json.loads(value)
    return [str(v) for v in parsed] if isinstance(parsed, list) else []


def _to_column(column: str, value: Any) -> Any:
    """Convert a model value into its stored representation."""
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or []))
    if column == "embedding":
        return json.dumps([float(x) for x in value]) if value is not None else None
    if column in _TIMESTAMP_COLUMNS:
        return to_epoch_ms(value)
    return enum_value(value)


def _float32_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


class _ConnectionMergePrimitives:
    """MergePrimitives over a Connection with an open transaction."""

    def __init__(self, conn: Connection):
        self.conn = conn

    def get_context_id(self, name: str) -> Optional[str]:
        return self.conn.execute(
            text("SELECT id FROM contexts WHERE name = :name"), {"name": name}
        ).scalar()

    def note_ids_for_context(self, context_id: str) -> List[str]:
        return list(
            self.conn.execute(
                text("SELECT note_id FROM notes_contexts WHERE context_id = :cid"),
                {"cid": context_id},
            ).scalars()
        )

    def delete_edges(self, note_ids: Sequence[str], context_id: str) -> int:
        stmt = text(
            "DELETE FROM notes_contexts WHERE context_id = :cid AND note_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        return self.conn.execute(stmt, {"cid": context_id, "ids": list(note_ids)}).rowcount

    def relink_edges(
        self, note_ids: Sequence[str], old_context_id: str, new_context_id: str
    ) -> int:
        stmt = text(
            "UPDATE notes_contexts SET context_id = :new_id "
            "WHERE context_id = :old_id AND note_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        return self.conn.execute(
            stmt,
            {"new_id": new_context_id, "old_id": old_context_id, "ids": list(note_ids)},
        ).rowcount

    def rename_context_row(self, context_id: str, new_name: str) -> None:
        self.conn.execute(
            text(
                "UPDATE contexts SET name = :name, "
                "updated_at = MAX(created_at, :ts) WHERE id = :id"
            ),
            {"name": new_name, "ts": to_epoch_ms(utc_now()), "id": context_id},
        )

    def delete_context_row(self, context_id: str) -> None:
        self.conn.execute(text("DELETE FROM contexts WHERE id = :id"), {"id": context_id})

    def load_notes(self, note_ids: Sequence[str]) -> List[Tuple[str, str, Optional[str]]]:
        stmt = text(
            "SELECT id, content, key_context FROM notes WHERE id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        return [
            (r.id, r.content, r.key_context)
            for r in self.conn.execute(stmt, {"ids": list(note_ids)})
        ]

    def update_note_text(
        self, note_id: str, content: str, key_context: Optional[str]
    ) -> None:
        self.conn.execute(
            text(
                "UPDATE notes SET content = :content, key_context = :key_context, "
                "updated_at = MAX(created_at, :ts) WHERE id = :id"
            ),
            {
                "content": content,
                "key_context": key_context,
                "ts": to_epoch_ms(utc_now()),
                "id": note_id,
            },
        )


class EmbeddedAdapter(NoteStorageAdapter):
    """Note storage in a single SQLite file with sqlite-vec similarity search."""

    backend_name = "embedded"

    def __init__(
        self,
        sqlite_path: Optional[Union[str, Path]] = None,
        embedding_dim: int = 768,
        database_url: Optional[str] = None,
        echo: bool = False,
    ):
        """Initialize the adapter and create the schema if needed.

        Args:
            sqlite_path: Database file; ":memory:" or None for a private
                in-memory database.
            embedding_dim: Dimension of the vec0 embedding column.
            database_url: A ``sqlite://`` URL, used instead of sqlite_path.
            echo: Log emitted SQL.
        """
        super().__init__(embedding_dim=embedding_dim)
        self._vec_available = True

        if database_url is None:
            if sqlite_path is None or str(sqlite_path) == ":memory:":
                database_url = "sqlite://"
            else:
                path = Path(sqlite_path)
                path.parent.mkdir(parents=True, exist_ok=True)
                database_url = f"sqlite:///{path}"

        kwargs: Dict[str, Any] = {"echo": echo}
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        if in_memory:
            kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})

        with wrap_db_errors("connect", ErrorCode.STORAGE_CONNECTION_FAILED):
            self.engine: Engine = create_engine(database_url, **kwargs)
            self._install_hooks(self.engine, wal=not in_memory)
            self._init_schema()
        logger.info(
            f"EmbeddedAdapter ready ({database_url}, vec={'on' if self._vec_available else 'off'})"
        )

    def _install_hooks(self, engine: Engine, wal: bool) -> None:
        """PRAGMAs, sqlite-vec loading and explicit BEGIN on every connection."""

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy's "begin" hook issue BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()
            try:
                dbapi_connection.enable_load_extension(True)
                sqlite_vec.load(dbapi_connection)
                dbapi_connection.enable_load_extension(False)
            except (AttributeError, sqlite3.OperationalError) as e:
                if self._vec_available:
                    logger.warning(f"sqlite-vec unavailable, vector search disabled: {e}")
                self._vec_available = False

        @event.listens_for(engine, "begin")
        def on_begin(conn):
            conn.exec_driver_sql(conn.get_execution_options().get("sqlite_begin", "BEGIN"))

    def _init_schema(self) -> None:
        with self.engine.begin() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.exec_driver_sql(statement)
            if self._vec_available:
                conn.exec_driver_sql(VEC_TABLE_SQL.format(dim=int(self.embedding_dim)))
                self._backfill_vectors(conn)

    def _backfill_vectors(self, conn: Connection) -> int:
        """Mirror stored embeddings missing from note_embeddings.

        Embeddings written while sqlite-vec was unavailable only exist in
        ``notes.embedding`` until this runs.
        """
        rows = conn.execute(
            text(
                "SELECT id, embedding FROM notes WHERE embedding IS NOT NULL "
                "AND id NOT IN (SELECT note_id FROM note_embeddings)"
            )
        ).all()
        restored = 0
        for row in rows:
            vector = json.loads(row.embedding)
            if len(vector) != self.embedding_dim:
                logger.warning(
                    f"Skipping embedding of note {row.id}: {len(vector)} dimensions, "
                    f"expected {self.embedding_dim}"
                )
                continue
            conn.execute(
                text("INSERT INTO note_embeddings (note_id, embedding) VALUES (:id, :emb)"),
                {"id": row.id, "emb": _float32_blob(vector)},
            )
            restored += 1
        if restored:
            logger.info(f"Restored {restored} embeddings into note_embeddings")
        return restored

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _write(self) -> Iterator[Connection]:
        """Connection inside a BEGIN IMMEDIATE transaction."""
        with self.engine.connect() as conn:
            conn.execution_options(sqlite_begin="BEGIN IMMEDIATE")
            with conn.begin():
                yield conn

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _upsert_contexts(conn: Connection, names: Iterable[str]) -> Dict[str, str]:
        names = dedupe_preserving_order(names)
        if not names:
            return {}
        ts = to_epoch_ms(utc_now())
        conn.execute(
            text(
                "INSERT INTO contexts (id, name, created_at, updated_at) "
                "VALUES (:id, :name, :ts, :ts) ON CONFLICT(name) DO NOTHING"
            ),
            [{"id": str(uuid.uuid4()), "name": name, "ts": ts} for name in names],
        )
        stmt = text("SELECT name, id FROM contexts WHERE name IN :names").bindparams(
            bindparam("names", expanding=True)
        )
        return {r.name: r.id for r in conn.execute(stmt, {"names": names})}

    @staticmethod
    def _replace_edges(conn: Connection, note_id: str, context_ids: Iterable[str]) -> None:
        conn.execute(
            text("DELETE FROM notes_contexts WHERE note_id = :id"), {"id": note_id}
        )
        ts = to_epoch_ms(utc_now())
        edges = [
            {"note_id": note_id, "context_id": cid, "ts": ts}
            for cid in dedupe_preserving_order(context_ids)
        ]
        if edges:
            conn.execute(
                text(
                    "INSERT INTO notes_contexts (note_id, context_id, created_at) "
                    "VALUES (:note_id, :context_id, :ts)"
                ),
                edges,
            )

    def _store_vector(self, conn: Connection, note_id: str, embedding: Optional[List[float]]) -> None:
        if not self._vec_available:
            return
        conn.execute(
            text("DELETE FROM note_embeddings WHERE note_id = :id"), {"id": note_id}
        )
        if embedding is not None:
            conn.execute(
                text("INSERT INTO note_embeddings (note_id, embedding) VALUES (:id, :emb)"),
                {"id": note_id, "emb": _float32_blob(embedding)},
            )

    @staticmethod
    def _contexts_by_note(conn: Connection, note_ids: Sequence[str]) -> Dict[str, List[str]]:
        by_note: Dict[str, List[str]] = defaultdict(list)
        if note_ids:
            for note_id, name in conn.execute(CONTEXTS_FOR_NOTES_SQL, {"ids": list(note_ids)}):
                by_note[note_id].append(name)
        return by_note

    @staticmethod
    def _row_to_note(row, contexts: List[str]) -> Note:
        return Note(
            id=row.id,
            content=row.content,
            key_context=row.key_context,
            contexts=contexts,
            tags=_json_list(row.tags),
            suggested_contexts=_json_list(row.suggested_contexts),
            note_type=row.note_type,
            embedding=json.loads(row.embedding) if row.embedding else None,
            embedding_model=row.embedding_model,
            embedding_created_at=from_epoch_ms(row.embedding_created_at),
            deadline=from_epoch_ms(row.deadline),
            status=row.status,
            created_at=from_epoch_ms(row.created_at),
            updated_at=from_epoch_ms(row.updated_at),
        )

    @staticmethod
    def _row_to_search_result(row, contexts: List[str]) -> SearchResultNote:
        return SearchResultNote(
            id=row.id,
            content=row.content,
            key_context=row.key_context,
            contexts=contexts,
            tags=_json_list(row.tags),
            suggested_contexts=_json_list(row.suggested_contexts),
            note_type=row.note_type,
            deadline=from_epoch_ms(row.deadline),
            status=row.status,
            created_at=from_epoch_ms(row.created_at),
            updated_at=from_epoch_ms(row.updated_at),
        )

    def _load_notes(self, conn: Connection, stmt, params: Mapping[str, Any]) -> List[Note]:
        rows = conn.execute(stmt, params).all()
        contexts = self._contexts_by_note(conn, [r.id for r in rows])
        return [self._row_to_note(r, contexts.get(r.id, [])) for r in rows]

    def _get_note(self, conn: Connection, note_id: str) -> Note:
        return self._load_notes(
            conn, text(f"SELECT {NOTE_COLUMNS} FROM notes n WHERE n.id = :id"), {"id": note_id}
        )[0]

    @staticmethod
    def _compile_where(predicates: Sequence[Predicate]) -> Tuple[str, Dict[str, Any]]:
        """Translate compiled predicates into a WHERE clause and parameters."""
        clauses: List[str] = []
        params: Dict[str, Any] = {}

        def bind(value: Any) -> str:
            name = f"p{len(params)}"
            params[name] = value
            return f":{name}"

        for predicate in predicates:
            if isinstance(predicate, (CreatedRange, DeadlineRange)):
                column = "n.created_at" if isinstance(predicate, CreatedRange) else "n.deadline"
                if predicate.after is not None:
                    clauses.append(f"{column} >= {bind(to_epoch_ms(predicate.after))}")
                if predicate.before is not None:
                    clauses.append(f"{column} <= {bind(to_epoch_ms(predicate.before))}")
            elif isinstance(predicate, HasAllContexts):
                for name in predicate.names:
                    clauses.append(
                        "EXISTS (SELECT 1 FROM notes_contexts nc "
                        "JOIN contexts c ON c.id = nc.context_id "
                        f"WHERE nc.note_id = n.id AND c.name = {bind(name)})"
                    )
            elif isinstance(predicate, HasAnyTag):
                placeholders = ", ".join(bind(tag) for tag in predicate.tags)
                clauses.append(
                    "EXISTS (SELECT 1 FROM json_each(n.tags) t "
                    f"WHERE t.value IN ({placeholders}))"
                )
            elif isinstance(predicate, FieldEquals):
                if predicate.column not in _EQUALITY_COLUMNS:
                    raise ValueError(f"Unsupported filter column: {predicate.column}")
                clauses.append(f"n.{predicate.column} = {bind(predicate.value)}")
            else:
                raise TypeError(f"Unsupported predicate: {predicate!r}")

        where = " AND ".join(clauses) if clauses else "1 = 1"
        return where, params

    # ------------------------------------------------------------------
    # Notes

    @traced("create_note")
    def create_note(self, params: Union[CreateNoteParams, Mapping[str, Any]]) -> Note:
        params = coerce_params(CreateNoteParams, params)
        now = utc_now()
        created_at = params.created_at or now
        row = {
            "id": params.id,
            "content": params.content,
            "key_context": params.key_context,
            "tags": _to_column("tags", params.tags),
            "suggested_contexts": _to_column("suggested_contexts", params.suggested_contexts),
            "note_type": enum_value(params.note_type),
            "deadline": to_epoch_ms(params.deadline),
            "status": enum_value(params.status),
            "created_at": to_epoch_ms(created_at),
            "updated_at": to_epoch_ms(max(created_at, now)),
        }

        with wrap_db_errors("create_note"):
            try:
                with self._write() as conn:
                    conn.execute(
                        text(
                            "INSERT INTO notes (id, content, key_context, tags, "
                            "suggested_contexts, note_type, deadline, status, "
                            "created_at, updated_at) VALUES (:id, :content, "
                            ":key_context, :tags, :suggested_contexts, :note_type, "
                            ":deadline, :status, :created_at, :updated_at)"
                        ),
                        row,
                    )
                    context_ids = self._upsert_contexts(conn, params.contexts)
                    self._replace_edges(conn, params.id, [context_ids[n] for n in params.contexts])
                    return self._get_note(conn, params.id)
            except IntegrityError as e:
                logger.error(f"Failed to create note {params.id}: {e}")
                raise PersistenceError(
                    f"Note with ID '{params.id}' already exists",
                    operation="create_note",
                    code=ErrorCode.NOTE_ALREADY_EXISTS,
                    original_error=e,
                ) from e

    @traced("update_note")
    def update_note(
        self, note_id: str, patch: Union[UpdateNoteParams, Mapping[str, Any]]
    ) -> Note:
        patch = coerce_params(UpdateNoteParams, patch)
        changes = patch.column_changes()
        if not changes and not patch.has_contexts:
            raise NoOpError(note_id=note_id)
        self._check_embedding(changes.get("embedding"))

        with wrap_db_errors("update_note"):
            with self._write() as conn:
                created_ms = conn.execute(
                    text("SELECT created_at FROM notes WHERE id = :id"), {"id": note_id}
                ).scalar()
                if created_ms is None:
                    raise NoteNotFoundError(note_id)

                values = {column: _to_column(column, v) for column, v in changes.items()}
                values["updated_at"] = max(to_epoch_ms(utc_now()), created_ms)
                assignments = ", ".join(f"{column} = :{column}" for column in values)
                conn.execute(
                    text(f"UPDATE notes SET {assignments} WHERE id = :note_id"),
                    {**values, "note_id": note_id},
                )

                if "embedding" in changes:
                    self._store_vector(conn, note_id, changes["embedding"])
                if patch.has_contexts:
                    names = patch.contexts or []
                    context_ids = self._upsert_contexts(conn, names)
                    self._replace_edges(conn, note_id, [context_ids[n] for n in names])

                return self._get_note(conn, note_id)

    @traced("delete_note")
    def delete_note(self, note_id: str) -> str:
        with wrap_db_errors("delete_note", ErrorCode.STORAGE_DELETE_FAILED):
            with self._write() as conn:
                conn.execute(
                    text("DELETE FROM notes_contexts WHERE note_id = :id"), {"id": note_id}
                )
                self._store_vector(conn, note_id, None)
                deleted = conn.execute(
                    text("DELETE FROM notes WHERE id = :id"), {"id": note_id}
                ).rowcount
        if deleted == 0:
            logger.debug(f"delete_note: no note with ID '{note_id}'")
        return note_id

    @traced("fetch_notes")
    def fetch_notes(self, params: Union[FetchNotesParams, Mapping[str, Any]]) -> List[Note]:
        params = coerce_params(FetchNotesParams, params)
        self._validate_fetch_params(params)
        names = dedupe_preserving_order(params.contexts or [params.key_context])

        linked = (
            "SELECT nc.note_id FROM notes_contexts nc "
            "JOIN contexts c ON c.id = nc.context_id WHERE c.name IN :names"
        )
        if params.method == "AND":
            linked += " GROUP BY nc.note_id HAVING COUNT(DISTINCT c.name) = :name_count"
        stmt = text(
            f"SELECT {NOTE_COLUMNS} FROM notes n WHERE n.id IN ({linked}) "
            "ORDER BY n.created_at DESC, n.id"
        ).bindparams(bindparam("names", expanding=True))
        bind = {"names": names}
        if params.method == "AND":
            bind["name_count"] = len(names)

        with self.engine.connect() as conn:
            with wrap_db_errors("fetch_notes", ErrorCode.STORAGE_READ_FAILED):
                return self._load_notes(conn, stmt, bind)

    @traced("fetch_notes_by_ids")
    def fetch_notes_by_ids(self, ids: Sequence[str]) -> List[Note]:
        if not ids:
            return []
        stmt = text(f"SELECT {NOTE_COLUMNS} FROM notes n WHERE n.id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        with self.engine.connect() as conn:
            with wrap_db_errors("fetch_notes_by_ids", ErrorCode.STORAGE_READ_FAILED):
                return self._load_notes(conn, stmt, {"ids": list(ids)})

    @traced("filter_notes")
    def filter_notes(
        self, filters: Union[NotesFilter, Mapping[str, Any], None] = None
    ) -> FilterNotesResult:
        compiled = compile_filters(coerce_params(NotesFilter, filters))
        where, params = self._compile_where(compiled.predicates)

        with self.engine.connect() as conn:
            with wrap_db_errors("filter_notes", ErrorCode.STORAGE_READ_FAILED):
                rows = conn.execute(
                    text(
                        f"SELECT {NOTE_COLUMNS} FROM notes n WHERE {where} "
                        "ORDER BY n.created_at DESC, n.id LIMIT :limit"
                    ),
                    {**params, "limit": compiled.limit},
                ).all()
                total = conn.execute(
                    text(f"SELECT COUNT(*) FROM notes n WHERE {where}"), params
                ).scalar() or 0
                contexts = self._contexts_by_note(conn, [r.id for r in rows])

        return FilterNotesResult(
            notes=[self._row_to_search_result(r, contexts.get(r.id, [])) for r in rows],
            total_count=total,
            applied_filters=compiled.applied_filters,
        )

    @traced("get_filter_options")
    def get_filter_options(self) -> FilterOptions:
        def clean(values: Iterable[Any]) -> List[str]:
            return sorted(
                {v.strip() for v in values if isinstance(v, str) and v.strip()}
            )

        with self.engine.connect() as conn:
            with wrap_db_errors("get_filter_options", ErrorCode.STORAGE_READ_FAILED):
                contexts = clean(conn.execute(text("SELECT DISTINCT name FROM contexts")).scalars())
                tags = clean(
                    conn.execute(
                        text("SELECT DISTINCT t.value FROM notes n, json_each(n.tags) t")
                    ).scalars()
                )
                note_types = clean(
                    conn.execute(text("SELECT DISTINCT note_type FROM notes")).scalars()
                )
                statuses = clean(conn.execute(text("SELECT DISTINCT status FROM notes")).scalars())

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
        with self.engine.connect() as conn:
            with wrap_db_errors("fetch_context_stats_paginated", ErrorCode.STORAGE_READ_FAILED):
                rows = conn.execute(
                    text(
                        "SELECT c.name AS name, COUNT(nc.note_id) AS note_count, "
                        "MAX(nc.created_at) AS last_used "
                        "FROM contexts c JOIN notes_contexts nc ON nc.context_id = c.id "
                        "GROUP BY c.id, c.name "
                        "ORDER BY note_count DESC, last_used DESC, c.name "
                        "LIMIT :limit OFFSET :offset"
                    ),
                    {"limit": limit, "offset": offset},
                ).all()
                total = conn.execute(
                    text("SELECT COUNT(DISTINCT context_id) FROM notes_contexts")
                ).scalar() or 0

        page = [
            ContextStats(
                context=r.name, count=r.note_count, last_used=from_epoch_ms(r.last_used)
            )
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
        with self.engine.connect() as conn:
            with wrap_db_errors("search_contexts", ErrorCode.STORAGE_READ_FAILED):
                rows = conn.execute(
                    text(
                        "SELECT c.name AS name, COUNT(nc.note_id) AS note_count, "
                        "MAX(nc.created_at) AS last_used "
                        "FROM contexts c LEFT JOIN notes_contexts nc ON nc.context_id = c.id "
                        "WHERE lower(c.name) LIKE :pattern ESCAPE '\\' "
                        "GROUP BY c.id, c.name "
                        "ORDER BY CASE WHEN lower(c.name) LIKE :prefix ESCAPE '\\' "
                        "THEN 0 ELSE 1 END, note_count DESC, c.name "
                        "LIMIT :limit"
                    ),
                    {"pattern": f"%{needle}%", "prefix": f"{needle}%", "limit": limit},
                ).all()
        return [
            ContextStats(
                context=r.name, count=r.note_count, last_used=from_epoch_ms(r.last_used)
            )
            for r in rows
        ]

    def context_exists(self, name: str) -> bool:
        try:
            with self.engine.connect() as conn:
                found = conn.execute(
                    text("SELECT 1 FROM contexts WHERE name = :name LIMIT 1"), {"name": name}
                ).scalar()
            return found is not None
        except Exception as e:
            logger.warning(f"context_exists('{name}') probe failed: {e}")
            return False

    @contextmanager
    def _rename_transaction(self, old_name: str, new_name: str):
        with self._write() as conn:
            yield _ConnectionMergePrimitives(conn)

    # ------------------------------------------------------------------
    # Similarity

    def _similarity_rows(
        self, vector: List[float], threshold: float, limit: int
    ) -> List[Dict[str, Any]]:
        if not self._vec_available:
            raise PersistenceError(
                "sqlite-vec extension is not loaded; vector search unavailable",
                operation="execute_semantic_search",
                code=ErrorCode.VECTOR_EXTENSION_UNAVAILABLE,
            )
        stmt = text(
            "SELECT n.id, n.content, n.key_context, n.tags, n.suggested_contexts, "
            "n.note_type, n.deadline, n.status, n.created_at, n.updated_at, "
            "(SELECT json_group_array(c.name) FROM notes_contexts nc "
            " JOIN contexts c ON c.id = nc.context_id WHERE nc.note_id = n.id) AS contexts, "
            "1.0 - knn.distance AS similarity "
            "FROM (SELECT note_id, distance FROM note_embeddings "
            "      WHERE embedding MATCH :query AND k = :k) knn "
            "JOIN notes n ON n.id = knn.note_id "
            "WHERE 1.0 - knn.distance >= :threshold "
            "ORDER BY knn.distance, n.id"
        )
        with wrap_db_errors("execute_semantic_search", ErrorCode.STORAGE_READ_FAILED):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    stmt, {"query": _float32_blob(vector), "k": limit, "threshold": threshold}
                ).mappings().all()

        results = []
        for row in rows:
            row = dict(row)
            row["contexts"] = sorted(_json_list(row["contexts"]))
            results.append(row)
        return results
