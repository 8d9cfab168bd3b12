"""SQLAlchemy database models for the relational backend."""
import json
import logging
import math

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from hathi_store.models.schema import utc_now

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

# TEXT[] on PostgreSQL, JSON text on every other engine
StringArray = JSON().with_variant(ARRAY(Text), "postgresql")

# Junction table for the note <-> context graph
notes_contexts = Table(
    "notes_contexts",
    Base.metadata,
    Column("note_id", String(255), ForeignKey("notes.id"), primary_key=True),
    Column("context_id", String(36), ForeignKey("contexts.id"), primary_key=True),
    Column("created_at", DateTime(timezone=True), default=utc_now, nullable=False),
    Index("idx_notes_contexts_note_id", "note_id"),
    Index("idx_notes_contexts_context_id", "context_id"),
)


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(255), primary_key=True)
    content = Column(Text, nullable=False)
    key_context = Column(Text, nullable=True, index=True)
    tags = Column(StringArray, nullable=True)
    suggested_contexts = Column(StringArray, nullable=True)
    note_type = Column(String(20), nullable=True, index=True)
    embedding = Column(Vector(), nullable=True)
    embedding_model = Column(String(50), nullable=True, index=True)
    embedding_created_at = Column(DateTime(timezone=True), nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(String(20), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', key_context='{self.key_context}')>"


class DBContext(Base):
    """Database model for a context."""
    __tablename__ = "contexts"
    id = Column(String(36), primary_key=True)
    name = Column(Text, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of context."""
        return f"<Context(id='{self.id}', name='{self.name}')>"


# Server-side similarity primitive for PostgreSQL (pgvector cosine distance)
SEARCH_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION search_notes_by_similarity(
    query_embedding vector,
    similarity_threshold float,
    match_count integer
)
RETURNS TABLE (
    id text,
    content text,
    key_context text,
    contexts text[],
    tags text[],
    suggested_contexts text[],
    note_type text,
    deadline timestamptz,
    status text,
    created_at timestamptz,
    updated_at timestamptz,
    similarity float
)
LANGUAGE sql STABLE
AS $$
    SELECT
        n.id::text,
        n.content::text,
        n.key_context::text,
        ARRAY(
            SELECT c.name::text
            FROM notes_contexts nc
            JOIN contexts c ON c.id = nc.context_id
            WHERE nc.note_id = n.id
            ORDER BY c.name
        ),
        n.tags,
        n.suggested_contexts,
        n.note_type::text,
        n.deadline,
        n.status::text,
        n.created_at,
        n.updated_at,
        (1 - (n.embedding <=> query_embedding))::float
    FROM notes n
    WHERE n.embedding IS NOT NULL
      AND 1 - (n.embedding <=> query_embedding) >= similarity_threshold
    ORDER BY n.embedding <=> query_embedding
    LIMIT match_count;
$$;
"""


def _parse_vector(value):
    """Parse a vector stored as '[1,2,3]' text (or JSON) into floats."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    return [float(x) for x in json.loads(value)]


def cosine_similarity(stored, query) -> float:
    """SQL function body: cosine similarity of two text-encoded vectors.

    Returns None when either side is missing, empty, zero-length or of a
    different dimension, so such rows drop out of ``>= threshold`` filters.
    """
    a = _parse_vector(stored)
    b = _parse_vector(query)
    if not a or not b or len(a) != len(b):
        return None
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return None
    return dot / norm


def _install_sqlite_hooks(engine: Engine) -> None:
    """Apply PRAGMAs and register the similarity function on each connection."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()
        dbapi_connection.create_function(
            "cosine_similarity", 2, cosine_similarity, deterministic=True
        )


def init_db(database_url: str, echo: bool = False) -> Engine:
    """Create the engine and the relational schema.

    PostgreSQL: enables the pgvector extension, creates tables and the
    ``search_notes_by_similarity`` function. Other engines (SQLite for
    local use and tests): WAL mode plus a ``cosine_similarity`` SQL
    function registered on every connection.

    Args:
        database_url: SQLAlchemy database URL.
        echo: Log emitted SQL.

    Returns:
        The configured engine.
    """
    kwargs = {"echo": echo, "pool_pre_ping": True}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection so every session sees the same database
        kwargs.update(
            poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    engine = create_engine(database_url, **kwargs)

    if engine.dialect.name == "sqlite":
        _install_sqlite_hooks(engine)
    elif engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))

    Base.metadata.create_all(engine)

    if engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(text(SEARCH_FUNCTION_SQL))

    logger.info(f"Relational schema ready on {engine.dialect.name} ({engine.url!r})")
    return engine


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
