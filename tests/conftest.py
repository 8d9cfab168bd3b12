"""Common test fixtures for the Hathi storage layer."""

import logging
import os

import pytest
from sqlalchemy import text

from hathi_store.config import config
from hathi_store.observability import metrics
from hathi_store.storage.embedded_adapter import EmbeddedAdapter
from hathi_store.storage.relational_adapter import RelationalAdapter
from tests.fakes import TEST_DIM, FakeEmbeddingProvider


def _reset_relational(store: RelationalAdapter) -> None:
    """Empty the tables of a shared (PostgreSQL) test database."""
    with store.engine.begin() as conn:
        conn.execute(text("DELETE FROM notes_contexts"))
        conn.execute(text("DELETE FROM contexts"))
        conn.execute(text("DELETE FROM notes"))


@pytest.fixture
def relational_adapter(tmp_path):
    """RelationalAdapter on a temp SQLite file, or on HATHI_TEST_DATABASE_URL."""
    url = os.getenv("HATHI_TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'relational.db'}"
    store = RelationalAdapter(database_url=url, embedding_dim=TEST_DIM)
    if store.engine.dialect.name != "sqlite":
        _reset_relational(store)
    yield store
    store.close()


@pytest.fixture
def embedded_adapter(tmp_path):
    """EmbeddedAdapter on a temp SQLite file with sqlite-vec loaded."""
    store = EmbeddedAdapter(sqlite_path=tmp_path / "embedded.db", embedding_dim=TEST_DIM)
    yield store
    store.close()


@pytest.fixture(params=["relational", "embedded"])
def adapter(request):
    """Run a test once against each backend."""
    return request.getfixturevalue(f"{request.param}_adapter")


@pytest.fixture
def make_note(adapter):
    """Factory creating a note with sensible defaults."""

    def _make(note_id, contexts=(), content=None, key_context=None, **fields):
        contexts = list(contexts)
        params = {
            "id": note_id,
            "content": content or f"Content of {note_id}",
            "key_context": key_context or (contexts[0] if contexts else "general"),
            "contexts": contexts,
        }
        params.update(fields)
        return adapter.create_note(params)

    return _make


@pytest.fixture
def fake_embedder():
    """FakeEmbeddingProvider matching the test vector dimension."""
    return FakeEmbeddingProvider(dim=TEST_DIM)


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at temp paths (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", tmp_path)
    monkeypatch.setattr(config, "use_db", "sqlite")
    monkeypatch.setattr(config, "sqlite_path", tmp_path / "data" / "hathi.db")
    monkeypatch.setattr(config, "embedding_dim", TEST_DIM)
    monkeypatch.setattr(config, "log_dir", None)
    yield config


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def hathi_logger():
    """The hathi_store logger, with handlers and level restored afterwards."""
    hathi = logging.getLogger("hathi_store")
    before = list(hathi.handlers)
    level = hathi.level
    yield hathi
    for handler in list(hathi.handlers):
        if handler not in before:
            hathi.removeHandler(handler)
            handler.close()
    hathi.setLevel(level)
