"""Storage layer for the Hathi note store."""
import logging
from typing import Optional

from hathi_store.config import HathiConfig
from hathi_store.config import config as default_config
from hathi_store.exceptions import ConfigurationError
from hathi_store.observability import configure_logging
from hathi_store.storage.base import NoteStorageAdapter
from hathi_store.storage.embedded_adapter import EmbeddedAdapter
from hathi_store.storage.relational_adapter import RelationalAdapter

logger = logging.getLogger(__name__)


def create_adapter(cfg: Optional[HathiConfig] = None) -> NoteStorageAdapter:
    """Build the adapter selected by configuration.

    Call once at process start and pass the adapter to whatever needs it.
    The ``hathi_store`` logger gets the configured level, and a rotating
    log file when ``log_dir`` is set.

    Raises:
        ConfigurationError: If the relational backend is selected without
            a database URL.
    """
    cfg = cfg or default_config
    configure_logging(
        log_dir=cfg.get_absolute_path(cfg.log_dir) if cfg.log_dir else None,
        level=cfg.get_log_level(),
        console=False,
    )
    if cfg.is_relational:
        if not cfg.database_url:
            raise ConfigurationError(
                "HATHI_DATABASE_URL must be set for the relational backend",
                config_key="database_url",
            )
        logger.info("Using relational storage backend")
        return RelationalAdapter(
            database_url=cfg.database_url, embedding_dim=cfg.embedding_dim
        )

    logger.info("Using embedded storage backend")
    return EmbeddedAdapter(
        database_url=cfg.get_sqlite_url(),
        embedding_dim=cfg.embedding_dim,
    )


__all__ = [
    "EmbeddedAdapter",
    "NoteStorageAdapter",
    "RelationalAdapter",
    "create_adapter",
]
