"""Configuration module for the Hathi storage layer."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from hathi_store import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")
load_dotenv(_PROJECT_ROOT / ".env.local")


logger = logging.getLogger(__name__)

EMBEDDED_BACKENDS = ("sqlite", "embedded")
RELATIONAL_BACKENDS = ("postgres", "postgresql", "relational")


class HathiConfig(BaseModel):
    """Configuration for the Hathi storage layer."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("HATHI_BASE_DIR", "."))
    )
    # Backend selection: "sqlite" (embedded) or "postgres" (relational)
    use_db: str = Field(
        default_factory=lambda: os.getenv("HATHI_USE_DB", "sqlite").lower()
    )
    # Relational backend connection URL (SQLAlchemy format)
    database_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("HATHI_DATABASE_URL")
    )
    # Embedded backend database file
    sqlite_path: Path = Field(
        default_factory=lambda: Path(os.getenv("HATHI_SQLITE_PATH", "data/hathi.db"))
    )
    # Embedding / semantic search configuration
    embedding_dim: int = Field(
        default_factory=lambda: int(os.getenv("HATHI_EMBEDDING_DIM", "768"))
    )
    embedding_model: str = Field(
        default_factory=lambda: os.getenv("HATHI_EMBEDDING_MODEL", "multilingual-e5-base")
    )
    search_threshold: float = Field(
        default_factory=lambda: float(os.getenv("HATHI_SEARCH_THRESHOLD", "0.7"))
    )
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("HATHI_SEARCH_LIMIT", "10"))
    )
    # Logging configuration
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("HATHI_LOG_DIR")) if os.getenv("HATHI_LOG_DIR") else None
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("HATHI_LOG_LEVEL", "INFO").upper()
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_backend_config(self) -> "HathiConfig":
        """Validate backend selection and vector settings."""
        if self.use_db not in EMBEDDED_BACKENDS + RELATIONAL_BACKENDS:
            raise ValueError(
                f"use_db must be one of {EMBEDDED_BACKENDS + RELATIONAL_BACKENDS}, "
                f"got '{self.use_db}'"
            )
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if not 0.0 <= self.search_threshold <= 1.0:
            raise ValueError("search_threshold must be between 0.0 and 1.0")
        if not 1 <= self.search_limit <= 1000:
            raise ValueError("search_limit must be between 1 and 1000")

        if self.is_relational and not self.database_url:
            logger.warning(
                "Relational backend selected but HATHI_DATABASE_URL is not set; "
                "create_adapter() will fail until a URL is provided."
            )
        return self

    @property
    def is_relational(self) -> bool:
        """Whether the relational backend is selected."""
        return self.use_db in RELATIONAL_BACKENDS

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_sqlite_url(self) -> str:
        """Get the database URL for the embedded SQLite file."""
        db_path = self.get_absolute_path(self.sqlite_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_log_level(self) -> int:
        """Resolve the configured log level name to a logging constant."""
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.INFO


# Create a global config instance
config = HathiConfig()
