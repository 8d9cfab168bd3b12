"""
Hathi Store - the persistence layer of the Hathi note-taking application.
This package implements a backend-agnostic storage adapter for notes and the
contexts that link them, with a relational (SQLAlchemy/PostgreSQL) backend and
an embedded (SQLite + sqlite-vec) backend behind the same interface.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("hathi-store")
except PackageNotFoundError:
    __version__ = "0.3.0"
