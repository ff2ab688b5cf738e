"""SQLite persistence for ingested content, sources and run history."""

from __future__ import annotations

from .content_store import ContentStore
from .schema import metadata as db_metadata
from .sqlite_manager import SQLiteManager

__all__ = ["ContentStore", "SQLiteManager", "db_metadata"]
