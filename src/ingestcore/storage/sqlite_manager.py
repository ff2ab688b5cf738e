"""
Manages the SQLite content database: connection pool, migrations, transactions.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite
import structlog
from sqlalchemy import create_engine

from ingestcore.config.config import SQLiteConfig

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# The current version of the database schema.
# This should be incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1


class SQLiteManager:
    """Handles all interactions with the SQLite database."""

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._connections: List[aiosqlite.Connection] = []
        self._initialized = False

    async def initialize(self) -> None:
        """Initializes the database, connection pool, and runs migrations."""
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(self.config.pool_size):
            conn = await self._create_connection()
            self._connections.append(conn)
            await self._pool.put(conn)

        async with self.get_connection() as conn:
            await self._run_migrations(conn)
        self._initialized = True

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)};")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        A write transaction on one pooled connection.

        The write lock is taken up front so that concurrent writers queue on
        ``busy_timeout`` instead of failing on lock upgrade.
        """
        async with self.get_connection() as conn:
            await conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and applies migrations if necessary."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info(
                "Migrating database schema",
                from_version=current_version,
                to_version=CURRENT_SCHEMA_VERSION,
                db_path=str(self.db_path),
            )
            engine = create_engine(f"sqlite:///{self.db_path}")
            try:
                await asyncio.to_thread(db_metadata.create_all, engine)
            finally:
                engine.dispose()

            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()
            logger.info("Database migration complete.")

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        """Runs a single write statement in its own transaction."""
        async with self.transaction() as conn:
            return await conn.execute(sql, params)

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def fetch_value(self, sql: str, params: Sequence[Any] = ()) -> Any:
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            row = await cursor.fetchone()
            return row[0] if row is not None else None

    async def close(self) -> None:
        """Closes all connections in the pool."""
        while not self._pool.empty():
            self._pool.get_nowait()
        for conn in self._connections:
            await conn.close()
        self._connections.clear()
        self._initialized = False
