"""SQLite connection for the record store.

Records live as JSON documents in one ``documents`` table keyed by
(collection, id). The connection runs in WAL mode so API reads do not block
pipeline writes.

Schema changes are applied as numbered migrations on connect; the applied
version is kept in ``schema_version``.
"""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from burnbot.logging import get_logger

logger = get_logger(__name__)

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            body TEXT NOT NULL,
            PRIMARY KEY (collection, id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS corrupt_documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            body TEXT,
            error TEXT NOT NULL,
            detected_at REAL NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_documents_collection_created "
        "ON documents(collection, created_at)",
    ],
    # Status lifted out of the body so reward scans can use an index
    2: [
        "ALTER TABLE documents ADD COLUMN status TEXT",
        "UPDATE documents SET status = json_extract(body, '$.status') "
        "WHERE json_valid(body)",
        "CREATE INDEX IF NOT EXISTS idx_documents_collection_status "
        "ON documents(collection, status)",
    ],
}

SCHEMA_VERSION = max(_MIGRATIONS)


class RecordDatabase:
    """Owns the aiosqlite connection used by RecordStore.

    Usage:
        async with RecordDatabase("data/records.db") as db:
            store = RecordStore(db)
    """

    def __init__(self, db_path: str = "data/records.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection and bring the schema up to SCHEMA_VERSION."""
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        connection = await aiosqlite.connect(self._db_path)
        await connection.execute("PRAGMA journal_mode=WAL")
        await connection.execute("PRAGMA synchronous=NORMAL")
        await connection.execute("PRAGMA busy_timeout=5000")
        self._connection = connection

        version = await self._migrate()
        logger.info("record_db_connected", db_path=self._db_path, schema_version=version)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("record_db_closed", db_path=self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit the statements run inside the block, or roll them all back."""
        db = self.db
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()

    async def _migrate(self) -> int:
        db = self.db
        await db.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        current = row[0] or 0

        for version in sorted(v for v in _MIGRATIONS if v > current):
            async with self.transaction():
                for statement in _MIGRATIONS[version]:
                    await db.execute(statement)
                await db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            logger.info("schema_migrated", version=version)
        return max(current, SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
