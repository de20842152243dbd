"""SQLite storage backend for persistent version stores."""

from __future__ import annotations

import logging
from pathlib import Path
from uuid import uuid4

import aiosqlite

from caresync.core.entity import Entity
from caresync.storage.base import VersionStore
from caresync.storage.sqlite_outcomes import SQLiteOutcomeMixin
from caresync.storage.sqlite_schema import SCHEMA, SCHEMA_VERSION, run_migrations
from caresync.storage.sqlite_sync_state import SQLiteSyncStateMixin
from caresync.storage.sqlite_tasks import SQLiteTaskMixin

logger = logging.getLogger(__name__)


class SQLiteStore(
    SQLiteTaskMixin,
    SQLiteOutcomeMixin,
    SQLiteSyncStateMixin,
    VersionStore,
):
    """SQLite-based version store.

    The connection runs in autocommit mode; every write happens inside an
    explicit ``BEGIN IMMEDIATE`` ... ``COMMIT`` opened by the base class, so a
    sync attempt's changes land atomically or not at all.

    Args:
        db_path: Database file
        timeout: Seconds to wait for another connection's write lock
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        super().__init__()
        self._db_path = Path(db_path).resolve()
        self._timeout = timeout
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        """Open the database, migrate the schema and load the clock id."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(
            self._db_path, isolation_level=None, timeout=self._timeout
        )
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        # Ensure version table exists so we can read the current version
        await self._conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)"
        )
        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()

        if row is not None and row["version"] < SCHEMA_VERSION:
            await run_migrations(self._conn, row["version"])

        await self._conn.executescript(SCHEMA)

        async with self._conn.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
            if row is None:
                await self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )

        async with self.transaction():
            clock_id = await self._get_meta("clock_id")
            if clock_id is None:
                clock_id = str(uuid4())
                await self._set_meta("clock_id", clock_id)
                logger.info("Created version store %s at %s", clock_id, self._db_path)
            self._clock_id = clock_id
            await self._ensure_own_clock()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> aiosqlite.Connection:
        """Ensure connection is available."""
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    # ========== Transactions ==========

    async def _begin(self) -> None:
        await self._ensure_conn().execute("BEGIN IMMEDIATE")

    async def _commit(self) -> None:
        await self._ensure_conn().execute("COMMIT")

    async def _rollback(self) -> None:
        await self._ensure_conn().execute("ROLLBACK")

    # ========== Queries ==========

    async def get_version(self, uuid: str) -> Entity | None:
        task = await self._get_task_version(uuid)
        if task is not None:
            return task
        return await self._get_outcome(uuid)
