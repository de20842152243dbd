"""SQLite mixin for knowledge vector and acknowledgement persistence."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from caresync.core.entity import Entity
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.storage.sqlite_row_mappers import row_to_outcome, row_to_task
from caresync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)


class SQLiteSyncStateMixin:
    """Mixin: knowledge vector, store identity and dirty-flag acknowledgements."""

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    async def _get_meta(self, key: str) -> str | None:
        conn = self._ensure_conn()
        async with conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return row["value"] if row else None

    async def _set_meta(self, key: str, value: str) -> None:
        conn = self._ensure_conn()
        await conn.execute(
            "INSERT INTO store_meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    async def _load_knowledge_vector(self) -> KnowledgeVector:
        conn = self._ensure_conn()
        async with conn.execute("SELECT clock_id, clock FROM knowledge_vector") as cursor:
            rows = await cursor.fetchall()
        return KnowledgeVector({r["clock_id"]: r["clock"] for r in rows})

    async def _save_knowledge_vector(self, kv: KnowledgeVector) -> None:
        conn = self._ensure_conn()
        await conn.executemany(
            """INSERT INTO knowledge_vector (clock_id, clock) VALUES (?, ?)
               ON CONFLICT(clock_id) DO UPDATE SET clock = MAX(clock, excluded.clock)""",
            list(kv.to_dict().items()),
        )

    async def _acknowledge(self, uuids: Iterable[str], remote_id: str) -> None:
        conn = self._ensure_conn()
        now = utcnow().isoformat()
        await conn.executemany(
            """INSERT OR IGNORE INTO acknowledgements (version_uuid, remote_id, acknowledged_at)
               VALUES (?, ?, ?)""",
            [(uuid, remote_id, now) for uuid in uuids],
        )

    async def _versions_since(self, since: KnowledgeVector) -> list[Entity]:
        """Live versions with an origin clock beyond what ``since`` has seen.

        The vector is small, so filtering happens per origin clock id.
        """
        conn = self._ensure_conn()
        found: list[Entity] = []
        async with conn.execute(
            "SELECT DISTINCT origin_clock_id FROM task_versions WHERE superseded = 0 "
            "UNION SELECT DISTINCT origin_clock_id FROM outcomes"
        ) as cursor:
            origins = [r[0] for r in await cursor.fetchall()]

        for origin in origins:
            floor = since.clock(origin)
            async with conn.execute(
                """SELECT * FROM task_versions
                   WHERE superseded = 0 AND origin_clock_id = ? AND origin_clock > ?""",
                (origin, floor),
            ) as cursor:
                found.extend(row_to_task(r) for r in await cursor.fetchall())
            async with conn.execute(
                "SELECT * FROM outcomes WHERE origin_clock_id = ? AND origin_clock > ?",
                (origin, floor),
            ) as cursor:
                found.extend(row_to_outcome(r) for r in await cursor.fetchall())
        return found

    async def _clear_versions(self) -> None:
        conn = self._ensure_conn()
        await conn.execute("DELETE FROM outcomes")
        await conn.execute("DELETE FROM task_versions")
        await conn.execute("DELETE FROM acknowledgements")
