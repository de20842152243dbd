"""SQLite task version operations mixin."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from caresync.core.entity import Task
from caresync.storage.sqlite_row_mappers import row_to_task, task_to_params
from caresync.utils.timeutils import utcnow

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

_TASK_COLUMNS = """uuid, id, title, instructions, schedule, previous_version_uuid,
                   created_date, updated_date, deleted_date, origin_clock_id, origin_clock"""


class SQLiteTaskMixin:
    """Mixin providing task version storage and lookups."""

    # ------------------------------------------------------------------
    # Protocol stubs, satisfied by SQLiteStore at runtime.
    # ------------------------------------------------------------------

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    # ------------------------------------------------------------------

    async def _insert_task(self, task: Task) -> bool:
        conn = self._ensure_conn()
        cursor = await conn.execute(
            f"INSERT OR IGNORE INTO task_versions ({_TASK_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            task_to_params(task),
        )
        return cursor.rowcount > 0

    async def _mark_superseded(self, uuids: Iterable[str]) -> int:
        conn = self._ensure_conn()
        targets = list(uuids)
        if not targets:
            return 0
        placeholders = ",".join("?" for _ in targets)
        cursor = await conn.execute(
            f"""UPDATE task_versions SET superseded = 1, superseded_at = ?
                WHERE superseded = 0 AND uuid IN ({placeholders})""",
            (utcnow().isoformat(), *targets),
        )
        return cursor.rowcount

    async def is_superseded(self, uuid: str) -> bool:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT superseded FROM task_versions WHERE uuid = ?", (uuid,)
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row and row["superseded"])

    async def _get_task_version(self, uuid: str) -> Task | None:
        conn = self._ensure_conn()
        async with conn.execute(
            f"SELECT {_TASK_COLUMNS} FROM task_versions WHERE uuid = ? AND superseded = 0",
            (uuid,),
        ) as cursor:
            row = await cursor.fetchone()
        return row_to_task(row) if row else None

    async def fetch_task_versions(self, task_ids: Iterable[str] | None = None) -> list[Task]:
        conn = self._ensure_conn()
        query = f"SELECT {_TASK_COLUMNS} FROM task_versions WHERE superseded = 0"
        params: list[str] = []
        if task_ids is not None:
            ids = list(task_ids)
            if not ids:
                return []
            query += f" AND id IN ({','.join('?' for _ in ids)})"
            params.extend(ids)
        query += " ORDER BY created_date, uuid"
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [row_to_task(r) for r in rows]

    async def dirty_tasks(self, remote_id: str) -> list[Task]:
        conn = self._ensure_conn()
        async with conn.execute(
            f"""SELECT {_TASK_COLUMNS} FROM task_versions t
                WHERE t.superseded = 0
                  AND NOT EXISTS (
                      SELECT 1 FROM acknowledgements a
                      WHERE a.version_uuid = t.uuid AND a.remote_id = ?
                  )
                ORDER BY created_date, uuid""",
            (remote_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row_to_task(r) for r in rows]
