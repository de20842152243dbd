"""SQLite outcome operations mixin."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from caresync.core.entity import Outcome
from caresync.storage.sqlite_row_mappers import outcome_to_params, row_to_outcome

if TYPE_CHECKING:
    import aiosqlite

_OUTCOME_COLUMNS = """uuid, id, task_uuid, task_occurrence_index, outcome_values,
                      previous_version_uuid, created_date, updated_date, deleted_date,
                      origin_clock_id, origin_clock"""


class SQLiteOutcomeMixin:
    """Mixin providing outcome and outcome tombstone storage."""

    def _ensure_conn(self) -> aiosqlite.Connection:
        raise NotImplementedError

    async def _insert_outcome(self, outcome: Outcome) -> bool:
        conn = self._ensure_conn()
        cursor = await conn.execute(
            f"INSERT OR IGNORE INTO outcomes ({_OUTCOME_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            outcome_to_params(outcome),
        )
        return cursor.rowcount > 0

    async def _remove_live_outcomes(
        self, task_uuid: str, occurrence_index: int, keep_uuid: str | None = None
    ) -> int:
        conn = self._ensure_conn()
        cursor = await conn.execute(
            """DELETE FROM outcomes
               WHERE task_uuid = ? AND task_occurrence_index = ?
                 AND deleted_date IS NULL AND uuid != ?""",
            (task_uuid, occurrence_index, keep_uuid or ""),
        )
        return cursor.rowcount

    async def _remove_outcomes_on(self, task_uuids: Iterable[str]) -> int:
        conn = self._ensure_conn()
        targets = list(task_uuids)
        if not targets:
            return 0
        placeholders = ",".join("?" for _ in targets)
        cursor = await conn.execute(
            f"DELETE FROM outcomes WHERE task_uuid IN ({placeholders})", targets
        )
        return cursor.rowcount

    async def _get_outcome(self, uuid: str) -> Outcome | None:
        conn = self._ensure_conn()
        async with conn.execute(
            f"SELECT {_OUTCOME_COLUMNS} FROM outcomes WHERE uuid = ?", (uuid,)
        ) as cursor:
            row = await cursor.fetchone()
        return row_to_outcome(row) if row else None

    async def fetch_outcomes(
        self, task_uuid: str | None = None, include_deleted: bool = False
    ) -> list[Outcome]:
        conn = self._ensure_conn()
        query = f"SELECT {_OUTCOME_COLUMNS} FROM outcomes WHERE 1 = 1"
        params: list[str] = []
        if task_uuid is not None:
            query += " AND task_uuid = ?"
            params.append(task_uuid)
        if not include_deleted:
            query += " AND deleted_date IS NULL"
        query += " ORDER BY created_date, uuid"
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [row_to_outcome(r) for r in rows]

    async def dirty_outcomes(self, remote_id: str) -> list[Outcome]:
        conn = self._ensure_conn()
        async with conn.execute(
            f"""SELECT {_OUTCOME_COLUMNS} FROM outcomes o
                WHERE NOT EXISTS (
                    SELECT 1 FROM acknowledgements a
                    WHERE a.version_uuid = o.uuid AND a.remote_id = ?
                )
                ORDER BY created_date, uuid""",
            (remote_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row_to_outcome(r) for r in rows]
