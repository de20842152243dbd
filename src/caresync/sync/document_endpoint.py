"""Document-store remote: tasks and outcomes kept as JSON documents.

Every document carries the wire form of one version plus two bookkeeping
fields: ``userID`` (the tenant the record belongs to) and one
``isDirtyForDevice:<device id>`` flag per device. A document is dirty for a
device until that device exchanged change sets with the store after the
document was written.

Exchanges run inside an explicit transaction that the caller commits or rolls
back, so a device can abort after a failed local apply.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from caresync.core.change import ChangeOperation, ChangeRecord, ChangeSet, RevisionRecord
from caresync.core.entity import Entity, Outcome, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.core.serialization import entity_from_dict, entity_to_dict
from caresync.errors import ApplyFailure, ProgrammingError
from caresync.sync.policy import (
    ConflictResolutionPolicy,
    KeepRemotePolicy,
    RejectConflictsPolicy,
)
from caresync.sync.protocol import ConflictDescription
from caresync.sync.resolver import resolve_changes

logger = logging.getLogger(__name__)

TASKS = "tasks"
OUTCOMES = "outcomes"
USER_ID_KEY = "userID"
SUPERSEDED_KEY = "superseded"
KNOWLEDGE_DOC = "knowledgeVector"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    user_id TEXT NOT NULL,
    uuid TEXT NOT NULL,
    body TEXT NOT NULL,  -- JSON
    PRIMARY KEY (collection, user_id, uuid)
);
CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id, collection);
"""


def dirty_key(device_id: str) -> str:
    return f"isDirtyForDevice:{device_id}"


class DocumentStoreEndpoint:
    """
    A remote endpoint over a JSON document database.

    Usage:
        endpoint = DocumentStoreEndpoint("remote.db", user_id="alice", device_id=device)
        await endpoint.initialize()
        result = await SyncEngine(store, endpoint).synchronize()

    Pulls use the version stamps; pushes go through :meth:`exchange_change_sets`
    and are committed immediately.

    Args:
        db_path: Database file, or ``":memory:"``
        user_id: Tenant whose documents this endpoint reads and writes
        device_id: Device the dirty flags are tracked for
        conflict_policy: Policy answered to the device for every conflict
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        user_id: str,
        device_id: str,
        conflict_policy: ConflictResolutionPolicy | None = None,
    ) -> None:
        self._db_path = str(db_path)
        self._user_id = user_id
        self._device_id = device_id
        self._dirty_key = dirty_key(device_id)
        self.conflict_policy: ConflictResolutionPolicy = conflict_policy or KeepRemotePolicy()
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._in_transaction = False

    @property
    def identity(self) -> str:
        return f"docstore:{self._user_id}@{self._db_path}"

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._in_transaction:
            await self.rollback()
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Document store not initialized. Call initialize() first.")
        return self._conn

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def _find(self, collection: str) -> list[dict[str, Any]]:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT body FROM documents WHERE collection = ? AND user_id = ?",
            (collection, self._user_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [json.loads(r["body"]) for r in rows]

    async def _save(self, collection: str, document: dict[str, Any]) -> None:
        conn = self._ensure_conn()
        await conn.execute(
            """INSERT INTO documents (collection, user_id, uuid, body) VALUES (?, ?, ?, ?)
               ON CONFLICT(collection, user_id, uuid) DO UPDATE SET body = excluded.body""",
            (collection, self._user_id, document["uuid"], json.dumps(document)),
        )

    async def _insert(self, collection: str, entity: Entity) -> bool:
        conn = self._ensure_conn()
        document = {**entity_to_dict(entity), USER_ID_KEY: self._user_id, self._dirty_key: False}
        cursor = await conn.execute(
            "INSERT OR IGNORE INTO documents (collection, user_id, uuid, body) VALUES (?, ?, ?, ?)",
            (collection, self._user_id, entity.uuid, json.dumps(document)),
        )
        return cursor.rowcount > 0

    async def _delete_where(self, collection: str, **match: Any) -> int:
        deleted = 0
        conn = self._ensure_conn()
        for document in await self._find(collection):
            if all(document.get(k) == v for k, v in match.items()):
                await conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND user_id = ? AND uuid = ?",
                    (collection, self._user_id, document["uuid"]),
                )
                deleted += 1
        return deleted

    async def _exists(self, collection: str, uuid: str) -> bool:
        conn = self._ensure_conn()
        async with conn.execute(
            "SELECT 1 FROM documents WHERE collection = ? AND user_id = ? AND uuid = ?",
            (collection, self._user_id, uuid),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def _live(self, collection: str) -> list[dict[str, Any]]:
        return [d for d in await self._find(collection) if not d.get(SUPERSEDED_KEY)]

    def _is_dirty(self, document: dict[str, Any]) -> bool:
        return document.get(self._dirty_key) is not False

    async def current_change_set(self) -> ChangeSet:
        """Documents this device has not exchanged yet."""
        entities = [
            entity_from_dict(d)
            for collection in (TASKS, OUTCOMES)
            for d in await self._live(collection)
            if self._is_dirty(d)
        ]
        return ChangeSet.from_entities(entities)

    async def knowledge_vector(self) -> KnowledgeVector:
        for document in await self._find(KNOWLEDGE_DOC):
            return KnowledgeVector.from_dict(document.get("clocks"))
        return KnowledgeVector()

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def exchange_change_sets(
        self,
        local_change_set: ChangeSet,
        *,
        overwrite_remote: bool = True,
        knowledge_vector: KnowledgeVector | None = None,
    ) -> ChangeSet:
        """Merge a device's changes and return the store's unexchanged ones.

        Opens a transaction that stays open until :meth:`commit` or
        :meth:`rollback`. The device's changes win every divergence unless
        ``overwrite_remote`` is False, in which case a divergence raises
        ``RemoteConflict`` and nothing is written.
        """
        await self._lock.acquire()
        conn = self._ensure_conn()
        await conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            remote_change_set = await self.current_change_set()
            known = [
                v
                for v in (entity_from_dict(d) for d in await self._live(TASKS))
                if isinstance(v, Task)
            ]
            policy = KeepRemotePolicy() if overwrite_remote else RejectConflictsPolicy()
            necessary = resolve_changes(local_change_set, remote_change_set, policy, known)
            for record in necessary.operations:
                await self._handle(record)
            for uuid in necessary.superseded:
                await self._supersede(uuid)
            await self._undirty_synced_records()
            if knowledge_vector is not None:
                merged = (await self.knowledge_vector()).merge(knowledge_vector)
                await self._save(KNOWLEDGE_DOC, {"uuid": KNOWLEDGE_DOC, "clocks": merged.to_dict()})
        except BaseException:
            await self.rollback()
            raise
        logger.debug(
            "Exchanged change sets for %s: %d in, %d out",
            self._user_id,
            len(local_change_set),
            len(remote_change_set),
        )
        return remote_change_set

    async def commit(self) -> None:
        if not self._in_transaction:
            return
        try:
            await self._ensure_conn().execute("COMMIT")
        finally:
            self._in_transaction = False
            self._lock.release()

    async def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            await asyncio.shield(self._ensure_conn().execute("ROLLBACK"))
        finally:
            self._in_transaction = False
            self._lock.release()

    async def _handle(self, record: ChangeRecord) -> None:
        entity = record.entity
        if isinstance(entity, Task):
            if record.operation == ChangeOperation.DELETE:
                raise ProgrammingError("Tasks are deleted by adding a tombstone version")
            await self._insert(TASKS, entity)
            return

        assert isinstance(entity, Outcome)
        if await self._exists(OUTCOMES, entity.uuid):
            return
        await self._delete_where(
            OUTCOMES,
            taskUuid=entity.task_uuid,
            taskOccurrenceIndex=entity.task_occurrence_index,
            deletedDate=None,
        )
        if record.operation == ChangeOperation.ADD or entity.is_deleted:
            await self._insert(OUTCOMES, entity)

    async def _supersede(self, uuid: str) -> None:
        for document in await self._find(TASKS):
            if document["uuid"] == uuid:
                await self._save(TASKS, {**document, SUPERSEDED_KEY: True})
        await self._delete_where(OUTCOMES, taskUuid=uuid)

    async def _undirty_synced_records(self) -> None:
        for collection in (TASKS, OUTCOMES):
            for document in await self._find(collection):
                if self._is_dirty(document):
                    await self._save(collection, {**document, self._dirty_key: False})

    async def clear(self) -> None:
        """Remove every document of this tenant."""
        async with self._lock:
            await self._ensure_conn().execute(
                "DELETE FROM documents WHERE user_id = ? AND collection != ?",
                (self._user_id, KNOWLEDGE_DOC),
            )

    # ------------------------------------------------------------------
    # RemoteEndpoint
    # ------------------------------------------------------------------

    async def pull_revisions(self, since: KnowledgeVector) -> RevisionRecord:
        async with self._lock:
            entities = [
                entity_from_dict(d)
                for collection in (TASKS, OUTCOMES)
                for d in await self._live(collection)
            ]
            kv = await self.knowledge_vector()
        fresh = [e for e in entities if e.origin_clock > since.clock(e.origin_clock_id)]
        return RevisionRecord.from_change_set(ChangeSet.from_entities(fresh), kv)

    async def push_revisions(self, revision: RevisionRecord, overwrite_remote: bool) -> None:
        try:
            await self.exchange_change_sets(
                revision.to_change_set(),
                overwrite_remote=overwrite_remote,
                knowledge_vector=revision.knowledge_vector,
            )
        except (ValueError, KeyError) as e:
            raise ApplyFailure(f"Document store rejected the push: {e}") from e
        await self.commit()

    async def choose_conflict_resolution_policy(
        self, conflict: ConflictDescription
    ) -> ConflictResolutionPolicy:
        return self.conflict_policy

