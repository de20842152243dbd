"""Abstract base class for version store backends."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from typing import Any

from caresync.core.change import ChangeOperation, ChangeSet, RevisionRecord
from caresync.core.entity import Entity, Outcome, Task, version_sort_key
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import InvalidRevision, ProgrammingError
from caresync.sync.apply import TransactionalApplier
from caresync.sync.policy import KeepRemotePolicy, RejectConflictsPolicy
from caresync.sync.resolver import ResolvedChanges, resolve_changes
from caresync.sync.version_chain import VersionArena

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], Any]


class VersionStore(ABC):
    """
    Abstract interface for a versioned task/outcome store.

    A store persists immutable task versions and outcomes, keeps its own
    knowledge vector, and tracks which versions each remote has acknowledged.
    Backends implement the storage primitives; local writes, revision
    computation and merging incoming revisions are shared here.

    Writes are serialized by a per-store lock. A sync attempt holds it from
    :meth:`begin_transaction` until commit or rollback, so local writes issued
    meanwhile wait and can never interleave with a half-applied sync.
    """

    def __init__(self) -> None:
        self._clock_id: str | None = None
        self._lock = asyncio.Lock()
        self._in_transaction = False
        # Restarting counts as having exported: the first write after startup
        # always moves to a fresh tick.
        self._exported = True
        self._listeners: list[ChangeListener] = []

    @property
    def clock_id(self) -> str:
        """This store's own knowledge vector component."""
        if self._clock_id is None:
            raise ProgrammingError("Store not initialized. Call initialize() first.")
        return self._clock_id

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # ========== Lifecycle ==========

    @abstractmethod
    async def initialize(self) -> None:
        """Open the backend and load the store's clock id."""
        ...

    @abstractmethod
    async def close(self) -> None: ...

    async def _ensure_own_clock(self) -> None:
        kv = await self._load_knowledge_vector()
        if kv.clock(self.clock_id) == 0:
            await self._save_knowledge_vector(kv.advance(self.clock_id))

    # ========== Transactions ==========

    async def begin_transaction(self) -> None:
        await self._lock.acquire()
        try:
            await self._begin()
        except BaseException:
            self._lock.release()
            raise
        self._in_transaction = True

    async def commit_transaction(self) -> None:
        """Commit; on failure the transaction stays open for a rollback."""
        self._require_transaction()
        await self._commit()
        self._in_transaction = False
        self._lock.release()

    async def rollback_transaction(self) -> None:
        self._require_transaction()
        try:
            await self._rollback()
        finally:
            self._in_transaction = False
            self._lock.release()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        await self.begin_transaction()
        try:
            yield
            await self.commit_transaction()
        except BaseException:
            if self._in_transaction:
                await asyncio.shield(self.rollback_transaction())
            raise

    def _require_transaction(self) -> None:
        if not self._in_transaction:
            raise ProgrammingError("Operation requires an open store transaction")

    @abstractmethod
    async def _begin(self) -> None: ...

    @abstractmethod
    async def _commit(self) -> None: ...

    @abstractmethod
    async def _rollback(self) -> None: ...

    # ========== Storage primitives ==========

    @abstractmethod
    async def _insert_task(self, task: Task) -> bool:
        """Store a task version; return False if its uuid is already known."""
        ...

    @abstractmethod
    async def _insert_outcome(self, outcome: Outcome) -> bool:
        """Store an outcome row; return False if its uuid is already known."""
        ...

    @abstractmethod
    async def _remove_live_outcomes(
        self, task_uuid: str, occurrence_index: int, keep_uuid: str | None = None
    ) -> int:
        """Physically delete non-deleted outcomes on an occurrence."""
        ...

    @abstractmethod
    async def _mark_superseded(self, uuids: Iterable[str]) -> int: ...

    @abstractmethod
    async def _remove_outcomes_on(self, task_uuids: Iterable[str]) -> int:
        """Physically delete every outcome attached to the given task versions."""
        ...

    @abstractmethod
    async def _acknowledge(self, uuids: Iterable[str], remote_id: str) -> None: ...

    @abstractmethod
    async def _load_knowledge_vector(self) -> KnowledgeVector: ...

    @abstractmethod
    async def _save_knowledge_vector(self, kv: KnowledgeVector) -> None: ...

    @abstractmethod
    async def _versions_since(self, since: KnowledgeVector) -> list[Entity]:
        """Live versions whose origin stamp is not covered by ``since``."""
        ...

    @abstractmethod
    async def _clear_versions(self) -> None: ...

    # ========== Queries ==========

    @abstractmethod
    async def get_version(self, uuid: str) -> Entity | None:
        """Look up any live task version or outcome by uuid."""
        ...

    @abstractmethod
    async def is_superseded(self, uuid: str) -> bool: ...

    @abstractmethod
    async def fetch_task_versions(self, task_ids: Iterable[str] | None = None) -> list[Task]:
        """Every live (not superseded) version, oldest first.

        Args:
            task_ids: Restrict to these logical ids; None returns all
        """
        ...

    @abstractmethod
    async def fetch_outcomes(
        self, task_uuid: str | None = None, include_deleted: bool = False
    ) -> list[Outcome]: ...

    @abstractmethod
    async def dirty_tasks(self, remote_id: str) -> list[Task]:
        """Live task versions ``remote_id`` has not acknowledged."""
        ...

    @abstractmethod
    async def dirty_outcomes(self, remote_id: str) -> list[Outcome]:
        """Outcome rows ``remote_id`` has not acknowledged."""
        ...

    async def fetch_tasks(self, include_deleted: bool = False) -> list[Task]:
        """The current head version of every logical task."""
        arena = VersionArena(await self.fetch_task_versions())
        heads = [arena.head(task_id) for task_id in sorted(arena.logical_ids())]
        return [h for h in heads if h is not None and (include_deleted or not h.is_deleted)]

    async def get_task(self, task_id: str) -> Task | None:
        """Head version of a logical task, None if unknown or deleted."""
        head = await self._head(task_id)
        if head is None or head.is_deleted:
            return None
        return head

    async def _head(self, task_id: str) -> Task | None:
        arena = VersionArena(await self.fetch_task_versions([task_id]))
        return arena.head(task_id)

    async def local_change_set(self, remote_id: str) -> ChangeSet:
        tasks, outcomes = await asyncio.gather(
            self.dirty_tasks(remote_id), self.dirty_outcomes(remote_id)
        )
        return ChangeSet.from_entities([*tasks, *outcomes])

    async def get_stats(self, remote_id: str | None = None) -> dict[str, Any]:
        versions = await self.fetch_task_versions()
        stats: dict[str, Any] = {
            "clock_id": self.clock_id,
            "task_count": len(await self.fetch_tasks()),
            "task_version_count": len(versions),
            "outcome_count": len(await self.fetch_outcomes()),
            "knowledge_vector": (await self.knowledge_vector()).to_dict(),
        }
        if remote_id is not None:
            stats["dirty_count"] = len(await self.local_change_set(remote_id))
        return stats

    # ========== Local writes ==========

    def add_change_listener(self, listener: ChangeListener) -> None:
        """Call ``listener`` after every committed local modification."""
        self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.warning("Change listener failed", exc_info=True)

    async def _next_local_clock(self) -> int:
        kv = await self._load_knowledge_vector()
        if self._exported:
            kv = kv.advance(self.clock_id)
            await self._save_knowledge_vector(kv)
            self._exported = False
        return kv.clock(self.clock_id)

    async def _write_local(self, entity: Entity) -> Entity:
        stamped = entity.with_stamp(self.clock_id, await self._next_local_clock())
        if isinstance(stamped, Task):
            await self._insert_task(stamped)
        else:
            await self._insert_outcome(stamped)
        return stamped

    async def add_task(self, task: Task) -> Task:
        """Persist the root version of a new logical task.

        Raises:
            ValueError: A live task with the same id already exists
        """
        async with self.transaction():
            head = await self._head(task.id)
            if head is not None and not head.is_deleted:
                raise ValueError(f"Task {task.id} already exists")
            if head is not None:
                # Re-creating a deleted task continues its chain
                task = head.new_version(
                    title=task.title,
                    instructions=task.instructions,
                    schedule=task.schedule,
                    deleted_date=None,
                )
            stored = await self._write_local(task)
        self._notify_changed()
        assert isinstance(stored, Task)
        return stored

    async def update_task(self, task_id: str, **changes: Any) -> Task:
        """Append a new version of ``task_id`` with ``changes`` applied.

        Raises:
            KeyError: No live task with that id
        """
        async with self.transaction():
            head = await self._head(task_id)
            if head is None or head.is_deleted:
                raise KeyError(f"Task {task_id} not found")
            stored = await self._write_local(head.new_version(**changes))
        self._notify_changed()
        assert isinstance(stored, Task)
        return stored

    async def delete_task(self, task_id: str) -> Task:
        """Append a tombstone version of ``task_id``."""
        async with self.transaction():
            head = await self._head(task_id)
            if head is None or head.is_deleted:
                raise KeyError(f"Task {task_id} not found")
            stored = await self._write_local(head.tombstone())
        self._notify_changed()
        assert isinstance(stored, Task)
        return stored

    async def add_outcome(self, outcome: Outcome) -> Outcome:
        """Record an outcome for an occurrence of an existing task version.

        Raises:
            ValueError: Unknown task version, or the occurrence already has an outcome
        """
        async with self.transaction():
            parent = await self.get_version(outcome.task_uuid)
            if not isinstance(parent, Task):
                raise ValueError(f"Task version {outcome.task_uuid} not found")
            existing = await self._live_outcome(outcome.task_uuid, outcome.task_occurrence_index)
            if existing is not None:
                raise ValueError(
                    f"Occurrence {outcome.task_occurrence_index} of {outcome.task_uuid} "
                    "already has an outcome"
                )
            stored = await self._write_local(outcome)
        self._notify_changed()
        assert isinstance(stored, Outcome)
        return stored

    async def delete_outcome(self, task_uuid: str, occurrence_index: int) -> Outcome:
        """Retract the outcome on an occurrence, leaving a tombstone to sync."""
        async with self.transaction():
            existing = await self._live_outcome(task_uuid, occurrence_index)
            if existing is None:
                raise KeyError(f"No outcome for occurrence {occurrence_index} of {task_uuid}")
            await self._remove_live_outcomes(task_uuid, occurrence_index)
            stored = await self._write_local(existing.tombstone())
        self._notify_changed()
        assert isinstance(stored, Outcome)
        return stored

    async def _live_outcome(self, task_uuid: str, occurrence_index: int) -> Outcome | None:
        for outcome in await self.fetch_outcomes(task_uuid):
            if outcome.task_occurrence_index == occurrence_index:
                return outcome
        return None

    async def clear(self) -> None:
        """Forget every version; the knowledge vector stays monotonic."""
        async with self.transaction():
            await self._clear_versions()
        self._exported = True
        logger.info("Cleared store %s", self.clock_id)

    # ========== Sync primitives (inside a transaction) ==========

    async def insert_version(self, entity: Entity) -> bool:
        """Store an ingested version verbatim; known uuids are a no-op.

        An outcome replaces any other live outcome on its occurrence. Outcomes
        on superseded task versions are dropped.

        Raises:
            ValueError: An outcome references an unknown task version
        """
        self._require_transaction()
        if isinstance(entity, Task):
            return await self._insert_task(entity)

        if await self.is_superseded(entity.task_uuid):
            logger.debug("Dropping outcome %s on superseded task version", entity.uuid)
            return False
        if await self.get_version(entity.uuid) is not None:
            return False
        parent = await self.get_version(entity.task_uuid)
        if not isinstance(parent, Task):
            raise ValueError(f"Outcome {entity.uuid} references unknown task {entity.task_uuid}")
        if not entity.is_deleted:
            await self._remove_live_outcomes(
                entity.task_uuid, entity.task_occurrence_index, keep_uuid=entity.uuid
            )
        return await self._insert_outcome(entity)

    async def retract_outcome(self, outcome: Outcome) -> int:
        """Delete the live outcome on an occurrence and keep its tombstone.

        Returns the number of live outcomes removed.
        """
        self._require_transaction()
        removed = await self._remove_live_outcomes(outcome.task_uuid, outcome.task_occurrence_index)
        if outcome.is_deleted and not await self.is_superseded(outcome.task_uuid):
            if await self.get_version(outcome.task_uuid) is not None:
                await self._insert_outcome(outcome)
        return removed

    async def supersede_versions(self, uuids: Iterable[str]) -> int:
        """Hide task versions on a losing branch and drop their outcomes."""
        self._require_transaction()
        targets = list(uuids)
        if not targets:
            return 0
        await self._remove_outcomes_on(targets)
        return await self._mark_superseded(targets)

    async def acknowledge(self, uuids: Iterable[str], remote_id: str) -> None:
        """Clear the dirty flag of ``uuids`` for ``remote_id``."""
        self._require_transaction()
        await self._acknowledge(uuids, remote_id)

    async def merge_knowledge_vector(self, kv: KnowledgeVector) -> KnowledgeVector:
        self._require_transaction()
        merged = (await self._load_knowledge_vector()).merge(kv)
        await self._save_knowledge_vector(merged)
        return merged

    # ========== Revisions ==========

    async def knowledge_vector(self) -> KnowledgeVector:
        return await self._load_knowledge_vector()

    async def export_knowledge_vector(self) -> KnowledgeVector:
        """Return the vector for a peer; the next local write starts a new tick."""
        self._exported = True
        return await self._load_knowledge_vector()

    async def compute_revision(self, since: KnowledgeVector) -> RevisionRecord:
        """Everything ``since`` does not reflect, plus this store's vector."""
        async with self._lock:
            return await self._compute_revision(since)

    async def _compute_revision(self, since: KnowledgeVector) -> RevisionRecord:
        kv = await self.export_knowledge_vector()
        entities = await self._versions_since(since)
        ordered = sorted(entities, key=lambda e: (isinstance(e, Outcome), *version_sort_key(e)))
        return RevisionRecord(entities=tuple(ordered), knowledge_vector=kv)

    async def merge_revision(
        self,
        revision: RevisionRecord,
        source_id: str,
        overwrite_remote: bool = False,
    ) -> ResolvedChanges:
        """Merge a revision pushed by ``source_id`` into this store.

        Without ``overwrite_remote`` any divergence raises ``RemoteConflict``
        and nothing is changed. With it the incoming branch always wins. An
        outcome on a task version neither side holds raises ``InvalidRevision``.
        """
        incoming = revision.to_change_set()
        async with TransactionalApplier(self, source_id) as applier:
            local = (await self._compute_revision(revision.knowledge_vector)).to_change_set()
            versions = await self.fetch_task_versions(incoming.task_ids() | local.task_ids())
            policy = KeepRemotePolicy() if overwrite_remote else RejectConflictsPolicy()
            resolved = resolve_changes(incoming, local, policy, versions)
            await self._check_references(resolved)
            await applier.apply(resolved)
            await applier.commit(revision.knowledge_vector, resolved.acknowledged)

        logger.info(
            "Merged revision from %s: %d entities, %d applied, %d superseded",
            source_id,
            len(revision.entities),
            applier.applied,
            applier.superseded,
        )
        return resolved

    async def _check_references(self, resolved: ResolvedChanges) -> None:
        incoming_tasks = {r.entity.uuid for r in resolved.operations if r.is_task}
        for record in resolved.operations:
            entity = record.entity
            if record.operation != ChangeOperation.ADD or not isinstance(entity, Outcome):
                continue
            if entity.task_uuid in incoming_tasks:
                continue
            if await self.is_superseded(entity.task_uuid):
                continue
            if not isinstance(await self.get_version(entity.task_uuid), Task):
                raise InvalidRevision(
                    f"Outcome {entity.uuid} references unknown task {entity.task_uuid}",
                    status_code=422,
                )
