"""Transactional application of resolved changes to a version store.

Everything one sync attempt does to a store (the necessary operations, the
supersede marks, the knowledge vector merge and the dirty-flag
acknowledgements) happens inside one store transaction. Nothing is visible as
committed until :meth:`TransactionalApplier.commit` returns; any failure before
that rolls the store back to where it was.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from types import TracebackType
from typing import TYPE_CHECKING

import aiosqlite

from caresync.core.change import ChangeOperation
from caresync.core.entity import Outcome
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import ApplyFailure, ProgrammingError, SyncError

if TYPE_CHECKING:
    from caresync.storage.base import VersionStore
    from caresync.sync.resolver import ResolvedChanges

logger = logging.getLogger(__name__)

# Failures a store backend may raise for a write it cannot perform.
STORE_ERRORS: tuple[type[Exception], ...] = (ValueError, KeyError, OSError, aiosqlite.Error)


class TransactionalApplier:
    """Applies one sync attempt's changes to ``store`` as a single unit.

    Usage::

        async with TransactionalApplier(store, remote_id) as applier:
            await applier.apply(resolved)
            ...
            await applier.commit(knowledge_vector, resolved.acknowledged)

    Leaving the block without calling :meth:`commit` rolls back.
    """

    def __init__(self, store: VersionStore, remote_id: str) -> None:
        self._store = store
        self._remote_id = remote_id
        self._active = False
        self.applied = 0
        self.superseded = 0

    @property
    def active(self) -> bool:
        return self._active

    async def begin(self) -> None:
        if self._active:
            raise ProgrammingError("Apply transaction already open")
        try:
            await self._store.begin_transaction()
        except STORE_ERRORS as e:
            raise ApplyFailure(f"Failed to open sync transaction: {e}") from e
        self._active = True

    async def apply(self, resolved: ResolvedChanges) -> int:
        """Apply operations in order, then mark losing versions superseded.

        Raises:
            ApplyFailure: The store refused an operation
        """
        self._require_active()
        try:
            for record in resolved.operations:
                if record.operation == ChangeOperation.DELETE:
                    if not isinstance(record.entity, Outcome):
                        raise ProgrammingError("Tasks are deleted by adding a tombstone version")
                    await self._store.retract_outcome(record.entity)
                else:
                    await self._store.insert_version(record.entity)
                self.applied += 1
            if resolved.superseded:
                self.superseded += await self._store.supersede_versions(resolved.superseded)
        except SyncError:
            raise
        except STORE_ERRORS as e:
            raise ApplyFailure(f"Failed to apply change: {e}") from e
        logger.debug("Applied %d operations, superseded %d", self.applied, self.superseded)
        return self.applied

    async def commit(
        self,
        knowledge_vector: KnowledgeVector,
        acknowledged: Iterable[str] = (),
    ) -> None:
        """Merge the knowledge vector, clear dirty flags and commit."""
        self._require_active()
        try:
            await self._store.merge_knowledge_vector(knowledge_vector)
            await self._store.acknowledge(acknowledged, self._remote_id)
            await self._store.commit_transaction()
        except SyncError:
            await self.rollback()
            raise
        except STORE_ERRORS as e:
            await self.rollback()
            raise ApplyFailure(f"Failed to commit sync transaction: {e}") from e
        self._active = False

    async def rollback(self) -> None:
        """Undo everything since :meth:`begin`; survives cancellation."""
        if not self._active:
            return
        self._active = False
        await asyncio.shield(self._store.rollback_transaction())
        logger.info("Rolled back sync transaction with %s", self._remote_id)

    def _require_active(self) -> None:
        if not self._active:
            raise ProgrammingError("No open apply transaction")

    async def __aenter__(self) -> TransactionalApplier:
        await self.begin()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._active:
            await self.rollback()
