"""In-process remote endpoint backed by another version store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from caresync.core.change import RevisionRecord
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.sync.policy import ConflictResolutionPolicy, KeepRemotePolicy
from caresync.sync.protocol import ConflictDescription

if TYPE_CHECKING:
    from caresync.storage.base import VersionStore

logger = logging.getLogger(__name__)


class StoreEndpoint:
    """Use a local :class:`VersionStore` as the remote of another store.

    Pulls compute a revision from the wrapped store; pushes merge into it. The
    same policy answers every conflict unless ``conflict_policy`` is replaced.

    Args:
        store: The store playing the remote
        source_id: Name the wrapped store records pushes under
        conflict_policy: Policy returned for every conflict
    """

    def __init__(
        self,
        store: VersionStore,
        *,
        source_id: str = "peer",
        conflict_policy: ConflictResolutionPolicy | None = None,
    ) -> None:
        self._store = store
        self._source_id = source_id
        self.conflict_policy: ConflictResolutionPolicy = conflict_policy or KeepRemotePolicy()

    @property
    def identity(self) -> str:
        return f"store:{self._store.clock_id}"

    @property
    def store(self) -> VersionStore:
        return self._store

    async def pull_revisions(self, since: KnowledgeVector) -> RevisionRecord:
        return await self._store.compute_revision(since)

    async def push_revisions(self, revision: RevisionRecord, overwrite_remote: bool) -> None:
        await self._store.merge_revision(revision, self._source_id, overwrite_remote)

    async def choose_conflict_resolution_policy(
        self, conflict: ConflictDescription
    ) -> ConflictResolutionPolicy:
        return self.conflict_policy
