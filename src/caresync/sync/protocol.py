"""Sync protocol data structures and the remote endpoint interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from caresync.core.change import RevisionRecord
from caresync.core.entity import Entity, EntityKind, Outcome
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import SyncError

if TYPE_CHECKING:
    from caresync.sync.policy import ConflictResolutionPolicy


class SyncState(StrEnum):
    """Phase of an in-flight sync attempt."""

    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    APPLYING = "applying"
    PUSHING = "pushing"


class SyncStatus(StrEnum):
    """Outcome of a sync attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    REJECTED = "rejected"  # another attempt was already in flight


class ConflictDecision(StrEnum):
    """Which branch of a diverged version chain survives."""

    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"


@dataclass(frozen=True)
class ConflictDescription:
    """A diverged logical record handed to the conflict resolution policy.

    Attributes:
        kind: Whether the diverged record is a task chain or an outcome occurrence
        logical_id: Task id, or ``"<task_uuid>:<occurrence>"`` for outcomes
        local_chain: Local versions after the common prefix, oldest first
        remote_chain: Remote versions after the common prefix, oldest first
        common_prefix: Versions both sides share, oldest first
        affected_outcomes: Outcomes attached to either divergent branch
    """

    kind: EntityKind
    logical_id: str
    local_chain: tuple[Entity, ...]
    remote_chain: tuple[Entity, ...]
    common_prefix: tuple[Entity, ...] = ()
    affected_outcomes: tuple[Outcome, ...] = ()

    @property
    def common_ancestor_uuid(self) -> str | None:
        return self.common_prefix[-1].uuid if self.common_prefix else None

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind.value, self.logical_id)


@dataclass(frozen=True)
class SyncResult:
    """Typed result of ``SyncEngine.synchronize``.

    On success ``revision`` is the revision pulled from the remote; on failure
    ``error`` holds the typed cause and no local state was changed.
    """

    status: SyncStatus
    revision: RevisionRecord | None = None
    error: SyncError | None = None
    failed_state: SyncState | None = None
    pulled: int = 0
    applied: int = 0
    pushed: int = 0
    superseded: int = 0
    conflicts: tuple[ConflictDescription, ...] = ()
    knowledge_vector: KnowledgeVector | None = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def unwrap(self) -> RevisionRecord:
        """Return the pulled revision or raise the recorded error."""
        if self.error is not None:
            raise self.error
        assert self.revision is not None
        return self.revision

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "retryable": self.error.retryable if self.error else None,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "pulled": self.pulled,
            "applied": self.applied,
            "pushed": self.pushed,
            "superseded": self.superseded,
            "conflicts": [
                {"kind": c.kind.value, "logical_id": c.logical_id} for c in self.conflicts
            ],
            "knowledge_vector": self.knowledge_vector.to_dict() if self.knowledge_vector else None,
        }


@runtime_checkable
class RemoteEndpoint(Protocol):
    """What every remote a store can synchronize with implements."""

    @property
    def identity(self) -> str:
        """Stable id of the remote; scopes dirty flags and single-flight."""
        ...

    async def pull_revisions(self, since: KnowledgeVector) -> RevisionRecord:
        """Return everything not reflected in ``since`` plus the remote vector."""
        ...

    async def push_revisions(self, revision: RevisionRecord, overwrite_remote: bool) -> None:
        """Send local changes; ``overwrite_remote`` skips the remote conflict check."""
        ...

    async def choose_conflict_resolution_policy(
        self, conflict: ConflictDescription
    ) -> ConflictResolutionPolicy:
        """Pick the policy for one diverged record; may wait on user input."""
        ...


@dataclass
class ExchangeStats:
    """Counters gathered while an attempt runs."""

    pulled: int = 0
    applied: int = 0
    pushed: int = 0
    superseded: int = 0
    conflicts: list[ConflictDescription] = field(default_factory=list)
