"""In-memory version store for development and testing."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from uuid import uuid4

from caresync.core.entity import Entity, Outcome, Task, version_sort_key
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import ProgrammingError
from caresync.storage.base import VersionStore


@dataclass
class _State:
    tasks: dict[str, Task] = field(default_factory=dict)
    superseded: set[str] = field(default_factory=set)
    outcomes: dict[str, Outcome] = field(default_factory=dict)
    acks: set[tuple[str, str]] = field(default_factory=set)
    kv: KnowledgeVector = field(default_factory=KnowledgeVector)

    def copy(self) -> _State:
        return replace(
            self,
            tasks=dict(self.tasks),
            superseded=set(self.superseded),
            outcomes=dict(self.outcomes),
            acks=set(self.acks),
        )


class InMemoryStore(VersionStore):
    """Dict-backed store; everything is lost when the process exits.

    Transactions snapshot the whole state and restore it on rollback.
    """

    def __init__(self, clock_id: str | None = None) -> None:
        super().__init__()
        self._initial_clock_id = clock_id
        self._state = _State()
        self._snapshot: _State | None = None

    async def initialize(self) -> None:
        self._clock_id = self._initial_clock_id or str(uuid4())
        await self._ensure_own_clock()

    async def close(self) -> None:
        return None

    # ========== Transactions ==========

    async def _begin(self) -> None:
        self._snapshot = self._state.copy()

    async def _commit(self) -> None:
        self._snapshot = None

    async def _rollback(self) -> None:
        if self._snapshot is None:
            raise ProgrammingError("Rollback without a snapshot")
        self._state = self._snapshot
        self._snapshot = None

    # ========== Storage primitives ==========

    async def _insert_task(self, task: Task) -> bool:
        if task.uuid in self._state.tasks:
            return False
        self._state.tasks[task.uuid] = task
        return True

    async def _insert_outcome(self, outcome: Outcome) -> bool:
        if outcome.uuid in self._state.outcomes:
            return False
        self._state.outcomes[outcome.uuid] = outcome
        return True

    async def _remove_live_outcomes(
        self, task_uuid: str, occurrence_index: int, keep_uuid: str | None = None
    ) -> int:
        doomed = [
            o.uuid
            for o in self._state.outcomes.values()
            if o.occurrence_key == (task_uuid, occurrence_index)
            and not o.is_deleted
            and o.uuid != keep_uuid
        ]
        for uuid in doomed:
            del self._state.outcomes[uuid]
        return len(doomed)

    async def _mark_superseded(self, uuids: Iterable[str]) -> int:
        marked = 0
        for uuid in uuids:
            if uuid in self._state.tasks and uuid not in self._state.superseded:
                self._state.superseded.add(uuid)
                marked += 1
        return marked

    async def _remove_outcomes_on(self, task_uuids: Iterable[str]) -> int:
        targets = set(task_uuids)
        doomed = [o.uuid for o in self._state.outcomes.values() if o.task_uuid in targets]
        for uuid in doomed:
            del self._state.outcomes[uuid]
        return len(doomed)

    async def _acknowledge(self, uuids: Iterable[str], remote_id: str) -> None:
        self._state.acks.update((uuid, remote_id) for uuid in uuids)

    async def _load_knowledge_vector(self) -> KnowledgeVector:
        return self._state.kv

    async def _save_knowledge_vector(self, kv: KnowledgeVector) -> None:
        self._state.kv = kv

    async def _versions_since(self, since: KnowledgeVector) -> list[Entity]:
        entities: list[Entity] = [*self._live_tasks(), *self._state.outcomes.values()]
        return [e for e in entities if e.origin_clock > since.clock(e.origin_clock_id)]

    async def _clear_versions(self) -> None:
        kv = self._state.kv
        self._state = _State(kv=kv)

    # ========== Queries ==========

    def _live_tasks(self) -> list[Task]:
        return [t for uuid, t in self._state.tasks.items() if uuid not in self._state.superseded]

    async def get_version(self, uuid: str) -> Entity | None:
        if uuid in self._state.superseded:
            return None
        return self._state.tasks.get(uuid) or self._state.outcomes.get(uuid)

    async def is_superseded(self, uuid: str) -> bool:
        return uuid in self._state.superseded

    async def fetch_task_versions(self, task_ids: Iterable[str] | None = None) -> list[Task]:
        wanted = set(task_ids) if task_ids is not None else None
        found = [t for t in self._live_tasks() if wanted is None or t.id in wanted]
        return sorted(found, key=version_sort_key)

    async def fetch_outcomes(
        self, task_uuid: str | None = None, include_deleted: bool = False
    ) -> list[Outcome]:
        found = [
            o
            for o in self._state.outcomes.values()
            if (task_uuid is None or o.task_uuid == task_uuid)
            and (include_deleted or not o.is_deleted)
        ]
        return sorted(found, key=version_sort_key)

    async def dirty_tasks(self, remote_id: str) -> list[Task]:
        found = [t for t in self._live_tasks() if (t.uuid, remote_id) not in self._state.acks]
        return sorted(found, key=version_sort_key)

    async def dirty_outcomes(self, remote_id: str) -> list[Outcome]:
        found = [
            o for o in self._state.outcomes.values() if (o.uuid, remote_id) not in self._state.acks
        ]
        return sorted(found, key=version_sort_key)
