"""Versioned health-tracking entities: tasks and their logged outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any, TypeAlias
from uuid import uuid4

from caresync.utils.timeutils import utcnow


class EntityKind(StrEnum):
    """Wire discriminator for the entity union."""

    TASK = "task"
    OUTCOME = "outcome"


def new_uuid() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class OutcomeValue:
    """A single value recorded against a task occurrence."""

    value: Any
    kind: str | None = None
    units: str | None = None
    created_date: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, eq=False)
class Task:
    """
    One immutable version of a task.

    Updating a task never mutates a version: it appends a new version whose
    ``previous_version_uuid`` points at the one it replaces. Deletion appends a
    tombstone version carrying ``deleted_date``.

    Attributes:
        id: Logical identifier shared by every version of the task
        uuid: Unique identifier of this version
        title: Display title
        instructions: Optional free-text instructions
        schedule: Free-form schedule description
        previous_version_uuid: Version this one supersedes, None for a root
        created_date: When this version was created
        updated_date: When the logical task was last changed
        deleted_date: Non-None marks this version as a tombstone
        origin_clock_id: Clock id of the store that created this version
        origin_clock: That store's counter when the version was created
    """

    id: str
    uuid: str = field(default_factory=new_uuid)
    title: str = ""
    instructions: str | None = None
    schedule: dict[str, Any] = field(default_factory=dict)
    previous_version_uuid: str | None = None
    created_date: datetime = field(default_factory=utcnow)
    updated_date: datetime = field(default_factory=utcnow)
    deleted_date: datetime | None = None
    origin_clock_id: str = ""
    origin_clock: int = 0

    @property
    def kind(self) -> EntityKind:
        return EntityKind.TASK

    @property
    def logical_id(self) -> str:
        return self.id

    @property
    def is_deleted(self) -> bool:
        return self.deleted_date is not None

    @classmethod
    def create(
        cls,
        task_id: str,
        title: str = "",
        *,
        instructions: str | None = None,
        schedule: dict[str, Any] | None = None,
    ) -> Task:
        """Create the root version of a new task."""
        now = utcnow()
        return cls(
            id=task_id,
            uuid=new_uuid(),
            title=title,
            instructions=instructions,
            schedule=schedule or {},
            created_date=now,
            updated_date=now,
        )

    def new_version(self, **changes: Any) -> Task:
        """Return the successor version of this task with ``changes`` applied."""
        now = utcnow()
        return replace(
            self,
            uuid=new_uuid(),
            previous_version_uuid=self.uuid,
            created_date=now,
            updated_date=now,
            origin_clock_id="",
            origin_clock=0,
            **changes,
        )

    def tombstone(self, deleted_date: datetime | None = None) -> Task:
        """Return a successor version that logically deletes the task."""
        return self.new_version(deleted_date=deleted_date or utcnow())

    def with_stamp(self, clock_id: str, clock: int) -> Task:
        return replace(self, origin_clock_id=clock_id, origin_clock=clock)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Task):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(("task", self.uuid))


@dataclass(frozen=True, eq=False)
class Outcome:
    """
    The logged result of one scheduled occurrence of a task version.

    An occurrence holds at most one live outcome; the pair
    ``(task_uuid, task_occurrence_index)`` is the outcome's logical key.
    Retracting an outcome produces a tombstone carrying ``deleted_date``.
    """

    id: str
    task_uuid: str
    task_occurrence_index: int
    uuid: str = field(default_factory=new_uuid)
    values: tuple[OutcomeValue, ...] = ()
    previous_version_uuid: str | None = None
    created_date: datetime = field(default_factory=utcnow)
    updated_date: datetime = field(default_factory=utcnow)
    deleted_date: datetime | None = None
    origin_clock_id: str = ""
    origin_clock: int = 0

    @property
    def kind(self) -> EntityKind:
        return EntityKind.OUTCOME

    @property
    def logical_id(self) -> str:
        return self.id

    @property
    def occurrence_key(self) -> tuple[str, int]:
        return (self.task_uuid, self.task_occurrence_index)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_date is not None

    @classmethod
    def create(
        cls,
        task_uuid: str,
        task_occurrence_index: int,
        values: list[OutcomeValue] | tuple[OutcomeValue, ...] = (),
        *,
        outcome_id: str | None = None,
    ) -> Outcome:
        """Create an outcome for an occurrence of a specific task version."""
        if task_occurrence_index < 0:
            raise ValueError("task_occurrence_index must not be negative")
        now = utcnow()
        return cls(
            id=outcome_id or f"{task_uuid}:{task_occurrence_index}",
            task_uuid=task_uuid,
            task_occurrence_index=task_occurrence_index,
            uuid=new_uuid(),
            values=tuple(values),
            created_date=now,
            updated_date=now,
        )

    def tombstone(self, deleted_date: datetime | None = None) -> Outcome:
        """Return a retraction of this outcome."""
        now = deleted_date or utcnow()
        return replace(
            self,
            uuid=new_uuid(),
            previous_version_uuid=self.uuid,
            updated_date=now,
            deleted_date=now,
            origin_clock_id="",
            origin_clock=0,
        )

    def with_stamp(self, clock_id: str, clock: int) -> Outcome:
        return replace(self, origin_clock_id=clock_id, origin_clock=clock)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Outcome):
            return NotImplemented
        return self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(("outcome", self.uuid))


Entity: TypeAlias = Task | Outcome


def entity_kind(entity: Entity) -> EntityKind:
    return entity.kind


def version_sort_key(entity: Entity) -> tuple[datetime, str]:
    """Deterministic ordering of versions: oldest first, uuid as tie-breaker."""
    return (entity.created_date, entity.uuid)
