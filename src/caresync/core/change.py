"""Change records, change sets and revision records."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from caresync.core.entity import Entity, Outcome, Task, version_sort_key
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import ProgrammingError


class ChangeOperation(StrEnum):
    """The two change primitives."""

    ADD = "add"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeRecord:
    """A single change to exchange: add a version, or retract an outcome."""

    operation: ChangeOperation
    entity: Entity
    date: datetime

    def __post_init__(self) -> None:
        if self.operation == ChangeOperation.DELETE and isinstance(self.entity, Task):
            raise ProgrammingError(
                f"Task {self.entity.id} cannot be deleted by a Delete record; "
                "tasks are deleted by adding a tombstone version"
            )

    @classmethod
    def from_entity(cls, entity: Entity) -> ChangeRecord:
        """Classify a persisted version as Add or Delete.

        Outcome tombstones become Delete records dated at their deletion; every
        task version, tombstones included, is an Add.
        """
        if isinstance(entity, Outcome) and entity.deleted_date is not None:
            return cls(ChangeOperation.DELETE, entity, entity.deleted_date)
        return cls(ChangeOperation.ADD, entity, entity.created_date)

    @property
    def logical_id(self) -> str:
        return self.entity.logical_id

    @property
    def is_task(self) -> bool:
        return isinstance(self.entity, Task)


@dataclass(frozen=True)
class ChangeSet:
    """An ordered collection of change records not yet acknowledged by a peer."""

    records: tuple[ChangeRecord, ...] = ()

    @classmethod
    def from_entities(cls, entities: Iterable[Entity]) -> ChangeSet:
        ordered = sorted(entities, key=lambda e: (isinstance(e, Outcome), *version_sort_key(e)))
        return cls(tuple(ChangeRecord.from_entity(e) for e in ordered))

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    @property
    def entities(self) -> list[Entity]:
        return [r.entity for r in self.records]

    def tasks(self) -> list[Task]:
        return [r.entity for r in self.records if isinstance(r.entity, Task)]

    def outcomes(self) -> list[ChangeRecord]:
        return [r for r in self.records if isinstance(r.entity, Outcome)]

    def uuids(self) -> set[str]:
        return {r.entity.uuid for r in self.records}

    def task_ids(self) -> set[str]:
        return {t.id for t in self.tasks()}

    def tasks_by_logical_id(self) -> dict[str, list[Task]]:
        grouped: dict[str, list[Task]] = {}
        for task in self.tasks():
            grouped.setdefault(task.id, []).append(task)
        return grouped

    def outcomes_by_occurrence(self) -> dict[tuple[str, int], list[ChangeRecord]]:
        grouped: dict[tuple[str, int], list[ChangeRecord]] = {}
        for record in self.outcomes():
            outcome = record.entity
            assert isinstance(outcome, Outcome)
            grouped.setdefault(outcome.occurrence_key, []).append(record)
        return grouped

    def filter(self, predicate: Callable[[ChangeRecord], bool]) -> ChangeSet:
        return ChangeSet(tuple(r for r in self.records if predicate(r)))

    def __add__(self, other: ChangeSet) -> ChangeSet:
        seen = self.uuids()
        extra = tuple(r for r in other.records if r.entity.uuid not in seen)
        return ChangeSet(self.records + extra)


@dataclass(frozen=True)
class RevisionRecord:
    """Everything a source wants its peer to know, plus its clock state."""

    entities: tuple[Entity, ...] = ()
    knowledge_vector: KnowledgeVector = field(default_factory=KnowledgeVector)

    @property
    def is_empty(self) -> bool:
        return not self.entities

    def to_change_set(self) -> ChangeSet:
        return ChangeSet.from_entities(self.entities)

    @classmethod
    def from_change_set(
        cls, change_set: ChangeSet, knowledge_vector: KnowledgeVector
    ) -> RevisionRecord:
        return cls(entities=tuple(change_set.entities), knowledge_vector=knowledge_vector)
