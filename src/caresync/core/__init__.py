"""Core data structures for CareSync."""

from caresync.core.change import ChangeOperation, ChangeRecord, ChangeSet, RevisionRecord
from caresync.core.entity import Entity, EntityKind, Outcome, OutcomeValue, Task
from caresync.core.knowledge_vector import KnowledgeVector

__all__ = [
    "ChangeOperation",
    "ChangeRecord",
    "ChangeSet",
    "Entity",
    "EntityKind",
    "KnowledgeVector",
    "Outcome",
    "OutcomeValue",
    "RevisionRecord",
    "Task",
]
