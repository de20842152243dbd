"""Tests for knowledge vectors, entities, change sets and wire serialization."""

from __future__ import annotations

from datetime import datetime

import pytest

from caresync.core.change import ChangeOperation, ChangeRecord, ChangeSet, RevisionRecord
from caresync.core.entity import Outcome, OutcomeValue, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.core.serialization import (
    entity_from_dict,
    entity_to_dict,
    revision_from_dict,
    revision_to_dict,
)
from caresync.errors import ProgrammingError


class TestKnowledgeVector:
    def test_missing_clock_reads_as_zero(self) -> None:
        assert KnowledgeVector().clock("anyone") == 0

    def test_advance_returns_new_vector(self) -> None:
        kv = KnowledgeVector({"a": 1})
        advanced = kv.advance("a")
        assert advanced.clock("a") == 2
        assert kv.clock("a") == 1

    def test_merge_is_componentwise_max(self) -> None:
        merged = KnowledgeVector({"a": 3, "b": 1}).merge(KnowledgeVector({"b": 5, "c": 2}))
        assert merged.to_dict() == {"a": 3, "b": 5, "c": 2}

    def test_merge_is_commutative_and_idempotent(self) -> None:
        x = KnowledgeVector({"a": 3, "b": 1})
        y = KnowledgeVector({"b": 5})
        assert x.merge(y) == y.merge(x)
        assert x.merge(x) == x

    def test_zero_components_compare_equal_to_absent(self) -> None:
        assert KnowledgeVector({"a": 0}) == KnowledgeVector()
        assert hash(KnowledgeVector({"a": 0})) == hash(KnowledgeVector())

    def test_dominates(self) -> None:
        big = KnowledgeVector({"a": 2, "b": 2})
        assert big.dominates(KnowledgeVector({"a": 1}))
        assert not KnowledgeVector({"a": 1}).dominates(big)

    @pytest.mark.parametrize("clocks", [{"a": -1}, {"a": "1"}, {"a": True}, {"": 1}])
    def test_rejects_invalid_components(self, clocks: dict) -> None:
        with pytest.raises(ValueError):
            KnowledgeVector(clocks)

    def test_json(self) -> None:
        kv = KnowledgeVector({"b": 2, "a": 1})
        assert kv.to_json() == '{"a": 1, "b": 2}'
        assert KnowledgeVector.from_json(kv.to_json()) == kv
        assert KnowledgeVector.from_json("") == KnowledgeVector()

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '{"a": "x"}'])
    def test_from_json_rejects_malformed(self, raw: str) -> None:
        with pytest.raises(ValueError):
            KnowledgeVector.from_json(raw)


class TestEntities:
    def test_new_version_links_to_predecessor(self) -> None:
        root = Task.create("abc", "A").with_stamp("dev", 3)
        successor = root.new_version(title="B")

        assert successor.id == root.id
        assert successor.previous_version_uuid == root.uuid
        assert successor.uuid != root.uuid
        assert successor.origin_clock == 0
        assert root.title == "A"

    def test_tombstone(self) -> None:
        root = Task.create("abc", "A")
        assert root.tombstone().is_deleted
        assert not root.is_deleted

    def test_versions_compare_by_uuid(self) -> None:
        root = Task.create("abc", "A")
        assert root == root.with_stamp("dev", 1)
        assert root != root.new_version()

    def test_outcome_occurrence_must_not_be_negative(self) -> None:
        with pytest.raises(ValueError):
            Outcome.create("task-uuid", -1)

    def test_outcome_tombstone_keeps_occurrence(self) -> None:
        outcome = Outcome.create("task-uuid", 4)
        tombstone = outcome.tombstone()
        assert tombstone.occurrence_key == ("task-uuid", 4)
        assert tombstone.previous_version_uuid == outcome.uuid
        assert tombstone.is_deleted


class TestChangeRecords:
    def test_task_delete_record_is_programming_error(self) -> None:
        task = Task.create("abc", "A")
        with pytest.raises(ProgrammingError):
            ChangeRecord(ChangeOperation.DELETE, task, datetime(2026, 1, 1))

    def test_from_entity_classifies(self) -> None:
        task = Task.create("abc", "A")
        outcome = Outcome.create(task.uuid, 0)

        assert ChangeRecord.from_entity(task.tombstone()).operation == ChangeOperation.ADD
        assert ChangeRecord.from_entity(outcome).operation == ChangeOperation.ADD
        deleted = ChangeRecord.from_entity(outcome.tombstone())
        assert deleted.operation == ChangeOperation.DELETE
        assert deleted.date == deleted.entity.deleted_date

    def test_change_set_orders_tasks_before_outcomes(self) -> None:
        task = Task.create("abc", "A")
        outcome = Outcome.create(task.uuid, 0)

        change_set = ChangeSet.from_entities([outcome, task])

        assert change_set.entities == [task, outcome]
        assert change_set.task_ids() == {"abc"}
        assert set(change_set.outcomes_by_occurrence()) == {(task.uuid, 0)}

    def test_change_set_union_skips_duplicates(self) -> None:
        task = Task.create("abc", "A")
        other = Task.create("def", "D")
        combined = ChangeSet.from_entities([task]) + ChangeSet.from_entities([task, other])
        assert len(combined) == 2


class TestSerialization:
    def test_task_wire_fields(self) -> None:
        task = Task.create("abc", "A", schedule={"hour": 1}).with_stamp("dev", 2)
        data = entity_to_dict(task)

        assert data["kind"] == "task"
        assert data["originClockId"] == "dev"
        assert data["originClock"] == 2
        assert data["schedule"] == {"hour": 1}
        assert entity_from_dict(data) == task

    def test_outcome_values_survive(self) -> None:
        outcome = Outcome.create("task-uuid", 1, [OutcomeValue(value=120, units="mmHg")])
        restored = entity_from_dict(entity_to_dict(outcome))

        assert isinstance(restored, Outcome)
        assert restored.values[0].value == 120
        assert restored.values[0].units == "mmHg"
        assert restored.task_occurrence_index == 1

    @pytest.mark.parametrize(
        "data",
        [
            {"kind": "plan", "id": "x", "uuid": "u", "createdDate": "2026-01-01T00:00:00"},
            {"kind": "task", "uuid": "u", "createdDate": "2026-01-01T00:00:00"},
            {"kind": "task", "id": "x", "uuid": "u"},
            {"kind": "task", "id": "x", "uuid": "u", "createdDate": "2026-01-01T00:00:00",
             "originClock": -1},
            "not an object",
        ],
    )
    def test_malformed_entities(self, data) -> None:
        with pytest.raises(ValueError):
            entity_from_dict(data)

    def test_revision_record(self) -> None:
        task = Task.create("abc", "A")
        revision = RevisionRecord(entities=(task,), knowledge_vector=KnowledgeVector({"r": 4}))

        data = revision_to_dict(revision)
        restored = revision_from_dict(data)

        assert set(data) == {"entities", "knowledgeVector"}
        assert restored.entities == (task,)
        assert restored.knowledge_vector == KnowledgeVector({"r": 4})

    def test_empty_revision(self) -> None:
        restored = revision_from_dict({"entities": [], "knowledgeVector": {}})
        assert restored.is_empty
        assert not restored.to_change_set()
