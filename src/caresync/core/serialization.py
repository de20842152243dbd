"""Wire codec for revision records.

The wire shape is shared with every other implementation of the protocol::

    {
      "entities": [{"kind": "task" | "outcome", ...fields...}],
      "knowledgeVector": {"<clockId>": <int>, ...}
    }

Field names are camelCase, timestamps ISO-8601.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from caresync.core.change import RevisionRecord
from caresync.core.entity import Entity, EntityKind, Outcome, OutcomeValue, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.utils.timeutils import parse_timestamp


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _required(data: dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise ValueError(f"Missing required field '{key}'")
    return data[key]


def _required_date(data: dict[str, Any], key: str) -> datetime:
    parsed = parse_timestamp(_required(data, key))
    assert parsed is not None
    return parsed


def outcome_value_to_dict(value: OutcomeValue) -> dict[str, Any]:
    return {
        "value": value.value,
        "kind": value.kind,
        "units": value.units,
        "createdDate": _iso(value.created_date),
    }


def outcome_value_from_dict(data: dict[str, Any]) -> OutcomeValue:
    created = parse_timestamp(data.get("createdDate"))
    if created is None:
        return OutcomeValue(value=data.get("value"), kind=data.get("kind"), units=data.get("units"))
    return OutcomeValue(
        value=data.get("value"),
        kind=data.get("kind"),
        units=data.get("units"),
        created_date=created,
    )


def entity_to_dict(entity: Entity) -> dict[str, Any]:
    """Serialize a task or outcome version with its ``kind`` discriminator."""
    common: dict[str, Any] = {
        "id": entity.id,
        "uuid": entity.uuid,
        "previousVersionUuid": entity.previous_version_uuid,
        "createdDate": _iso(entity.created_date),
        "updatedDate": _iso(entity.updated_date),
        "deletedDate": _iso(entity.deleted_date),
        "originClockId": entity.origin_clock_id,
        "originClock": entity.origin_clock,
    }
    if isinstance(entity, Task):
        return {
            "kind": EntityKind.TASK.value,
            **common,
            "title": entity.title,
            "instructions": entity.instructions,
            "schedule": entity.schedule,
        }
    return {
        "kind": EntityKind.OUTCOME.value,
        **common,
        "taskUuid": entity.task_uuid,
        "taskOccurrenceIndex": entity.task_occurrence_index,
        "values": [outcome_value_to_dict(v) for v in entity.values],
    }


def entity_from_dict(data: dict[str, Any]) -> Entity:
    """Deserialize one wire entity.

    Raises:
        ValueError: Unknown ``kind`` or missing required fields
    """
    if not isinstance(data, dict):
        raise ValueError("Entity must be a JSON object")
    try:
        kind = EntityKind(data.get("kind"))
    except ValueError:
        raise ValueError(f"Unknown entity kind: {data.get('kind')!r}") from None

    origin_clock = data.get("originClock") or 0
    if not isinstance(origin_clock, int) or origin_clock < 0:
        raise ValueError(f"Invalid originClock: {origin_clock!r}")

    if kind == EntityKind.TASK:
        schedule = data.get("schedule") or {}
        if not isinstance(schedule, dict):
            raise ValueError("Task schedule must be a JSON object")
        return Task(
            id=str(_required(data, "id")),
            uuid=str(_required(data, "uuid")),
            title=str(data.get("title") or ""),
            instructions=data.get("instructions"),
            schedule=schedule,
            previous_version_uuid=data.get("previousVersionUuid"),
            created_date=_required_date(data, "createdDate"),
            updated_date=parse_timestamp(data.get("updatedDate"))
            or _required_date(data, "createdDate"),
            deleted_date=parse_timestamp(data.get("deletedDate")),
            origin_clock_id=str(data.get("originClockId") or ""),
            origin_clock=origin_clock,
        )

    occurrence = _required(data, "taskOccurrenceIndex")
    if isinstance(occurrence, bool) or not isinstance(occurrence, int) or occurrence < 0:
        raise ValueError(f"Invalid taskOccurrenceIndex: {occurrence!r}")
    raw_values = data.get("values") or []
    if not isinstance(raw_values, list):
        raise ValueError("Outcome values must be a list")
    return Outcome(
        id=str(_required(data, "id")),
        task_uuid=str(_required(data, "taskUuid")),
        task_occurrence_index=occurrence,
        uuid=str(_required(data, "uuid")),
        values=tuple(outcome_value_from_dict(v) for v in raw_values),
        previous_version_uuid=data.get("previousVersionUuid"),
        created_date=_required_date(data, "createdDate"),
        updated_date=parse_timestamp(data.get("updatedDate"))
        or _required_date(data, "createdDate"),
        deleted_date=parse_timestamp(data.get("deletedDate")),
        origin_clock_id=str(data.get("originClockId") or ""),
        origin_clock=origin_clock,
    )


def revision_to_dict(revision: RevisionRecord) -> dict[str, Any]:
    return {
        "entities": [entity_to_dict(e) for e in revision.entities],
        "knowledgeVector": revision.knowledge_vector.to_dict(),
    }


def revision_from_dict(data: dict[str, Any]) -> RevisionRecord:
    """Deserialize a revision record; raises ValueError on malformed input."""
    if not isinstance(data, dict):
        raise ValueError("Revision record must be a JSON object")
    entities = data.get("entities") or []
    if not isinstance(entities, list):
        raise ValueError("'entities' must be a list")
    kv_raw = data.get("knowledgeVector") or {}
    if not isinstance(kv_raw, dict):
        raise ValueError("'knowledgeVector' must be a JSON object")
    return RevisionRecord(
        entities=tuple(entity_from_dict(e) for e in entities),
        knowledge_vector=KnowledgeVector.from_dict(kv_raw),
    )
