"""Row-to-model conversion functions for SQLite storage."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import aiosqlite

from caresync.core.entity import Outcome, Task
from caresync.core.serialization import outcome_value_from_dict, outcome_value_to_dict


def _date(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def row_to_task(row: aiosqlite.Row) -> Task:
    """Convert database row to Task."""
    return Task(
        id=row["id"],
        uuid=row["uuid"],
        title=row["title"],
        instructions=row["instructions"],
        schedule=json.loads(row["schedule"] or "{}"),
        previous_version_uuid=row["previous_version_uuid"],
        created_date=datetime.fromisoformat(row["created_date"]),
        updated_date=datetime.fromisoformat(row["updated_date"]),
        deleted_date=_date(row["deleted_date"]),
        origin_clock_id=row["origin_clock_id"],
        origin_clock=row["origin_clock"],
    )


def row_to_outcome(row: aiosqlite.Row) -> Outcome:
    """Convert database row to Outcome."""
    values = json.loads(row["outcome_values"] or "[]")
    return Outcome(
        id=row["id"],
        task_uuid=row["task_uuid"],
        task_occurrence_index=row["task_occurrence_index"],
        uuid=row["uuid"],
        values=tuple(outcome_value_from_dict(v) for v in values),
        previous_version_uuid=row["previous_version_uuid"],
        created_date=datetime.fromisoformat(row["created_date"]),
        updated_date=datetime.fromisoformat(row["updated_date"]),
        deleted_date=_date(row["deleted_date"]),
        origin_clock_id=row["origin_clock_id"],
        origin_clock=row["origin_clock"],
    )


def task_to_params(task: Task) -> tuple[Any, ...]:
    return (
        task.uuid,
        task.id,
        task.title,
        task.instructions,
        json.dumps(task.schedule, default=str),
        task.previous_version_uuid,
        task.created_date.isoformat(),
        task.updated_date.isoformat(),
        task.deleted_date.isoformat() if task.deleted_date else None,
        task.origin_clock_id,
        task.origin_clock,
    )


def outcome_to_params(outcome: Outcome) -> tuple[Any, ...]:
    return (
        outcome.uuid,
        outcome.id,
        outcome.task_uuid,
        outcome.task_occurrence_index,
        json.dumps([outcome_value_to_dict(v) for v in outcome.values], default=str),
        outcome.previous_version_uuid,
        outcome.created_date.isoformat(),
        outcome.updated_date.isoformat(),
        outcome.deleted_date.isoformat() if outcome.deleted_date else None,
        outcome.origin_clock_id,
        outcome.origin_clock,
    )
