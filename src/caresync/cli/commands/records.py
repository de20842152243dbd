"""Local task and outcome commands."""

from __future__ import annotations

import json
from typing import Annotated, Any

import typer

from caresync.cli._helpers import (
    fail,
    get_config,
    get_store,
    output_result,
    print_table,
    run_async,
)
from caresync.core.entity import Outcome, OutcomeValue, Task
from caresync.core.serialization import entity_to_dict

task_app = typer.Typer(help="Manage tasks in the local store")
outcome_app = typer.Typer(help="Record outcomes against task occurrences")

StoreOption = Annotated[
    str | None, typer.Option("--store", "-s", help="Local store (default: current)")
]
JsonOption = Annotated[bool, typer.Option("--json", "-j", help="Output as JSON")]


def _parse_schedule(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        schedule = json.loads(raw)
    except json.JSONDecodeError as e:
        fail(f"Schedule must be JSON: {e}")
    if not isinstance(schedule, dict):
        fail("Schedule must be a JSON object")
    return schedule


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@task_app.command("add")
def task_add(
    task_id: Annotated[str, typer.Argument(help="Logical task id")],
    title: Annotated[str, typer.Option("--title", "-t", help="Task title")] = "",
    instructions: Annotated[
        str | None, typer.Option("--instructions", "-i", help="Free-text instructions")
    ] = None,
    schedule: Annotated[
        str | None, typer.Option("--schedule", help="Schedule as a JSON object")
    ] = None,
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """Create a task.

    Examples:
        caresync task add doxylamine --title "Doxylamine" -i "Take at bedtime"
    """
    task = Task.create(
        task_id, title, instructions=instructions, schedule=_parse_schedule(schedule)
    )

    async def _add() -> dict[str, Any]:
        store = await get_store(store_name)
        try:
            stored = await store.add_task(task)
        except ValueError as e:
            return {"error": str(e)}
        return {"message": f"Added task {stored.id} ({stored.uuid})", "task": entity_to_dict(stored)}

    data = run_async(_add())
    output_result(data, json_output or get_config().json_output)
    if "error" in data:
        raise typer.Exit(1)


@task_app.command("update")
def task_update(
    task_id: Annotated[str, typer.Argument(help="Logical task id")],
    title: Annotated[str | None, typer.Option("--title", "-t", help="New title")] = None,
    instructions: Annotated[
        str | None, typer.Option("--instructions", "-i", help="New instructions")
    ] = None,
    schedule: Annotated[
        str | None, typer.Option("--schedule", help="New schedule as a JSON object")
    ] = None,
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """Append a new version of a task.

    Examples:
        caresync task update doxylamine --title "Doxylamine 25mg"
    """
    changes: dict[str, Any] = {}
    if title is not None:
        changes["title"] = title
    if instructions is not None:
        changes["instructions"] = instructions
    parsed = _parse_schedule(schedule)
    if parsed is not None:
        changes["schedule"] = parsed
    if not changes:
        fail("Nothing to update: pass --title, --instructions or --schedule")

    async def _update() -> dict[str, Any]:
        store = await get_store(store_name)
        try:
            stored = await store.update_task(task_id, **changes)
        except KeyError:
            return {"error": f"Task {task_id} not found"}
        return {
            "message": f"Updated task {stored.id}, new version {stored.uuid}",
            "task": entity_to_dict(stored),
        }

    data = run_async(_update())
    output_result(data, json_output or get_config().json_output)
    if "error" in data:
        raise typer.Exit(1)


@task_app.command("delete")
def task_delete(
    task_id: Annotated[str, typer.Argument(help="Logical task id")],
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """Delete a task by appending a tombstone version."""

    async def _delete() -> dict[str, Any]:
        store = await get_store(store_name)
        try:
            stored = await store.delete_task(task_id)
        except KeyError:
            return {"error": f"Task {task_id} not found"}
        return {"message": f"Deleted task {stored.id}"}

    data = run_async(_delete())
    output_result(data, json_output or get_config().json_output)
    if "error" in data:
        raise typer.Exit(1)


@task_app.command("list")
def task_list(
    include_deleted: Annotated[
        bool, typer.Option("--all", "-a", help="Include deleted tasks")
    ] = False,
    versions: Annotated[
        bool, typer.Option("--versions", help="List every live version, not only heads")
    ] = False,
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """List tasks.

    Examples:
        caresync task list
        caresync task list --versions --json
    """

    async def _list() -> list[Task]:
        store = await get_store(store_name)
        if versions:
            return await store.fetch_task_versions()
        return await store.fetch_tasks(include_deleted=include_deleted)

    tasks = run_async(_list())
    if json_output or get_config().json_output:
        output_result({"tasks": [entity_to_dict(t) for t in tasks]}, as_json=True)
        return
    if not tasks:
        typer.echo("No tasks.")
        return
    print_table(
        "Tasks",
        ["id", "title", "version", "previous", "deleted"],
        [
            [
                t.id,
                t.title,
                t.uuid,
                t.previous_version_uuid or "-",
                "yes" if t.is_deleted else "",
            ]
            for t in tasks
        ],
    )


@outcome_app.command("add")
def outcome_add(
    task_id: Annotated[str, typer.Argument(help="Logical task id")],
    occurrence: Annotated[int, typer.Argument(help="Occurrence index", min=0)],
    values: Annotated[
        list[str] | None, typer.Argument(help="Recorded values (JSON literals or text)")
    ] = None,
    units: Annotated[str | None, typer.Option("--units", help="Units of every value")] = None,
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """Record an outcome for an occurrence of the task's current version.

    Examples:
        caresync outcome add doxylamine 0 true
        caresync outcome add blood-pressure 3 120 80 --units mmHg
    """

    async def _add() -> dict[str, Any]:
        store = await get_store(store_name)
        task = await store.get_task(task_id)
        if task is None or task.is_deleted:
            return {"error": f"Task {task_id} not found"}
        outcome = Outcome.create(
            task.uuid,
            occurrence,
            [OutcomeValue(value=_parse_value(v), units=units) for v in values or []],
        )
        try:
            stored = await store.add_outcome(outcome)
        except ValueError as e:
            return {"error": str(e)}
        return {
            "message": f"Recorded outcome for occurrence {occurrence} of {task_id}",
            "outcome": entity_to_dict(stored),
        }

    data = run_async(_add())
    output_result(data, json_output or get_config().json_output)
    if "error" in data:
        raise typer.Exit(1)


@outcome_app.command("delete")
def outcome_delete(
    task_id: Annotated[str, typer.Argument(help="Logical task id")],
    occurrence: Annotated[int, typer.Argument(help="Occurrence index", min=0)],
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """Retract the outcome on an occurrence of the task's current version."""

    async def _delete() -> dict[str, Any]:
        store = await get_store(store_name)
        task = await store.get_task(task_id)
        if task is None:
            return {"error": f"Task {task_id} not found"}
        try:
            await store.delete_outcome(task.uuid, occurrence)
        except KeyError:
            return {"error": f"No outcome for occurrence {occurrence} of {task_id}"}
        return {"message": f"Retracted outcome for occurrence {occurrence} of {task_id}"}

    data = run_async(_delete())
    output_result(data, json_output or get_config().json_output)
    if "error" in data:
        raise typer.Exit(1)


@outcome_app.command("list")
def outcome_list(
    task_id: Annotated[
        str | None, typer.Argument(help="Only outcomes of this task's current version")
    ] = None,
    store_name: StoreOption = None,
    json_output: JsonOption = False,
) -> None:
    """List live outcomes."""

    async def _list() -> list[Outcome] | None:
        store = await get_store(store_name)
        if task_id is None:
            return await store.fetch_outcomes()
        task = await store.get_task(task_id)
        if task is None:
            return None
        return await store.fetch_outcomes(task.uuid)

    outcomes = run_async(_list())
    if outcomes is None:
        fail(f"Task {task_id} not found")
    if json_output or get_config().json_output:
        output_result({"outcomes": [entity_to_dict(o) for o in outcomes]}, as_json=True)
        return
    if not outcomes:
        typer.echo("No outcomes.")
        return
    print_table(
        "Outcomes",
        ["task version", "occurrence", "values", "uuid"],
        [
            [
                o.task_uuid,
                str(o.task_occurrence_index),
                ", ".join(str(v.value) + (f" {v.units}" if v.units else "") for v in o.values),
                o.uuid,
            ]
            for o in outcomes
        ],
    )
