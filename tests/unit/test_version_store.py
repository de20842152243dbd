"""Tests for the version store backends."""

from __future__ import annotations

from pathlib import Path

import aiosqlite
import pytest

from caresync.core.change import RevisionRecord
from caresync.core.entity import Outcome, OutcomeValue, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import InvalidRevision, ProgrammingError
from caresync.storage.factory import create_store
from caresync.storage.memory_store import InMemoryStore
from caresync.storage.sqlite_schema import SCHEMA, SCHEMA_VERSION, run_migrations
from caresync.storage.sqlite_store import SQLiteStore


class TestLocalWrites:
    async def test_add_and_get_task(self, make_store, task: Task) -> None:
        store = await make_store("device")

        stored = await store.add_task(task)

        assert stored.origin_clock_id == store.clock_id
        assert stored.origin_clock > 0
        head = await store.get_task(task.id)
        assert head is not None
        assert head.uuid == task.uuid
        assert head.instructions == "Take at bedtime"

    async def test_duplicate_task_rejected(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)

        with pytest.raises(ValueError, match="already exists"):
            await store.add_task(Task.create(task.id, "Again"))

    async def test_update_appends_version(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)

        updated = await store.update_task(task.id, title="Doxylamine 25mg")

        assert updated.previous_version_uuid == task.uuid
        assert [t.uuid for t in await store.fetch_tasks()] == [updated.uuid]
        assert len(await store.fetch_task_versions()) == 2

    async def test_update_unknown_task(self, make_store) -> None:
        store = await make_store("device")
        with pytest.raises(KeyError):
            await store.update_task("missing", title="x")

    async def test_delete_then_recreate_continues_chain(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)

        tombstone = await store.delete_task(task.id)
        assert await store.get_task(task.id) is None
        assert await store.fetch_tasks() == []
        assert [t.uuid for t in await store.fetch_tasks(include_deleted=True)] == [tombstone.uuid]

        recreated = await store.add_task(Task.create(task.id, "Back"))
        assert recreated.previous_version_uuid == tombstone.uuid
        assert not recreated.is_deleted

    async def test_outcome_requires_known_task_version(self, make_store) -> None:
        store = await make_store("device")
        with pytest.raises(ValueError, match="not found"):
            await store.add_outcome(Outcome.create("missing", 0))

    async def test_one_live_outcome_per_occurrence(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        await store.add_outcome(Outcome.create(task.uuid, 0, [OutcomeValue(value=True)]))

        with pytest.raises(ValueError, match="already has an outcome"):
            await store.add_outcome(Outcome.create(task.uuid, 0))

        stored = await store.fetch_outcomes(task.uuid)
        assert len(stored) == 1
        assert stored[0].values[0].value is True

    async def test_delete_outcome_leaves_tombstone(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        outcome = await store.add_outcome(Outcome.create(task.uuid, 2))

        tombstone = await store.delete_outcome(task.uuid, 2)

        assert tombstone.previous_version_uuid == outcome.uuid
        assert await store.fetch_outcomes() == []
        assert [o.uuid for o in await store.fetch_outcomes(include_deleted=True)] == [
            tombstone.uuid
        ]
        # The occurrence is free again
        await store.add_outcome(Outcome.create(task.uuid, 2))

    async def test_delete_missing_outcome(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        with pytest.raises(KeyError):
            await store.delete_outcome(task.uuid, 0)

    async def test_change_listener_runs_after_commit(self, make_store, task: Task) -> None:
        store = await make_store("device")
        calls: list[bool] = []

        def listener() -> None:
            calls.append(store.in_transaction)

        store.add_change_listener(listener)
        await store.add_task(task)
        store.remove_change_listener(listener)
        await store.update_task(task.id, title="x")

        assert calls == [False]

    async def test_failing_listener_does_not_fail_write(self, make_store, task: Task) -> None:
        store = await make_store("device")

        def explode() -> None:
            raise RuntimeError("listener bug")

        store.add_change_listener(explode)
        assert (await store.add_task(task)).uuid == task.uuid


class TestSyncPrimitives:
    async def test_primitives_require_transaction(self, make_store, task: Task) -> None:
        store = await make_store("device")
        with pytest.raises(ProgrammingError):
            await store.insert_version(task)
        with pytest.raises(ProgrammingError):
            await store.acknowledge([task.uuid], "remote")

    async def test_rollback_discards_everything(self, make_store, task: Task) -> None:
        store = await make_store("device")
        kv_before = await store.knowledge_vector()

        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.insert_version(task.with_stamp("remote", 5))
                await store.merge_knowledge_vector(KnowledgeVector({"remote": 5}))
                raise RuntimeError("abort")

        assert await store.fetch_task_versions() == []
        assert await store.knowledge_vector() == kv_before
        assert not store.in_transaction

    async def test_insert_version_is_idempotent(self, make_store, task: Task) -> None:
        store = await make_store("device")
        stamped = task.with_stamp("remote", 3)

        async with store.transaction():
            assert await store.insert_version(stamped)
            assert not await store.insert_version(stamped)

        [stored] = await store.fetch_task_versions()
        assert stored.origin_clock_id == "remote"
        assert stored.origin_clock == 3

    async def test_ingested_outcome_replaces_live_one(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        await store.add_outcome(Outcome.create(task.uuid, 0))
        incoming = Outcome.create(task.uuid, 0).with_stamp("remote", 4)

        async with store.transaction():
            await store.insert_version(incoming)

        assert [o.uuid for o in await store.fetch_outcomes()] == [incoming.uuid]

    async def test_supersede_hides_versions_and_outcomes(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        await store.add_outcome(Outcome.create(task.uuid, 0))

        async with store.transaction():
            assert await store.supersede_versions([task.uuid]) == 1

        assert await store.fetch_task_versions() == []
        assert await store.fetch_outcomes() == []
        assert await store.is_superseded(task.uuid)
        assert await store.get_version(task.uuid) is None

    async def test_dirty_until_acknowledged(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        outcome = await store.add_outcome(Outcome.create(task.uuid, 0))

        assert (await store.local_change_set("remote-a")).uuids() == {task.uuid, outcome.uuid}

        async with store.transaction():
            await store.acknowledge([task.uuid], "remote-a")

        assert (await store.local_change_set("remote-a")).uuids() == {outcome.uuid}
        # Dirty flags are tracked per remote
        assert len(await store.local_change_set("remote-b")) == 2
        stats = await store.get_stats("remote-a")
        assert stats["dirty_count"] == 1


class TestRevisions:
    async def test_compute_revision_filters_by_vector(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)

        everything = await store.compute_revision(KnowledgeVector())
        nothing = await store.compute_revision(everything.knowledge_vector)

        assert [e.uuid for e in everything.entities] == [task.uuid]
        assert nothing.is_empty
        assert nothing.knowledge_vector == everything.knowledge_vector

    async def test_export_starts_a_new_tick(self, make_store) -> None:
        store = await make_store("device")
        first = await store.add_task(Task.create("a", "A"))
        exported = await store.export_knowledge_vector()
        second = await store.add_task(Task.create("b", "B"))

        assert exported.clock(store.clock_id) == first.origin_clock
        assert second.origin_clock == first.origin_clock + 1

    async def test_clear_keeps_vector(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        kv = await store.knowledge_vector()

        await store.clear()

        assert await store.fetch_task_versions() == []
        assert (await store.knowledge_vector()).dominates(kv)
        after = await store.add_task(Task.create("new", "New"))
        assert after.origin_clock > kv.clock(store.clock_id)

    async def test_stats(self, make_store, task: Task) -> None:
        store = await make_store("device")
        await store.add_task(task)
        await store.update_task(task.id, title="v2")
        await store.add_outcome(Outcome.create((await store.get_task(task.id)).uuid, 0))

        stats = await store.get_stats()

        assert stats["clock_id"] == store.clock_id
        assert stats["task_count"] == 1
        assert stats["task_version_count"] == 2
        assert stats["outcome_count"] == 1
        assert "dirty_count" not in stats

    async def test_merge_rejects_outcome_on_unknown_task(self, make_store, task: Task) -> None:
        store = await make_store("server")
        kv_before = await store.knowledge_vector()
        incoming = task.with_stamp("device", 2)
        orphan = Outcome.create("no-such-version", 0).with_stamp("device", 2)
        revision = RevisionRecord(
            entities=(incoming, orphan), knowledge_vector=KnowledgeVector({"device": 2})
        )

        with pytest.raises(InvalidRevision) as excinfo:
            await store.merge_revision(revision, "device")

        assert excinfo.value.status_code == 422
        assert not excinfo.value.retryable
        assert await store.fetch_task_versions() == []
        assert await store.knowledge_vector() == kv_before
        assert not store.in_transaction


class TestSQLitePersistence:
    async def test_locked_database_releases_store(self, tmp_path: Path, task: Task) -> None:
        db_path = tmp_path / "locked.db"
        store = SQLiteStore(db_path, timeout=0.05)
        await store.initialize()
        other = await aiosqlite.connect(db_path, isolation_level=None)
        await other.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(aiosqlite.OperationalError):
                await store.begin_transaction()
            assert not store.in_transaction
        finally:
            await other.execute("ROLLBACK")
            await other.close()

        try:
            await store.add_task(task)
            assert await store.get_task(task.id) is not None
        finally:
            await store.close()

    async def test_clock_id_and_data_survive_reopen(self, tmp_path: Path, task: Task) -> None:
        db = tmp_path / "device.db"
        store = SQLiteStore(db)
        await store.initialize()
        clock_id = store.clock_id
        await store.add_task(task)
        kv = await store.knowledge_vector()
        await store.close()

        reopened = SQLiteStore(db)
        await reopened.initialize()
        try:
            assert reopened.clock_id == clock_id
            assert await reopened.knowledge_vector() == kv
            assert [t.uuid for t in await reopened.fetch_tasks()] == [task.uuid]
            # Restarting counts as an export
            later = await reopened.add_task(Task.create("other", "Other"))
            assert later.origin_clock == kv.clock(clock_id) + 1
        finally:
            await reopened.close()

    async def test_uninitialized_store(self, tmp_path: Path) -> None:
        store = SQLiteStore(tmp_path / "x.db")
        with pytest.raises(ProgrammingError):
            _ = store.clock_id

    async def test_migrates_version_one_schema(self, tmp_path: Path) -> None:
        db = tmp_path / "old.db"
        async with aiosqlite.connect(db) as conn:
            await conn.executescript(SCHEMA.replace(",\n    superseded_at TEXT", ""))
            await conn.execute("INSERT INTO schema_version (version) VALUES (1)")
            await conn.commit()

        store = SQLiteStore(db)
        await store.initialize()
        await store.close()

        async with aiosqlite.connect(db) as conn:
            async with conn.execute("PRAGMA table_info(task_versions)") as cursor:
                columns = {row[1] for row in await cursor.fetchall()}
            async with conn.execute("SELECT version FROM schema_version") as cursor:
                (version,) = await cursor.fetchone()

        assert "superseded_at" in columns
        assert version == SCHEMA_VERSION

    async def test_migration_tolerates_applied_steps(self, tmp_path: Path) -> None:
        async with aiosqlite.connect(tmp_path / "partial.db") as conn:
            await conn.executescript(SCHEMA)
            await conn.execute("INSERT INTO schema_version (version) VALUES (1)")
            assert await run_migrations(conn, 1) == SCHEMA_VERSION


class TestFactory:
    async def test_memory_location(self) -> None:
        store = await create_store(":memory:")
        assert isinstance(store, InMemoryStore)
        assert (await store.knowledge_vector()).clock(store.clock_id) == 1
        await store.close()

    async def test_sqlite_location(self, tmp_path: Path) -> None:
        store = await create_store(tmp_path / "nested" / "device.db")
        try:
            assert isinstance(store, SQLiteStore)
            assert store.db_path.exists()
        finally:
            await store.close()
