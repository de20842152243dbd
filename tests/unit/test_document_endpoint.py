"""Tests for the document-store remote and its per-device dirty flags."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from caresync.core.change import ChangeSet
from caresync.core.entity import Outcome, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import RemoteConflict
from caresync.storage.memory_store import InMemoryStore
from caresync.sync.document_endpoint import DocumentStoreEndpoint, dirty_key
from caresync.sync.sync_engine import SyncEngine

EndpointMaker = Callable[..., Awaitable[DocumentStoreEndpoint]]


@pytest_asyncio.fixture
async def make_endpoint(tmp_path: Path) -> AsyncGenerator[EndpointMaker, None]:
    """Endpoints over one shared document database file."""
    opened: list[DocumentStoreEndpoint] = []

    async def _make(device_id: str, user_id: str = "alice") -> DocumentStoreEndpoint:
        endpoint = DocumentStoreEndpoint(
            tmp_path / "documents.db", user_id=user_id, device_id=device_id
        )
        await endpoint.initialize()
        opened.append(endpoint)
        return endpoint

    yield _make
    for endpoint in opened:
        await endpoint.close()


async def _push(endpoint: DocumentStoreEndpoint, *entities, overwrite: bool = True) -> ChangeSet:
    incoming = await endpoint.exchange_change_sets(
        ChangeSet.from_entities(entities), overwrite_remote=overwrite
    )
    await endpoint.commit()
    return incoming


def test_dirty_key() -> None:
    assert dirty_key("phone") == "isDirtyForDevice:phone"


class TestExchange:
    async def test_changes_are_dirty_for_other_devices_only(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        task = Task.create("abc", "A").with_stamp("phone", 2)

        assert not await _push(phone, task)

        assert not await phone.current_change_set()
        assert (await tablet.current_change_set()).uuids() == {task.uuid}

    async def test_exchange_returns_and_clears_unseen_changes(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        task = Task.create("abc", "A").with_stamp("phone", 2)
        await _push(phone, task)

        incoming = await _push(tablet)

        assert incoming.uuids() == {task.uuid}
        assert not await tablet.current_change_set()

    async def test_rollback_discards_exchange(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        task = Task.create("abc", "A").with_stamp("phone", 2)

        await phone.exchange_change_sets(ChangeSet.from_entities([task]))
        await phone.rollback()

        assert not await tablet.current_change_set()
        # The lock was released, so the next exchange proceeds
        await _push(phone, task)
        assert (await tablet.current_change_set()).uuids() == {task.uuid}

    async def test_divergence_without_overwrite_is_rejected(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        root = Task.create("abc", "A").with_stamp("phone", 2)
        await _push(phone, root)
        await _push(tablet)

        phone_version = root.new_version(title="B").with_stamp("phone", 3)
        tablet_version = root.new_version(title="C").with_stamp("tablet", 2)
        await _push(phone, phone_version)

        with pytest.raises(RemoteConflict):
            await _push(tablet, tablet_version, overwrite=False)

        assert not await phone.current_change_set()
        assert {t.title for t in (await tablet.current_change_set()).tasks()} == {"B"}

    async def test_overwrite_supersedes_stored_branch(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        root = Task.create("abc", "A").with_stamp("phone", 2)
        await _push(phone, root)
        await _push(tablet)

        phone_version = root.new_version(title="B").with_stamp("phone", 3)
        tablet_version = root.new_version(title="C").with_stamp("tablet", 2)
        await _push(phone, phone_version)
        await _push(tablet, tablet_version, overwrite=True)

        incoming = await _push(phone)
        assert {t.title for t in incoming.tasks()} == {"C"}
        pulled = await phone.pull_revisions(KnowledgeVector())
        assert {e.title for e in pulled.entities if isinstance(e, Task)} == {"A", "C"}

    async def test_outcome_replaces_occurrence(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        tablet = await make_endpoint("tablet")
        task = Task.create("abc", "A").with_stamp("phone", 2)
        first = Outcome.create(task.uuid, 0).with_stamp("phone", 2)
        await _push(phone, task, first)

        second = Outcome.create(task.uuid, 0).with_stamp("tablet", 2)
        await _push(tablet, second)

        revision = await phone.pull_revisions(KnowledgeVector())
        outcomes = [e for e in revision.entities if isinstance(e, Outcome)]
        assert [o.uuid for o in outcomes] == [second.uuid]

    async def test_tenants_are_isolated(self, make_endpoint) -> None:
        alice = await make_endpoint("phone", user_id="alice")
        bob = await make_endpoint("phone", user_id="bob")
        await _push(alice, Task.create("abc", "A").with_stamp("phone", 2))

        assert not await bob.current_change_set()
        assert (await bob.pull_revisions(KnowledgeVector())).is_empty

    async def test_clear_keeps_knowledge_vector(self, make_endpoint) -> None:
        phone = await make_endpoint("phone")
        task = Task.create("abc", "A").with_stamp("phone", 2)
        revision_kv = KnowledgeVector({"phone": 2})
        await phone.exchange_change_sets(
            ChangeSet.from_entities([task]), knowledge_vector=revision_kv
        )
        await phone.commit()

        await phone.clear()

        revision = await phone.pull_revisions(KnowledgeVector())
        assert revision.is_empty
        assert revision.knowledge_vector == revision_kv


class TestEngineOverDocuments:
    async def test_two_devices_converge(self, make_endpoint) -> None:
        phone_store = InMemoryStore(clock_id="phone")
        tablet_store = InMemoryStore(clock_id="tablet")
        await phone_store.initialize()
        await tablet_store.initialize()
        phone = await make_endpoint(phone_store.clock_id)
        tablet = await make_endpoint(tablet_store.clock_id)

        task = await phone_store.add_task(Task.create("abc", "A"))
        await phone_store.add_outcome(Outcome.create(task.uuid, 0))

        assert (await SyncEngine(phone_store, phone).synchronize()).ok
        result = await SyncEngine(tablet_store, tablet).synchronize()

        assert result.ok
        assert result.pulled == 2
        assert [t.uuid for t in await tablet_store.fetch_tasks()] == [task.uuid]
        assert len(await tablet_store.fetch_outcomes()) == 1
        assert (await tablet_store.knowledge_vector()).clock("phone") > 0

    async def test_second_device_update_reaches_first(self, make_endpoint) -> None:
        phone_store = InMemoryStore(clock_id="phone")
        tablet_store = InMemoryStore(clock_id="tablet")
        await phone_store.initialize()
        await tablet_store.initialize()
        phone = await make_endpoint(phone_store.clock_id)
        tablet = await make_endpoint(tablet_store.clock_id)

        await phone_store.add_task(Task.create("abc", "A"))
        await SyncEngine(phone_store, phone).synchronize()
        await SyncEngine(tablet_store, tablet).synchronize()

        await tablet_store.update_task("abc", title="B")
        assert (await SyncEngine(tablet_store, tablet).synchronize()).ok
        result = await SyncEngine(phone_store, phone).synchronize()

        assert result.ok
        head = await phone_store.get_task("abc")
        assert head is not None
        assert head.title == "B"
