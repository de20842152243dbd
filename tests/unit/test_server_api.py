"""Tests for the revision-record HTTP API."""

from __future__ import annotations

import json
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from caresync import __version__
from caresync.core.change import RevisionRecord
from caresync.core.entity import Outcome, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.core.serialization import revision_to_dict
from caresync.server.app import create_app
from caresync.storage.base import VersionStore
from caresync.storage.memory_store import InMemoryStore


async def _memory_store(tenant: str) -> VersionStore:
    store = InMemoryStore(clock_id=f"server-{tenant}")
    await store.initialize()
    return store


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    app = create_app(cors_origins=["*"], store_factory=_memory_store)
    with TestClient(app) as test_client:
        yield test_client


def _push_body(*entities, kv: dict[str, int] | None = None) -> dict[str, Any]:
    return revision_to_dict(
        RevisionRecord(entities=tuple(entities), knowledge_vector=KnowledgeVector(kv or {}))
    )


def _pull(client: TestClient, kv: dict[str, int] | None = None, **params: str) -> dict[str, Any]:
    response = client.get(
        "/revisionRecord", params={"knowledgeVector": json.dumps(kv or {}), **params}
    )
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": __version__}

    def test_root(self, client: TestClient) -> None:
        data = client.get("/").json()
        assert data["name"] == "caresync"
        assert data["health"] == "/health"


class TestPull:
    def test_empty_store_echoes_caller_vector(self, client: TestClient) -> None:
        data = _pull(client, {"device": 4})
        assert data == {"entities": [], "knowledgeVector": {"device": 4}}

    def test_missing_vector_means_everything(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        client.post("/revisionRecord", json=_push_body(task, kv={"device": 2}))

        data = client.get("/revisionRecord").json()

        assert [e["uuid"] for e in data["entities"]] == [task.uuid]

    def test_malformed_vector(self, client: TestClient) -> None:
        response = client.get("/revisionRecord", params={"knowledgeVector": "{oops"})
        assert response.status_code == 422

    def test_versioned_prefix(self, client: TestClient) -> None:
        response = client.get("/api/v1/revisionRecord")
        assert response.status_code == 200
        assert response.json()["entities"] == []


class TestPush:
    def test_push_then_pull(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        outcome = Outcome.create(task.uuid, 0).with_stamp("device", 2)

        response = client.post("/revisionRecord", json=_push_body(task, outcome, kv={"device": 2}))

        assert response.status_code == 200
        assert response.json() == {"applied": 2, "superseded": 0, "conflicts": 0}
        data = _pull(client)
        assert {e["kind"] for e in data["entities"]} == {"task", "outcome"}
        assert data["knowledgeVector"]["device"] == 2
        # A caller that already knows everything gets nothing back
        assert _pull(client, data["knowledgeVector"])["entities"] == []

    def test_unknown_kind_is_rejected(self, client: TestClient) -> None:
        body = _push_body(Task.create("abc", "A"))
        body["entities"][0]["kind"] = "plan"
        assert client.post("/revisionRecord", json=body).status_code == 422

    def test_negative_clock_is_rejected(self, client: TestClient) -> None:
        body = {"entities": [], "knowledgeVector": {"device": -1}}
        response = client.post("/revisionRecord", json=body)
        assert response.status_code == 422
        assert "negative" in response.text

    def test_orphan_outcome_is_rejected(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        orphan = Outcome.create("missing-task", 0).with_stamp("device", 2)
        response = client.post(
            "/revisionRecord", json=_push_body(task, orphan, kv={"device": 2})
        )
        assert response.status_code == 422
        assert "missing-task" in response.json()["detail"]
        assert _pull(client)["entities"] == []

    def test_outcome_on_stored_task_is_accepted(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        client.post("/revisionRecord", json=_push_body(task, kv={"device": 2}))
        outcome = Outcome.create(task.uuid, 0).with_stamp("device", 3)

        response = client.post("/revisionRecord", json=_push_body(outcome, kv={"device": 3}))

        assert response.status_code == 200
        assert response.json()["applied"] == 1

    def test_divergence_needs_overwrite(self, client: TestClient) -> None:
        root = Task.create("abc", "A").with_stamp("phone", 2)
        client.post("/revisionRecord", json=_push_body(root, kv={"phone": 2}))
        phone_version = root.new_version(title="B").with_stamp("phone", 3)
        client.post("/revisionRecord", json=_push_body(phone_version, kv={"phone": 3}))

        # The tablet only saw the root before editing
        tablet_version = root.new_version(title="C").with_stamp("tablet", 2)
        body = _push_body(tablet_version, kv={"phone": 2, "tablet": 2})

        rejected = client.post("/revisionRecord", json=body)
        assert rejected.status_code == 409

        accepted = client.post("/revisionRecord", params={"overwriteRemote": "true"}, json=body)
        assert accepted.status_code == 200
        assert accepted.json()["superseded"] == 1
        titles = {e["title"] for e in _pull(client)["entities"]}
        assert titles == {"A", "C"}


class TestTenants:
    def test_tenants_are_isolated(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        client.post(
            "/revisionRecord", params={"userId": "alice"}, json=_push_body(task, kv={"device": 2})
        )

        assert len(_pull(client, userId="alice")["entities"]) == 1
        assert _pull(client, userId="bob")["entities"] == []
        assert _pull(client)["entities"] == []

    def test_invalid_user_id(self, client: TestClient) -> None:
        response = client.get("/revisionRecord", params={"userId": "../etc"})
        assert response.status_code == 422


class TestClearAndStatus:
    def test_status_and_clear(self, client: TestClient) -> None:
        task = Task.create("abc", "A").with_stamp("device", 2)
        client.post("/revisionRecord", json=_push_body(task, kv={"device": 2}))

        status = client.get("/revisionRecord/status").json()
        assert status["clock_id"] == "server-default"
        assert status["task_count"] == 1
        assert status["knowledge_vector"]["device"] == 2

        assert client.delete("/revisionRecord").status_code == 204
        cleared = client.get("/revisionRecord/status").json()
        assert cleared["task_count"] == 0
        assert cleared["knowledge_vector"]["device"] == 2
