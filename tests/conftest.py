"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from caresync.core.entity import Task
from caresync.storage.base import VersionStore
from caresync.storage.memory_store import InMemoryStore
from caresync.storage.sqlite_store import SQLiteStore

StoreMaker = Callable[[str], Awaitable[VersionStore]]


@pytest.fixture(params=["memory", "sqlite"])
def backend(request: pytest.FixtureRequest) -> str:
    return str(request.param)


@pytest_asyncio.fixture
async def make_store(backend: str, tmp_path: Path) -> AsyncGenerator[StoreMaker, None]:
    """Create initialized stores of the parametrized backend."""
    opened: list[VersionStore] = []

    async def _make(name: str) -> VersionStore:
        store: VersionStore
        if backend == "memory":
            store = InMemoryStore(clock_id=name)
        else:
            store = SQLiteStore(tmp_path / f"{name}.db")
        await store.initialize()
        opened.append(store)
        return store

    yield _make
    for store in opened:
        await store.close()


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[InMemoryStore, None]:
    """An in-memory store playing the device."""
    s = InMemoryStore(clock_id="device")
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def remote_store() -> AsyncGenerator[InMemoryStore, None]:
    """An in-memory store playing the remote."""
    s = InMemoryStore(clock_id="remote")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def task() -> Task:
    return Task.create("doxylamine", "Doxylamine", instructions="Take at bedtime")

