"""Store factory for creating a version store from a location."""

from __future__ import annotations

import logging
from pathlib import Path

from caresync.storage.base import VersionStore
from caresync.storage.memory_store import InMemoryStore
from caresync.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

MEMORY_LOCATION = ":memory:"


async def create_store(location: str | Path | None = None) -> VersionStore:
    """
    Create and initialize a store.

    Args:
        location: SQLite database path, or None / ``":memory:"`` for a
            throwaway in-memory store

    Examples:
        store = await create_store("~/.caresync/device.db")
        scratch = await create_store()
    """
    store: VersionStore
    if location is None or str(location) == MEMORY_LOCATION:
        store = InMemoryStore()
    else:
        store = SQLiteStore(Path(location).expanduser())
    await store.initialize()
    logger.debug("Opened %s (clock %s)", type(store).__name__, store.clock_id)
    return store
