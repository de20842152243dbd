"""Storage backends for caresync."""

from caresync.storage.base import VersionStore
from caresync.storage.factory import create_store
from caresync.storage.memory_store import InMemoryStore
from caresync.storage.sqlite_store import SQLiteStore

__all__ = [
    "VersionStore",
    "InMemoryStore",
    "SQLiteStore",
    "create_store",
]
