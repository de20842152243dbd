"""CareSync - knowledge-vector synchronization for versioned care plans."""

from caresync.core.change import ChangeOperation, ChangeRecord, ChangeSet, RevisionRecord
from caresync.core.entity import Outcome, OutcomeValue, Task
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.errors import (
    ApplyFailure,
    ProgrammingError,
    RemoteConflict,
    RemoteRejected,
    SyncError,
    TransportFailure,
)
from caresync.sync import (
    ConflictDecision,
    HTTPRemote,
    KeepDevicePolicy,
    KeepRemotePolicy,
    StoreEndpoint,
    SyncEngine,
    SyncResult,
    SyncStatus,
)
from caresync.storage import InMemoryStore, SQLiteStore, VersionStore, create_store

__version__ = "0.1.0"

__all__ = [
    # Core models
    "ChangeOperation",
    "ChangeRecord",
    "ChangeSet",
    "KnowledgeVector",
    "Outcome",
    "OutcomeValue",
    "RevisionRecord",
    "Task",
    # Errors
    "ApplyFailure",
    "ProgrammingError",
    "RemoteConflict",
    "RemoteRejected",
    "SyncError",
    "TransportFailure",
    # Sync
    "ConflictDecision",
    "HTTPRemote",
    "KeepDevicePolicy",
    "KeepRemotePolicy",
    "StoreEndpoint",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    # Storage
    "InMemoryStore",
    "SQLiteStore",
    "VersionStore",
    "create_store",
    # Version
    "__version__",
]
