"""Knowledge-vector synchronization of versioned tasks and outcomes."""

from caresync.sync.apply import TransactionalApplier
from caresync.sync.client import HTTPRemote
from caresync.sync.document_endpoint import DocumentStoreEndpoint
from caresync.sync.endpoint import StoreEndpoint
from caresync.sync.policy import (
    CallbackPolicy,
    ConflictResolutionPolicy,
    KeepDevicePolicy,
    KeepRemotePolicy,
    RejectConflictsPolicy,
    policy_from_name,
)
from caresync.sync.protocol import (
    ConflictDecision,
    ConflictDescription,
    RemoteEndpoint,
    SyncResult,
    SyncState,
    SyncStatus,
)
from caresync.sync.resolver import ChangeSetResolver, ResolvedChanges, resolve_changes
from caresync.sync.scheduler import SyncTrigger
from caresync.sync.sync_engine import SyncEngine
from caresync.sync.version_chain import ChainComparison, ChainRelation, VersionArena

__all__ = [
    "CallbackPolicy",
    "ChainComparison",
    "ChainRelation",
    "ChangeSetResolver",
    "ConflictDecision",
    "ConflictDescription",
    "ConflictResolutionPolicy",
    "DocumentStoreEndpoint",
    "HTTPRemote",
    "KeepDevicePolicy",
    "KeepRemotePolicy",
    "RejectConflictsPolicy",
    "RemoteEndpoint",
    "ResolvedChanges",
    "StoreEndpoint",
    "SyncEngine",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "SyncTrigger",
    "TransactionalApplier",
    "VersionArena",
    "policy_from_name",
    "resolve_changes",
]
