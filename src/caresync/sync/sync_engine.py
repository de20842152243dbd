"""Sync engine orchestrator: pull, merge, apply, push."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from caresync.core.change import RevisionRecord
from caresync.errors import (
    ApplyFailure,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    SyncTimeoutError,
    TransportFailure,
)
from caresync.sync.apply import STORE_ERRORS, TransactionalApplier
from caresync.sync.policy import ConflictResolutionPolicy
from caresync.sync.protocol import (
    ConflictDecision,
    ConflictDescription,
    ExchangeStats,
    RemoteEndpoint,
    SyncResult,
    SyncState,
    SyncStatus,
)
from caresync.sync.resolver import ChangeSetResolver

if TYPE_CHECKING:
    from caresync.storage.base import VersionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PULL_TIMEOUT = 30.0
DEFAULT_PUSH_TIMEOUT = 30.0


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# One flight per (store clock id, remote identity), shared by every engine in
# the process so two engines on the same pair cannot overlap either. An entry
# lives only while an attempt holds or waits for it.
_inflight: dict[tuple[str, str], _Flight] = {}


@asynccontextmanager
async def _single_flight(key: tuple[str, str]) -> AsyncIterator[None]:
    flight = _inflight.setdefault(key, _Flight())
    flight.users += 1
    try:
        async with flight.lock:
            yield
    finally:
        flight.users -= 1
        if flight.users == 0:
            del _inflight[key]


class SyncEngine:
    """Synchronizes one store with one remote endpoint.

    Each attempt runs the phases in order:

    1. Pull every remote change the store's knowledge vector does not reflect
    2. Merge: resolve the remote changes against local dirty changes,
       asking the remote for a policy on every diverged record
    3. Apply the resulting operations inside one store transaction
    4. Push what the remote still lacks, with the transaction still open
    5. Commit: merge the remote vector and clear dirty flags

    A failure at any phase rolls the store back and is reported as a
    ``SyncResult`` carrying a typed ``SyncError``; nothing is raised.

    Args:
        store: Local version store
        remote: Remote endpoint to synchronize with
        pull_timeout: Seconds to wait for the pull, None waits forever
        push_timeout: Seconds to wait for the push, None waits forever
        policy_timeout: Seconds to wait for each conflict decision; None
            waits indefinitely for user input
        policy: Fixed policy that overrides the remote's choice
    """

    def __init__(
        self,
        store: VersionStore,
        remote: RemoteEndpoint,
        *,
        pull_timeout: float | None = DEFAULT_PULL_TIMEOUT,
        push_timeout: float | None = DEFAULT_PUSH_TIMEOUT,
        policy_timeout: float | None = None,
        policy: ConflictResolutionPolicy | None = None,
    ) -> None:
        self._store = store
        self._remote = remote
        self._pull_timeout = pull_timeout
        self._push_timeout = push_timeout
        self._policy_timeout = policy_timeout
        self._policy = policy
        self._state = SyncState.IDLE
        self._task: asyncio.Task[SyncResult] | None = None
        self._cancel_requested = False
        self._last_result: SyncResult | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def remote(self) -> RemoteEndpoint:
        return self._remote

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    @property
    def is_syncing(self) -> bool:
        flight = _inflight.get(self._key)
        return flight is not None and flight.lock.locked()

    @property
    def _key(self) -> tuple[str, str]:
        return (self._store.clock_id, self._remote.identity)

    async def synchronize(self, wait: bool = False) -> SyncResult:
        """Run one sync attempt.

        Args:
            wait: Queue behind an attempt already in flight for the same store
                and remote instead of being rejected

        Returns:
            The typed result; ``REJECTED`` if another attempt was in flight
        """
        if self.is_syncing and not wait:
            logger.debug("Sync with %s already in flight, rejecting", self._remote.identity)
            return SyncResult(
                status=SyncStatus.REJECTED,
                error=SyncInProgressError(f"Sync with {self._remote.identity} already running"),
            )

        async with _single_flight(self._key):
            self._cancel_requested = False
            stats = ExchangeStats()
            self._task = asyncio.ensure_future(self._attempt(stats))
            try:
                result = await self._task
            except asyncio.CancelledError:
                failed_state = self._state
                self._state = SyncState.IDLE
                if not self._cancel_requested:
                    raise
                result = self._failure(SyncCancelledError("Sync cancelled"), failed_state, stats)
            finally:
                self._task = None
            self._last_result = result
            return result

    def cancel(self) -> bool:
        """Cancel the attempt in flight; its changes are rolled back."""
        if self._task is None or self._task.done():
            return False
        self._cancel_requested = True
        self._task.cancel()
        logger.info("Cancelling sync with %s", self._remote.identity)
        return True

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _attempt(self, stats: ExchangeStats) -> SyncResult:
        remote_id = self._remote.identity
        try:
            self._state = SyncState.PULLING
            since = await self._store.knowledge_vector()
            revision = await self._call_remote(
                self._remote.pull_revisions(since), self._pull_timeout, "pull"
            )
            stats.pulled = len(revision.entities)
            logger.debug("Pulled %d entities from %s", stats.pulled, remote_id)

            async with TransactionalApplier(self._store, remote_id) as applier:
                self._state = SyncState.MERGING
                remote_changes = revision.to_change_set()
                local_changes = await self._store.local_change_set(remote_id)
                versions = await self._store.fetch_task_versions(
                    remote_changes.task_ids() | local_changes.task_ids()
                )
                resolver = ChangeSetResolver(remote_changes, local_changes, versions)
                decisions: dict[tuple[str, str], ConflictDecision] = {}
                for conflict in resolver.conflicts():
                    stats.conflicts.append(conflict)
                    decisions[conflict.key] = await self._decide(conflict)
                resolved = resolver.resolve(decisions)

                self._state = SyncState.APPLYING
                stats.applied = await applier.apply(resolved)
                stats.superseded = applier.superseded

                self._state = SyncState.PUSHING
                if resolved.outgoing:
                    local_kv = await self._store.export_knowledge_vector()
                    outgoing = RevisionRecord.from_change_set(
                        resolved.outgoing, local_kv.merge(revision.knowledge_vector)
                    )
                    await self._call_remote(
                        self._remote.push_revisions(outgoing, resolved.overwrite_remote),
                        self._push_timeout,
                        "push",
                    )
                    stats.pushed = len(resolved.outgoing)
                    logger.debug(
                        "Pushed %d changes to %s (overwrite=%s)",
                        stats.pushed,
                        remote_id,
                        resolved.overwrite_remote,
                    )

                await applier.commit(
                    revision.knowledge_vector,
                    resolved.acknowledged | resolved.outgoing.uuids(),
                )
        except SyncError as e:
            return self._abort(e, stats)
        except STORE_ERRORS as e:
            return self._abort(ApplyFailure(f"Local store failed: {e}"), stats)

        self._state = SyncState.IDLE
        kv = await self._store.knowledge_vector()
        logger.info(
            "Sync with %s complete: pulled=%d applied=%d pushed=%d superseded=%d conflicts=%d",
            remote_id,
            stats.pulled,
            stats.applied,
            stats.pushed,
            stats.superseded,
            len(stats.conflicts),
        )
        return SyncResult(
            status=SyncStatus.SUCCESS,
            revision=revision,
            pulled=stats.pulled,
            applied=stats.applied,
            pushed=stats.pushed,
            superseded=stats.superseded,
            conflicts=tuple(stats.conflicts),
            knowledge_vector=kv,
        )

    def _abort(self, error: SyncError, stats: ExchangeStats) -> SyncResult:
        failed_state = self._state
        self._state = SyncState.IDLE
        logger.warning(
            "Sync with %s failed while %s: %s", self._remote.identity, failed_state, error
        )
        return self._failure(error, failed_state, stats)

    def _failure(self, error: SyncError, failed_state: SyncState, stats: ExchangeStats) -> SyncResult:
        return SyncResult(
            status=SyncStatus.FAILED,
            error=error,
            failed_state=failed_state,
            pulled=stats.pulled,
            conflicts=tuple(stats.conflicts),
        )

    async def _call_remote(self, call: Awaitable[T], timeout: float | None, phase: str) -> T:
        """Await a remote call, mapping every failure into the sync taxonomy."""
        try:
            return await asyncio.wait_for(call, timeout)
        except SyncError:
            raise
        except TimeoutError as e:
            raise SyncTimeoutError(f"Remote {phase} timed out after {timeout}s") from e
        except Exception as e:
            raise TransportFailure(f"Remote {phase} failed: {e}") from e

    async def _decide(self, conflict: ConflictDescription) -> ConflictDecision:
        """Ask for the policy of one conflict and apply it."""
        try:
            policy = self._policy
            if policy is None:
                policy = await asyncio.wait_for(
                    self._remote.choose_conflict_resolution_policy(conflict),
                    self._policy_timeout,
                )
            decision = policy.resolve(
                conflict.local_chain, conflict.remote_chain, conflict.affected_outcomes
            )
            if inspect.isawaitable(decision):
                decision = await asyncio.wait_for(decision, self._policy_timeout)
        except SyncError:
            raise
        except TimeoutError as e:
            raise SyncTimeoutError(
                f"No conflict decision for {conflict.logical_id} within {self._policy_timeout}s"
            ) from e
        except Exception as e:
            raise ApplyFailure(f"Conflict policy failed for {conflict.logical_id}: {e}") from e

        logger.info("Conflict on %s %s resolved: %s", conflict.kind, conflict.logical_id, decision)
        return ConflictDecision(decision)
