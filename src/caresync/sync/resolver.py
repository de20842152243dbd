"""Change set resolution: the minimal operations that reconcile two change sets.

Resolution runs in two phases so the policy decision can be asynchronous:

1. :meth:`ChangeSetResolver.conflicts` lists every logical record whose local
   and remote version chains diverged.
2. :meth:`ChangeSetResolver.resolve` turns one decision per conflict into
   concrete operations for the applying side, the local changes that still
   have to be pushed, and the bookkeeping needed to clear dirty flags.

Staleness is never a conflict: when one chain extends the other the longer
one wins without asking the policy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from caresync.core.change import ChangeOperation, ChangeRecord, ChangeSet
from caresync.core.entity import EntityKind, Outcome, Task, version_sort_key
from caresync.sync.policy import ConflictResolutionPolicy
from caresync.sync.protocol import ConflictDecision, ConflictDescription
from caresync.sync.version_chain import ChainComparison, ChainRelation, VersionArena

logger = logging.getLogger(__name__)

ConflictKey = tuple[str, str]


@dataclass(frozen=True)
class ResolvedChanges:
    """What the applying side must do to reconcile with the remote.

    Attributes:
        operations: Necessary changes in apply order (tasks, outcome deletes, outcome adds)
        superseded: Local task versions on a losing branch
        outgoing: Local changes that still have to reach the remote
        acknowledged: Versions both sides now hold; clean for this remote after commit
        discarded: Remote versions dropped because the local branch won
        overwrite_remote: True when the remote must accept the push without re-checking
        conflicts: Every divergence found, in detection order
        decisions: Decision taken per conflict key
    """

    operations: tuple[ChangeRecord, ...] = ()
    superseded: frozenset[str] = frozenset()
    outgoing: ChangeSet = field(default_factory=ChangeSet)
    acknowledged: frozenset[str] = frozenset()
    discarded: frozenset[str] = frozenset()
    overwrite_remote: bool = False
    conflicts: tuple[ConflictDescription, ...] = ()
    decisions: Mapping[ConflictKey, ConflictDecision] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.operations and not self.superseded and not self.outgoing


def _outcome_key_id(key: tuple[str, int]) -> str:
    return f"{key[0]}:{key[1]}"


class ChangeSetResolver:
    """Reconciles the remote change set against the local one.

    Args:
        remote: Changes received from the remote
        local: Local changes the remote has not acknowledged
        local_versions: Live local task versions for the logical ids involved,
            used to walk chains back to their common ancestor. The local change
            set's own task versions are always included.
    """

    def __init__(
        self,
        remote: ChangeSet,
        local: ChangeSet,
        local_versions: Iterable[Task] = (),
    ) -> None:
        self._remote = remote
        self._local = local
        self._local_dirty = local.uuids()

        known = list(local_versions) + local.tasks()
        self._local_arena = VersionArena(known)
        self._arena = VersionArena(known)
        self._arena.extend(remote.tasks())

        self._comparisons: dict[str, ChainComparison] = {}
        self._task_conflicts: dict[str, ConflictDescription] = {}
        self._auto_superseded: set[str] = set()
        self._compare_task_chains()

    # ------------------------------------------------------------------
    # Phase 1: detection
    # ------------------------------------------------------------------

    def _compare_task_chains(self) -> None:
        remote_by_id = self._remote.tasks_by_logical_id()
        for logical_id, remote_versions in remote_by_id.items():
            local_head = self._local_arena.head(logical_id)
            if local_head is None:
                continue
            remote_head = VersionArena(remote_versions).head(logical_id)
            assert remote_head is not None
            comparison = self._arena.compare(local_head.uuid, remote_head.uuid)
            self._comparisons[logical_id] = comparison

            if comparison.relation != ChainRelation.DIVERGED:
                continue

            dirty_suffix = [v for v in comparison.local_suffix if v.uuid in self._local_dirty]
            if not dirty_suffix:
                # The remote already acknowledged every local version on the losing
                # side, so its chain reflects a decision made elsewhere.
                logger.debug("Task %s: remote replaced acknowledged versions", logical_id)
                self._auto_superseded.update(v.uuid for v in comparison.local_suffix)
                continue

            self._task_conflicts[logical_id] = ConflictDescription(
                kind=EntityKind.TASK,
                logical_id=logical_id,
                local_chain=comparison.local_suffix,
                remote_chain=comparison.remote_suffix,
                common_prefix=comparison.common_prefix,
                affected_outcomes=self._outcomes_on(
                    {v.uuid for v in comparison.local_suffix + comparison.remote_suffix}
                ),
            )

    def _outcomes_on(self, task_uuids: set[str]) -> tuple[Outcome, ...]:
        found: list[Outcome] = []
        for record in list(self._local.outcomes()) + list(self._remote.outcomes()):
            outcome = record.entity
            assert isinstance(outcome, Outcome)
            if outcome.task_uuid in task_uuids:
                found.append(outcome)
        return tuple(found)

    def _outcome_conflicts(
        self, dropped_local: set[str], dropped_remote_tasks: set[str]
    ) -> list[tuple[ConflictDescription, ChangeRecord, ChangeRecord]]:
        local_by_key = self._local.outcomes_by_occurrence()
        conflicts = []
        for key, remote_records in self._remote.outcomes_by_occurrence().items():
            if key[0] in dropped_remote_tasks:
                continue
            live_local = [
                r
                for r in local_by_key.get(key, [])
                if r.entity.uuid not in dropped_local
                and r.entity.uuid not in {rr.entity.uuid for rr in remote_records}
            ]
            if not live_local:
                continue
            local_record = live_local[-1]
            remote_record = max(remote_records, key=lambda r: version_sort_key(r.entity))
            if (
                local_record.operation == ChangeOperation.DELETE
                and remote_record.operation == ChangeOperation.DELETE
            ):
                continue
            description = ConflictDescription(
                kind=EntityKind.OUTCOME,
                logical_id=_outcome_key_id(key),
                local_chain=(local_record.entity,),
                remote_chain=(remote_record.entity,),
                affected_outcomes=(local_record.entity, remote_record.entity),  # type: ignore[arg-type]
            )
            conflicts.append((description, local_record, remote_record))
        return conflicts

    def conflicts(self) -> list[ConflictDescription]:
        """Every diverged task chain, then every contested outcome occurrence.

        Outcome conflicts are reported assuming every task conflict keeps the
        local branch, which yields the largest set of occurrences that can clash.
        """
        found = list(self._task_conflicts.values())
        dropped_local = self._local_versions_on(self._auto_superseded)
        found.extend(c for c, _, _ in self._outcome_conflicts(dropped_local, set()))
        return found

    # ------------------------------------------------------------------
    # Phase 2: resolution
    # ------------------------------------------------------------------

    def _local_versions_on(self, superseded: set[str]) -> set[str]:
        """Local change uuids that disappear with the superseded task versions."""
        dropped = set(superseded)
        for record in self._local.outcomes():
            outcome = record.entity
            assert isinstance(outcome, Outcome)
            if outcome.task_uuid in superseded:
                dropped.add(outcome.uuid)
        return dropped

    def resolve(self, decisions: Mapping[ConflictKey, ConflictDecision]) -> ResolvedChanges:
        """Translate one decision per conflict into concrete operations.

        Raises:
            KeyError: A task conflict has no decision
        """
        taken: dict[ConflictKey, ConflictDecision] = {}
        superseded: set[str] = set(self._auto_superseded)
        discarded: set[str] = set()
        overwrite_remote = False
        task_ops: list[ChangeRecord] = []

        remote_by_id = self._remote.tasks_by_logical_id()
        for logical_id, remote_versions in remote_by_id.items():
            comparison = self._comparisons.get(logical_id)
            if comparison is None:
                # One-sided: the remote's versions are necessary verbatim
                chain = VersionArena(remote_versions)
                task_ops.extend(_add_ordered(chain, logical_id, remote_versions))
                continue

            if comparison.relation in (ChainRelation.IDENTICAL, ChainRelation.LOCAL_AHEAD):
                continue

            if comparison.relation == ChainRelation.REMOTE_AHEAD:
                task_ops.extend(_add_records(comparison.remote_suffix))
                continue

            conflict = self._task_conflicts.get(logical_id)
            if conflict is None:
                # Auto-superseded acknowledged branch
                task_ops.extend(_add_records(comparison.remote_suffix))
                continue

            decision = decisions[conflict.key]
            taken[conflict.key] = decision
            if decision == ConflictDecision.KEEP_REMOTE:
                superseded.update(v.uuid for v in comparison.local_suffix)
                task_ops.extend(_add_records(comparison.remote_suffix))
            else:
                discarded.update(v.uuid for v in comparison.remote_suffix)
                overwrite_remote = True

        dropped_local = self._local_versions_on(superseded)

        # Remote outcomes on discarded remote task versions go with them
        for record in self._remote.outcomes():
            outcome = record.entity
            assert isinstance(outcome, Outcome)
            if outcome.task_uuid in discarded:
                discarded.add(outcome.uuid)

        outcome_deletes: list[ChangeRecord] = []
        outcome_adds: list[ChangeRecord] = []
        skipped_remote: set[str] = set()

        for description, local_record, remote_record in self._outcome_conflicts(
            dropped_local, discarded
        ):
            decision = decisions.get(description.key, ConflictDecision.KEEP_REMOTE)
            taken[description.key] = decision
            if decision == ConflictDecision.KEEP_REMOTE:
                dropped_local.add(local_record.entity.uuid)
                if remote_record.operation == ChangeOperation.ADD:
                    # Clear the occurrence before the remote outcome lands on it
                    outcome_deletes.append(
                        ChangeRecord(ChangeOperation.DELETE, local_record.entity, remote_record.date)
                    )
            else:
                skipped_remote.add(remote_record.entity.uuid)
                overwrite_remote = True

        for record in self._remote.outcomes():
            uuid = record.entity.uuid
            if uuid in discarded or uuid in skipped_remote or uuid in self._local_dirty:
                continue
            if record.operation == ChangeOperation.DELETE:
                outcome_deletes.append(record)
            else:
                outcome_adds.append(record)

        remote_uuids = self._remote.uuids()
        outgoing = self._local.filter(
            lambda r: r.entity.uuid not in dropped_local and r.entity.uuid not in remote_uuids
        )
        # Local changes that lost are settled too; they must never be pushed later
        acknowledged = (
            (remote_uuids - discarded - skipped_remote)
            | (self._local_dirty & remote_uuids)
            | (dropped_local & self._local_dirty)
        )

        conflicts = tuple(self._task_conflicts.values()) + tuple(
            c
            for c, _, _ in self._outcome_conflicts(self._local_versions_on(superseded), discarded)
        )

        resolved = ResolvedChanges(
            operations=tuple(
                task_ops
                + sorted(outcome_deletes, key=lambda r: version_sort_key(r.entity))
                + sorted(outcome_adds, key=lambda r: version_sort_key(r.entity))
            ),
            superseded=frozenset(superseded),
            outgoing=outgoing,
            acknowledged=frozenset(acknowledged),
            discarded=frozenset(discarded | skipped_remote),
            overwrite_remote=overwrite_remote,
            conflicts=conflicts,
            decisions=taken,
        )
        logger.debug(
            "Resolved %d remote / %d local changes: %d ops, %d superseded, %d outgoing",
            len(self._remote),
            len(self._local),
            len(resolved.operations),
            len(resolved.superseded),
            len(resolved.outgoing),
        )
        return resolved


def _add_records(versions: Iterable[Task]) -> list[ChangeRecord]:
    return [ChangeRecord(ChangeOperation.ADD, v, v.created_date) for v in versions]


def _add_ordered(arena: VersionArena, logical_id: str, versions: list[Task]) -> list[ChangeRecord]:
    """Add records for one-sided versions, predecessors before successors."""
    ordered: list[Task] = []
    placed: set[str] = set()
    for head in sorted(arena.heads(logical_id), key=version_sort_key):
        for version in arena.chain_to(head.uuid):
            if version.uuid not in placed:
                placed.add(version.uuid)
                ordered.append(version)
    # Anything unreachable from a head (should not happen) keeps its date order
    ordered.extend(v for v in sorted(versions, key=version_sort_key) if v.uuid not in placed)
    return _add_records(ordered)


def resolve_changes(
    remote: ChangeSet,
    local: ChangeSet,
    policy: ConflictResolutionPolicy,
    local_versions: Iterable[Task] = (),
) -> ResolvedChanges:
    """Resolve two change sets with a fixed, synchronous policy."""
    resolver = ChangeSetResolver(remote, local, local_versions)
    decisions = {
        c.key: policy.resolve(c.local_chain, c.remote_chain, c.affected_outcomes)
        for c in resolver.conflicts()
    }
    return resolver.resolve(decisions)
