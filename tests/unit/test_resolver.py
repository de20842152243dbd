"""Tests for version chains and change set resolution."""

from __future__ import annotations

import pytest

from caresync.core.change import ChangeOperation, ChangeSet
from caresync.core.entity import EntityKind, Outcome, Task
from caresync.sync.policy import KeepDevicePolicy, KeepRemotePolicy
from caresync.sync.protocol import ConflictDecision
from caresync.sync.resolver import ChangeSetResolver, resolve_changes
from caresync.sync.version_chain import ChainRelation, VersionArena


@pytest.fixture
def root() -> Task:
    return Task.create("abc", "A").with_stamp("remote", 1)


@pytest.fixture
def remote_b(root: Task) -> Task:
    return root.new_version(title="B").with_stamp("remote", 2)


@pytest.fixture
def local_c(root: Task) -> Task:
    return root.new_version(title="C").with_stamp("device", 2)


class TestVersionArena:
    def test_chain_walks_back_to_root(self, root: Task, remote_b: Task) -> None:
        tail = remote_b.new_version(title="B2")
        arena = VersionArena([tail, remote_b, root])

        assert [v.title for v in arena.chain_to(tail.uuid)] == ["A", "B", "B2"]
        assert arena.is_ancestor(root.uuid, tail.uuid)
        assert not arena.is_ancestor(tail.uuid, root.uuid)
        assert {v.uuid for v in arena.descendants(root.uuid)} == {remote_b.uuid, tail.uuid}

    def test_chain_stops_at_unknown_predecessor(self, root: Task, remote_b: Task) -> None:
        arena = VersionArena([remote_b])
        assert arena.chain_to(remote_b.uuid) == [remote_b]
        assert root.uuid not in arena

    def test_adding_known_version_is_noop(self, root: Task) -> None:
        arena = VersionArena([root])
        arena.add(root)
        assert len(arena) == 1

    def test_forked_chain_has_two_heads(self, root: Task, remote_b: Task, local_c: Task) -> None:
        arena = VersionArena([root, remote_b, local_c])
        assert {v.uuid for v in arena.heads("abc")} == {remote_b.uuid, local_c.uuid}
        assert arena.head("abc") in (remote_b, local_c)

    @pytest.mark.parametrize(
        ("local", "remote", "relation"),
        [
            ("root", "root", ChainRelation.IDENTICAL),
            ("root", "remote_b", ChainRelation.REMOTE_AHEAD),
            ("local_c", "root", ChainRelation.LOCAL_AHEAD),
            ("local_c", "remote_b", ChainRelation.DIVERGED),
        ],
    )
    def test_compare(self, request, local: str, remote: str, relation: ChainRelation) -> None:
        versions = {
            name: request.getfixturevalue(name) for name in ("root", "remote_b", "local_c")
        }
        arena = VersionArena(versions.values())

        comparison = arena.compare(versions[local].uuid, versions[remote].uuid)

        assert comparison.relation == relation
        assert comparison.is_conflict == (relation == ChainRelation.DIVERGED)
        assert comparison.common_prefix[0].uuid == versions["root"].uuid


class TestTaskResolution:
    def test_one_sided_remote_chain_applies_in_order(self, root: Task, remote_b: Task) -> None:
        resolved = resolve_changes(
            ChangeSet.from_entities([remote_b, root]), ChangeSet(), KeepDevicePolicy()
        )

        assert [r.entity.uuid for r in resolved.operations] == [root.uuid, remote_b.uuid]
        assert all(r.operation == ChangeOperation.ADD for r in resolved.operations)
        assert not resolved.conflicts
        assert resolved.acknowledged == {root.uuid, remote_b.uuid}

    def test_remote_ahead_is_not_a_conflict(self, root: Task, remote_b: Task) -> None:
        resolver = ChangeSetResolver(ChangeSet.from_entities([remote_b]), ChangeSet(), [root])

        assert resolver.conflicts() == []
        resolved = resolver.resolve({})
        assert [r.entity.uuid for r in resolved.operations] == [remote_b.uuid]

    def test_local_ahead_only_pushes(self, root: Task, local_c: Task) -> None:
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([root]), ChangeSet.from_entities([local_c]), [root]
        )

        resolved = resolver.resolve({})

        assert resolved.operations == ()
        assert resolved.outgoing.uuids() == {local_c.uuid}
        assert not resolved.overwrite_remote

    def test_divergence_is_reported_with_chains(
        self, root: Task, remote_b: Task, local_c: Task
    ) -> None:
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote_b]), ChangeSet.from_entities([local_c]), [root]
        )

        [conflict] = resolver.conflicts()

        assert conflict.kind == EntityKind.TASK
        assert conflict.key == ("task", "abc")
        assert conflict.local_chain == (local_c,)
        assert conflict.remote_chain == (remote_b,)
        assert conflict.common_ancestor_uuid == root.uuid

    def test_keep_remote_supersedes_local_suffix(
        self, root: Task, remote_b: Task, local_c: Task
    ) -> None:
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote_b]), ChangeSet.from_entities([local_c]), [root]
        )

        resolved = resolver.resolve({("task", "abc"): ConflictDecision.KEEP_REMOTE})

        assert resolved.superseded == {local_c.uuid}
        assert [r.entity.uuid for r in resolved.operations] == [remote_b.uuid]
        assert not resolved.outgoing
        # The losing local version is settled and never pushed later
        assert local_c.uuid in resolved.acknowledged

    def test_keep_local_discards_remote_suffix(
        self, root: Task, remote_b: Task, local_c: Task
    ) -> None:
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote_b]), ChangeSet.from_entities([local_c]), [root]
        )

        resolved = resolver.resolve({("task", "abc"): ConflictDecision.KEEP_LOCAL})

        assert resolved.operations == ()
        assert resolved.discarded == {remote_b.uuid}
        assert resolved.outgoing.uuids() == {local_c.uuid}
        assert resolved.overwrite_remote
        assert remote_b.uuid not in resolved.acknowledged

    def test_acknowledged_local_branch_is_replaced_without_asking(
        self, root: Task, remote_b: Task, local_c: Task
    ) -> None:
        # local_c is clean: the remote already saw it and chose remote_b elsewhere
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote_b]), ChangeSet(), [root, local_c]
        )

        assert resolver.conflicts() == []
        resolved = resolver.resolve({})
        assert resolved.superseded == {local_c.uuid}
        assert [r.entity.uuid for r in resolved.operations] == [remote_b.uuid]

    def test_missing_decision_raises(self, root: Task, remote_b: Task, local_c: Task) -> None:
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote_b]), ChangeSet.from_entities([local_c]), [root]
        )
        with pytest.raises(KeyError):
            resolver.resolve({})

    def test_outcomes_follow_superseded_task(
        self, root: Task, remote_b: Task, local_c: Task
    ) -> None:
        local_outcome = Outcome.create(local_c.uuid, 0)
        resolved = resolve_changes(
            ChangeSet.from_entities([remote_b]),
            ChangeSet.from_entities([local_c, local_outcome]),
            KeepRemotePolicy(),
            [root],
        )

        assert not resolved.outgoing
        assert local_outcome.uuid in resolved.acknowledged


class TestOutcomeResolution:
    @pytest.fixture
    def outcomes(self, root: Task) -> tuple[Outcome, Outcome]:
        local = Outcome.create(root.uuid, 0).with_stamp("device", 2)
        remote = Outcome.create(root.uuid, 0).with_stamp("remote", 2)
        return local, remote

    def test_same_occurrence_is_a_conflict(self, root: Task, outcomes) -> None:
        local, remote = outcomes
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote]), ChangeSet.from_entities([local]), [root]
        )

        [conflict] = resolver.conflicts()

        assert conflict.kind == EntityKind.OUTCOME
        assert conflict.logical_id == f"{root.uuid}:0"

    def test_keep_remote_clears_occurrence_first(self, root: Task, outcomes) -> None:
        local, remote = outcomes
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote]), ChangeSet.from_entities([local]), [root]
        )

        resolved = resolver.resolve({})

        assert [(r.operation, r.entity.uuid) for r in resolved.operations] == [
            (ChangeOperation.DELETE, local.uuid),
            (ChangeOperation.ADD, remote.uuid),
        ]
        assert not resolved.outgoing

    def test_keep_local_skips_remote_outcome(self, root: Task, outcomes) -> None:
        local, remote = outcomes
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([remote]), ChangeSet.from_entities([local]), [root]
        )

        resolved = resolver.resolve(
            {("outcome", f"{root.uuid}:0"): ConflictDecision.KEEP_LOCAL}
        )

        assert resolved.operations == ()
        assert resolved.outgoing.uuids() == {local.uuid}
        assert resolved.overwrite_remote
        assert remote.uuid in resolved.discarded

    def test_matching_retractions_do_not_conflict(self, root: Task) -> None:
        original = Outcome.create(root.uuid, 0)
        resolver = ChangeSetResolver(
            ChangeSet.from_entities([original.tombstone()]),
            ChangeSet.from_entities([original.tombstone()]),
            [root],
        )
        assert resolver.conflicts() == []
