"""Version chains held in an arena keyed by version uuid.

Versions never embed references to each other: each carries only the uuid of
its predecessor, and chains are walked by looking that uuid up in the arena.
The arena is a ``networkx.DiGraph`` with an edge from every predecessor to its
successor, which also makes descendant queries cheap.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

import networkx as nx

from caresync.core.entity import Task, version_sort_key


class ChainRelation(StrEnum):
    """How two version chains of the same logical task relate."""

    IDENTICAL = "identical"
    REMOTE_AHEAD = "remote_ahead"  # local chain is a prefix of the remote one
    LOCAL_AHEAD = "local_ahead"  # remote chain is a prefix of the local one
    DIVERGED = "diverged"


@dataclass(frozen=True)
class ChainComparison:
    """Result of comparing a local and a remote chain."""

    relation: ChainRelation
    common_prefix: tuple[Task, ...]
    local_suffix: tuple[Task, ...]
    remote_suffix: tuple[Task, ...]

    @property
    def is_conflict(self) -> bool:
        return self.relation == ChainRelation.DIVERGED


class VersionArena:
    """All known task versions, indexed by uuid and by logical id."""

    def __init__(self, versions: Iterable[Task] = ()) -> None:
        self._graph = nx.DiGraph()
        self._by_logical_id: dict[str, set[str]] = {}
        for version in versions:
            self.add(version)

    def add(self, version: Task) -> None:
        """Add a version; adding a known uuid again is a no-op."""
        if self.get(version.uuid) is not None:
            return
        self._graph.add_node(version.uuid, version=version)
        if version.previous_version_uuid:
            self._graph.add_edge(version.previous_version_uuid, version.uuid)
        self._by_logical_id.setdefault(version.id, set()).add(version.uuid)

    def extend(self, versions: Iterable[Task]) -> None:
        for version in versions:
            self.add(version)

    def get(self, uuid: str) -> Task | None:
        if uuid not in self._graph:
            return None
        version: Task | None = self._graph.nodes[uuid].get("version")
        return version

    def __contains__(self, uuid: object) -> bool:
        return isinstance(uuid, str) and self.get(uuid) is not None

    def __len__(self) -> int:
        return sum(len(uuids) for uuids in self._by_logical_id.values())

    def logical_ids(self) -> set[str]:
        return set(self._by_logical_id)

    def versions(self, logical_id: str) -> list[Task]:
        """Every known version of a logical task, oldest first."""
        found = [self.get(u) for u in self._by_logical_id.get(logical_id, ())]
        return sorted((v for v in found if v is not None), key=version_sort_key)

    def chain_to(self, uuid: str) -> list[Task]:
        """Walk predecessors from ``uuid`` back to the oldest known version.

        Returns the chain oldest first. The walk stops at the first predecessor
        the arena does not hold.
        """
        chain: list[Task] = []
        seen: set[str] = set()
        current = self.get(uuid)
        while current is not None and current.uuid not in seen:
            seen.add(current.uuid)
            chain.append(current)
            if current.previous_version_uuid is None:
                break
            current = self.get(current.previous_version_uuid)
        chain.reverse()
        return chain

    def successors(self, uuid: str) -> list[Task]:
        if uuid not in self._graph:
            return []
        found = (self.get(s) for s in self._graph.successors(uuid))
        return [v for v in found if v is not None]

    def descendants(self, uuid: str) -> list[Task]:
        if uuid not in self._graph:
            return []
        found = (self.get(d) for d in nx.descendants(self._graph, uuid))
        return sorted((v for v in found if v is not None), key=version_sort_key)

    def heads(self, logical_id: str) -> list[Task]:
        """Versions of a logical task that no known version supersedes."""
        return [
            v
            for v in self.versions(logical_id)
            if not any(s.id == logical_id for s in self.successors(v.uuid))
        ]

    def head(self, logical_id: str) -> Task | None:
        """The newest head; ties broken by uuid so every store picks the same."""
        heads = self.heads(logical_id)
        if not heads:
            return None
        return max(heads, key=version_sort_key)

    def is_ancestor(self, ancestor_uuid: str, uuid: str) -> bool:
        return any(v.uuid == ancestor_uuid for v in self.chain_to(uuid)[:-1])

    def compare(self, local_head: str, remote_head: str) -> ChainComparison:
        """Compare the chains ending at two heads of the same logical task."""
        local_chain = self.chain_to(local_head)
        remote_chain = self.chain_to(remote_head)

        shared = 0
        for local_version, remote_version in zip(local_chain, remote_chain, strict=False):
            if local_version.uuid != remote_version.uuid:
                break
            shared += 1

        prefix = tuple(local_chain[:shared])
        local_suffix = tuple(local_chain[shared:])
        remote_suffix = tuple(remote_chain[shared:])

        if not local_suffix and not remote_suffix:
            relation = ChainRelation.IDENTICAL
        elif not local_suffix:
            relation = ChainRelation.REMOTE_AHEAD
        elif not remote_suffix:
            relation = ChainRelation.LOCAL_AHEAD
        else:
            relation = ChainRelation.DIVERGED
        return ChainComparison(relation, prefix, local_suffix, remote_suffix)
