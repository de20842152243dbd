"""Knowledge vectors - per-source logical clocks used to detect unseen changes."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class KnowledgeVector:
    """
    Immutable mapping from clock id to a monotonically increasing counter.

    A store only ever advances its own component; every other component is
    learned by merging the vectors of peers it synchronized with. Every
    operation returns a new vector so snapshots taken during an in-flight sync
    stay stable.

    Attributes:
        clocks: Read-only view of the clock id -> counter mapping
    """

    clocks: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        cleaned: dict[str, int] = {}
        for clock_id, value in dict(self.clocks).items():
            if not isinstance(clock_id, str) or not clock_id:
                raise ValueError(f"Invalid clock id: {clock_id!r}")
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"Clock {clock_id} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"Clock {clock_id} must not be negative, got {value}")
            cleaned[clock_id] = value
        object.__setattr__(self, "clocks", MappingProxyType(cleaned))

    def clock(self, source_id: str) -> int:
        """Counter for a source, 0 if the source has never been seen."""
        return self.clocks.get(source_id, 0)

    def advance(self, source_id: str) -> KnowledgeVector:
        """Return a copy with ``source_id`` incremented by one."""
        return KnowledgeVector({**self.clocks, source_id: self.clock(source_id) + 1})

    def merge(self, other: KnowledgeVector) -> KnowledgeVector:
        """Component-wise maximum of two vectors."""
        merged = dict(self.clocks)
        for clock_id, value in other.clocks.items():
            if value > merged.get(clock_id, 0):
                merged[clock_id] = value
        return KnowledgeVector(merged)

    def is_ahead_of(self, other: KnowledgeVector, source_id: str) -> bool:
        """True if this vector has seen more of ``source_id`` than ``other``."""
        return self.clock(source_id) > other.clock(source_id)

    def dominates(self, other: KnowledgeVector) -> bool:
        """True if this vector is >= ``other`` on every component."""
        return all(self.clock(cid) >= value for cid, value in other.clocks.items())

    def __iter__(self) -> Iterator[str]:
        return iter(self.clocks)

    def __len__(self) -> int:
        return len(self.clocks)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KnowledgeVector):
            return NotImplemented
        # Absent components are equivalent to zero
        keys = set(self.clocks) | set(other.clocks)
        return all(self.clock(k) == other.clock(k) for k in keys)

    def __hash__(self) -> int:
        return hash(frozenset((k, v) for k, v in self.clocks.items() if v))

    def to_dict(self) -> dict[str, int]:
        return dict(self.clocks)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> KnowledgeVector:
        return cls(dict(data or {}))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> KnowledgeVector:
        """Parse a serialized vector; an empty string yields an empty vector."""
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed knowledge vector: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Knowledge vector must be a JSON object")
        return cls.from_dict(data)
