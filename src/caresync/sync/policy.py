"""Conflict resolution policies.

A policy is asked once per diverged logical record and answers with the
branch that survives. Built-ins cover the two fixed directions; anything else
can be expressed with :class:`CallbackPolicy` or any object that implements
:class:`ConflictResolutionPolicy`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from caresync.core.entity import Entity, Outcome
from caresync.errors import RemoteConflict
from caresync.sync.protocol import ConflictDecision

logger = logging.getLogger(__name__)


@runtime_checkable
class ConflictResolutionPolicy(Protocol):
    """Capability interface: decide which branch of a divergence survives."""

    def resolve(
        self,
        local_chain: Sequence[Entity],
        remote_chain: Sequence[Entity],
        affected_outcomes: Sequence[Outcome],
    ) -> ConflictDecision: ...


class KeepRemotePolicy:
    """The remote branch replaces the local divergent suffix."""

    name = "keep-remote"

    def resolve(
        self,
        local_chain: Sequence[Entity],
        remote_chain: Sequence[Entity],
        affected_outcomes: Sequence[Outcome],
    ) -> ConflictDecision:
        return ConflictDecision.KEEP_REMOTE

    def __repr__(self) -> str:
        return "KeepRemotePolicy()"


class KeepDevicePolicy:
    """The local branch wins; the remote divergent suffix is discarded."""

    name = "keep-device"

    def resolve(
        self,
        local_chain: Sequence[Entity],
        remote_chain: Sequence[Entity],
        affected_outcomes: Sequence[Outcome],
    ) -> ConflictDecision:
        return ConflictDecision.KEEP_LOCAL

    def __repr__(self) -> str:
        return "KeepDevicePolicy()"


ResolveCallback = Callable[[Sequence[Entity], Sequence[Entity], Sequence[Outcome]], ConflictDecision]


class CallbackPolicy:
    """Delegate the decision to an arbitrary callable."""

    name = "callback"

    def __init__(self, callback: ResolveCallback) -> None:
        self._callback = callback

    def resolve(
        self,
        local_chain: Sequence[Entity],
        remote_chain: Sequence[Entity],
        affected_outcomes: Sequence[Outcome],
    ) -> ConflictDecision:
        decision = self._callback(local_chain, remote_chain, affected_outcomes)
        if not isinstance(decision, ConflictDecision):
            decision = ConflictDecision(decision)
        return decision


class RejectConflictsPolicy:
    """Refuse any divergence.

    Used by the receiving side of a push that did not ask to overwrite: the
    sender resolved against an older pull, so it has to pull again.
    """

    name = "reject"

    def resolve(
        self,
        local_chain: Sequence[Entity],
        remote_chain: Sequence[Entity],
        affected_outcomes: Sequence[Outcome],
    ) -> ConflictDecision:
        chain = remote_chain or local_chain
        logical_id = chain[0].logical_id if chain else "?"
        logger.info("Rejecting push: record %s diverged since the last pull", logical_id)
        raise RemoteConflict(f"Record {logical_id} changed on the remote; pull again", status_code=409)


_POLICIES: dict[str, type[KeepRemotePolicy] | type[KeepDevicePolicy]] = {
    "keep-remote": KeepRemotePolicy,
    "keep_remote": KeepRemotePolicy,
    "keep-device": KeepDevicePolicy,
    "keep_device": KeepDevicePolicy,
    "keep-local": KeepDevicePolicy,
    "keep_local": KeepDevicePolicy,
}


def policy_from_name(name: str) -> ConflictResolutionPolicy:
    """Build a built-in policy from its configuration name."""
    try:
        return _POLICIES[name.strip().lower()]()
    except KeyError:
        valid = sorted({"keep-remote", "keep-device"})
        raise ValueError(f"Unknown conflict policy '{name}'. Must be one of: {valid}") from None
