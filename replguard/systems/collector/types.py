"""
ReplGuard — Snapshot Collector Types
"""

from __future__ import annotations

import enum

from replguard.primitives.common import FrozenModel
from replguard.primitives.fleet import Snapshot


class CollectionFailure(enum.StrEnum):
    UNREACHABLE = "unreachable"  # Data source failed (retried or rejected)
    NOT_EVALUATED = "not_evaluated"  # Run cancelled before the node was polled


class CollectionError(FrozenModel):
    """Stands in for a snapshot when a node could not be read."""

    node: str
    failure: CollectionFailure
    message: str = ""
    error_type: str = ""
    error_codes: tuple[int, ...] = ()
    attempts: int = 0
    gave_up: bool = False  # True: retries exhausted; False: rejected outright

    def to_snapshot(self) -> Snapshot:
        """Unreachable snapshot carrying the raw error codes."""
        return Snapshot.unreachable(self.node, self.error_codes, self.message)


CollectionResult = Snapshot | CollectionError
