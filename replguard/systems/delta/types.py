"""
ReplGuard — Delta Cache Types
"""

from __future__ import annotations

from pydantic import AwareDatetime, Field

from replguard.primitives.common import ReplGuardModel
from replguard.primitives.fleet import Node, NodeStatus


class CacheEntry(ReplGuardModel):
    """Last-known state of one node. Overwritten after every check."""

    node: str
    last_check: AwareDatetime  # Naive timestamps fail validation
    status: NodeStatus
    consecutive_healthy: int = Field(default=0, ge=0)


class FilterResult(ReplGuardModel):
    """Partition of the requested nodes into due and skipped."""

    due: list[Node] = Field(default_factory=list)
    skipped: list[Node] = Field(default_factory=list)
    cache_degraded: bool = False
