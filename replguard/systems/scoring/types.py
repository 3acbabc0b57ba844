"""
ReplGuard — Health Score Types
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from replguard.primitives.common import FrozenModel, utc_now


class HealthScore(FrozenModel):
    """
    Fleet health for one run. Persisted as a historical record and
    never mutated once written.
    """

    value: int = Field(ge=0, le=100)
    grade: str
    penalties: dict[str, int] = Field(default_factory=dict)
    nodes_scored: int = 0
    issues_scored: int = 0
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def total_penalty(self) -> int:
        return sum(self.penalties.values())
