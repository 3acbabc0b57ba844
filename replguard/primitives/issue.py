"""
ReplGuard — Issue Primitive

A classified, severity-tagged problem derived from one snapshot.
Issues are read-only once detected; a run produces zero or more per node.
"""

from __future__ import annotations

from datetime import datetime
import enum
import hashlib
from typing import Any

from pydantic import Field

from replguard.primitives.common import FrozenModel, new_id, utc_now


class IssueCategory(enum.StrEnum):
    """What kind of divergence or failure is this?"""

    UNREACHABLE = "unreachable"
    DEGRADED = "degraded"
    STALE_REPLICATION = "stale_replication"
    VERY_STALE_REPLICATION = "very_stale_replication"
    CRITICAL_FAILURE = "critical_failure"
    HIGH_SEVERITY_FAILURE = "high_severity_failure"
    MEDIUM_SEVERITY_FAILURE = "medium_severity_failure"
    CUSTOM = "custom"


class IssueSeverity(enum.StrEnum):
    """How bad is it?"""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower is worse. Used to order issue lists."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 0,
    IssueSeverity.HIGH: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 3,
}


def issue_fingerprint(
    node: str,
    category: IssueCategory,
    partner: str = "",
    code: int = 0,
) -> str:
    """Stable identity of a problem across runs and re-snapshots."""
    raw = f"{node.lower()}:{category.value}:{partner.lower()}:{code}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


class Issue(FrozenModel):
    """
    The fundamental finding.

    ``actionable`` is False for informational issues, which are reported
    but never handed to the healing engine.
    """

    id: str = Field(default_factory=new_id)
    node: str
    category: IssueCategory
    severity: IssueSeverity
    description: str
    detail: dict[str, Any] = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=utc_now)
    actionable: bool = True
    fingerprint: str = ""

    @property
    def partner(self) -> str:
        return str(self.detail.get("partner", ""))

    @classmethod
    def build(
        cls,
        node: str,
        category: IssueCategory,
        severity: IssueSeverity,
        description: str,
        *,
        partner: str = "",
        code: int = 0,
        actionable: bool = True,
        detected_at: datetime | None = None,
        **detail: Any,
    ) -> Issue:
        """Construct an issue with its fingerprint and detail payload filled in."""
        payload: dict[str, Any] = dict(detail)
        if partner:
            payload["partner"] = partner
        if code:
            payload["code"] = code
        return cls(
            node=node,
            category=category,
            severity=severity,
            description=description,
            detail=payload,
            detected_at=detected_at or utc_now(),
            actionable=actionable,
            fingerprint=issue_fingerprint(node, category, partner, code),
        )
