"""
ReplGuard — Healing Policy

Decides, per issue, which remedy (if any) the current policy tier lets
the engine apply. Evaluation is a pure table lookup; it never touches
a node.

Each category has a graduated remedy ladder, least disruptive first.
The first rung the tier authorizes wins. If no rung is authorized the
issue is skipped with a policy reason.
"""

from __future__ import annotations

from typing import NamedTuple

import structlog

from replguard.config import PolicyTier
from replguard.primitives.issue import Issue, IssueCategory
from replguard.systems.healing.types import Remedy

logger = structlog.get_logger("replguard.systems.healing")


_CONSERVATIVE: frozenset[Remedy] = frozenset({
    Remedy.CLEAR_QUEUED_FAILURE,
    Remedy.ESCALATE_NO_OP,
})
_MODERATE: frozenset[Remedy] = _CONSERVATIVE | {Remedy.FORCE_SYNC_PARTNER}
_AGGRESSIVE: frozenset[Remedy] = _MODERATE | {Remedy.RESTART_REPLICATION_SERVICE}

AUTHORIZED_REMEDIES: dict[PolicyTier, frozenset[Remedy]] = {
    PolicyTier.CONSERVATIVE: _CONSERVATIVE,
    PolicyTier.MODERATE: _MODERATE,
    PolicyTier.AGGRESSIVE: _AGGRESSIVE,
}

REMEDY_LADDER: dict[IssueCategory, tuple[Remedy, ...]] = {
    # Nothing to act on remotely; operators must look
    IssueCategory.UNREACHABLE: (Remedy.ESCALATE_NO_OP,),
    IssueCategory.DEGRADED: (Remedy.CLEAR_QUEUED_FAILURE, Remedy.FORCE_SYNC_PARTNER),
    IssueCategory.STALE_REPLICATION: (Remedy.FORCE_SYNC_PARTNER,),
    IssueCategory.VERY_STALE_REPLICATION: (Remedy.FORCE_SYNC_PARTNER,),
    IssueCategory.CRITICAL_FAILURE: (
        Remedy.RESTART_REPLICATION_SERVICE,
        Remedy.FORCE_SYNC_PARTNER,
        Remedy.ESCALATE_NO_OP,
    ),
    IssueCategory.HIGH_SEVERITY_FAILURE: (Remedy.FORCE_SYNC_PARTNER, Remedy.ESCALATE_NO_OP),
    IssueCategory.MEDIUM_SEVERITY_FAILURE: (Remedy.CLEAR_QUEUED_FAILURE,),
    IssueCategory.CUSTOM: (),
}


class PolicyDecision(NamedTuple):
    authorized: bool
    remedy: Remedy | None
    reason: str


class HealingPolicy:
    """Maps (issue, tier) to a remedy decision."""

    def __init__(self, tier: PolicyTier = PolicyTier.CONSERVATIVE) -> None:
        self._tier = tier
        self._allowed = AUTHORIZED_REMEDIES[tier]
        self._logger = logger.bind(component="healing_policy", tier=tier.value)

    @property
    def tier(self) -> PolicyTier:
        return self._tier

    def allows(self, remedy: Remedy) -> bool:
        return remedy in self._allowed

    def evaluate(self, issue: Issue) -> PolicyDecision:
        if not issue.actionable:
            return PolicyDecision(False, None, "informational issue")

        ladder = REMEDY_LADDER.get(issue.category, ())
        if not ladder:
            return PolicyDecision(False, None, f"no remedy defined for {issue.category.value}")

        for remedy in ladder:
            if remedy in self._allowed:
                return PolicyDecision(True, remedy, f"{remedy.value} permitted by {self._tier.value}")

        needed = ", ".join(r.value for r in ladder)
        self._logger.debug(
            "remedy_not_authorized",
            issue=issue.id,
            category=issue.category.value,
            candidates=needed,
        )
        return PolicyDecision(
            False,
            ladder[0],
            f"policy {self._tier.value} does not authorize {needed}",
        )
