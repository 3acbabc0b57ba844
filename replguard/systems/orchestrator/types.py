"""
ReplGuard — Run Orchestrator Types

The run-level summary handed to reporters and notifiers, and the
outcome classification consumed by the invoking surface.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
import enum
from typing import Any

from pydantic import Field

from replguard.config import PolicyTier
from replguard.primitives.common import FrozenModel, ReplGuardModel, utc_now
from replguard.primitives.fleet import ScopeSelector
from replguard.primitives.issue import Issue, IssueSeverity
from replguard.systems.healing.types import ActionOutcome, HealingAction, HealingState
from replguard.systems.scoring.types import HealthScore


class RunMode(enum.StrEnum):
    AUDIT = "audit"
    REPAIR = "repair"
    VERIFY = "verify"
    AUDIT_REPAIR_VERIFY = "audit-repair-verify"


class NodeState(enum.StrEnum):
    """Terminal state of one node in one run."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"
    REPAIRED = "repaired"
    SKIPPED = "skipped"  # Recently healthy per the delta cache
    NOT_EVALUATED = "not_evaluated"  # Run cancelled before the node was polled


class RunOutcome(enum.IntEnum):
    """
    Mutually exclusive run classification. The value is the process exit
    code, and a larger value is worse, so the worst-case outcome is max().
    """

    HEALTHY = 0  # Healthy or fully repaired
    ISSUES_REMAIN = 2
    UNREACHABLE = 3  # One or more nodes unreachable
    INTERNAL_ERROR = 4  # Unexpected internal error

    @property
    def label(self) -> str:
        return _OUTCOME_LABELS[self]


_OUTCOME_LABELS: dict[RunOutcome, str] = {
    RunOutcome.HEALTHY: "Healthy or fully repaired",
    RunOutcome.ISSUES_REMAIN: "Issues remain",
    RunOutcome.UNREACHABLE: "One or more nodes unreachable",
    RunOutcome.INTERNAL_ERROR: "Unexpected internal error",
}


class NodeResult(ReplGuardModel):
    """One row per node in the summary. Every node in scope appears exactly once."""

    node: str
    site: str = ""
    state: NodeState
    issue_count: int = 0
    remaining_issue_count: int = 0
    action_ids: list[str] = Field(default_factory=list)
    error: str = ""


class VerificationRecord(FrozenModel):
    """Did a previously reported issue still reproduce?"""

    issue: Issue
    resolved: bool
    node_reachable: bool = True
    checked_at: datetime = Field(default_factory=utc_now)


class RunSummary(ReplGuardModel):
    """Everything one run found and did."""

    run_id: str
    mode: RunMode
    scope: ScopeSelector
    policy: PolicyTier
    dry_run: bool = False

    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    elapsed_s: float = 0.0

    outcome: RunOutcome = RunOutcome.HEALTHY
    error: str = ""
    cancelled: bool = False
    cancel_reason: str = ""
    cache_degraded: bool = False
    short_circuited: bool = False  # Combined mode stopped after a clean audit

    nodes: list[NodeResult] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)
    remaining_issues: list[Issue] = Field(default_factory=list)
    actions: list[HealingAction] = Field(default_factory=list)
    verifications: list[VerificationRecord] = Field(default_factory=list)

    score: HealthScore | None = None
    post_repair_score: HealthScore | None = None

    # ─── Derived views ───────────────────────────────────────────────

    @property
    def counts_by_state(self) -> dict[str, int]:
        return dict(Counter(n.state.value for n in self.nodes))

    @property
    def counts_by_severity(self) -> dict[str, int]:
        counts = Counter(i.severity.value for i in self.issues)
        return {s.value: counts.get(s.value, 0) for s in IssueSeverity}

    @property
    def counts_by_outcome(self) -> dict[str, int]:
        return dict(Counter(a.outcome.value for a in self.actions))

    @property
    def previews(self) -> list[HealingAction]:
        """Dry-run decisions that would have been applied."""
        return [a for a in self.actions if a.would_apply]

    @property
    def escalations(self) -> list[HealingAction]:
        return [a for a in self.actions if a.state == HealingState.ESCALATED]

    @property
    def unresolved_failures(self) -> list[HealingAction]:
        return [a for a in self.actions if a.outcome == ActionOutcome.FAILED]

    @property
    def final_score(self) -> HealthScore | None:
        return self.post_repair_score or self.score

    def headline(self) -> dict[str, Any]:
        """Compact view for logs and chat notifications."""
        score = self.final_score
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "outcome": self.outcome.name.lower(),
            "exit_code": int(self.outcome),
            "nodes": len(self.nodes),
            "by_state": self.counts_by_state,
            "issues": len(self.issues),
            "by_severity": self.counts_by_severity,
            "remaining_issues": len(self.remaining_issues),
            "actions": self.counts_by_outcome,
            "score": score.value if score else None,
            "grade": score.grade if score else None,
            "elapsed_s": self.elapsed_s,
        }
