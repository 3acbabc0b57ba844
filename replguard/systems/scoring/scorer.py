"""
ReplGuard — Health Scorer

Pure function over one run's snapshots and issues.

Start at 100 and subtract:
  - 10 per unreachable node
  -  5 per degraded node (a node with a Degraded issue)
  -  3 / 2 / 1 per Critical / High / Medium issue
  -  1 / 2 per Stale / VeryStale issue, which replaces the severity
       penalty for those two categories

then clamp to [0, 100]. Every term is non-negative, so adding an issue
can never raise the score.
"""

from __future__ import annotations

from collections.abc import Iterable

from replguard.primitives.fleet import Snapshot
from replguard.primitives.issue import Issue, IssueCategory, IssueSeverity
from replguard.systems.scoring.types import HealthScore

UNREACHABLE_NODE_PENALTY = 10
DEGRADED_NODE_PENALTY = 5

SEVERITY_PENALTIES: dict[IssueSeverity, int] = {
    IssueSeverity.CRITICAL: 3,
    IssueSeverity.HIGH: 2,
    IssueSeverity.MEDIUM: 1,
    IssueSeverity.LOW: 0,
}

# Categories penalised by a fixed amount instead of by severity
CATEGORY_PENALTIES: dict[IssueCategory, int] = {
    IssueCategory.STALE_REPLICATION: 1,
    IssueCategory.VERY_STALE_REPLICATION: 2,
}

# Descending breakpoints; first match wins
GRADE_BREAKPOINTS: tuple[tuple[int, str], ...] = (
    (95, "A+"),
    (90, "A"),
    (85, "B+"),
    (80, "B"),
    (75, "C+"),
    (70, "C"),
    (60, "D"),
)


def grade_for(value: int) -> str:
    for floor, grade in GRADE_BREAKPOINTS:
        if value >= floor:
            return grade
    return "F"


class HealthScorer:
    """Deterministic and idempotent: identical inputs give identical scores."""

    def score(
        self,
        snapshots: Iterable[Snapshot],
        issues: Iterable[Issue],
    ) -> HealthScore:
        snapshot_list = list(snapshots)
        issue_list = list(issues)

        unreachable_nodes = {s.node.lower() for s in snapshot_list if not s.reachable}
        unreachable_nodes |= {
            i.node.lower() for i in issue_list if i.category == IssueCategory.UNREACHABLE
        }
        degraded_nodes = {
            i.node.lower() for i in issue_list if i.category == IssueCategory.DEGRADED
        }

        penalties: dict[str, int] = {
            "unreachable_nodes": UNREACHABLE_NODE_PENALTY * len(unreachable_nodes),
            "degraded_nodes": DEGRADED_NODE_PENALTY * len(degraded_nodes),
            "critical_issues": 0,
            "high_issues": 0,
            "medium_issues": 0,
            "stale": 0,
            "very_stale": 0,
        }
        for issue in issue_list:
            if issue.category == IssueCategory.STALE_REPLICATION:
                penalties["stale"] += CATEGORY_PENALTIES[issue.category]
            elif issue.category == IssueCategory.VERY_STALE_REPLICATION:
                penalties["very_stale"] += CATEGORY_PENALTIES[issue.category]
            elif issue.severity != IssueSeverity.LOW:
                penalties[f"{issue.severity.value}_issues"] += SEVERITY_PENALTIES[issue.severity]

        value = max(0, min(100, 100 - sum(penalties.values())))
        nodes = {s.node.lower() for s in snapshot_list} | {i.node.lower() for i in issue_list}

        return HealthScore(
            value=value,
            grade=grade_for(value),
            penalties=penalties,
            nodes_scored=len(nodes),
            issues_scored=len(issue_list),
        )
