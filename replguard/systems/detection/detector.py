"""
ReplGuard — Issue Detector

Pure mapping from one snapshot to an ordered list of classified issues.

An unreachable node yields exactly one Critical Unreachable issue and
nothing else: no latency or staleness judgement is meaningful without
data. Reachable snapshots are passed through every rule.

Output order is deterministic: severity first (Critical → Medium), then
category precedence, then partner name.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

import structlog

from replguard.primitives.common import utc_now
from replguard.primitives.fleet import Snapshot
from replguard.primitives.issue import Issue, IssueCategory, IssueSeverity
from replguard.systems.detection.rules import (
    BaseIssueRule,
    ConsecutiveFailureRule,
    ErrorCodeRule,
    StalenessRule,
)

logger = structlog.get_logger("replguard.systems.detection")

Clock = Callable[[], datetime]

# Precedence when several categories share a severity
CATEGORY_PRECEDENCE: dict[IssueCategory, int] = {
    IssueCategory.UNREACHABLE: 0,
    IssueCategory.DEGRADED: 1,
    IssueCategory.VERY_STALE_REPLICATION: 2,
    IssueCategory.STALE_REPLICATION: 3,
    IssueCategory.CRITICAL_FAILURE: 4,
    IssueCategory.HIGH_SEVERITY_FAILURE: 5,
    IssueCategory.MEDIUM_SEVERITY_FAILURE: 6,
    IssueCategory.CUSTOM: 7,
}


def issue_sort_key(issue: Issue) -> tuple[int, int, str, str]:
    return (
        issue.severity.rank,
        CATEGORY_PRECEDENCE[issue.category],
        issue.partner.lower(),
        issue.fingerprint,
    )


class IssueDetector:
    """Runs the built-in rules plus any injected custom rules."""

    def __init__(
        self,
        failure_threshold: int = 3,
        stale_hours: float = 24.0,
        very_stale_hours: float = 48.0,
        extra_rules: Iterable[BaseIssueRule] = (),
        clock: Clock = utc_now,
    ) -> None:
        self._rules: list[BaseIssueRule] = [
            ConsecutiveFailureRule(failure_threshold),
            StalenessRule(stale_hours, very_stale_hours),
            ErrorCodeRule(),
            *extra_rules,
        ]
        self._clock = clock
        self._logger = logger.bind(component="issue_detector")

    @property
    def rules(self) -> list[BaseIssueRule]:
        return list(self._rules)

    def detect(self, snapshot: Snapshot, now: datetime | None = None) -> list[Issue]:
        """Classify one snapshot."""
        at = now or self._clock()

        if not snapshot.reachable:
            return [Issue.build(
                snapshot.node,
                IssueCategory.UNREACHABLE,
                IssueSeverity.CRITICAL,
                f"Node {snapshot.node} did not respond"
                + (f": {snapshot.error_message}" if snapshot.error_message else ""),
                detected_at=at,
                error_codes=list(snapshot.error_codes),
            )]

        issues: list[Issue] = []
        for rule in self._rules:
            try:
                found = rule.evaluate(snapshot, at)
            except Exception as exc:
                # A broken custom rule must not hide the built-in findings
                self._logger.error(
                    "rule_evaluation_failed",
                    rule=rule.rule_name,
                    node=snapshot.node,
                    error=str(exc),
                )
                continue
            issues.extend(found)

        issues.sort(key=issue_sort_key)
        return issues

    def reproduces(self, issue: Issue, snapshot: Snapshot) -> bool:
        """
        Does ``issue`` still show up in a fresh snapshot of its node?

        A node that went dark counts as reproducing (the problem got
        worse), and a stale link that crossed into very-stale, or back,
        is the same problem.
        """
        if not snapshot.reachable:
            return True
        for fresh in self.detect(snapshot):
            if fresh.fingerprint == issue.fingerprint:
                return True
            if (
                issue.category in _STALENESS
                and fresh.category in _STALENESS
                and fresh.partner.lower() == issue.partner.lower()
            ):
                return True
        return False


_STALENESS: frozenset[IssueCategory] = frozenset({
    IssueCategory.STALE_REPLICATION,
    IssueCategory.VERY_STALE_REPLICATION,
})
