"""
ReplGuard — Detection Rules

Each rule is a stateless observer of one class of replication problem.
Rules are evaluated independently, so one snapshot can yield several
issues from several rules.

Built-in rules:
  1. ConsecutiveFailureRule — failure counter over threshold → Degraded
  2. StalenessRule          — last success > 24h / > 48h → Stale / VeryStale
  3. ErrorCodeRule          — per-partner error codes → table severity

Unreachability is not a rule: the detector short-circuits on it before
any rule runs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from replguard.primitives.fleet import Snapshot
from replguard.primitives.issue import Issue, IssueCategory, IssueSeverity
from replguard.systems.detection import codes


class BaseIssueRule(ABC):
    """
    Strategy base class for detection rules.

    Contract:
    - ``rule_name`` is a stable identifier, recorded in every issue's detail.
    - ``evaluate`` is pure: the same snapshot and clock reading always
      yield the same issues (ids and timestamps aside).
    - Rules only see reachable snapshots.
    """

    @property
    @abstractmethod
    def rule_name(self) -> str: ...

    @abstractmethod
    def evaluate(self, snapshot: Snapshot, now: datetime) -> list[Issue]: ...


class ConsecutiveFailureRule(BaseIssueRule):
    """A link that has failed more than ``threshold`` times in a row."""

    def __init__(self, threshold: int = 3) -> None:
        self._threshold = threshold

    @property
    def rule_name(self) -> str:
        return "consecutive_failures"

    def evaluate(self, snapshot: Snapshot, now: datetime) -> list[Issue]:
        issues: list[Issue] = []
        for link in snapshot.partners:
            if link.consecutive_failures > self._threshold:
                issues.append(Issue.build(
                    snapshot.node,
                    IssueCategory.DEGRADED,
                    IssueSeverity.HIGH,
                    (
                        f"Replication from {link.partner} has failed "
                        f"{link.consecutive_failures} consecutive times"
                    ),
                    partner=link.partner,
                    detected_at=now,
                    rule=self.rule_name,
                    naming_context=link.naming_context,
                    consecutive_failures=link.consecutive_failures,
                    threshold=self._threshold,
                ))
        return issues


class StalenessRule(BaseIssueRule):
    """Time since the last successful inbound sync, per partner link."""

    def __init__(self, stale_hours: float = 24.0, very_stale_hours: float = 48.0) -> None:
        self._stale = timedelta(hours=stale_hours)
        self._very_stale = timedelta(hours=very_stale_hours)

    @property
    def rule_name(self) -> str:
        return "staleness"

    def evaluate(self, snapshot: Snapshot, now: datetime) -> list[Issue]:
        issues: list[Issue] = []
        for link in snapshot.partners:
            # A link that never succeeded has no age; its error code speaks for it
            if link.last_success is None:
                continue
            age = now - link.last_success
            hours = round(age.total_seconds() / 3600.0, 1)

            if age > self._very_stale:
                category, severity = IssueCategory.VERY_STALE_REPLICATION, IssueSeverity.HIGH
            elif age > self._stale:
                category, severity = IssueCategory.STALE_REPLICATION, IssueSeverity.MEDIUM
            else:
                continue

            issues.append(Issue.build(
                snapshot.node,
                category,
                severity,
                f"No successful replication from {link.partner} for {hours}h",
                partner=link.partner,
                detected_at=now,
                rule=self.rule_name,
                naming_context=link.naming_context,
                hours_since_success=hours,
                last_success=link.last_success.isoformat(),
            ))
        return issues


class ErrorCodeRule(BaseIssueRule):
    """Last error code reported on each partner link."""

    @property
    def rule_name(self) -> str:
        return "error_codes"

    def evaluate(self, snapshot: Snapshot, now: datetime) -> list[Issue]:
        issues: list[Issue] = []
        for link in snapshot.partners:
            code = link.last_error_code
            if not code:
                continue

            info = codes.lookup(code)
            if info is None:
                issues.append(Issue.build(
                    snapshot.node,
                    IssueCategory.MEDIUM_SEVERITY_FAILURE,
                    IssueSeverity.MEDIUM,
                    f"Unrecognised replication error {code} from {link.partner}",
                    partner=link.partner,
                    code=code,
                    actionable=False,
                    detected_at=now,
                    rule=self.rule_name,
                    naming_context=link.naming_context,
                    raw_code=code,
                ))
                continue

            issues.append(Issue.build(
                snapshot.node,
                codes.SEVERITY_CATEGORY[info.severity],
                info.severity,
                f"Replication from {link.partner} failing with {code} ({info.summary})",
                partner=link.partner,
                code=code,
                detected_at=now,
                rule=self.rule_name,
                naming_context=link.naming_context,
                symbol=info.symbol,
            ))
        return issues
