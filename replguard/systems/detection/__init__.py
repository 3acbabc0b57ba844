"""
ReplGuard — Issue Detector

Snapshot → ordered, classified issues.
"""

from replguard.systems.detection.codes import ERROR_CODES, ErrorCodeInfo
from replguard.systems.detection.detector import IssueDetector, issue_sort_key
from replguard.systems.detection.rules import (
    BaseIssueRule,
    ConsecutiveFailureRule,
    ErrorCodeRule,
    StalenessRule,
)

__all__ = [
    "ERROR_CODES",
    "BaseIssueRule",
    "ConsecutiveFailureRule",
    "ErrorCodeInfo",
    "ErrorCodeRule",
    "IssueDetector",
    "StalenessRule",
    "issue_sort_key",
]
