"""ReplGuard — shared data contracts."""

from replguard.primitives.common import FrozenModel, ReplGuardModel, new_id, utc_now
from replguard.primitives.fleet import (
    Node,
    NodeStatus,
    PartnerLink,
    ScopeKind,
    ScopeSelector,
    Snapshot,
)
from replguard.primitives.issue import (
    Issue,
    IssueCategory,
    IssueSeverity,
    issue_fingerprint,
)

__all__ = [
    "FrozenModel",
    "Issue",
    "IssueCategory",
    "IssueSeverity",
    "Node",
    "NodeStatus",
    "PartnerLink",
    "ReplGuardModel",
    "ScopeKind",
    "ScopeSelector",
    "Snapshot",
    "issue_fingerprint",
    "new_id",
    "utc_now",
]
