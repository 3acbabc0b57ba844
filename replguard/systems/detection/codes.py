"""
ReplGuard — Replication Error Code Table

Fixed mapping of directory replication error codes to severity.
Unknown codes are Medium, informational, and keep the raw code in the
issue detail.
"""

from __future__ import annotations

from typing import NamedTuple

from replguard.primitives.issue import IssueCategory, IssueSeverity


class ErrorCodeInfo(NamedTuple):
    severity: IssueSeverity
    symbol: str
    summary: str


ERROR_CODES: dict[int, ErrorCodeInfo] = {
    # ── Critical: replication is blocked and will not self-recover ──
    8614: ErrorCodeInfo(
        IssueSeverity.CRITICAL,
        "ERROR_DS_REPL_LIFETIME_EXCEEDED",
        "partner has not replicated for longer than the tombstone lifetime",
    ),
    8606: ErrorCodeInfo(
        IssueSeverity.CRITICAL,
        "ERROR_DS_DRA_MISSING_PARENT",
        "insufficient attributes to create object (lingering objects)",
    ),
    8456: ErrorCodeInfo(
        IssueSeverity.CRITICAL,
        "ERROR_DS_DRA_SOURCE_DISABLED",
        "source server is currently rejecting replication requests",
    ),
    8457: ErrorCodeInfo(
        IssueSeverity.CRITICAL,
        "ERROR_DS_DRA_SINK_DISABLED",
        "destination server is currently rejecting replication requests",
    ),
    8451: ErrorCodeInfo(
        IssueSeverity.CRITICAL,
        "ERROR_DS_DRA_DB_ERROR",
        "replication operation encountered a database error",
    ),
    # ── High: partner unreachable or refusing, repeated attempts failing ──
    1722: ErrorCodeInfo(IssueSeverity.HIGH, "RPC_S_SERVER_UNAVAILABLE", "RPC server is unavailable"),
    1256: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_NO_NETWORK", "remote system is not available"),
    1908: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_DOMAIN_CONTROLLER_NOT_FOUND", "could not find the domain controller"),
    8524: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_DS_DNS_LOOKUP_FAILURE", "DNS lookup failure for replication partner"),
    8453: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_DS_DRA_ACCESS_DENIED", "replication access was denied"),
    1396: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_WRONG_TARGET_NAME", "logon failure: target account name is incorrect"),
    5: ErrorCodeInfo(IssueSeverity.HIGH, "ERROR_ACCESS_DENIED", "access is denied"),
    # ── Medium: usually transient, worth watching ──
    1818: ErrorCodeInfo(IssueSeverity.MEDIUM, "RPC_S_CALL_CANCELLED", "remote procedure call was cancelled"),
    1727: ErrorCodeInfo(IssueSeverity.MEDIUM, "RPC_S_CALL_FAILED_DNE", "remote procedure call failed and did not execute"),
    8464: ErrorCodeInfo(IssueSeverity.MEDIUM, "ERROR_DS_DRA_INCOMPATIBLE_PARTIAL_SET", "synchronization attempt failed"),
    8545: ErrorCodeInfo(IssueSeverity.MEDIUM, "ERROR_DS_DRA_OBJ_NC_MISMATCH", "replication update could not be applied"),
}

SEVERITY_CATEGORY: dict[IssueSeverity, IssueCategory] = {
    IssueSeverity.CRITICAL: IssueCategory.CRITICAL_FAILURE,
    IssueSeverity.HIGH: IssueCategory.HIGH_SEVERITY_FAILURE,
    IssueSeverity.MEDIUM: IssueCategory.MEDIUM_SEVERITY_FAILURE,
    IssueSeverity.LOW: IssueCategory.MEDIUM_SEVERITY_FAILURE,
}


def lookup(code: int) -> ErrorCodeInfo | None:
    return ERROR_CODES.get(code)
