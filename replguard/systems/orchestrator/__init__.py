"""
ReplGuard — Run Orchestrator

Composes collection, detection, scoring and healing into audit / repair /
verify runs with a single outcome classification.
"""

from replguard.systems.orchestrator.service import RunOrchestrator, classify_outcome
from replguard.systems.orchestrator.types import (
    NodeResult,
    NodeState,
    RunMode,
    RunOutcome,
    RunSummary,
    VerificationRecord,
)

__all__ = [
    "NodeResult",
    "NodeState",
    "RunMode",
    "RunOrchestrator",
    "RunOutcome",
    "RunSummary",
    "VerificationRecord",
    "classify_outcome",
]
