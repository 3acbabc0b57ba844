"""
ReplGuard — Healing Engine

Policy-gated remediation with verification and rollback.
"""

from replguard.systems.healing.engine import HealingEngine, HealingTarget
from replguard.systems.healing.policy import (
    AUTHORIZED_REMEDIES,
    REMEDY_LADDER,
    HealingPolicy,
    PolicyDecision,
)
from replguard.systems.healing.types import (
    ActionOutcome,
    HealingAction,
    HealingState,
    Remedy,
    VerificationResult,
)

__all__ = [
    "AUTHORIZED_REMEDIES",
    "REMEDY_LADDER",
    "ActionOutcome",
    "HealingAction",
    "HealingEngine",
    "HealingPolicy",
    "HealingState",
    "HealingTarget",
    "PolicyDecision",
    "Remedy",
    "VerificationResult",
]
