"""
ReplGuard — Healing Types

Remedies, the per-action state machine, and the action record that
carries an issue from detection to a terminal outcome.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from replguard.config import PolicyTier
from replguard.core.errors import InvalidTransitionError
from replguard.primitives.common import FrozenModel, ReplGuardModel, new_id, utc_now
from replguard.primitives.fleet import Snapshot
from replguard.primitives.issue import Issue


# ─── Enums ────────────────────────────────────────────────────────


class Remedy(enum.StrEnum):
    """Concrete corrective operations the repair actuator understands."""

    FORCE_SYNC_PARTNER = "force_sync_partner"
    RESTART_REPLICATION_SERVICE = "restart_replication_service"
    CLEAR_QUEUED_FAILURE = "clear_queued_failure"
    ESCALATE_NO_OP = "escalate_no_op"  # Record and notify; touch nothing


class HealingState(enum.StrEnum):
    DETECTED = "detected"
    EVALUATED = "evaluated"
    SKIPPED = "skipped"
    AUTHORIZED = "authorized"
    PREVIEWED = "previewed"  # Dry run: decision recorded, nothing applied
    ESCALATED = "escalated"  # Escalate-no-op: handed to operators
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED_NO_ROLLBACK = "failed_no_rollback"


class ActionOutcome(enum.StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"


# Legal transitions. Anything else raises InvalidTransitionError.
ALLOWED_TRANSITIONS: dict[HealingState, frozenset[HealingState]] = {
    HealingState.DETECTED: frozenset({HealingState.EVALUATED}),
    HealingState.EVALUATED: frozenset({HealingState.SKIPPED, HealingState.AUTHORIZED}),
    HealingState.AUTHORIZED: frozenset({
        HealingState.PREVIEWED,
        HealingState.ESCALATED,
        HealingState.APPLYING,
        HealingState.SKIPPED,  # Cleared by an earlier remedy on the same node
        HealingState.FAILED_NO_ROLLBACK,  # Pre-action state could not be captured
    }),
    HealingState.APPLYING: frozenset({
        HealingState.VERIFYING,
        HealingState.ROLLED_BACK,
        HealingState.FAILED_NO_ROLLBACK,
    }),
    HealingState.VERIFYING: frozenset({
        HealingState.COMMITTED,
        HealingState.ROLLED_BACK,
        HealingState.FAILED_NO_ROLLBACK,
    }),
}

TERMINAL_STATES: frozenset[HealingState] = frozenset({
    HealingState.SKIPPED,
    HealingState.PREVIEWED,
    HealingState.ESCALATED,
    HealingState.COMMITTED,
    HealingState.ROLLED_BACK,
    HealingState.FAILED_NO_ROLLBACK,
})

_STATE_OUTCOME: dict[HealingState, ActionOutcome] = {
    HealingState.SKIPPED: ActionOutcome.SKIPPED,
    HealingState.PREVIEWED: ActionOutcome.SKIPPED,
    HealingState.ESCALATED: ActionOutcome.SKIPPED,
    HealingState.COMMITTED: ActionOutcome.SUCCESS,
    HealingState.ROLLED_BACK: ActionOutcome.ROLLED_BACK,
    HealingState.FAILED_NO_ROLLBACK: ActionOutcome.FAILED,
}


# ─── Records ──────────────────────────────────────────────────────


class StateTransition(FrozenModel):
    state: HealingState
    at: datetime = Field(default_factory=utc_now)
    note: str = ""


class VerificationResult(FrozenModel):
    """What the post-action re-snapshot showed."""

    reproduced: bool
    node_reachable: bool = True
    checked_at: datetime = Field(default_factory=utc_now)
    remaining_issues: list[str] = Field(default_factory=list)  # Fingerprints


class HealingAction(ReplGuardModel):
    """
    One remediation attempt for one issue.

    ``pre_action_state`` is the actuator's opaque blob; it is handed back
    to restore() byte-for-byte and never inspected here.
    """

    id: str = Field(default_factory=new_id)
    issue: Issue
    policy: PolicyTier
    remedy: Remedy | None = None
    state: HealingState = HealingState.DETECTED
    outcome: ActionOutcome = ActionOutcome.PENDING
    reason: str = ""

    dry_run: bool = False
    would_apply: bool = False
    # True when an earlier remedy on the same node already cleared the issue
    cleared_by_prior: bool = False

    pre_action_state: Any = None
    pre_action_snapshot: Snapshot | None = None
    verification: VerificationResult | None = None

    error: str = ""
    rollback_error: str = ""

    history: list[StateTransition] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def node(self) -> str:
        return self.issue.node

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def resolved(self) -> bool:
        """Did this action leave its issue fixed?"""
        return self.state == HealingState.COMMITTED or (
            self.state == HealingState.SKIPPED and self.cleared_by_prior
        )

    @property
    def unresolved_failure(self) -> bool:
        """A remedy ran and the node may be left in a changed state."""
        return self.state == HealingState.FAILED_NO_ROLLBACK

    def transition(self, state: HealingState, note: str = "") -> None:
        """Advance the state machine, recording the step."""
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise InvalidTransitionError(
                f"{self.state.value} -> {state.value} is not a legal transition",
                action_id=self.id,
                issue_id=self.issue.id,
            )
        self.state = state
        self.history.append(StateTransition(state=state, note=note))
        if state in TERMINAL_STATES:
            self.outcome = _STATE_OUTCOME[state]
            self.finished_at = utc_now()
