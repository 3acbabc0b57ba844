"""
ReplGuard — Healing Engine

Drives each actionable issue through the healing state machine:

  Detected → Evaluated → {Skipped | Authorized}
           → Applying → Verifying → {Committed | RolledBack | FailedNoRollback}

plus two terminal side exits from Authorized: Previewed (dry run) and
Escalated (escalate-no-op remedy).

Every remote call (capture, apply, verification re-fetch, restore) runs
under the shared backoff executor with a per-call timeout. Within one
node, actions run strictly one after another; nodes are healed
concurrently through the run's worker pool.

The engine never raises for a node-scoped failure. Whatever happens,
the action is left in a terminal state with its error recorded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, NamedTuple, TypeVar

import structlog

from replguard.core.backoff import describe_failure
from replguard.core.errors import BackoffError, RollbackError, TransientRemoteError
from replguard.core.pool import NOT_RUN, WorkerPool
from replguard.primitives.fleet import Node, Snapshot
from replguard.primitives.issue import Issue
from replguard.systems.bus.types import RunEventType
from replguard.systems.healing.policy import HealingPolicy
from replguard.systems.healing.types import (
    ActionOutcome,
    HealingAction,
    HealingState,
    Remedy,
    StateTransition,
    VerificationResult,
)

if TYPE_CHECKING:
    from replguard.clients.interfaces import RepairActuator
    from replguard.core.backoff import BackoffExecutor
    from replguard.systems.bus.event_bus import RunEventBus
    from replguard.systems.collector.service import SnapshotCollector
    from replguard.systems.detection.detector import IssueDetector

logger = structlog.get_logger("replguard.systems.healing")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class HealingTarget(NamedTuple):
    """One node's worth of work for the engine."""

    node: Node
    issues: list[Issue]
    snapshot: Snapshot | None = None  # The audit snapshot the issues came from


class HealingEngine:
    """Policy-gated, verified, reversible remediation."""

    def __init__(
        self,
        actuator: RepairActuator,
        collector: SnapshotCollector,
        detector: IssueDetector,
        executor: BackoffExecutor,
        policy: HealingPolicy,
        *,
        dry_run: bool = False,
        rollback_enabled: bool = True,
        verify_wait_s: float = 30.0,
        call_timeout_s: float = 30.0,
        bus: RunEventBus | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._actuator = actuator
        self._collector = collector
        self._detector = detector
        self._executor = executor
        self._policy = policy
        self._dry_run = dry_run
        self._rollback_enabled = rollback_enabled
        self._verify_wait_s = verify_wait_s
        self._call_timeout_s = call_timeout_s
        self._bus = bus
        self._sleep = sleep
        self._logger = logger.bind(component="healing_engine", policy=policy.tier.value)

        # Issue ids already handled this run
        self._acted: set[str] = set()

        # Metrics
        self._outcomes: dict[ActionOutcome, int] = {o: 0 for o in ActionOutcome}
        self._remote_mutations: int = 0

    @property
    def policy(self) -> HealingPolicy:
        return self._policy

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def begin_run(self) -> None:
        """Reset per-run bookkeeping."""
        self._acted.clear()

    # ─── Fleet ───────────────────────────────────────────────────────

    async def heal_all(
        self,
        targets: Mapping[str, HealingTarget],
        pool: WorkerPool,
    ) -> dict[str, list[HealingAction] | None]:
        """
        Heal every target node, at most ``pool.size`` at once.

        A value of None means the node's task never ran (cancelled run).
        """
        factories = {
            name: (lambda t=target: self.heal_node(t.node, t.issues, t.snapshot))
            for name, target in targets.items()
        }
        raw = await pool.map(factories)

        results: dict[str, list[HealingAction] | None] = {}
        for name, outcome in raw.items():
            if outcome is NOT_RUN:
                results[name] = None
            elif isinstance(outcome, BaseException):
                self._logger.error("heal_node_task_error", node=name, error=str(outcome))
                results[name] = []
            else:
                results[name] = outcome
        return results

    # ─── Node ────────────────────────────────────────────────────────

    async def heal_node(
        self,
        node: Node,
        issues: list[Issue],
        snapshot: Snapshot | None = None,
    ) -> list[HealingAction]:
        """Handle one node's issues in order, one at a time."""
        actions: list[HealingAction] = []
        latest = snapshot
        # Set once a remedy on this node has been verified
        verified: Snapshot | None = None

        for issue in issues:
            if issue.id in self._acted:
                self._logger.debug("issue_already_handled", node=node.name, issue=issue.id)
                continue
            self._acted.add(issue.id)

            action = HealingAction(
                issue=issue,
                policy=self._policy.tier,
                dry_run=self._dry_run,
                pre_action_snapshot=latest,
            )
            action.history.append(StateTransition(state=HealingState.DETECTED, at=issue.detected_at))
            actions.append(action)

            fresh = await self._handle(action, node, verified)
            if fresh is not None:
                latest = verified = fresh

        return actions

    async def _handle(
        self,
        action: HealingAction,
        node: Node,
        verified: Snapshot | None,
    ) -> Snapshot | None:
        """Run one action to a terminal state. Returns the verification snapshot, if any."""
        decision = self._policy.evaluate(action.issue)
        action.remedy = decision.remedy
        action.reason = decision.reason
        action.transition(HealingState.EVALUATED, decision.reason)
        await self._publish(RunEventType.HEALING_DECIDED, action, authorized=decision.authorized)

        if not decision.authorized:
            action.transition(HealingState.SKIPPED, decision.reason)
            self._finish(action)
            return None

        action.transition(HealingState.AUTHORIZED)

        if verified is not None and not self._detector.reproduces(action.issue, verified):
            action.cleared_by_prior = True
            action.transition(HealingState.SKIPPED, "cleared by an earlier remedy on this node")
            self._finish(action)
            return None

        if self._dry_run:
            action.would_apply = True
            action.transition(HealingState.PREVIEWED, f"would apply {decision.remedy}")
            self._finish(action)
            return None

        if decision.remedy == Remedy.ESCALATE_NO_OP:
            action.transition(HealingState.ESCALATED, "handed to operators")
            await self._publish(RunEventType.HEALING_ESCALATED, action)
            self._finish(action)
            return None

        return await self._apply_and_verify(action, node)

    async def _apply_and_verify(self, action: HealingAction, node: Node) -> Snapshot | None:
        assert action.remedy is not None
        remedy = action.remedy

        # 1. Capture. Without a pre-action state there is nothing to roll back to.
        try:
            action.pre_action_state = await self._call(
                f"capture_state:{node.name}",
                lambda: self._actuator.capture_state(node),
            )
        except BackoffError as exc:
            action.error = f"state capture failed: {describe_failure(exc)['error']}"
            action.transition(HealingState.FAILED_NO_ROLLBACK, "remedy not applied")
            await self._publish(RunEventType.HEALING_FAILED, action)
            self._finish(action)
            return None

        # 2. Apply
        action.transition(HealingState.APPLYING)
        self._remote_mutations += 1
        try:
            await self._call(
                f"apply:{remedy.value}:{node.name}",
                lambda: self._actuator.apply(node, remedy, dict(action.issue.detail)),
                stoppable=False,
            )
        except BackoffError as exc:
            action.error = f"apply failed: {describe_failure(exc)['error']}"
            await self._rollback_or_fail(action, node, "apply failed")
            return None
        await self._publish(RunEventType.HEALING_APPLIED, action)

        # 3. Verify
        action.transition(HealingState.VERIFYING)
        if self._verify_wait_s > 0:
            await self._sleep(self._verify_wait_s)
        result = await self._collector.collect_one(node, stoppable=False)
        fresh = result if isinstance(result, Snapshot) else result.to_snapshot()

        reproduced = self._detector.reproduces(action.issue, fresh)
        action.verification = VerificationResult(
            reproduced=reproduced,
            node_reachable=fresh.reachable,
            remaining_issues=[i.fingerprint for i in self._detector.detect(fresh)],
        )

        if not reproduced:
            action.transition(HealingState.COMMITTED)
            await self._publish(RunEventType.HEALING_COMMITTED, action)
            self._finish(action)
            return fresh

        action.error = "issue still reproduces after remedy"
        await self._rollback_or_fail(action, node, "verification failed")
        if action.state == HealingState.ROLLED_BACK:
            # The restore undid whatever the fresh snapshot shows
            return None
        return fresh

    async def _rollback_or_fail(self, action: HealingAction, node: Node, why: str) -> None:
        if not self._rollback_enabled:
            action.transition(HealingState.FAILED_NO_ROLLBACK, f"{why}; rollback disabled")
            await self._publish(RunEventType.HEALING_FAILED, action)
            self._finish(action)
            return

        try:
            await self._restore(node, action.pre_action_state)
        except RollbackError as exc:
            action.rollback_error = str(exc)
            action.transition(HealingState.FAILED_NO_ROLLBACK, f"{why}; rollback failed")
            await self._publish(RunEventType.HEALING_FAILED, action)
            self._finish(action)
            return

        action.transition(HealingState.ROLLED_BACK, why)
        await self._publish(RunEventType.HEALING_ROLLED_BACK, action)
        self._finish(action)

    async def _restore(self, node: Node, state: Any) -> None:
        """Hand the captured blob back, unchanged. Raises RollbackError."""
        try:
            await self._call(
                f"restore:{node.name}",
                lambda: self._actuator.restore(node, state),
                stoppable=False,
            )
        except BackoffError as exc:
            raise RollbackError(
                f"restore failed on {node.name}: {describe_failure(exc)['error']}",
                node=node.name,
                attempts=exc.attempts,
            ) from exc

    # ─── Helpers ─────────────────────────────────────────────────────

    async def _call(
        self,
        name: str,
        factory: Callable[[], Awaitable[T]],
        stoppable: bool = True,
    ) -> T:
        """One actuator call under the per-call timeout and the backoff executor."""

        async def _timed() -> T:
            try:
                return await asyncio.wait_for(factory(), timeout=self._call_timeout_s)
            except TimeoutError as exc:
                raise TransientRemoteError(
                    f"{name} timed out after {self._call_timeout_s}s"
                ) from exc

        return await self._executor.execute(_timed, name=name, stoppable=stoppable)

    def _finish(self, action: HealingAction) -> None:
        self._outcomes[action.outcome] += 1
        failed = action.outcome in (ActionOutcome.FAILED, ActionOutcome.ROLLED_BACK)
        log = self._logger.warning if failed else self._logger.info
        log(
            "healing_action_finished",
            node=action.node,
            issue=action.issue.id,
            category=action.issue.category.value,
            remedy=action.remedy.value if action.remedy else None,
            state=action.state.value,
            outcome=action.outcome.value,
            error=action.error or None,
            rollback_error=action.rollback_error or None,
        )

    async def _publish(self, event_type: RunEventType, action: HealingAction, **extra: Any) -> None:
        if self._bus is None:
            return
        await self._bus.publish(
            event_type,
            source="healing",
            node=action.node,
            action_id=action.id,
            issue_id=action.issue.id,
            category=action.issue.category.value,
            remedy=action.remedy.value if action.remedy else None,
            state=action.state.value,
            reason=action.reason,
            error=action.error,
            **extra,
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "remote_mutations": self._remote_mutations,
            **{f"outcome_{o.value}": n for o, n in self._outcomes.items()},
        }
