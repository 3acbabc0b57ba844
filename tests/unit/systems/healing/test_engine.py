"""
Tests for the Healing Engine state machine.

Covers:
  - Policy gating (no remote calls for skipped issues)
  - Apply → verify → commit
  - Rollback restores the exact captured state
  - Rollback disabled / rollback failing → FailedNoRollback
  - Dry-run previews
  - Escalation
  - One action per issue, sequential per node
"""

from __future__ import annotations

import pytest

from fakes import (
    FakeActuator,
    FakeDataSource,
    RecordingSleep,
    failing_snapshot,
    healthy_snapshot,
    make_node,
    rejected,
    stale_snapshot,
)
from replguard.config import PolicyTier
from replguard.core.backoff import BackoffExecutor
from replguard.core.errors import InvalidTransitionError
from replguard.core.pool import WorkerPool
from replguard.primitives.fleet import Snapshot
from replguard.primitives.issue import Issue
from replguard.systems.bus.event_bus import RunEventBus
from replguard.systems.bus.types import RunEventType
from replguard.systems.collector.service import SnapshotCollector
from replguard.systems.detection.detector import IssueDetector
from replguard.systems.healing.engine import HealingEngine, HealingTarget
from replguard.systems.healing.policy import HealingPolicy
from replguard.systems.healing.types import (
    ActionOutcome,
    HealingAction,
    HealingState,
    Remedy,
)


def _make_engine(
    source: FakeDataSource,
    actuator: FakeActuator,
    tier: PolicyTier = PolicyTier.MODERATE,
    **kwargs,
) -> HealingEngine:
    sleep = kwargs.pop("sleep", RecordingSleep())
    executor = BackoffExecutor(max_attempts=2, sleep=sleep)
    return HealingEngine(
        actuator,
        SnapshotCollector(source, executor, call_timeout_s=5.0),
        IssueDetector(),
        executor,
        HealingPolicy(tier),
        sleep=sleep,
        **kwargs,
    )


def _issues(snapshot: Snapshot) -> list[Issue]:
    return IssueDetector().detect(snapshot)


def _fixes(source: FakeDataSource):
    """on_apply hook: the remedy makes the node healthy."""

    def _apply(node, remedy):
        source.snapshots[node.name] = healthy_snapshot(node.name)

    return _apply


def _states(action: HealingAction) -> list[HealingState]:
    return [t.state for t in action.history]


class TestPolicyGate:
    @pytest.mark.asyncio
    async def test_conservative_skips_force_sync_issue_without_remote_calls(self):
        source = FakeDataSource()
        actuator = FakeActuator()
        engine = _make_engine(source, actuator, PolicyTier.CONSERVATIVE)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert len(actions) == 1
        assert actions[0].outcome == ActionOutcome.SKIPPED
        assert actions[0].state == HealingState.SKIPPED
        assert actuator.captured == []
        assert actuator.mutations == 0
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_moderate_applies_same_issue(self):
        source = FakeDataSource()
        actuator = FakeActuator(on_apply=_fixes(source))
        engine = _make_engine(source, actuator, PolicyTier.MODERATE)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert HealingState.APPLYING in _states(actions[0])
        assert actuator.applied == [("dc01", Remedy.FORCE_SYNC_PARTNER.value)]

    @pytest.mark.asyncio
    async def test_informational_issue_never_touches_node(self):
        source = FakeDataSource()
        actuator = FakeActuator()
        engine = _make_engine(source, actuator, PolicyTier.AGGRESSIVE)

        actions = await engine.heal_node(make_node("dc01"), _issues(failing_snapshot("dc01", 99999)))

        assert actions[0].outcome == ActionOutcome.SKIPPED
        assert actuator.mutations == 0


class TestApplyVerify:
    @pytest.mark.asyncio
    async def test_commit_when_issue_gone(self):
        source = FakeDataSource({"dc01": stale_snapshot("dc01")})
        actuator = FakeActuator(on_apply=_fixes(source))
        sleep = RecordingSleep()
        engine = _make_engine(source, actuator, verify_wait_s=30.0, sleep=sleep)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))
        action = actions[0]

        assert action.state == HealingState.COMMITTED
        assert action.outcome == ActionOutcome.SUCCESS
        assert action.resolved
        assert action.verification is not None
        assert action.verification.reproduced is False
        assert _states(action) == [
            HealingState.DETECTED,
            HealingState.EVALUATED,
            HealingState.AUTHORIZED,
            HealingState.APPLYING,
            HealingState.VERIFYING,
            HealingState.COMMITTED,
        ]
        assert 30.0 in sleep.delays
        assert actuator.restored == []

    @pytest.mark.asyncio
    async def test_rollback_restores_exact_captured_state(self):
        source = FakeDataSource({"dc01": stale_snapshot("dc01")})
        blob = {"replication": {"schedule": "always"}, "raw": b"\xde\xad"}
        actuator = FakeActuator(state=blob)
        engine = _make_engine(source, actuator)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))
        action = actions[0]

        assert action.state == HealingState.ROLLED_BACK
        assert action.outcome == ActionOutcome.ROLLED_BACK
        assert len(actuator.restored) == 1
        assert actuator.restored[0][1] is blob
        assert action.pre_action_state is blob
        assert action.verification.reproduced is True

    @pytest.mark.asyncio
    async def test_node_going_dark_after_remedy_rolls_back(self):
        source = FakeDataSource()
        actuator = FakeActuator()

        def _breaks(node, remedy):
            source.snapshots[node.name] = rejected("agent gone")

        actuator.on_apply = _breaks
        engine = _make_engine(source, actuator)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert actions[0].state == HealingState.ROLLED_BACK
        assert actions[0].verification.node_reachable is False

    @pytest.mark.asyncio
    async def test_rollback_disabled(self):
        source = FakeDataSource({"dc01": stale_snapshot("dc01")})
        actuator = FakeActuator()
        engine = _make_engine(source, actuator, rollback_enabled=False)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert actions[0].state == HealingState.FAILED_NO_ROLLBACK
        assert actions[0].outcome == ActionOutcome.FAILED
        assert actions[0].unresolved_failure
        assert actuator.restored == []

    @pytest.mark.asyncio
    async def test_rollback_failure_is_failed_no_rollback(self):
        source = FakeDataSource({"dc01": stale_snapshot("dc01")})
        actuator = FakeActuator(restore_error=rejected("restore refused"))
        engine = _make_engine(source, actuator)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert actions[0].state == HealingState.FAILED_NO_ROLLBACK
        assert "restore refused" in actions[0].rollback_error

    @pytest.mark.asyncio
    async def test_apply_failure_rolls_back_without_verifying(self):
        source = FakeDataSource()
        actuator = FakeActuator(apply_error=rejected("remedy refused"))
        engine = _make_engine(source, actuator)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert actions[0].state == HealingState.ROLLED_BACK
        assert HealingState.VERIFYING not in _states(actions[0])
        assert "remedy refused" in actions[0].error
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_capture_failure_applies_nothing(self):
        source = FakeDataSource()
        actuator = FakeActuator(capture_error=rejected("no state"))
        engine = _make_engine(source, actuator)

        actions = await engine.heal_node(make_node("dc01"), _issues(stale_snapshot("dc01")))

        assert actions[0].state == HealingState.FAILED_NO_ROLLBACK
        assert actuator.applied == []


class TestDryRun:
    @pytest.mark.asyncio
    async def test_nothing_reaches_applying(self):
        source = FakeDataSource()
        actuator = FakeActuator()
        engine = _make_engine(source, actuator, PolicyTier.AGGRESSIVE, dry_run=True)

        snap = Snapshot(
            node="dc01",
            partners=(
                *stale_snapshot("dc01", partner="dc02").partners,
                *failing_snapshot("dc01", 8614, partner="dc03").partners,
            ),
        )
        actions = await engine.heal_node(make_node("dc01"), _issues(snap))

        assert len(actions) == 2
        for action in actions:
            assert HealingState.APPLYING not in _states(action)
            assert action.state == HealingState.PREVIEWED
            assert action.would_apply
            assert action.outcome == ActionOutcome.SKIPPED
        assert actuator.captured == []
        assert actuator.mutations == 0


class TestEscalation:
    @pytest.mark.asyncio
    async def test_unreachable_escalated_with_event(self):
        bus = RunEventBus()
        seen = []

        async def _on_escalated(event):
            seen.append(event)

        bus.subscribe(RunEventType.HEALING_ESCALATED, _on_escalated)
        source = FakeDataSource()
        actuator = FakeActuator()
        engine = _make_engine(source, actuator, PolicyTier.CONSERVATIVE, bus=bus)

        actions = await engine.heal_node(make_node("dc01"), _issues(Snapshot.unreachable("dc01")))

        assert actions[0].state == HealingState.ESCALATED
        assert actions[0].remedy == Remedy.ESCALATE_NO_OP
        assert not actions[0].resolved
        assert actuator.mutations == 0
        assert len(seen) == 1
        assert seen[0].data["node"] == "dc01"


class TestOrdering:
    @pytest.mark.asyncio
    async def test_one_action_per_issue(self):
        source = FakeDataSource()
        actuator = FakeActuator(on_apply=_fixes(source))
        engine = _make_engine(source, actuator)
        issues = _issues(stale_snapshot("dc01"))

        first = await engine.heal_node(make_node("dc01"), issues)
        second = await engine.heal_node(make_node("dc01"), issues)

        assert len(first) == 1
        assert second == []
        engine.begin_run()
        assert len(await engine.heal_node(make_node("dc01"), issues)) == 1

    @pytest.mark.asyncio
    async def test_later_issue_cleared_by_earlier_remedy(self):
        source = FakeDataSource()
        actuator = FakeActuator(on_apply=_fixes(source))
        engine = _make_engine(source, actuator, PolicyTier.AGGRESSIVE)
        snap = Snapshot(
            node="dc01",
            partners=(
                *stale_snapshot("dc01", partner="dc02").partners,
                *failing_snapshot("dc01", 8614, partner="dc03").partners,
            ),
        )

        actions = await engine.heal_node(make_node("dc01"), _issues(snap))

        assert [a.state for a in actions] == [HealingState.COMMITTED, HealingState.SKIPPED]
        assert actions[1].cleared_by_prior
        assert all(a.resolved for a in actions)
        assert actuator.applied == [("dc01", Remedy.RESTART_REPLICATION_SERVICE.value)]

    @pytest.mark.asyncio
    async def test_rolled_back_remedy_does_not_clear_later_issue(self):
        source = FakeDataSource()

        def _clears_stale_only(node, remedy):
            source.snapshots[node.name] = failing_snapshot("dc01", 8614, partner="dc03")

        actuator = FakeActuator(on_apply=_clears_stale_only)
        engine = _make_engine(source, actuator, PolicyTier.AGGRESSIVE)
        snap = Snapshot(
            node="dc01",
            partners=(
                *stale_snapshot("dc01", partner="dc02").partners,
                *failing_snapshot("dc01", 8614, partner="dc03").partners,
            ),
        )

        actions = await engine.heal_node(make_node("dc01"), _issues(snap))

        assert actions[0].state == HealingState.ROLLED_BACK
        assert not actions[1].cleared_by_prior
        assert HealingState.APPLYING in _states(actions[1])
        assert len(actuator.applied) == 2
        assert not actions[0].resolved

    @pytest.mark.asyncio
    async def test_heal_all_marks_unrun_nodes(self):
        source = FakeDataSource()
        actuator = FakeActuator()
        engine = _make_engine(source, actuator)
        pool = WorkerPool(2)
        pool.cancel("operator_abort")

        targets = {
            "dc01": HealingTarget(make_node("dc01"), _issues(stale_snapshot("dc01"))),
            "dc02": HealingTarget(make_node("dc02"), _issues(stale_snapshot("dc02"))),
        }
        results = await engine.heal_all(targets, pool)

        assert results == {"dc01": None, "dc02": None}
        assert actuator.mutations == 0


class TestStateMachine:
    def test_illegal_transition_raises(self):
        action = HealingAction(
            issue=_issues(stale_snapshot("dc01"))[0],
            policy=PolicyTier.MODERATE,
        )
        with pytest.raises(InvalidTransitionError):
            action.transition(HealingState.COMMITTED)

    def test_terminal_state_sets_outcome(self):
        action = HealingAction(
            issue=_issues(stale_snapshot("dc01"))[0],
            policy=PolicyTier.MODERATE,
        )
        action.transition(HealingState.EVALUATED)
        action.transition(HealingState.SKIPPED)
        assert action.terminal
        assert action.outcome == ActionOutcome.SKIPPED
        assert action.finished_at is not None
        with pytest.raises(InvalidTransitionError):
            action.transition(HealingState.AUTHORIZED)
