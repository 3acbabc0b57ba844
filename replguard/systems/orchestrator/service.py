"""
ReplGuard — Run Orchestrator

Composes the engine components into one run:

  audit                Collect → Detect → Score
  repair               Collect → Detect → Heal
  verify               Re-collect → re-Detect against previously reported issues
  audit-repair-verify  all three in sequence; stops after the audit when
                       there is nothing actionable

Every node in scope ends the run with exactly one terminal state. The
run is classified by its worst node state plus any remediation left
in FailedNoRollback, and that classification is the exit code.

run() never raises. Node-scoped failures are recorded per node;
run-scoped failures (topology, cache store) end the run as
INTERNAL_ERROR with the error on the summary. Reporter and notifier
failures are logged and never touch the outcome.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from replguard.config import NotifyOn
from replguard.core.backoff import AttemptEvent, BackoffExecutor
from replguard.core.errors import CacheStoreError, TopologyResolutionError
from replguard.core.pool import WorkerPool
from replguard.primitives.common import new_id, utc_now
from replguard.primitives.fleet import Node, NodeStatus, ScopeSelector, Snapshot
from replguard.primitives.issue import Issue
from replguard.systems.bus.event_bus import RunEventBus
from replguard.systems.bus.types import RunEventType
from replguard.systems.collector.service import SnapshotCollector
from replguard.systems.collector.types import (
    CollectionError,
    CollectionFailure,
    CollectionResult,
)
from replguard.systems.detection.detector import IssueDetector
from replguard.systems.healing.engine import HealingEngine, HealingTarget
from replguard.systems.healing.policy import HealingPolicy
from replguard.systems.healing.types import HealingAction
from replguard.systems.orchestrator.types import (
    NodeResult,
    NodeState,
    RunMode,
    RunOutcome,
    RunSummary,
    VerificationRecord,
)
from replguard.systems.scoring.scorer import HealthScorer
from replguard.systems.scoring.types import HealthScore
from replguard.telemetry.metrics import MetricCollector

if TYPE_CHECKING:
    from replguard.clients.interfaces import (
        Notifier,
        RepairActuator,
        Reporter,
        ReplicationDataSource,
        ScoreHistory,
        TopologyResolver,
    )
    from replguard.config import ReplGuardConfig
    from replguard.systems.delta.cache import DeltaCache
    from replguard.systems.detection.rules import BaseIssueRule

logger = structlog.get_logger("replguard.systems.orchestrator")

SleepFn = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

_NODE_STATUS: dict[NodeState, NodeStatus] = {
    NodeState.HEALTHY: NodeStatus.HEALTHY,
    NodeState.REPAIRED: NodeStatus.HEALTHY,
    NodeState.DEGRADED: NodeStatus.DEGRADED,
    NodeState.UNREACHABLE: NodeStatus.UNREACHABLE,
}


@dataclass
class _Observation:
    """What one collection pass learned about one node."""

    node: Node
    result: CollectionResult | None = None  # None: skipped by the delta cache
    snapshot: Snapshot | None = None
    issues: list[Issue] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.result is None

    @property
    def not_evaluated(self) -> bool:
        return (
            isinstance(self.result, CollectionError)
            and self.result.failure == CollectionFailure.NOT_EVALUATED
        )

    @property
    def error(self) -> str:
        return self.result.message if isinstance(self.result, CollectionError) else ""


def classify_outcome(summary: RunSummary) -> RunOutcome:
    """Worst case wins."""
    worst = RunOutcome.HEALTHY
    for result in summary.nodes:
        if result.state == NodeState.UNREACHABLE:
            worst = max(worst, RunOutcome.UNREACHABLE)
        elif result.state in (NodeState.DEGRADED, NodeState.NOT_EVALUATED):
            worst = max(worst, RunOutcome.ISSUES_REMAIN)
    if summary.remaining_issues or summary.unresolved_failures:
        worst = max(worst, RunOutcome.ISSUES_REMAIN)
    return worst


class RunOrchestrator:
    """
    One orchestrator per process; one run at a time.

    Collaborators are injected. Everything else (executor, collector,
    detector, scorer, healing engine) is built from configuration.
    """

    def __init__(
        self,
        config: ReplGuardConfig,
        resolver: TopologyResolver,
        source: ReplicationDataSource,
        actuator: RepairActuator | None = None,
        *,
        cache: DeltaCache | None = None,
        reporters: Sequence[Reporter] = (),
        notifiers: Sequence[Notifier] = (),
        history: ScoreHistory | None = None,
        metrics: MetricCollector | None = None,
        bus: RunEventBus | None = None,
        extra_rules: Sequence[BaseIssueRule] = (),
        throttle: int | None = None,
        force_full: bool = False,
        sleep: SleepFn = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._cache = cache if config.delta.enabled else None
        self._reporters = list(reporters)
        self._notifiers = list(notifiers)
        self._history = history
        self._metrics = metrics or MetricCollector(sink=history)
        self._bus = bus or RunEventBus()
        self._throttle = throttle or config.collector.throttle
        self._force_full = force_full
        self._pool: WorkerPool | None = None
        self._logger = logger.bind(component="run_orchestrator")

        self._executor = BackoffExecutor(
            max_attempts=config.backoff.max_attempts,
            initial_delay_s=config.backoff.initial_delay_s,
            max_delay_s=config.backoff.max_delay_s,
            sleep=sleep,
            on_attempt=self._on_attempt,
        )
        self._collector = SnapshotCollector(
            source,
            self._executor,
            call_timeout_s=config.collector.call_timeout_s,
        )
        self._detector = IssueDetector(
            failure_threshold=config.detection.failure_threshold,
            stale_hours=config.detection.stale_hours,
            very_stale_hours=config.detection.very_stale_hours,
            extra_rules=extra_rules,
            clock=clock,
        )
        self._scorer = HealthScorer()
        self._engine: HealingEngine | None = None
        if actuator is not None:
            self._engine = HealingEngine(
                actuator,
                self._collector,
                self._detector,
                self._executor,
                HealingPolicy(config.healing.policy),
                dry_run=config.healing.dry_run,
                rollback_enabled=config.healing.rollback_enabled,
                verify_wait_s=config.healing.verify_wait_s,
                call_timeout_s=config.collector.call_timeout_s,
                bus=self._bus,
                sleep=sleep,
            )

    # ─── Properties ──────────────────────────────────────────────────

    @property
    def bus(self) -> RunEventBus:
        return self._bus

    @property
    def detector(self) -> IssueDetector:
        return self._detector

    @property
    def engine(self) -> HealingEngine | None:
        return self._engine

    def cancel(self, reason: str = "operator_abort") -> None:
        """Stop scheduling new per-node work in the active run."""
        if self._pool is not None:
            self._pool.cancel(reason)

    # ─── Run ─────────────────────────────────────────────────────────

    async def run(
        self,
        mode: RunMode,
        scope: ScopeSelector | None = None,
        previous_issues: Sequence[Issue] | None = None,
    ) -> RunSummary:
        """Execute one run in the given mode. Never raises."""
        scope = scope or ScopeSelector.fleet()
        run_id = new_id()
        pool = WorkerPool(self._throttle)
        self._pool = pool
        self._executor.set_stop_check(lambda: pool.cancelled)
        log = self._logger.bind(run_id=run_id, mode=mode.value)

        summary = RunSummary(
            run_id=run_id,
            mode=mode,
            scope=scope,
            policy=self._config.healing.policy,
            dry_run=self._config.healing.dry_run,
        )
        t0 = time.monotonic()
        if self._config.run.timeout_s:
            pool.cancel_after(self._config.run.timeout_s)

        await self._emit(RunEventType.RUN_STARTED, run_id=run_id, mode=mode.value, scope=scope.kind.value)
        log.info("run_started", scope=scope.kind.value, throttle=pool.size)

        fatal = ""
        try:
            if self._cache is not None:
                await self._cache.load()
                summary.cache_degraded = self._cache.degraded

            if mode == RunMode.AUDIT:
                await self._run_audit(summary, scope, pool)
            elif mode == RunMode.REPAIR:
                await self._run_repair(summary, scope, pool)
            elif mode == RunMode.VERIFY:
                await self._run_verify(summary, scope, pool, list(previous_issues or ()))
            else:
                await self._run_audit_repair_verify(summary, scope, pool)

            if self._cache is not None:
                await self._cache.flush()
        except (TopologyResolutionError, CacheStoreError) as exc:
            fatal = str(exc)
            log.error("run_aborted", error_type=type(exc).__name__, error=fatal)
        except Exception as exc:
            fatal = f"{type(exc).__name__}: {exc}"
            log.exception("run_internal_error", error=fatal)
        finally:
            pool.disarm()
            self._pool = None
            self._executor.set_stop_check(None)

        summary.cancelled = pool.cancelled
        summary.cancel_reason = pool.cancel_reason
        summary.finished_at = utc_now()
        summary.elapsed_s = round(time.monotonic() - t0, 3)
        summary.error = fatal
        summary.outcome = RunOutcome.INTERNAL_ERROR if fatal else classify_outcome(summary)

        if summary.cancelled:
            await self._emit(RunEventType.RUN_CANCELLED, run_id=run_id, reason=summary.cancel_reason)

        await self._record(summary)
        await self._deliver(summary)

        await self._emit(
            RunEventType.RUN_COMPLETED,
            run_id=run_id,
            outcome=summary.outcome.name.lower(),
            elapsed_s=summary.elapsed_s,
        )
        log.info("run_complete", **summary.headline())
        return summary

    # ─── Modes ───────────────────────────────────────────────────────

    async def _run_audit(
        self,
        summary: RunSummary,
        scope: ScopeSelector,
        pool: WorkerPool,
    ) -> list[_Observation]:
        nodes = await self._resolve(scope)
        observations = await self._observe(nodes, pool, use_cache=True)

        issues = _flatten(observations)
        summary.issues = issues
        summary.remaining_issues = list(issues)
        summary.score = self._score(observations)
        summary.nodes = [self._conclude(o, o.issues, o.issues) for o in observations]
        return observations

    async def _run_repair(self, summary: RunSummary, scope: ScopeSelector, pool: WorkerPool) -> None:
        engine = self._require_engine()
        nodes = await self._resolve(scope)
        observations = await self._observe(nodes, pool, use_cache=True)
        summary.issues = _flatten(observations)

        healed = await self._heal(engine, observations, pool)
        summary.actions = [a for actions in healed.values() if actions for a in actions]

        results: list[NodeResult] = []
        remaining: list[Issue] = []
        for obs in observations:
            actions = healed.get(obs.node.name) or []
            resolved = {a.issue.id for a in actions if a.resolved}
            left = [i for i in obs.issues if i.id not in resolved]
            remaining.extend(left)
            error = ""
            if obs.node.name in healed and healed[obs.node.name] is None:
                error = f"repair not run: {pool.cancel_reason}"
            results.append(self._conclude(obs, obs.issues, left, actions, error=error))
        summary.remaining_issues = remaining
        summary.nodes = results

    async def _run_verify(
        self,
        summary: RunSummary,
        scope: ScopeSelector,
        pool: WorkerPool,
        previous: list[Issue],
    ) -> None:
        nodes = await self._resolve(scope)
        by_name = {n.name.lower(): n for n in nodes}
        in_scope = [i for i in previous if i.node.lower() in by_name]
        if len(in_scope) < len(previous):
            self._logger.warning(
                "previous_issues_out_of_scope",
                ignored=len(previous) - len(in_scope),
            )
        if not in_scope:
            self._logger.info("nothing_to_verify", nodes=len(nodes))
        targets = _unique([by_name[i.node.lower()] for i in in_scope])

        # Verification always reads live state, never the delta cache
        observations = await self._observe(targets, pool, use_cache=False) if targets else []
        summary.issues = in_scope
        summary.score = self._score(observations)
        observed = {o.node.name: o for o in observations}

        results: list[NodeResult] = []
        remaining: list[Issue] = []
        for node in nodes:
            obs = observed.get(node.name)
            if obs is None:
                # Clean in the previous report and not re-read
                results.append(NodeResult(node=node.name, site=node.site, state=NodeState.HEALTHY))
                continue
            old = [i for i in in_scope if i.node.lower() == obs.node.name.lower()]
            left = self._check_resolution(summary, obs, old)
            remaining.extend(left)
            results.append(self._conclude(obs, old, left))
        summary.remaining_issues = remaining
        summary.nodes = results

    async def _run_audit_repair_verify(
        self,
        summary: RunSummary,
        scope: ScopeSelector,
        pool: WorkerPool,
    ) -> None:
        observations = await self._run_audit(summary, scope, pool)
        if not any(i.actionable for i in summary.issues):
            summary.short_circuited = True
            self._logger.info("no_actionable_issues_short_circuit", issues=len(summary.issues))
            return

        engine = self._require_engine()
        troubled = [o for o in observations if o.issues]
        healed = await self._heal(engine, troubled, pool)
        summary.actions = [a for actions in healed.values() if actions for a in actions]

        # Verify: re-read every node that had an issue, bypassing the cache
        fresh = await self._observe([o.node for o in troubled], pool, use_cache=False)
        fresh_by_name = {o.node.name: o for o in fresh}
        audit_results = {r.node: r for r in summary.nodes}

        results: list[NodeResult] = []
        remaining: list[Issue] = []
        post_snapshots: list[Snapshot] = []
        post_issues: list[Issue] = []
        for prior in observations:
            obs = fresh_by_name.get(prior.node.name)
            if obs is None or obs.not_evaluated:
                # No fresh read (nothing to repair, or the run stopped first);
                # the audit verdict stands
                kept = audit_results[prior.node.name]
                if obs is not None:
                    kept = kept.model_copy(update={
                        "action_ids": [a.id for a in healed.get(prior.node.name) or []],
                        "error": obs.error,
                    })
                results.append(kept)
                if prior.snapshot is not None:
                    post_snapshots.append(prior.snapshot)
                remaining.extend(prior.issues)
                post_issues.extend(prior.issues)
                continue

            left = self._check_resolution(summary, obs, prior.issues)
            if obs.snapshot is not None:
                # Anything the fresh read shows is still a problem, old or new
                current = obs.issues
                post_snapshots.append(obs.snapshot)
            else:
                current = left
            remaining.extend(current)
            post_issues.extend(current)
            results.append(
                self._conclude(obs, prior.issues, current, healed.get(prior.node.name) or [])
            )

        summary.nodes = results
        summary.remaining_issues = remaining
        summary.post_repair_score = self._scorer.score(post_snapshots, post_issues)

    # ─── Phases ──────────────────────────────────────────────────────

    async def _resolve(self, scope: ScopeSelector) -> list[Node]:
        try:
            nodes = await self._resolver.resolve(scope)
        except TopologyResolutionError:
            raise
        except Exception as exc:
            raise TopologyResolutionError(f"Topology resolution failed: {exc}") from exc
        if not nodes:
            raise TopologyResolutionError(f"No nodes resolved for {scope.kind.value} scope")
        return _unique(nodes)

    async def _observe(
        self,
        nodes: list[Node],
        pool: WorkerPool,
        use_cache: bool,
    ) -> list[_Observation]:
        """Collect and detect. One observation per node, in topology order."""
        due = nodes
        skipped: set[str] = set()
        if use_cache and self._cache is not None:
            split = self._cache.filter_due(
                nodes,
                self._config.delta.threshold_minutes,
                force_full=self._force_full,
            )
            due = split.due
            skipped = {n.name for n in split.skipped}

        collected = await self._collector.collect_all(due, pool) if due else {}

        observations: list[_Observation] = []
        for node in nodes:
            if node.name in skipped:
                observations.append(_Observation(node=node))
                await self._emit(RunEventType.NODE_SKIPPED, node=node.name)
                continue

            result = collected[node.name]
            obs = _Observation(node=node, result=result)
            if isinstance(result, Snapshot):
                obs.snapshot = result
                await self._emit(RunEventType.NODE_COLLECTED, node=node.name, reachable=result.reachable)
            elif result.failure == CollectionFailure.UNREACHABLE:
                obs.snapshot = result.to_snapshot()
                await self._emit(
                    RunEventType.COLLECTION_FAILED,
                    node=node.name,
                    error=result.message,
                    attempts=result.attempts,
                )

            if obs.snapshot is not None:
                obs.issues = self._detector.detect(obs.snapshot)
                for issue in obs.issues:
                    await self._emit(
                        RunEventType.ISSUE_DETECTED,
                        node=node.name,
                        issue_id=issue.id,
                        category=issue.category.value,
                        severity=issue.severity.value,
                    )
            observations.append(obs)

        await self._metric("nodes_requested", len(nodes))
        await self._metric("nodes_skipped", len(skipped))
        await self._metric("nodes_collected", sum(1 for o in observations if o.snapshot is not None))
        return observations

    async def _heal(
        self,
        engine: HealingEngine,
        observations: list[_Observation],
        pool: WorkerPool,
    ) -> dict[str, list[HealingAction] | None]:
        targets = {
            o.node.name: HealingTarget(
                node=o.node,
                issues=[i for i in o.issues if i.actionable],
                snapshot=o.snapshot,
            )
            for o in observations
            if any(i.actionable for i in o.issues)
        }
        if not targets:
            return {}
        engine.begin_run()
        healed = await engine.heal_all(targets, pool)
        for actions in healed.values():
            for action in actions or ():
                await self._metric("healing_actions", 1, outcome=action.outcome.value)
        return healed

    def _check_resolution(
        self,
        summary: RunSummary,
        obs: _Observation,
        previous: list[Issue],
    ) -> list[Issue]:
        """Record a verification per previous issue; return those still present."""
        if obs.snapshot is None:
            # Never read: nothing was confirmed
            return list(previous)
        left: list[Issue] = []
        for issue in previous:
            reproduced = self._detector.reproduces(issue, obs.snapshot)
            summary.verifications.append(VerificationRecord(
                issue=issue,
                resolved=not reproduced,
                node_reachable=obs.snapshot.reachable,
            ))
            if reproduced:
                left.append(issue)
        return left

    def _conclude(
        self,
        obs: _Observation,
        detected: list[Issue],
        remaining: list[Issue],
        actions: list[HealingAction] | None = None,
        error: str = "",
    ) -> NodeResult:
        """Terminal state for one node, remembered in the delta cache."""
        actions = actions or []
        if obs.skipped:
            state = NodeState.SKIPPED
        elif obs.not_evaluated:
            state = NodeState.NOT_EVALUATED
        elif obs.snapshot is not None and not obs.snapshot.reachable:
            state = NodeState.UNREACHABLE
        elif remaining:
            state = NodeState.DEGRADED
        elif detected and any(a.resolved for a in actions):
            state = NodeState.REPAIRED
        else:
            state = NodeState.HEALTHY

        status = _NODE_STATUS.get(state)
        if status is not None and self._cache is not None:
            self._cache.update(obs.node.name, status)

        return NodeResult(
            node=obs.node.name,
            site=obs.node.site,
            state=state,
            issue_count=len(detected),
            remaining_issue_count=len(remaining),
            action_ids=[a.id for a in actions],
            error=error or obs.error,
        )

    def _score(self, observations: list[_Observation]) -> HealthScore:
        snapshots = [o.snapshot for o in observations if o.snapshot is not None]
        return self._scorer.score(snapshots, _flatten(observations))

    def _require_engine(self) -> HealingEngine:
        if self._engine is None:
            raise RuntimeError("No repair actuator configured; cannot run a repair mode")
        return self._engine

    # ─── Output ──────────────────────────────────────────────────────

    async def _record(self, summary: RunSummary) -> None:
        """Score history and run metrics. Failures are logged only."""
        await self._metric("run_elapsed_s", summary.elapsed_s)
        await self._metric("issues_detected", len(summary.issues))
        await self._metric("issues_remaining", len(summary.remaining_issues))
        await self._metric("outcome", int(summary.outcome))
        if summary.score is not None:
            await self._metric("health_score", summary.score.value)
        if summary.post_repair_score is not None:
            await self._metric("post_repair_health_score", summary.post_repair_score.value)

        if self._history is not None:
            scores = [("audit", summary.score), ("post_repair", summary.post_repair_score)]
            for label, score in scores:
                if score is None:
                    continue
                try:
                    await self._history.append_score(summary.run_id, label, score)
                except Exception as exc:
                    self._logger.warning("score_history_write_failed", error=str(exc))

        await self._metrics.flush()

    async def _deliver(self, summary: RunSummary) -> None:
        timeout = self._config.run.publish_timeout_s
        for reporter in self._reporters:
            try:
                await asyncio.wait_for(reporter.publish(summary), timeout=timeout)
            except Exception as exc:
                self._logger.warning(
                    "reporter_failed",
                    reporter=getattr(reporter, "name", type(reporter).__name__),
                    error=str(exc) or type(exc).__name__,
                )

        if not self._should_notify(summary):
            return
        for notifier in self._notifiers:
            try:
                await asyncio.wait_for(notifier.notify(summary), timeout=timeout)
            except Exception as exc:
                self._logger.warning(
                    "notifier_failed",
                    notifier=getattr(notifier, "name", type(notifier).__name__),
                    error=str(exc) or type(exc).__name__,
                )

    def _should_notify(self, summary: RunSummary) -> bool:
        notify_on = self._config.notify.notify_on
        if notify_on == NotifyOn.NEVER:
            return False
        if notify_on == NotifyOn.ALWAYS:
            return True
        return summary.outcome != RunOutcome.HEALTHY or bool(summary.escalations)

    # ─── Telemetry ───────────────────────────────────────────────────

    async def _on_attempt(self, event: AttemptEvent) -> None:
        await self._emit(
            RunEventType.RETRY_ATTEMPT,
            operation=event.operation,
            attempt=event.attempt,
            max_attempts=event.max_attempts,
            error_class=event.error_class.value,
            error=event.error,
            next_delay_s=event.next_delay_s,
        )
        await self._metric(
            "remote_call_failures",
            1,
            operation=event.operation.split(":", 1)[0],
            error_class=event.error_class.value,
        )

    async def _emit(self, event_type: RunEventType, **data: Any) -> None:
        await self._bus.publish(event_type, source="orchestrator", **data)

    async def _metric(self, metric: str, value: float, **labels: str) -> None:
        await self._metrics.record("orchestrator", metric, value, labels or None)


def _flatten(observations: list[_Observation]) -> list[Issue]:
    return [i for o in observations for i in o.issues]


def _unique(nodes: list[Node]) -> list[Node]:
    """Drop repeated node names (case-insensitive), keeping first occurrence."""
    seen: set[str] = set()
    out: list[Node] = []
    for node in nodes:
        key = node.name.lower()
        if key not in seen:
            seen.add(key)
            out.append(node)
    return out
