"""
ReplGuard — Snapshot Collector

Polls every due node in parallel, bounded by the run's worker pool.

Each per-node fetch calls the replication data source under a per-call
timeout, wrapped by the backoff executor. A single node's failure never
aborts the batch: the result map always holds exactly one entry per
requested node, either a Snapshot or a CollectionError.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from replguard.core.backoff import describe_failure
from replguard.core.errors import BackoffError, TransientRemoteError
from replguard.core.pool import NOT_RUN, WorkerPool
from replguard.primitives.fleet import Node, Snapshot
from replguard.systems.collector.types import (
    CollectionError,
    CollectionFailure,
    CollectionResult,
)

if TYPE_CHECKING:
    from replguard.clients.interfaces import ReplicationDataSource
    from replguard.core.backoff import BackoffExecutor

logger = structlog.get_logger("replguard.systems.collector")


class SnapshotCollector:
    """Parallel, throttled, retried per-node metric fetch."""

    def __init__(
        self,
        source: ReplicationDataSource,
        executor: BackoffExecutor,
        call_timeout_s: float = 30.0,
    ) -> None:
        self._source = source
        self._executor = executor
        self._call_timeout_s = call_timeout_s
        self._logger = logger.bind(component="snapshot_collector")

        # Metrics
        self._total_fetches: int = 0
        self._total_failures: int = 0

    async def collect_one(self, node: Node, stoppable: bool = True) -> CollectionResult:
        """
        Fetch one node's snapshot. Never raises for remote failures.

        With stoppable=False the retry budget is spent in full even if
        the run is being cancelled (post-remedy verification).
        """
        self._total_fetches += 1
        t0 = time.monotonic()

        async def _query() -> Snapshot:
            try:
                return await asyncio.wait_for(
                    self._source.query(node),
                    timeout=self._call_timeout_s,
                )
            except TimeoutError as exc:
                raise TransientRemoteError(
                    f"query timed out after {self._call_timeout_s}s"
                ) from exc

        try:
            snapshot = await self._executor.execute(
                _query, name=f"query:{node.name}", stoppable=stoppable
            )
        except BackoffError as exc:
            self._total_failures += 1
            info = describe_failure(exc)
            self._logger.warning(
                "node_unreachable",
                node=node.name,
                attempts=info["attempts"],
                gave_up=info["gave_up"],
                error=info["error"],
            )
            return CollectionError(
                node=node.name,
                failure=CollectionFailure.UNREACHABLE,
                message=info["error"],
                error_type=info["error_type"],
                error_codes=(info["code"],) if info["code"] else (),
                attempts=info["attempts"],
                gave_up=info["gave_up"],
            )

        self._logger.debug(
            "node_collected",
            node=node.name,
            reachable=snapshot.reachable,
            partners=len(snapshot.partners),
            latency_ms=round((time.monotonic() - t0) * 1000.0, 1),
        )
        return snapshot

    async def collect_all(
        self,
        nodes: list[Node],
        pool: WorkerPool,
    ) -> dict[str, CollectionResult]:
        """
        Fetch all nodes with at most ``pool.size`` in flight.

        Nodes the pool never got to run (cancellation) come back as
        NOT_EVALUATED collection errors, never as missing keys.
        """
        factories = {
            node.name: (lambda n=node: self.collect_one(n))
            for node in nodes
        }
        raw = await pool.map(factories)

        results: dict[str, CollectionResult] = {}
        for name, outcome in raw.items():
            if outcome is NOT_RUN:
                results[name] = CollectionError(
                    node=name,
                    failure=CollectionFailure.NOT_EVALUATED,
                    message=f"run cancelled: {pool.cancel_reason}",
                )
            elif isinstance(outcome, BaseException):
                # Data source broke its contract (raised outside the executor)
                self._total_failures += 1
                self._logger.error("collect_task_error", node=name, error=str(outcome))
                results[name] = CollectionError(
                    node=name,
                    failure=CollectionFailure.UNREACHABLE,
                    message=str(outcome),
                    error_type=type(outcome).__name__,
                    attempts=1,
                )
            else:
                results[name] = outcome

        self._logger.info(
            "collection_complete",
            requested=len(nodes),
            collected=sum(1 for r in results.values() if isinstance(r, Snapshot)),
            failed=sum(1 for r in results.values() if isinstance(r, CollectionError)),
            throttle=pool.size,
        )
        return results

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_fetches": self._total_fetches,
            "total_failures": self._total_failures,
        }
