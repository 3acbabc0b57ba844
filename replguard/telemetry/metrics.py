"""
ReplGuard — Run Metrics

Systems report numeric points here during a run. Points are buffered and
handed to a metric sink (the run-history store) in batches: whenever a
batch fills, and once more at end of run.

The buffer is bounded. Without a sink, or while the sink keeps failing,
only the newest ``max_buffered`` points are kept and older ones are
counted as dropped.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Protocol

import structlog

from replguard.primitives.common import utc_now

logger = structlog.get_logger("replguard.telemetry.metrics")


class MetricSink(Protocol):
    async def write_metrics(self, batch: list[dict[str, Any]]) -> None: ...


class MetricCollector:
    def __init__(
        self,
        sink: MetricSink | None = None,
        batch_size: int = 100,
        max_buffered: int | None = None,
    ) -> None:
        self._sink = sink
        self._batch_size = batch_size
        self._capacity = max_buffered or batch_size * 10
        self._pending: deque[dict[str, Any]] = deque(maxlen=self._capacity)
        self._logger = logger.bind(component="metric_collector")

        # Metrics about metrics
        self._recorded: int = 0
        self._dropped: int = 0
        self._written: int = 0
        self._flush_failures: int = 0

    @property
    def points(self) -> list[dict[str, Any]]:
        """Points not yet written to the sink, oldest first."""
        return list(self._pending)

    @property
    def total_recorded(self) -> int:
        return self._recorded

    async def record(
        self,
        system: str,
        metric: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        if len(self._pending) == self._capacity:
            self._dropped += 1
        self._pending.append(_point(system, metric, value, labels))
        self._recorded += 1

        if self._sink is not None and len(self._pending) >= self._batch_size:
            await self.flush()

    async def flush(self) -> None:
        """
        Hand everything pending to the sink.

        On failure the batch goes back in front of anything recorded since,
        subject to the buffer bound. Never raises.
        """
        if self._sink is None or not self._pending:
            return

        batch = list(self._pending)
        self._pending.clear()
        try:
            await self._sink.write_metrics(batch)
        except Exception as exc:
            self._flush_failures += 1
            requeued = deque(batch + list(self._pending), maxlen=self._capacity)
            self._dropped += len(batch) + len(self._pending) - len(requeued)
            self._pending = requeued
            self._logger.error(
                "metric_flush_failed",
                error=str(exc),
                batch_size=len(batch),
                pending=len(requeued),
            )
            return
        self._written += len(batch)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "recorded": self._recorded,
            "written": self._written,
            "pending": len(self._pending),
            "dropped": self._dropped,
            "flush_failures": self._flush_failures,
        }


def _point(system: str, metric: str, value: float, labels: dict[str, str] | None) -> dict[str, Any]:
    return {
        "time": utc_now().isoformat(),
        "system": system,
        "metric": metric,
        "value": value,
        "labels": dict(labels or {}),
    }
