"""
ReplGuard — Run Event Bus

In-memory async callbacks for progress and telemetry within one run.
Subscribers are notified in registration order; a slow or failing
subscriber is logged and skipped, never allowed to affect the run.

Besides delivery the bus keeps a tally of every event type it has seen,
which doubles as the run's healing scoreboard (committed, rolled back,
failed, escalated).
"""

from __future__ import annotations

import asyncio
from collections import Counter, defaultdict, deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from replguard.systems.bus.types import RunEvent, RunEventType

logger = structlog.get_logger("replguard.systems.bus")

# Callback signature: async def handler(event: RunEvent) -> None
EventCallback = Callable[[RunEvent], Coroutine[Any, Any, None]]

# Per-retry events go to typed subscribers only
_TYPED_ONLY: frozenset[RunEventType] = frozenset({RunEventType.RETRY_ATTEMPT})

# Terminal healing events, tallied by outcome in stats
_HEALING_OUTCOMES: dict[RunEventType, str] = {
    RunEventType.HEALING_COMMITTED: "committed",
    RunEventType.HEALING_ROLLED_BACK: "rolled_back",
    RunEventType.HEALING_FAILED: "failed",
    RunEventType.HEALING_ESCALATED: "escalated",
}

_CALLBACK_TIMEOUT_S: float = 1.0
_HISTORY_PER_TYPE: int = 200


class RunEventBus:
    """Per-run event fan-out with per-callback timeout protection."""

    def __init__(self, callback_timeout_s: float = _CALLBACK_TIMEOUT_S) -> None:
        self._callback_timeout_s = callback_timeout_s
        self._logger = logger.bind(component="event_bus")

        self._typed: dict[RunEventType, list[EventCallback]] = defaultdict(list)
        self._catch_all: list[EventCallback] = []
        self._history: dict[RunEventType, deque[RunEvent]] = defaultdict(
            lambda: deque(maxlen=_HISTORY_PER_TYPE)
        )

        # Metrics
        self._counts: Counter[RunEventType] = Counter()
        self._callback_timeouts: int = 0
        self._callback_errors: int = 0

    # ─── Subscription ────────────────────────────────────────────────

    def subscribe(self, event_type: RunEventType, callback: EventCallback) -> None:
        self._typed[event_type].append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        """Receive every event except per-retry telemetry."""
        self._catch_all.append(callback)

    # ─── Emission ────────────────────────────────────────────────────

    async def emit(self, event: RunEvent) -> None:
        self._counts[event.event_type] += 1
        self._history[event.event_type].append(event)

        targets = [*self._typed.get(event.event_type, ())]
        if event.event_type not in _TYPED_ONLY:
            targets += self._catch_all

        for callback in targets:
            await self._deliver(callback, event)

    async def publish(self, event_type: RunEventType, source: str, **data: Any) -> None:
        """Build an event from keyword data and emit it."""
        await self.emit(RunEvent(event_type=event_type, source=source, data=data))

    async def _deliver(self, callback: EventCallback, event: RunEvent) -> None:
        name = getattr(callback, "__name__", repr(callback))
        try:
            await asyncio.wait_for(callback(event), timeout=self._callback_timeout_s)
        except TimeoutError:
            self._callback_timeouts += 1
            self._logger.warning(
                "event_callback_timeout",
                event_type=event.event_type.value,
                callback=name,
                timeout_s=self._callback_timeout_s,
            )
        except Exception as exc:
            self._callback_errors += 1
            self._logger.error(
                "event_callback_error",
                event_type=event.event_type.value,
                callback=name,
                error=str(exc),
            )

    # ─── Query ───────────────────────────────────────────────────────

    def recent(self, event_type: RunEventType, limit: int = 10) -> list[RunEvent]:
        """Newest first. Only the last few hundred events per type are kept."""
        return list(reversed(self._history.get(event_type, ())))[:limit]

    def count(self, event_type: RunEventType) -> int:
        """Events of this type emitted so far, including ones aged out of ``recent``."""
        return self._counts[event_type]

    @property
    def healing_outcomes(self) -> dict[str, int]:
        return {label: self._counts[t] for t, label in _HEALING_OUTCOMES.items()}

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_emitted": sum(self._counts.values()),
            "callback_timeouts": self._callback_timeouts,
            "callback_errors": self._callback_errors,
            "subscriber_count": sum(map(len, self._typed.values())) + len(self._catch_all),
            "retry_attempts": self._counts[RunEventType.RETRY_ATTEMPT],
            "issues_detected": self._counts[RunEventType.ISSUE_DETECTED],
            "healing": self.healing_outcomes,
        }
