"""
ReplGuard — Bounded Worker Pool

A semaphore-sized pool of per-node tasks, shared by the collection and
healing phases of one run.

Cancellation stops scheduling immediately: a task that has not yet
started its work returns NOT_RUN instead of running. Tasks already in
flight are never cancelled; they finish their current work so no node
is left mid-remediation without verification.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Final, TypeVar

import structlog

logger = structlog.get_logger("replguard.core.pool")

K = TypeVar("K")
T = TypeVar("T")


class _NotRun:
    __slots__ = ()

    def __repr__(self) -> str:
        return "NOT_RUN"


NOT_RUN: Final = _NotRun()


class WorkerPool:
    """Runs keyed task factories with at most ``size`` running at once."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self._size = size
        self._semaphore = asyncio.Semaphore(size)
        self._cancelled = asyncio.Event()
        self._cancel_reason: str = ""
        self._in_flight: int = 0
        self._timer: asyncio.TimerHandle | None = None
        self._logger = logger.bind(component="worker_pool")

    @property
    def size(self) -> int:
        return self._size

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str:
        return self._cancel_reason

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def cancel(self, reason: str = "operator_abort") -> None:
        """Stop scheduling new work. In-flight work is left to finish."""
        if self._cancelled.is_set():
            return
        self._cancel_reason = reason
        self._cancelled.set()
        self._logger.warning("pool_cancelled", reason=reason, in_flight=self._in_flight)

    def cancel_after(self, timeout_s: float) -> None:
        """Arm a run-level timeout that triggers the cancellation path."""
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(timeout_s, self.cancel, "run_timeout")

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def run_one(self, factory: Callable[[], Awaitable[T]]) -> T | _NotRun:
        """Run a single factory under the pool limit, unless cancelled first."""
        if self._cancelled.is_set():
            return NOT_RUN
        async with self._semaphore:
            if self._cancelled.is_set():
                return NOT_RUN
            self._in_flight += 1
            try:
                return await factory()
            finally:
                self._in_flight -= 1

    async def map(
        self,
        factories: Mapping[K, Callable[[], Awaitable[T]]],
    ) -> dict[K, T | _NotRun | BaseException]:
        """
        Run every factory, returning one entry per key.

        Factory exceptions are returned in place of a result so one
        failing task never aborts its siblings.
        """
        keys = list(factories)
        results: list[Any] = await asyncio.gather(
            *(self.run_one(factories[k]) for k in keys),
            return_exceptions=True,
        )
        return dict(zip(keys, results, strict=True))
