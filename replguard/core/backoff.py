"""
ReplGuard — Backoff Executor

One generic retrying call wrapper, reused by every remote call site
(snapshot fetch, repair, state capture, restore, verification re-fetch).

Each failure is classified by an injectable classifier:
  - PERMANENT → stop immediately, raise OperationRejectedError
  - TRANSIENT → sleep and retry, doubling the delay from initial_delay_s
                up to max_delay_s; after max_attempts raise RetriesExhaustedError

The delay is applied between attempts, so max_attempts=5 with the
defaults sleeps 2s, 4s, 8s, 16s. Per-call duration is bounded separately
by the caller's timeout, not by this module.

A stop check (wired to the run's cancellation) ends a retry loop early
at the next attempt boundary. The attempt already in flight always
completes. Calls made after a remedy was applied pass stoppable=False.
"""

from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from replguard.core.errors import (
    OperationRejectedError,
    PermanentRemoteError,
    RetriesExhaustedError,
    TransientRemoteError,
)

logger = structlog.get_logger("replguard.core.backoff")

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFn = Callable[[float], Awaitable[None]]


class ErrorClass(enum.StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


ErrorClassifier = Callable[[BaseException], ErrorClass]


@dataclass(frozen=True)
class AttemptEvent:
    """Telemetry for one failed attempt."""

    operation: str
    attempt: int
    max_attempts: int
    error_class: ErrorClass
    error: str
    next_delay_s: float | None  # None when no further attempt will be made


AttemptCallback = Callable[[AttemptEvent], Awaitable[None]]
StopCheck = Callable[[], bool]


def classify_remote_error(exc: BaseException) -> ErrorClass:
    """
    Default classifier.

    Collaborators are expected to raise Transient/PermanentRemoteError.
    Bare timeouts and connection-level OS errors are transient; anything
    else is treated as permanent so unknown failures are never hammered.
    """
    if isinstance(exc, TransientRemoteError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, PermanentRemoteError):
        return ErrorClass.PERMANENT
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def backoff_delays(max_attempts: int, initial_delay_s: float, max_delay_s: float) -> list[float]:
    """The sleep schedule between attempts: doubling, capped."""
    return [
        min(initial_delay_s * (2**i), max_delay_s)
        for i in range(max(0, max_attempts - 1))
    ]


class BackoffExecutor:
    """
    Retries an async operation according to its error classification.

    The only state is the attempt counter, scoped to one execute() call,
    so one executor is safely shared by every concurrent task in a run.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        initial_delay_s: float = 2.0,
        max_delay_s: float = 30.0,
        classifier: ErrorClassifier = classify_remote_error,
        sleep: SleepFn = asyncio.sleep,
        on_attempt: AttemptCallback | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._initial_delay_s = initial_delay_s
        self._max_delay_s = max_delay_s
        self._classifier = classifier
        self._sleep = sleep
        self._on_attempt = on_attempt
        self._stop_check: StopCheck | None = None
        self._logger = logger.bind(component="backoff_executor")

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def set_attempt_callback(self, callback: AttemptCallback | None) -> None:
        """Wire the telemetry sink after construction."""
        self._on_attempt = callback

    def set_stop_check(self, check: StopCheck | None) -> None:
        """Install (or clear) the predicate that abandons pending retries."""
        self._stop_check = check

    async def execute(
        self,
        operation: Operation[T],
        *,
        name: str = "",
        classifier: ErrorClassifier | None = None,
        max_attempts: int | None = None,
        initial_delay_s: float | None = None,
        max_delay_s: float | None = None,
        stoppable: bool = True,
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently, or the
        attempt budget is spent.

        Raises:
            OperationRejectedError: a permanent failure (exactly one attempt).
            RetriesExhaustedError: every attempt failed transiently, or the
                stop check fired between attempts.
        """
        classify = classifier or self._classifier
        attempts_allowed = max_attempts or self._max_attempts
        delays = backoff_delays(
            attempts_allowed,
            self._initial_delay_s if initial_delay_s is None else initial_delay_s,
            self._max_delay_s if max_delay_s is None else max_delay_s,
        )
        op_name = name or getattr(operation, "__name__", "operation")

        attempt = 0
        while True:
            attempt += 1
            t0 = time.monotonic()
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error_class = classify(exc)
                elapsed_ms = (time.monotonic() - t0) * 1000.0

                if error_class == ErrorClass.PERMANENT:
                    await self._emit(op_name, attempt, attempts_allowed, error_class, exc, None)
                    self._logger.warning(
                        "operation_rejected",
                        operation=op_name,
                        attempt=attempt,
                        error=str(exc),
                        latency_ms=round(elapsed_ms, 1),
                    )
                    raise OperationRejectedError(
                        f"{op_name} rejected: {exc}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc

                if attempt >= attempts_allowed:
                    await self._emit(op_name, attempt, attempts_allowed, error_class, exc, None)
                    self._logger.warning(
                        "retries_exhausted",
                        operation=op_name,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise RetriesExhaustedError(
                        f"{op_name} failed after {attempt} attempts: {exc}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc

                if stoppable and self._stopped():
                    await self._emit(op_name, attempt, attempts_allowed, error_class, exc, None)
                    raise self._abandon(op_name, attempt, exc) from exc

                delay = delays[attempt - 1]
                await self._emit(op_name, attempt, attempts_allowed, error_class, exc, delay)
                self._logger.info(
                    "transient_failure_retrying",
                    operation=op_name,
                    attempt=attempt,
                    max_attempts=attempts_allowed,
                    delay_s=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                if stoppable and self._stopped():
                    raise self._abandon(op_name, attempt, exc) from exc
            else:
                if attempt > 1:
                    self._logger.info("operation_recovered", operation=op_name, attempt=attempt)
                return result

    def _stopped(self) -> bool:
        return self._stop_check is not None and self._stop_check()

    def _abandon(self, op_name: str, attempt: int, exc: BaseException) -> RetriesExhaustedError:
        self._logger.warning("retries_abandoned", operation=op_name, attempts=attempt, error=str(exc))
        return RetriesExhaustedError(
            f"{op_name} abandoned after {attempt} attempts (run stopping): {exc}",
            attempts=attempt,
            last_error=exc,
        )

    async def _emit(
        self,
        op_name: str,
        attempt: int,
        max_attempts: int,
        error_class: ErrorClass,
        exc: BaseException,
        next_delay_s: float | None,
    ) -> None:
        if self._on_attempt is None:
            return
        event = AttemptEvent(
            operation=op_name,
            attempt=attempt,
            max_attempts=max_attempts,
            error_class=error_class,
            error=str(exc),
            next_delay_s=next_delay_s,
        )
        try:
            await self._on_attempt(event)
        except Exception as cb_exc:
            # Telemetry must never change the outcome of the call
            self._logger.debug("attempt_callback_error", error=str(cb_exc))


def describe_failure(exc: BaseException) -> dict[str, Any]:
    """Flatten a terminal backoff failure into log/detail fields."""
    attempts = getattr(exc, "attempts", 1)
    last = getattr(exc, "last_error", exc)
    return {
        "error_type": type(last).__name__,
        "error": str(last),
        "attempts": attempts,
        "code": getattr(last, "code", 0) or 0,
        "gave_up": isinstance(exc, RetriesExhaustedError),
    }
