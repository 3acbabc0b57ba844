"""
Tests for the Backoff Executor.

Covers:
  - Permanent failures attempted exactly once
  - Transient failures attempted max_attempts times, delays doubling to the cap
  - Recovery mid-sequence
  - Attempt telemetry callback
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import RecordingSleep
from replguard.core.backoff import (
    AttemptEvent,
    BackoffExecutor,
    ErrorClass,
    backoff_delays,
    classify_remote_error,
    describe_failure,
)
from replguard.core.errors import (
    OperationRejectedError,
    PermanentRemoteError,
    RetriesExhaustedError,
    TransientRemoteError,
)


class _Counter:
    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestClassifier:
    def test_transient_remote_error(self):
        assert classify_remote_error(TransientRemoteError("busy")) == ErrorClass.TRANSIENT

    def test_permanent_remote_error(self):
        assert classify_remote_error(PermanentRemoteError("denied")) == ErrorClass.PERMANENT

    def test_timeouts_and_connection_errors_are_transient(self):
        assert classify_remote_error(TimeoutError()) == ErrorClass.TRANSIENT
        assert classify_remote_error(ConnectionResetError()) == ErrorClass.TRANSIENT

    def test_unknown_errors_are_permanent(self):
        assert classify_remote_error(ValueError("bad")) == ErrorClass.PERMANENT


class TestDelays:
    def test_default_schedule(self):
        assert backoff_delays(5, 2.0, 30.0) == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert backoff_delays(6, 10.0, 30.0) == [10.0, 20.0, 30.0, 30.0, 30.0]

    def test_single_attempt_never_sleeps(self):
        assert backoff_delays(1, 2.0, 30.0) == []


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        sleep = RecordingSleep()
        op = _Counter([])
        result = await BackoffExecutor(sleep=sleep).execute(op)
        assert result == "ok"
        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_permanent_error_attempted_once(self):
        sleep = RecordingSleep()
        op = _Counter([PermanentRemoteError("denied", code=5)] * 10)
        with pytest.raises(OperationRejectedError) as info:
            await BackoffExecutor(max_attempts=5, sleep=sleep).execute(op)
        assert op.calls == 1
        assert info.value.attempts == 1
        assert info.value.code == 5
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_error_attempted_max_attempts(self):
        sleep = RecordingSleep()
        op = _Counter([TransientRemoteError("busy")] * 10)
        with pytest.raises(RetriesExhaustedError) as info:
            await BackoffExecutor(max_attempts=5, sleep=sleep).execute(op)
        assert op.calls == 5
        assert info.value.attempts == 5
        assert sleep.delays == [2.0, 4.0, 8.0, 16.0]
        # Non-decreasing: strictly increasing, or equal once at the cap
        assert all(b >= a for a, b in zip(sleep.delays, sleep.delays[1:], strict=False))

    @pytest.mark.asyncio
    async def test_delays_equal_at_cap(self):
        sleep = RecordingSleep()
        op = _Counter([TransientRemoteError("busy")] * 10)
        executor = BackoffExecutor(max_attempts=6, initial_delay_s=1.0, max_delay_s=4.0, sleep=sleep)
        with pytest.raises(RetriesExhaustedError):
            await executor.execute(op)
        assert sleep.delays == [1.0, 2.0, 4.0, 4.0, 4.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        sleep = RecordingSleep()
        op = _Counter([TransientRemoteError("busy"), TimeoutError()])
        result = await BackoffExecutor(sleep=sleep).execute(op)
        assert result == "ok"
        assert op.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_per_call_overrides(self):
        sleep = RecordingSleep()
        op = _Counter([TransientRemoteError("busy")] * 10)
        with pytest.raises(RetriesExhaustedError):
            await BackoffExecutor(sleep=sleep).execute(op, max_attempts=2, initial_delay_s=0.5)
        assert op.calls == 2
        assert sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        sleep = RecordingSleep()
        op = _Counter([ValueError("flaky")] * 3)
        executor = BackoffExecutor(max_attempts=3, sleep=sleep)
        with pytest.raises(RetriesExhaustedError):
            await executor.execute(op, classifier=lambda exc: ErrorClass.TRANSIENT)
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def _cancelled() -> None:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await BackoffExecutor(sleep=RecordingSleep()).execute(_cancelled)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            BackoffExecutor(max_attempts=0)


class TestAttemptCallback:
    @pytest.mark.asyncio
    async def test_events_emitted_per_failure(self):
        events: list[AttemptEvent] = []

        async def _record(event: AttemptEvent) -> None:
            events.append(event)

        op = _Counter([TransientRemoteError("busy")] * 3)
        executor = BackoffExecutor(max_attempts=3, sleep=RecordingSleep(), on_attempt=_record)
        with pytest.raises(RetriesExhaustedError):
            await executor.execute(op, name="query:dc01")

        assert [e.attempt for e in events] == [1, 2, 3]
        assert [e.next_delay_s for e in events] == [2.0, 4.0, None]
        assert all(e.operation == "query:dc01" for e in events)

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_change_outcome(self):
        async def _broken(event: AttemptEvent) -> None:
            raise RuntimeError("telemetry down")

        op = _Counter([TransientRemoteError("busy")])
        executor = BackoffExecutor(sleep=RecordingSleep(), on_attempt=_broken)
        assert await executor.execute(op) == "ok"


class TestDescribeFailure:
    def test_exhausted(self):
        exc = RetriesExhaustedError("gave up", attempts=5, last_error=TransientRemoteError("busy", code=1722))
        info = describe_failure(exc)
        assert info["attempts"] == 5
        assert info["code"] == 1722
        assert info["gave_up"] is True
        assert info["error_type"] == "TransientRemoteError"

    def test_rejected(self):
        exc = OperationRejectedError("no", attempts=1, last_error=PermanentRemoteError("denied"))
        info = describe_failure(exc)
        assert info["gave_up"] is False
        assert info["code"] == 0


class TestStopCheck:
    @pytest.mark.asyncio
    async def test_stop_during_sleep_abandons_remaining_attempts(self):
        stopped: list[bool] = []

        async def _sleep(delay: float) -> None:
            stopped.append(True)

        executor = BackoffExecutor(max_attempts=5, sleep=_sleep)
        executor.set_stop_check(lambda: bool(stopped))
        op = _Counter([TransientRemoteError("busy")] * 5)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await executor.execute(op, name="query:dc01")

        assert op.calls == 1
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.last_error, TransientRemoteError)

    @pytest.mark.asyncio
    async def test_stop_before_retry_skips_the_sleep(self):
        sleep = RecordingSleep()
        executor = BackoffExecutor(max_attempts=5, sleep=sleep)
        executor.set_stop_check(lambda: True)
        op = _Counter([TransientRemoteError("busy")] * 5)

        with pytest.raises(RetriesExhaustedError):
            await executor.execute(op)

        assert op.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unstoppable_call_spends_full_budget(self):
        sleep = RecordingSleep()
        executor = BackoffExecutor(max_attempts=3, sleep=sleep)
        executor.set_stop_check(lambda: True)
        op = _Counter([TransientRemoteError("busy")] * 2)

        assert await executor.execute(op, stoppable=False) == "ok"
        assert op.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_cleared_stop_check(self):
        executor = BackoffExecutor(max_attempts=3, sleep=RecordingSleep())
        executor.set_stop_check(lambda: True)
        executor.set_stop_check(None)
        op = _Counter([TransientRemoteError("busy")] * 2)

        assert await executor.execute(op) == "ok"
        assert op.calls == 3
