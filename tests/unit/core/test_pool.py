"""
Tests for the bounded, cancellable WorkerPool.
"""

from __future__ import annotations

import asyncio

import pytest

from replguard.core.pool import NOT_RUN, WorkerPool


class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_respects_size(self):
        pool = WorkerPool(2)
        peak = 0

        async def _work() -> int:
            nonlocal peak
            peak = max(peak, pool.in_flight)
            await asyncio.sleep(0.01)
            return 1

        results = await pool.map({i: _work for i in range(6)})
        assert set(results.values()) == {1}
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_one_entry_per_key_and_exceptions_returned(self):
        pool = WorkerPool(4)

        async def _ok() -> str:
            return "ok"

        async def _boom() -> str:
            raise RuntimeError("boom")

        results = await pool.map({"a": _ok, "b": _boom})
        assert results["a"] == "ok"
        assert isinstance(results["b"], RuntimeError)

    @pytest.mark.asyncio
    async def test_cancel_before_start_marks_not_run(self):
        pool = WorkerPool(2)
        pool.cancel("operator_abort")

        async def _ok() -> str:
            return "ok"

        results = await pool.map({"a": _ok, "b": _ok})
        assert results == {"a": NOT_RUN, "b": NOT_RUN}
        assert pool.cancel_reason == "operator_abort"

    @pytest.mark.asyncio
    async def test_cancel_lets_in_flight_work_finish(self):
        pool = WorkerPool(1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def _first() -> str:
            started.set()
            await release.wait()
            return "finished"

        async def _second() -> str:
            return "should not run"

        task = asyncio.create_task(pool.map({"first": _first, "second": _second}))
        await started.wait()
        pool.cancel("run_timeout")
        release.set()
        results = await task

        assert results["first"] == "finished"
        assert results["second"] is NOT_RUN

    @pytest.mark.asyncio
    async def test_cancel_after_timeout(self):
        pool = WorkerPool(1)
        pool.cancel_after(0.01)
        await asyncio.sleep(0.05)
        assert pool.cancelled
        assert pool.cancel_reason == "run_timeout"

    @pytest.mark.asyncio
    async def test_disarm_prevents_timeout(self):
        pool = WorkerPool(1)
        pool.cancel_after(0.01)
        pool.disarm()
        await asyncio.sleep(0.03)
        assert not pool.cancelled

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            WorkerPool(0)
