"""Tests for the trailing-edge Debouncer."""

from __future__ import annotations

import asyncio

import pytest

from shopfloor.query.debounce import Debouncer

pytestmark = pytest.mark.asyncio


class TestDebouncer:
    async def test_burst_collapses_to_one_call(self):
        calls: list[int] = []
        debouncer = Debouncer(0.02, lambda: calls.append(1))
        for _ in range(10):
            debouncer.trigger()
        assert debouncer.pending
        await asyncio.sleep(0.08)
        assert calls == [1]
        assert debouncer.fired == 1
        assert not debouncer.pending

    async def test_trigger_restarts_window(self):
        calls: list[float] = []
        loop = asyncio.get_running_loop()
        debouncer = Debouncer(0.2, lambda: calls.append(loop.time()))
        start = loop.time()
        debouncer.trigger()
        await asyncio.sleep(0.1)
        debouncer.trigger()
        await asyncio.sleep(0.1)
        assert calls == []
        await asyncio.sleep(0.25)
        assert len(calls) == 1
        assert calls[0] - start >= 0.25

    async def test_separate_bursts_fire_separately(self):
        calls: list[int] = []
        debouncer = Debouncer(0.01, lambda: calls.append(1))
        debouncer.trigger()
        await asyncio.sleep(0.05)
        debouncer.trigger()
        await asyncio.sleep(0.05)
        assert len(calls) == 2

    async def test_cancel_prevents_fire(self):
        calls: list[int] = []
        debouncer = Debouncer(0.01, lambda: calls.append(1))
        debouncer.trigger()
        debouncer.cancel()
        await asyncio.sleep(0.04)
        assert calls == []
        assert debouncer.fired == 0

    async def test_coroutine_callback_runs_as_task(self):
        done = asyncio.Event()

        async def callback():
            done.set()

        debouncer = Debouncer(0.0, callback)
        debouncer.trigger()
        await asyncio.wait_for(done.wait(), 1.0)
        assert debouncer.fired == 1

    async def test_flush_fires_immediately(self):
        results: list[str] = []

        async def callback():
            await asyncio.sleep(0)
            results.append("ran")

        debouncer = Debouncer(10.0, callback)
        debouncer.trigger()
        await debouncer.flush()
        assert results == ["ran"]
        assert not debouncer.pending
        assert not debouncer.running

    async def test_flush_without_pending_is_noop(self):
        debouncer = Debouncer(0.01, lambda: None)
        await debouncer.flush()
        assert debouncer.fired == 0

    async def test_cancel_stops_running_task(self):
        gate = asyncio.Event()

        async def callback():
            await gate.wait()

        debouncer = Debouncer(0.0, callback)
        debouncer.trigger()
        await asyncio.sleep(0.01)
        assert debouncer.running
        debouncer.cancel()
        assert not debouncer.running

    async def test_callback_error_is_logged(self, caplog):
        def callback():
            raise RuntimeError("boom")

        debouncer = Debouncer(0.0, callback)
        debouncer.trigger()
        await asyncio.sleep(0.01)
        assert debouncer.fired == 1
        assert "boom" in caplog.text
