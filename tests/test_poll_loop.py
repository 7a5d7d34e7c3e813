"""Tests for PollLoop start/stop semantics."""
import asyncio

import pytest

from agents.poll_loop import PollLoop


class TestPollLoop:

    @pytest.mark.asyncio
    async def test_ticks_repeatedly(self):
        ticks = []
        done = asyncio.Event()

        async def tick():
            ticks.append(1)
            if len(ticks) == 3:
                done.set()

        loop = PollLoop(tick, interval=0.001)
        loop.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        loop.stop()

        assert len(ticks) >= 3
        assert not loop.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        async def tick():
            pass

        loop = PollLoop(tick, interval=60)
        loop.start()
        task = loop._task
        loop.start()

        assert loop._task is task
        loop.stop()
        loop.stop()
        assert not loop.running
        await asyncio.sleep(0)
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_stop_from_inside_tick(self):
        """Test a tick that stops its own loop is the last tick"""
        ticks = []

        async def tick():
            ticks.append(1)
            loop.stop()

        loop = PollLoop(tick, interval=0.001)
        loop.start()
        task = loop._task
        await asyncio.wait_for(task, timeout=2)

        assert ticks == [1]
        assert not loop.running

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_loop_alive(self):
        """Test an exception in one tick does not end the loop"""
        calls = []
        done = asyncio.Event()

        async def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("server exploded")
            done.set()

        loop = PollLoop(tick, interval=0.001)
        loop.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        loop.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_restart_after_stop(self):
        async def tick():
            pass

        loop = PollLoop(tick, interval=60)
        loop.start()
        first = loop._task
        loop.stop()
        loop.start()

        assert loop.running
        assert loop._task is not first
        loop.stop()
