import asyncio
import logging

import pytest

from utils.guards import BackgroundTasks, ReentrancyGuard


class TestReentrancyGuard:

    def test_nested_attempt_is_refused(self):
        guard = ReentrancyGuard("refresh")
        with guard.attempt() as outer:
            assert outer
            assert guard.held
            with guard.attempt() as inner:
                assert not inner
            # A refused attempt must not release the outer hold
            assert guard.held
        assert not guard.held

    def test_released_on_exception(self):
        guard = ReentrancyGuard("refresh")
        with pytest.raises(RuntimeError):
            with guard.attempt():
                raise RuntimeError("boom")
        assert not guard.held


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks_spawned_while_draining(self):
        tasks = BackgroundTasks("test")
        seen = []

        async def child():
            seen.append("child")

        async def parent():
            await asyncio.sleep(0)
            tasks.spawn(child())
            seen.append("parent")

        tasks.spawn(parent())
        await tasks.drain()

        assert seen == ["parent", "child"]
        assert len(tasks) == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        tasks = BackgroundTasks("test")

        async def fail():
            raise ValueError("bad payload")

        with caplog.at_level(logging.WARNING):
            tasks.spawn(fail())
            await tasks.drain()

        assert "bad payload" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        tasks = BackgroundTasks("test")
        task = tasks.spawn(asyncio.sleep(60))

        tasks.cancel_all()
        await tasks.drain()

        assert task.cancelled()
