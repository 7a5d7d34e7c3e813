import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Set, Coroutine, Any

logger = logging.getLogger(__name__)


class ReentrancyGuard:
    """
    Debounce flag for a single cooperative entry point.
    asyncio is single-threaded, so a plain bool is safe as long as nothing awaits
    between the test and the set; attempt() does both without a suspension point.
    """

    def __init__(self, name: str):
        self.name = name
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @contextmanager
    def attempt(self) -> Iterator[bool]:
        """Yield True if the guard was acquired, False if it was already held.
        The guard is released on every exit path, including exceptions and cancellation."""
        if self._held:
            yield False
            return
        self._held = True
        try:
            yield True
        finally:
            self._held = False


class BackgroundTasks:
    """Fire-and-forget tasks that are kept referenced until done and whose failures get logged."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("[%s] background task failed: %s", self.name, exc, exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned while waiting) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
