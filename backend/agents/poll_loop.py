import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Historical polling interval of the table client
DEFAULT_POLL_INTERVAL = 5.0


class PollLoop:
    """
    One repeating timer driving refresh attempts.
    start()/stop() are idempotent, keyed off the nullable task handle.
    A failing tick is logged and the loop keeps going.
    """

    def __init__(self, tick: Callable[[], Awaitable[None]], interval: float = DEFAULT_POLL_INTERVAL):
        self._tick = tick
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Poll loop started (every %.1fs)", self.interval)

    def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        # Stopped from inside a tick: the loop notices on its own and exits
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("Poll loop stopped")

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll tick failed")
