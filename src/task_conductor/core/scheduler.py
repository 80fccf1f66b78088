"""Cancellable timers on the running event loop.

Everything time-based (save debounce, output polling, liveness checks, sync
ticks) goes through a Scheduler so tests can substitute a fake clock.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None] | None]


class TimerHandle:
    def __init__(self, task: asyncio.Task):
        self._task = task

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class Scheduler:
    """Wall-clock scheduler backed by the asyncio loop."""

    def time(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, delay: float, callback: Callback, name: str | None = None) -> TimerHandle:
        async def _fire():
            await self.sleep(delay)
            await _invoke(callback)

        return TimerHandle(asyncio.create_task(_fire(), name=name))

    def every(self, interval: float, callback: Callback, name: str | None = None) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled.

        Errors in a tick are logged and do not stop the loop.
        """

        async def _loop():
            while True:
                await self.sleep(interval)
                try:
                    await _invoke(callback)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Error in scheduled job %s", name or callback)

        return TimerHandle(asyncio.create_task(_loop(), name=name))


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result
