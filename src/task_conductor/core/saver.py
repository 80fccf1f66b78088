"""Debounced persistence of the task list."""

import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

from task_conductor.core.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class SaverState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    BLOCKED = "blocked"


class DebouncedSaver:
    """Coalesces save requests into one write after a quiet period.

    Inside ``critical()`` automatic saves are held back; leaving the outermost
    critical section performs exactly one explicit save if anything changed.
    """

    def __init__(
        self,
        save: Callable[[], Awaitable[None]],
        delay: float = 1.0,
        scheduler: Scheduler | None = None,
    ):
        self._save_fn = save
        self.delay = delay
        self.scheduler = scheduler or Scheduler()
        self._timer: TimerHandle | None = None
        self._saving = False
        self._dirty = False
        self._critical = 0
        self._lock = asyncio.Lock()
        self.save_count = 0

    @property
    def state(self) -> SaverState:
        if self._critical:
            return SaverState.BLOCKED
        if self._saving:
            return SaverState.SAVING
        if self._timer is not None:
            return SaverState.PENDING
        return SaverState.IDLE

    @property
    def blocked(self) -> bool:
        return self._critical > 0

    @property
    def dirty(self) -> bool:
        return self._dirty

    def request_save(self) -> None:
        self._dirty = True
        if self._critical:
            return
        self._cancel_timer()
        self._timer = self.scheduler.call_later(self.delay, self._on_timer, name="debounced-save")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _on_timer(self) -> None:
        self._timer = None
        if self._critical or not self._dirty:
            return
        try:
            await self._save()
        except Exception:
            logger.exception("Debounced save failed; will retry on the next change")

    async def _save(self) -> None:
        async with self._lock:
            self._dirty = False
            self._saving = True
            try:
                await self._save_fn()
                self.save_count += 1
            except Exception:
                self._dirty = True
                raise
            finally:
                self._saving = False

    async def flush(self) -> None:
        """Save now, dropping any pending timer."""
        self._cancel_timer()
        await self._save()

    @asynccontextmanager
    async def critical(self):
        self._critical += 1
        self._cancel_timer()
        try:
            yield
        finally:
            self._critical -= 1
            if self._critical == 0 and self._dirty:
                await self.flush()

    async def close(self) -> None:
        """Write any outstanding change and stop the timer."""
        self._cancel_timer()
        if self._dirty:
            await self._save()
