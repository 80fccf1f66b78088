"""In-process lock primitives: per-file, per-repository and the global merge lock.

None of these survive a restart. Holders are tracked in memory only, so a
fresh process always starts with every lock free.
"""

import asyncio
import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from task_conductor.errors import LockClearedError, LockTimeoutError, MergeInProgressError

logger = logging.getLogger(__name__)


def _resolve(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


# ── File lock ────────────────────────────────────────────────────────────────


@dataclass
class _Holder:
    token: int
    acquired_at: float


class FileLock:
    """Mutual exclusion per absolute file path.

    A holder that keeps the lock longer than ``stale_after`` seconds is treated
    as stale and is force-cleared by the next waiter.
    """

    def __init__(self, stale_after: float = 30.0):
        self.stale_after = stale_after
        self._holders: dict[str, _Holder] = {}
        self._released: dict[str, asyncio.Event] = {}
        self._tokens = itertools.count(1)

    def is_locked(self, path: str | Path) -> bool:
        return _resolve(path) in self._holders

    async def acquire(self, path: str | Path, timeout: float | None = None) -> int:
        """Acquire the lock for ``path`` and return a release token."""
        key = _resolve(path)
        loop = asyncio.get_running_loop()
        wait_limit = self.stale_after if timeout is None else timeout
        deadline = loop.time() + wait_limit

        while key in self._holders:
            holder = self._holders[key]
            now = loop.time()
            held_for = now - holder.acquired_at
            if held_for >= self.stale_after:
                logger.warning("Force-clearing stale lock on %s (held %.1fs)", key, held_for)
                self._clear(key)
                break
            remaining = deadline - now
            if remaining <= 0:
                raise LockTimeoutError(f"Timed out waiting for lock on {key}")
            event = self._released.setdefault(key, asyncio.Event())
            wait = min(remaining, self.stale_after - held_for)
            try:
                await asyncio.wait_for(event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        token = next(self._tokens)
        self._holders[key] = _Holder(token=token, acquired_at=loop.time())
        return token

    def release(self, path: str | Path, token: int) -> None:
        key = _resolve(path)
        holder = self._holders.get(key)
        if holder is None or holder.token != token:
            logger.debug("Lock on %s was already cleared; ignoring release", key)
            return
        self._clear(key)

    def _clear(self, key: str) -> None:
        self._holders.pop(key, None)
        event = self._released.pop(key, None)
        if event is not None:
            event.set()

    @asynccontextmanager
    async def hold(self, path: str | Path, timeout: float | None = None):
        token = await self.acquire(path, timeout=timeout)
        try:
            yield
        finally:
            self.release(path, token)


# ── Repository lock ──────────────────────────────────────────────────────────


class RepoLock:
    """FIFO mutual exclusion per resolved repository path.

    Different repositories never block each other.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, repo_path: str | Path) -> asyncio.Lock:
        return self._locks.setdefault(_resolve(repo_path), asyncio.Lock())

    def is_locked(self, repo_path: str | Path) -> bool:
        return self._lock_for(repo_path).locked()

    @asynccontextmanager
    async def hold(self, repo_path: str | Path):
        async with self._lock_for(repo_path):
            yield


# ── Merge lock ───────────────────────────────────────────────────────────────


class MergeLock:
    """Global merge lock with a FIFO queue of named owners.

    An owner may appear at most once, either holding the lock or queued.
    """

    def __init__(self):
        self._owner: str | None = None
        self._waiters: deque[tuple[str, asyncio.Future]] = deque()

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    def is_locked(self) -> bool:
        return self._owner is not None

    def is_locked_by(self, owner: str) -> bool:
        return self._owner == owner

    async def acquire(self, owner: str, timeout: float | None = None) -> None:
        if self._owner == owner or any(queued == owner for queued, _ in self._waiters):
            raise MergeInProgressError(f"Merge already in progress for {owner}")

        if self._owner is None and not self._waiters:
            self._owner = owner
            logger.debug("Merge lock acquired by %s", owner)
            return

        future = asyncio.get_running_loop().create_future()
        self._waiters.append((owner, future))
        logger.debug("%s queued for merge lock (position %d)", owner, len(self._waiters))
        try:
            if timeout is None:
                await future
            else:
                await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            self._abandon(owner, future)
            raise LockTimeoutError(f"Timed out waiting for merge lock ({owner})")
        except asyncio.CancelledError:
            self._abandon(owner, future)
            raise

    def release(self, owner: str) -> None:
        if self._owner != owner:
            logger.warning("Merge lock release by %s ignored; held by %s", owner, self._owner)
            return
        self._owner = None
        while self._waiters:
            next_owner, future = self._waiters.popleft()
            if future.done():
                continue
            self._owner = next_owner
            future.set_result(None)
            logger.debug("Merge lock handed to %s", next_owner)
            break

    def _abandon(self, owner: str, future: asyncio.Future) -> None:
        try:
            self._waiters.remove((owner, future))
        except ValueError:
            pass
        # Ownership may have been handed over just before the waiter gave up.
        if self._owner == owner:
            self.release(owner)

    def force_clear(self) -> None:
        """Drop the current owner and fail every queued waiter."""
        if self._owner or self._waiters:
            logger.warning(
                "Force-clearing merge lock (owner=%s, waiters=%d)",
                self._owner,
                len(self._waiters),
            )
        self._owner = None
        while self._waiters:
            owner, future = self._waiters.popleft()
            if not future.done():
                future.set_exception(LockClearedError(f"Merge lock cleared while {owner} was waiting"))

    @asynccontextmanager
    async def hold(self, owner: str, timeout: float | None = None):
        await self.acquire(owner, timeout=timeout)
        try:
            yield
        finally:
            self.release(owner)
