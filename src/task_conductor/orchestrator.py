"""Composition root: builds every engine component from a Config."""

import logging

from task_conductor.config import Config
from task_conductor.core.agents import ProcessManager
from task_conductor.core.locks import FileLock, MergeLock, RepoLock
from task_conductor.core.resolver import ConflictResolver
from task_conductor.core.scheduler import Scheduler
from task_conductor.core.state import PersistentState, SnapshotInfo, SyncService
from task_conductor.core.tasks import TaskStore
from task_conductor.db.models import Task
from task_conductor.db.storage import ProcessRegistry, TaskDocument
from task_conductor.errors import ConductorError

logger = logging.getLogger(__name__)


class Conductor:
    def __init__(self, config: Config, scheduler: Scheduler | None = None):
        self.config = config
        self.scheduler = scheduler or Scheduler()

        self.file_lock = FileLock(stale_after=config.lock_timeout)
        self.repo_lock = RepoLock()
        self.merge_lock = MergeLock()

        self.document = TaskDocument(config.data_dir / "tasks.json", self.file_lock)
        self.registry = ProcessRegistry(config.data_dir / "processes.json", self.file_lock)
        self.processes = ProcessManager(config, self.registry, self.scheduler)
        self.resolver = ConflictResolver(config.agent_command, timeout=config.resolver_timeout)
        self.store = TaskStore(
            config,
            self.document,
            self.processes,
            self.repo_lock,
            self.merge_lock,
            resolver=self.resolver,
            scheduler=self.scheduler,
        )
        self.state = PersistentState(
            config.snapshot_dir,
            config.recovery_dir,
            self.document,
            self.registry,
            max_snapshots=config.max_snapshots,
        )
        self.sync = SyncService(
            self.store,
            self.state,
            self.processes,
            policy=config.conflict_policy,
            sync_interval=config.sync_interval,
            snapshot_interval=config.snapshot_interval,
            scheduler=self.scheduler,
        )
        self._started = False

    async def start(self, recover: bool = True, background: bool = True) -> None:
        """Load state, reattach to surviving agents and start the sync service.

        Failure to create the data directories aborts startup.
        """
        dirs = [
            self.config.data_dir,
            self.config.output_dir,
            self.config.snapshot_dir,
            self.config.recovery_dir,
            self.config.worktree_base,
        ]
        try:
            for path in dirs:
                path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConductorError(f"Cannot create data directories: {e}") from e

        await self.store.load()
        if recover:
            reaped = await self.processes.cleanup_orphans(self.store.ids())
            if reaped:
                logger.warning("Reaped %d orphaned processes at startup", len(reaped))
            adopted = await self.store.recover()
            if adopted:
                logger.info("Reattached to %d running tasks", len(adopted))
        if background:
            self.sync.start()
        self._started = True
        logger.info("Conductor started with data dir %s", self.config.data_dir)

    async def stop(self, kill_agents: bool = False) -> None:
        """Persist everything and stop background work.

        Agents keep running unless ``kill_agents`` is set, so the next start
        can adopt them.
        """
        if not self._started:
            return
        await self.sync.stop()
        await self.store.close()
        if kill_agents:
            for task_id in self.store.ids():
                await self.processes.stop(task_id)
        else:
            await self.processes.detach_all()
        self._started = False
        logger.info("Conductor stopped")

    async def restore_snapshot(self, name: str) -> list[Task]:
        tasks = await self.state.restore_snapshot(name)
        self.store.replace_all(tasks)
        return self.store.list_tasks()

    def create_snapshot(self) -> SnapshotInfo:
        return self.sync.snapshot()

    async def __aenter__(self) -> "Conductor":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
