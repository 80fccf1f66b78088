"""Snapshots of orchestration state and periodic cache/disk reconciliation."""

import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from task_conductor.core.agents import ProcessManager
from task_conductor.core.scheduler import Scheduler, TimerHandle
from task_conductor.core.tasks import TaskStore
from task_conductor.db.models import Task, status_reachable, utcnow
from task_conductor.db.storage import ProcessRegistry, TaskDocument, read_json, write_json_atomic
from task_conductor.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"
SNAPSHOT_NAME = re.compile(r"^snapshot-(\d+)\.json$")


@dataclass
class SnapshotInfo:
    name: str
    path: Path
    created_at: datetime
    task_count: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "task_count": self.task_count,
        }


class PersistentState:
    """Numbered point-in-time copies of the task list and process registry."""

    def __init__(
        self,
        snapshot_dir: Path,
        recovery_dir: Path,
        document: TaskDocument,
        registry: ProcessRegistry,
        max_snapshots: int = 24,
    ):
        self.snapshot_dir = Path(snapshot_dir)
        self.recovery_dir = Path(recovery_dir)
        self.document = document
        self.registry = registry
        self.max_snapshots = max_snapshots

    def _path_for(self, name: str) -> Path:
        if not SNAPSHOT_NAME.match(name):
            raise ValidationError(f"Invalid snapshot name: {name!r}")
        return self.snapshot_dir / name

    def create_snapshot(self, tasks: list[Task]) -> SnapshotInfo:
        stamp = int(time.time() * 1000)
        existing = self.list_snapshots()
        if existing:
            # Names must keep increasing even when several land in the same millisecond
            latest = int(SNAPSHOT_NAME.match(existing[0].name).group(1))
            stamp = max(stamp, latest + 1)
        path = self.snapshot_dir / f"snapshot-{stamp}.json"
        data = {
            "version": SCHEMA_VERSION,
            "timestamp": utcnow().isoformat(),
            "tasks": [task.to_dict() for task in tasks],
            "processes": self.registry.as_dict(),
        }
        try:
            write_json_atomic(path, data)
        except OSError as e:
            raise PersistenceError(f"Failed to write snapshot {path.name}: {e}") from e
        logger.info("Created snapshot %s (%d tasks)", path.name, len(tasks))
        self.prune()
        return SnapshotInfo(path.name, path, datetime.fromisoformat(data["timestamp"]), len(tasks))

    def list_snapshots(self) -> list[SnapshotInfo]:
        """Snapshots, newest first."""
        if not self.snapshot_dir.exists():
            return []
        found = []
        for path in self.snapshot_dir.iterdir():
            match = SNAPSHOT_NAME.match(path.name)
            if not match:
                continue
            created = datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
            try:
                count = len(read_json(path, default={}).get("tasks", []))
            except ValueError:
                count = -1
            found.append((int(match.group(1)), SnapshotInfo(path.name, path, created, count)))
        return [info for _, info in sorted(found, key=lambda item: item[0], reverse=True)]

    def load_snapshot(self, name: str) -> dict:
        path = self._path_for(name)
        try:
            data = read_json(path)
        except ValueError as e:
            raise PersistenceError(f"Snapshot {name} is corrupt: {e}") from e
        if data is None:
            raise ValidationError(f"Snapshot not found: {name}")
        if data.get("version") != SCHEMA_VERSION:
            raise PersistenceError(
                f"Snapshot {name} has version {data.get('version')}, expected {SCHEMA_VERSION}"
            )
        return data

    async def restore_snapshot(self, name: str) -> dict[str, Task]:
        """Make the snapshot's task list current, keeping a recovery copy of the old one."""
        data = self.load_snapshot(name)
        tasks = {record["id"]: Task.from_dict(record) for record in data["tasks"]}

        if self.document.path.exists():
            self.recovery_dir.mkdir(parents=True, exist_ok=True)
            backup = self.recovery_dir / f"tasks-before-{name}"
            shutil.copy2(self.document.path, backup)
            logger.info("Saved recovery copy %s", backup)

        await self.document.save(tasks.values())
        logger.info("Restored %d tasks from %s", len(tasks), name)
        return tasks

    def prune(self) -> list[str]:
        removed = []
        for info in self.list_snapshots()[self.max_snapshots:]:
            info.path.unlink(missing_ok=True)
            removed.append(info.name)
        if removed:
            logger.debug("Pruned %d old snapshots", len(removed))
        return removed


# ── Sync ─────────────────────────────────────────────────────────────────────


@dataclass
class SyncConflict:
    task_id: str
    winner: str
    memory_updated_at: str
    disk_updated_at: str


@dataclass
class SyncReport:
    checked: int = 0
    conflicts: list[SyncConflict] = field(default_factory=list)
    memory_only: list[str] = field(default_factory=list)
    disk_only: list[str] = field(default_factory=list)
    reaped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "conflicts": [vars(c) for c in self.conflicts],
            "memory_only": self.memory_only,
            "disk_only": self.disk_only,
            "reaped": self.reaped,
            "errors": self.errors,
            "cleaned": self.cleaned,
            "skipped": self.skipped,
        }


class SyncService:
    """Keeps the in-memory cache and ``tasks.json`` consistent.

    Runs a reconcile pass every ``sync_interval`` and a snapshot every
    ``snapshot_interval``. Both are skipped while a critical section is open.
    """

    def __init__(
        self,
        store: TaskStore,
        state: PersistentState,
        processes: ProcessManager,
        policy: str = "newest-wins",
        sync_interval: float = 30.0,
        snapshot_interval: float = 300.0,
        scheduler: Scheduler | None = None,
    ):
        self.store = store
        self.state = state
        self.processes = processes
        self.policy = policy
        self.sync_interval = sync_interval
        self.snapshot_interval = snapshot_interval
        self.scheduler = scheduler or Scheduler()
        self._timers: list[TimerHandle] = []
        self.last_report: SyncReport | None = None

    def start(self) -> None:
        if self._timers:
            return
        self._timers = [
            self.scheduler.every(self.sync_interval, self.sync, name="sync"),
            self.scheduler.every(self.snapshot_interval, self.periodic_snapshot, name="snapshot"),
        ]
        logger.info("Sync service started (policy=%s)", self.policy)

    async def stop(self) -> None:
        """Stop the timers and take a final snapshot."""
        if not self._timers:
            return
        for timer in self._timers:
            timer.cancel()
        for timer in self._timers:
            await timer.wait()
        self._timers = []
        self.snapshot()
        logger.info("Sync service stopped")

    def snapshot(self) -> SnapshotInfo:
        return self.state.create_snapshot(self.store.list_tasks())

    async def periodic_snapshot(self) -> None:
        if self.store.saver.blocked:
            logger.debug("Skipping snapshot during critical section")
            return
        self.snapshot()

    def _pick(self, memory: Task, disk: Task) -> str:
        # Unsaved changes and a status the state machine cannot move to stay in memory
        if self.store.saver.dirty or not status_reachable(memory.status, disk.status):
            return "memory"
        if self.policy == "memory-wins":
            return "memory"
        if self.policy == "disk-wins":
            return "disk"
        return "disk" if disk.updated_at > memory.updated_at else "memory"

    async def sync(self) -> SyncReport:
        report = SyncReport()
        if self.store.saver.blocked:
            report.skipped = True
            self.last_report = report
            return report

        try:
            disk = await self.store.document.load()
        except PersistenceError as e:
            report.errors.append(str(e))
            logger.error("Sync could not read the task list: %s", e)
            disk = None

        if disk is not None:
            memory = self.store.snapshot_tasks()
            needs_write = False
            for task_id in sorted(set(memory) | set(disk)):
                report.checked += 1
                mem_task, disk_task = memory.get(task_id), disk.get(task_id)
                if disk_task is None:
                    report.memory_only.append(task_id)
                    needs_write = True
                elif mem_task is None:
                    report.disk_only.append(task_id)
                    if self.store.saver.dirty:
                        needs_write = True
                    else:
                        self.store.apply_external(disk_task)
                elif mem_task.to_dict() != disk_task.to_dict():
                    winner = self._pick(mem_task, disk_task)
                    report.conflicts.append(
                        SyncConflict(
                            task_id=task_id,
                            winner=winner,
                            memory_updated_at=mem_task.updated_at.isoformat(),
                            disk_updated_at=disk_task.updated_at.isoformat(),
                        )
                    )
                    if winner == "disk":
                        self.store.apply_external(disk_task)
                    else:
                        needs_write = True
            if needs_write:
                self.store.saver.request_save()
            if report.conflicts:
                logger.info("Sync resolved %d conflicts", len(report.conflicts))

        try:
            report.reaped = await self.processes.cleanup_orphans(self.store.ids())
        except Exception as e:
            report.errors.append(f"orphan cleanup: {e}")
            logger.exception("Orphan cleanup failed")

        try:
            report.cleaned = await self.store.cleanup_merged_workspaces()
        except Exception as e:
            report.errors.append(f"workspace cleanup: {e}")
            logger.exception("Merged workspace cleanup failed")

        self.last_report = report
        return report

