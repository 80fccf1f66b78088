"""JSON documents on disk: the task list and the process registry."""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Iterable

from task_conductor.core.locks import FileLock
from task_conductor.db.models import ProcessRegistration, Task
from task_conductor.errors import PersistenceError

logger = logging.getLogger(__name__)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def write_json_atomic(path: Path, data: Any) -> None:
    ensure_parent(path)
    tmp = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(data, indent=2, sort_keys=False) + "\n"
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


# ── Task list ────────────────────────────────────────────────────────────────


class TaskDocument:
    """The authoritative ``tasks.json`` with a ``.bak`` copy of the previous write."""

    def __init__(self, path: Path, file_lock: FileLock):
        self.path = Path(path)
        self.backup_path = self.path.with_suffix(self.path.suffix + ".bak")
        self._file_lock = file_lock

    async def load(self) -> dict[str, Task]:
        async with self._file_lock.hold(self.path):
            try:
                return self._parse(self.path)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Task list %s is unreadable (%s); trying backup", self.path, e)
            try:
                tasks = self._parse(self.backup_path)
            except (ValueError, KeyError, TypeError) as e:
                raise PersistenceError(f"Task list and its backup are both unreadable: {e}") from e
            logger.warning("Recovered %d tasks from %s", len(tasks), self.backup_path)
            return tasks

    def _parse(self, path: Path) -> dict[str, Task]:
        data = read_json(path, default={"tasks": []})
        records = data["tasks"] if isinstance(data, dict) else data
        tasks = [Task.from_dict(record) for record in records]
        return {task.id: task for task in tasks}

    async def save(self, tasks: Iterable[Task]) -> None:
        payload = {"tasks": [task.to_dict() for task in tasks]}
        async with self._file_lock.hold(self.path):
            try:
                if self.path.exists():
                    shutil.copy2(self.path, self.backup_path)
                write_json_atomic(self.path, payload)
            except OSError as e:
                logger.error("Failed to write task list %s: %s", self.path, e)
                raise PersistenceError(f"Failed to write task list: {e}") from e
        logger.debug("Saved %d tasks to %s", len(payload["tasks"]), self.path)


# ── Process registry ─────────────────────────────────────────────────────────


class ProcessRegistry:
    """Registrations of live agent subprocesses keyed by ``<task_id>-<phase>``."""

    def __init__(self, path: Path, file_lock: FileLock):
        self.path = Path(path)
        self._file_lock = file_lock
        self._entries: dict[str, ProcessRegistration] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            raw = read_json(self.path, default={}) or {}
        except ValueError as e:
            logger.warning("Process registry %s is unreadable (%s); starting empty", self.path, e)
            raw = {}
        self._entries = {key: ProcessRegistration.from_dict(entry) for key, entry in raw.items()}
        self._loaded = True

    async def _write(self) -> None:
        async with self._file_lock.hold(self.path):
            try:
                write_json_atomic(self.path, {k: v.to_dict() for k, v in self._entries.items()})
            except OSError as e:
                raise PersistenceError(f"Failed to write process registry: {e}") from e

    async def register(self, registration: ProcessRegistration) -> None:
        self._ensure_loaded()
        self._entries[registration.key] = registration
        await self._write()

    async def unregister(self, task_id: str, phase: str) -> None:
        self._ensure_loaded()
        if self._entries.pop(f"{task_id}-{phase}", None) is not None:
            await self._write()

    async def unregister_task(self, task_id: str) -> None:
        self._ensure_loaded()
        keys = [k for k, v in self._entries.items() if v.task_id == task_id]
        for key in keys:
            del self._entries[key]
        if keys:
            await self._write()

    def for_task(self, task_id: str) -> list[ProcessRegistration]:
        self._ensure_loaded()
        return [r for r in self._entries.values() if r.task_id == task_id]

    def all(self) -> list[ProcessRegistration]:
        self._ensure_loaded()
        return list(self._entries.values())

    def as_dict(self) -> dict:
        self._ensure_loaded()
        return {k: v.to_dict() for k, v in self._entries.items()}
