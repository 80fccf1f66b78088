"""Task store: the state machine, in-memory cache and persistence of tasks."""

import asyncio
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path

from task_conductor.config import Config
from task_conductor.core import worktrees
from task_conductor.core.agents import (
    Completed,
    Failed as RunFailed,
    OutputAppended,
    PhaseChanged,
    ProcessManager,
    ProcessStarted,
    Reconnected,
    StatusChanged,
)
from task_conductor.core.locks import MergeLock, RepoLock
from task_conductor.core.prompts import change_request_prompt, with_image
from task_conductor.core.saver import DebouncedSaver
from task_conductor.core.scheduler import Scheduler
from task_conductor.db.models import (
    MODES,
    Failed,
    Finished,
    InProgress,
    Merged,
    OutputEntry,
    PromptCycle,
    Task,
    utcnow,
)
from task_conductor.db.storage import TaskDocument
from task_conductor.errors import (
    ConductorError,
    InvalidTransitionError,
    ProcessError,
    TaskLimitError,
    TaskNotFoundError,
    TaskNotSettledError,
    ValidationError,
)
from task_conductor.integrations.git import GitError

logger = logging.getLogger(__name__)

TASK_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,50}$")
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024
OUTPUT_HISTORY_LIMIT = 1000
ACTIVE_STATUSES = {"starting", "in_progress"}


# ── Push updates ─────────────────────────────────────────────────────────────


@dataclass
class TaskUpdated:
    task: dict


@dataclass
class TaskRemoved:
    task_id: str


def validate_task_id(task_id: str) -> str:
    if not TASK_ID_PATTERN.match(task_id or ""):
        raise ValidationError(f"Invalid task id: {task_id!r}")
    return task_id


def validate_image(image_path: str) -> str:
    path = Path(image_path).expanduser().resolve()
    if path.suffix.lower() not in IMAGE_SUFFIXES:
        raise ValidationError(f"Unsupported image type: {path.suffix or image_path}")
    if not path.is_file():
        raise ValidationError(f"Image not found: {image_path}")
    if path.stat().st_size > MAX_IMAGE_BYTES:
        raise ValidationError(f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)}MB: {image_path}")
    return str(path)


class TaskStore:
    """Owns every task record. All mutations go through its methods."""

    def __init__(
        self,
        config: Config,
        document: TaskDocument,
        processes: ProcessManager,
        repo_lock: RepoLock,
        merge_lock: MergeLock,
        resolver: worktrees.Resolver | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.config = config
        self.document = document
        self.processes = processes
        self.repo_lock = repo_lock
        self.merge_lock = merge_lock
        self.resolver = resolver
        self.saver = DebouncedSaver(self._persist, delay=config.save_debounce, scheduler=scheduler)
        self._tasks: dict[str, Task] = {}
        self._outputs: dict[str, deque[OutputEntry]] = {}
        self._consumers: dict[str, asyncio.Task] = {}
        self._subscribers: list[asyncio.Queue] = []
        self._create_lock = asyncio.Lock()
        self._starting: set[str] = set()

    # ── Persistence ──────────────────────────────────────────────────────

    async def _persist(self) -> None:
        await self.document.save(sorted(self._tasks.values(), key=lambda t: t.created_at))

    async def load(self) -> None:
        self._tasks = await self.document.load()
        logger.info("Loaded %d tasks", len(self._tasks))

    def _changed(self, task: Task) -> None:
        self.saver.request_save()
        self._publish(TaskUpdated(task.to_dict()))

    # ── Subscriptions ────────────────────────────────────────────────────

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, update) -> None:
        for queue in self._subscribers:
            queue.put_nowait(update)

    # ── Queries ──────────────────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, status: str | None = None) -> list[Task]:
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at)
        if status:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def ids(self) -> set[str]:
        return set(self._tasks)

    def get_outputs(self, task_id: str) -> list[OutputEntry]:
        """Output history for a task, rebuilt from its phase files when not cached."""
        self.get(task_id)
        if task_id not in self._outputs:
            history = self.processes.read_outputs(task_id)
            self._outputs[task_id] = deque(history, maxlen=OUTPUT_HISTORY_LIMIT)
        return list(self._outputs[task_id])

    async def get_diff(self, task_id: str) -> str:
        task = self.get(task_id)
        if task.worktree and Path(task.worktree).exists():
            return await worktrees.get_task_diff(task.worktree, task.base_branch)
        if task.commit_hash:
            return await worktrees.get_commit_diff(task.repo_path, task.commit_hash)
        return ""

    # ── Creation ─────────────────────────────────────────────────────────

    async def create(
        self,
        prompt: str,
        repo_path: str,
        mode: str = "none",
        image_path: str | None = None,
        task_id: str | None = None,
    ) -> Task:
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt must not be empty")
        if image_path:
            image_path = validate_image(image_path)
        return await self._create(prompt.strip(), repo_path, mode, image_path=image_path, task_id=task_id)

    async def _create(
        self,
        prompt: str,
        repo_path: str,
        mode: str,
        image_path: str | None = None,
        task_id: str | None = None,
        start_point: str | None = None,
        base_branch: str | None = None,
        predecessor_id: str | None = None,
        agent_prompt: str | None = None,
        prompt_history: list[PromptCycle] | None = None,
    ) -> Task:
        if mode not in MODES:
            raise ValidationError(f"Invalid mode {mode!r}; expected one of {', '.join(MODES)}")
        task_id = validate_task_id(task_id or uuid.uuid4().hex[:12])

        async with self._create_lock:
            if task_id in self._tasks:
                raise ValidationError(f"Task already exists: {task_id}")
            active = sum(1 for t in self._tasks.values() if t.status in ACTIVE_STATUSES)
            if active >= self.config.max_active_tasks:
                raise TaskLimitError(
                    f"Maximum of {self.config.max_active_tasks} active tasks reached"
                )
            repo = await worktrees.validate_repo(repo_path)
            self_modification = worktrees.is_self_modification(repo)
            if self_modification:
                logger.warning(
                    "Task %s targets the conductor's own repository %s; restart after merging its changes",
                    task_id,
                    repo,
                )
            async with self.repo_lock.hold(repo):
                workspace = await worktrees.create_workspace(
                    repo,
                    f"task-{task_id}",
                    self.config.worktree_base,
                    start_point=start_point,
                    base_branch=base_branch,
                )

            task = Task(
                id=task_id,
                prompt=prompt,
                repo_path=repo,
                mode=mode,
                phase="planner" if mode == "planning" else "editor",
                worktree=workspace.path,
                branch=workspace.branch,
                base_branch=workspace.base_branch,
                predecessor_id=predecessor_id,
                image_path=image_path,
                self_modification=self_modification,
                agent_prompt=agent_prompt,
                prompt_history=[replace(cycle) for cycle in prompt_history or []],
            )
            self._tasks[task_id] = task
            self._changed(task)

        logger.info("Created task %s in %s (mode=%s)", task_id, repo, mode)
        return task

    # ── Running ──────────────────────────────────────────────────────────

    async def start(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task.status != "starting" or task_id in self._starting or self.processes.is_running(task_id):
            raise InvalidTransitionError(task.id, task.status, "in_progress")
        prompt = task.agent_prompt or with_image(task.prompt, task.image_path)
        self._starting.add(task_id)
        try:
            events = await self.processes.start(task.id, task.worktree, prompt, task.mode)
        except ProcessError as e:
            logger.error("Could not start task %s: %s", task.id, e)
            task.transition(InProgress())
            self._changed(task)
            task.transition(Failed(reason=str(e)))
            self._changed(task)
            raise
        finally:
            self._starting.discard(task_id)
        self._consume(task.id, events)
        return task

    def _consume(self, task_id: str, events: asyncio.Queue) -> None:
        previous = self._consumers.pop(task_id, None)
        if previous is not None:
            previous.cancel()
        self._consumers[task_id] = asyncio.create_task(
            self._consume_events(task_id, events), name=f"events-{task_id}"
        )

    async def _consume_events(self, task_id: str, events: asyncio.Queue) -> None:
        try:
            while True:
                event = await events.get()
                if event is None:
                    break
                try:
                    await self._apply(task_id, event)
                except Exception:
                    logger.exception("Failed to apply %s to task %s", type(event).__name__, task_id)
        finally:
            if self._consumers.get(task_id) is asyncio.current_task():
                del self._consumers[task_id]

    async def _apply(self, task_id: str, event) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return

        if isinstance(event, OutputAppended):
            self._record_output(event.entry)
        elif isinstance(event, PhaseChanged):
            task.phase = event.phase
            task.touch()
            self._changed(task)
        elif isinstance(event, StatusChanged):
            if event.status == "in_progress" and task.status == "starting":
                task.transition(InProgress())
                self._changed(task)
        elif isinstance(event, ProcessStarted):
            logger.debug("Task %s %s phase running as pid %d", task_id, event.phase, event.pid)
        elif isinstance(event, Reconnected):
            self._record_output(
                OutputEntry(
                    id=f"{task_id}-reconnected-{event.phase}-{utcnow().timestamp():.0f}",
                    task_id=task_id,
                    phase=event.phase,
                    kind="system",
                    content=f"Reconnected to running {event.phase} process",
                )
            )
        elif isinstance(event, Completed):
            await self._on_completed(task)
        elif isinstance(event, RunFailed):
            if task.status == "starting":
                task.transition(InProgress())
                self._changed(task)
            task.transition(Failed(reason=event.reason))
            logger.warning("Task %s failed: %s", task_id, event.reason)
            self._changed(task)

    def _record_output(self, entry: OutputEntry) -> None:
        history = self._outputs.setdefault(entry.task_id, deque(maxlen=OUTPUT_HISTORY_LIMIT))
        history.append(entry)
        self._publish(OutputAppended(entry.task_id, entry))

    async def _on_completed(self, task: Task) -> None:
        if task.status == "starting":
            task.transition(InProgress())
            self._changed(task)
        task.transition(Finished())
        logger.info("Task %s finished", task.id)
        self._changed(task)
        if not self.config.auto_commit:
            return
        try:
            await self.commit(task.id)
        except ConductorError as e:
            logger.error("Auto-commit of task %s failed: %s", task.id, e)

    async def commit(self, task_id: str, message: str | None = None) -> str:
        task = self.get(task_id)
        if not isinstance(task.state, Finished):
            raise InvalidTransitionError(task.id, task.status, "finished (commit)")
        async with self.repo_lock.hold(task.repo_path):
            sha = await worktrees.commit_changes(task.worktree, message or task.prompt)
        task.state = replace(task.state, commit_hash=sha)
        task.touch()
        if task.prompt_history:
            task.prompt_history[-1].commit_hash = sha
        self._changed(task)
        logger.info("Committed task %s at %s", task.id, sha[:7])
        return sha

    # ── Change requests ──────────────────────────────────────────────────

    async def request_changes(self, task_id: str, text: str) -> Task:
        """Start a follow-up task on top of ``task_id``'s work.

        The original task keeps its status; it only gains a prompt cycle.
        """
        original = self.get(task_id)
        if not original.is_settled:
            raise TaskNotSettledError(f"Task {task_id} is still {original.status}")
        if not text or not text.strip():
            raise ValidationError("Change request must not be empty")
        text = text.strip()

        diff = await self.get_diff(task_id)
        history = [replace(cycle) for cycle in original.prompt_history]
        if not history:
            merged_at = original.state.merged_at if isinstance(original.state, Merged) else None
            history.append(
                PromptCycle(
                    prompt=original.prompt,
                    timestamp=original.created_at,
                    commit_hash=original.commit_hash,
                    merged_at=merged_at,
                )
            )
        previous = [cycle.prompt for cycle in history]
        history.append(PromptCycle(prompt=text))

        branch_alive = original.worktree is not None and Path(original.worktree).exists()
        new_task = await self._create(
            text,
            original.repo_path,
            original.mode,
            start_point=original.branch if branch_alive else original.base_branch,
            base_branch=original.base_branch,
            predecessor_id=original.id,
            agent_prompt=change_request_prompt(previous, text, diff),
            prompt_history=history,
        )
        # The original only records the cycle once its follow-up exists
        original.prompt_history = history
        original.touch()
        self._changed(original)

        await self.start(new_task.id)
        return new_task

    async def send_prompt(self, task_id: str, text: str) -> Task:
        task = self.get(task_id)
        if not task.is_settled or self.processes.is_running(task_id):
            raise TaskNotSettledError(f"Task {task_id} is still running; wait for it to settle")
        return await self.request_changes(task_id, text)

    # ── Preview ──────────────────────────────────────────────────────────

    async def start_preview(self, task_id: str) -> Task:
        task = self.get(task_id)
        if not isinstance(task.state, Finished) or not task.commit_hash:
            raise ValidationError(f"Task {task_id} has no committed work to preview")
        if task.state.previewing:
            return task
        await self._stop_previews(task.repo_path)

        async with self.repo_lock.hold(task.repo_path):
            preview_sha = await worktrees.cherry_pick(task.repo_path, task.commit_hash)
        task.state = Finished(commit_hash=task.commit_hash, previewing=True, preview_sha=preview_sha)
        task.touch()
        self._changed(task)
        return task

    async def stop_preview(self, task_id: str) -> Task:
        task = self.get(task_id)
        if not isinstance(task.state, Finished) or not task.state.previewing:
            return task
        async with self.repo_lock.hold(task.repo_path):
            await worktrees.undo_cherry_pick(task.repo_path, task.state.preview_sha)
        task.state = Finished(commit_hash=task.commit_hash, previewing=False)
        task.touch()
        self._changed(task)
        return task

    async def _stop_previews(self, repo_path: str) -> None:
        """Take every preview off ``repo_path`` so nothing else builds on it."""
        for other in list(self._tasks.values()):
            if other.repo_path == repo_path and isinstance(other.state, Finished) and other.state.previewing:
                await self.stop_preview(other.id)

    # ── Merge ────────────────────────────────────────────────────────────

    async def merge(self, task_id: str, auto_resolve: bool | None = None) -> Task:
        """Merge a finished task into its base branch.

        A second merge of the same task while one is running is rejected with
        MergeInProgressError. Merging an already-merged task is a no-op.
        """
        task = self.get(task_id)
        async with self.merge_lock.hold(task_id):
            task = self.get(task_id)
            if task.status == "merged":
                return task
            if task.status != "finished":
                raise InvalidTransitionError(task.id, task.status, "merged")

            async with self.saver.critical():
                # A preview commit on the base branch would be carried into the merge
                await self._stop_previews(task.repo_path)

                if task.commit_hash is None or await worktrees.has_uncommitted_changes(task.worktree):
                    await self.commit(task.id)

                use_resolver = self.config.auto_resolve_conflicts if auto_resolve is None else auto_resolve
                async with self.repo_lock.hold(task.repo_path):
                    context = worktrees.MergeContext(
                        task_id=task.id,
                        prompt=task.prompt,
                        branch=task.branch,
                        created_at=task.created_at.isoformat(),
                        diff=await worktrees.get_task_diff(task.worktree, task.base_branch),
                    )
                    sha = await worktrees.merge_to_main(
                        task.repo_path,
                        task.branch,
                        task.base_branch,
                        resolver=self.resolver if use_resolver else None,
                        context=context,
                    )
                    merged_at = utcnow()
                    task.transition(Merged(commit_hash=sha, merged_at=merged_at))
                    if task.prompt_history:
                        task.prompt_history[-1].merged_at = merged_at
                    try:
                        await worktrees.remove_workspace(task.repo_path, task.worktree, task.branch)
                        task.worktree = None
                    except GitError as e:
                        logger.error(
                            "Merged task %s but could not remove its workspace; retrying on next sync: %s",
                            task.id,
                            e,
                        )
                self._changed(task)

        logger.info("Merged task %s at %s", task.id, task.commit_hash[:7])
        return task

    # ── Removal ──────────────────────────────────────────────────────────

    async def remove(self, task_id: str) -> None:
        """Stop, clean up and forget a task. If any step fails the task stays."""
        task = self.get(task_id)
        async with self.saver.critical():
            await self.processes.stop(task_id)
            consumer = self._consumers.pop(task_id, None)
            if consumer is not None:
                consumer.cancel()

            if isinstance(task.state, Finished) and task.state.previewing:
                await self.stop_preview(task_id)

            if task.worktree:
                async with self.repo_lock.hold(task.repo_path):
                    await worktrees.remove_workspace(task.repo_path, task.worktree, task.branch)
                task.worktree = None

            removed = self._tasks.pop(task_id)
            try:
                await self.saver.flush()
            except Exception:
                self._tasks[task_id] = removed
                raise

        self._outputs.pop(task_id, None)
        self.processes.delete_outputs(task_id)
        self._publish(TaskRemoved(task_id))
        logger.info("Removed task %s", task_id)

    async def remove_all(self) -> list[str]:
        """Remove every task, carrying on past failures.

        Raises ConductorError naming the tasks that could not be removed.
        """
        removed, failed = [], []
        for task_id in [t.id for t in self.list_tasks()]:
            try:
                await self.remove(task_id)
                removed.append(task_id)
            except (ConductorError, OSError) as e:
                logger.error("Failed to remove task %s: %s", task_id, e)
                failed.append(task_id)
        if failed:
            raise ConductorError(f"Could not remove tasks: {', '.join(failed)}")
        return removed

    async def cleanup_merged_workspaces(self) -> list[str]:
        """Retry removing workspaces that a merge could not clean up."""
        cleaned = []
        for task in list(self._tasks.values()):
            if task.status != "merged" or not task.worktree:
                continue
            try:
                async with self.repo_lock.hold(task.repo_path):
                    await worktrees.remove_workspace(task.repo_path, task.worktree, task.branch)
            except GitError as e:
                logger.warning("Workspace of merged task %s is still in place: %s", task.id, e)
                continue
            task.worktree = None
            task.touch()
            self._changed(task)
            cleaned.append(task.id)
        return cleaned

    # ── Restart recovery ─────────────────────────────────────────────────

    async def recover(self) -> list[str]:
        """Reattach to agent processes left running by a previous orchestrator.

        In-progress tasks without a registered process are marked failed.
        Returns the ids of adopted tasks.
        """
        adopted = []
        for task in list(self._tasks.values()):
            if task.status not in ACTIVE_STATUSES or self.processes.is_running(task.id):
                continue
            registrations = self.processes.registry.for_task(task.id)
            if not registrations and task.status == "starting":
                continue
            if task.status == "starting":
                task.transition(InProgress())
                self._changed(task)
            if not registrations:
                task.transition(Failed(reason="No running process found after restart"))
                logger.warning("Task %s had no registered process after restart", task.id)
                self._changed(task)
                continue
            registration = max(registrations, key=lambda r: r.started_at)
            try:
                events = await self.processes.adopt(task.id, task.worktree, task.mode, registration)
            except ProcessError as e:
                task.transition(Failed(reason=f"Could not reattach: {e}"))
                self._changed(task)
                continue
            self._outputs.pop(task.id, None)
            self._consume(task.id, events)
            adopted.append(task.id)
        return adopted

    # ── Sync support ─────────────────────────────────────────────────────

    def snapshot_tasks(self) -> dict[str, Task]:
        return dict(self._tasks)

    def apply_external(self, task: Task) -> None:
        """Replace or add a record that came from disk or a snapshot."""
        self._tasks[task.id] = task
        self._publish(TaskUpdated(task.to_dict()))

    def replace_all(self, tasks: dict[str, Task]) -> None:
        for task_id in set(self._tasks) - set(tasks):
            self._publish(TaskRemoved(task_id))
        self._tasks = dict(tasks)
        for task in self._tasks.values():
            self._publish(TaskUpdated(task.to_dict()))

    async def wait_settled(self, task_id: str) -> Task:
        """Wait until the task's event consumer has drained its run."""
        consumer = self._consumers.get(task_id)
        if consumer is not None:
            await asyncio.shield(consumer)
        return self.get(task_id)

    async def close(self) -> None:
        for consumer in list(self._consumers.values()):
            consumer.cancel()
        for consumer in list(self._consumers.values()):
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        self._consumers.clear()
        await self.saver.close()
