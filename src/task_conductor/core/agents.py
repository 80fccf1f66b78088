"""Agent subprocess lifecycle: phase pipelines, output tailing, adoption and shutdown.

Each phase runs the agent command under a small ``sh`` wrapper that redirects
stdin/stdout/stderr to files and records the exit code in a ``.exit`` file.
Because all state lives in files plus the process registry, a restarted
orchestrator can adopt a run that is still going (or that finished while
nobody was watching) and pick up where it left off.
"""

import asyncio
import logging
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path

from task_conductor.config import Config
from task_conductor.core.agent_output import parse_line
from task_conductor.core.prompts import build_phase_prompts, phase_plan
from task_conductor.core.scheduler import Scheduler
from task_conductor.db.models import OutputEntry, ProcessRegistration, utcnow
from task_conductor.db.storage import ProcessRegistry
from task_conductor.errors import ProcessError, ProcessSpawnError, ProcessTimeoutError

logger = logging.getLogger(__name__)

_OUTPUT_FILE = re.compile(r"^(?P<task>.+)-(?P<phase>planner|editor|reviewer)-(?P<ts>\d+)\.stdout$")


# ── Events ───────────────────────────────────────────────────────────────────


@dataclass
class OutputAppended:
    task_id: str
    entry: OutputEntry


@dataclass
class PhaseChanged:
    task_id: str
    phase: str


@dataclass
class StatusChanged:
    task_id: str
    status: str


@dataclass
class ProcessStarted:
    task_id: str
    phase: str
    pid: int


@dataclass
class Reconnected:
    task_id: str
    phase: str


@dataclass
class Completed:
    task_id: str


@dataclass
class Failed:
    task_id: str
    reason: str
    timed_out: bool = False


RunEvent = OutputAppended | PhaseChanged | StatusChanged | ProcessStarted | Reconnected | Completed | Failed
TERMINAL_EVENTS = (Completed, Failed)


# ── Process helpers ──────────────────────────────────────────────────────────


def _is_pid_alive(pid: int) -> bool:
    """Check if a process exists and is not a zombie."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    try:
        state = stat.read_text().rsplit(")", 1)[1].split()[0]
    except (OSError, IndexError):
        return True
    return state != "Z"


def read_exit_code(path: str | Path) -> int | None:
    try:
        return int(Path(path).read_text().strip())
    except (OSError, ValueError):
        return None


def _unlink(path: str | Path | None) -> None:
    if not path:
        return
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


class OutputTail:
    """Incremental line reader over a file that another process appends to."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.offset = 0
        self.line_no = 0
        self._partial = b""

    def read_lines(self) -> list[str]:
        try:
            with self.path.open("rb") as handle:
                handle.seek(self.offset)
                chunk = handle.read()
        except FileNotFoundError:
            return []
        if not chunk:
            return []
        self.offset += len(chunk)
        pieces = (self._partial + chunk).split(b"\n")
        self._partial = pieces.pop()
        return [piece.decode("utf-8", errors="replace") for piece in pieces]

    def flush(self) -> list[str]:
        """Lines read so far plus any trailing line without a newline."""
        lines = self.read_lines()
        if self._partial:
            lines.append(self._partial.decode("utf-8", errors="replace"))
            self._partial = b""
        return lines


def entries_for_lines(
    task_id: str,
    phase: str,
    stem: str,
    tail: OutputTail,
    lines: list[str],
    stream: str = "stdout",
    historical: bool = False,
) -> list[OutputEntry]:
    entries = []
    for line in lines:
        tail.line_no += 1
        if stream == "stderr":
            items = [("raw", line)] if line.strip() else []
        else:
            items = [(item.kind, item.content) for item in parse_line(line)]
        for index, (kind, content) in enumerate(items):
            entries.append(
                OutputEntry(
                    id=f"{stem}:{stream}:{tail.line_no}:{index}",
                    task_id=task_id,
                    phase=phase,
                    kind=kind,
                    content=content,
                    historical=historical,
                )
            )
    return entries


# ── Runs ─────────────────────────────────────────────────────────────────────


@dataclass
class PhaseHandle:
    phase: str
    registration: ProcessRegistration
    started: float
    process: asyncio.subprocess.Process | None = None
    waiter: asyncio.Future | None = None
    last_liveness_check: float = float("-inf")
    stdout_tail: OutputTail = field(init=False)
    stderr_tail: OutputTail = field(init=False)

    def __post_init__(self):
        self.stdout_tail = OutputTail(self.registration.stdout_path)
        self.stderr_tail = OutputTail(self.registration.stderr_path)

    @property
    def stem(self) -> str:
        return Path(self.registration.stdout_path).stem


@dataclass
class AgentRun:
    task_id: str
    workdir: str
    mode: str
    prompt: str
    phases: list[str]
    prompts: dict[str, str]
    plan_path: Path | None = None
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    supervisor: asyncio.Task | None = None
    current: PhaseHandle | None = None
    detached: bool = False
    closed: bool = False

    def emit(self, event: RunEvent) -> None:
        self.events.put_nowait(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.events.put_nowait(None)

    def next_phase(self, phase: str) -> str | None:
        index = self.phases.index(phase)
        return self.phases[index + 1] if index + 1 < len(self.phases) else None


class ProcessManager:
    """Spawns and supervises one phase pipeline per task.

    Each run publishes typed events on its own asyncio.Queue. ``None`` on the
    queue means the run is over and no further events will follow.
    """

    def __init__(self, config: Config, registry: ProcessRegistry, scheduler: Scheduler | None = None):
        self.config = config
        self.registry = registry
        self.scheduler = scheduler or Scheduler()
        self.output_dir = Path(config.output_dir)
        self._runs: dict[str, AgentRun] = {}

    def is_running(self, task_id: str) -> bool:
        return task_id in self._runs

    def _plan_path(self, task_id: str, mode: str) -> Path | None:
        return self.output_dir / f"{task_id}-plan.md" if mode == "planning" else None

    def _new_run(self, task_id: str, workdir: str, prompt: str, mode: str) -> AgentRun:
        plan_path = self._plan_path(task_id, mode)
        return AgentRun(
            task_id=task_id,
            workdir=workdir,
            mode=mode,
            prompt=prompt,
            phases=phase_plan(mode),
            prompts=build_phase_prompts(prompt, mode, plan_path),
            plan_path=plan_path,
        )

    # ── Start / adopt ────────────────────────────────────────────────────

    async def start(self, task_id: str, workdir: str, prompt: str, mode: str) -> asyncio.Queue:
        """Spawn the first phase and return the run's event channel.

        Raises ProcessSpawnError if the first phase cannot be started.
        """
        if task_id in self._runs:
            raise ProcessError(f"Task {task_id} already has a running agent")
        run = self._new_run(task_id, workdir, prompt, mode)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # Reserved before spawning so a concurrent start sees the task as running
        self._runs[task_id] = run
        try:
            handle = await self._spawn(run, run.phases[0])
        except BaseException:
            if self._runs.get(task_id) is run:
                del self._runs[task_id]
            raise
        if self._runs.get(task_id) is not run:
            await self._terminate(handle.registration.pid)
            await self._retire(handle)
            run.close()
            raise ProcessError(f"Task {task_id} was stopped while its agent was starting")
        run.emit(StatusChanged(task_id, "in_progress"))
        run.supervisor = asyncio.create_task(self._supervise(run, handle, replay=False), name=f"run-{task_id}")
        return run.events

    async def adopt(self, task_id: str, workdir: str, mode: str, registration: ProcessRegistration) -> asyncio.Queue:
        """Reattach to a phase that was started by a previous orchestrator process.

        The phase's stdout is replayed once as historical output, then a
        Reconnected event is emitted and live tailing continues.
        """
        if task_id in self._runs:
            raise ProcessError(f"Task {task_id} already has a running agent")
        run = self._new_run(task_id, workdir, registration.prompt, mode)
        if registration.phase not in run.phases:
            raise ProcessError(f"Phase {registration.phase} is not part of mode {mode}")

        age = max(0.0, (utcnow() - registration.started_at).total_seconds())
        handle = PhaseHandle(
            phase=registration.phase,
            registration=registration,
            started=self.scheduler.time() - age,
        )
        run.current = handle
        self._runs[task_id] = run
        logger.info("Adopting %s phase of task %s (pid %d)", registration.phase, task_id, registration.pid)
        run.supervisor = asyncio.create_task(self._supervise(run, handle, replay=True), name=f"run-{task_id}")
        return run.events

    async def _spawn(self, run: AgentRun, phase: str) -> PhaseHandle:
        stamp = int(time.time() * 1000)
        stem = self.output_dir / f"{run.task_id}-{phase}-{stamp}"
        stdin_path = Path(f"{stem}.stdin")
        stdout_path = Path(f"{stem}.stdout")
        stderr_path = Path(f"{stem}.stderr")
        exit_path = Path(f"{stem}.exit")

        stdin_path.write_text(run.prompts[phase], encoding="utf-8")
        stdout_path.touch()
        stderr_path.touch()

        q = shlex.quote
        command = " ".join(q(part) for part in self.config.agent_command)
        wrapper = (
            f"{command} < {q(str(stdin_path))} > {q(str(stdout_path))} 2> {q(str(stderr_path))}; "
            f"code=$?; echo $code > {q(str(exit_path))}.tmp && mv {q(str(exit_path))}.tmp {q(str(exit_path))}; "
            "exit $code"
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                "sh",
                "-c",
                wrapper,
                cwd=run.workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            _unlink(stdin_path)
            raise ProcessSpawnError(f"Failed to start {phase} for task {run.task_id}: {e}") from e

        registration = ProcessRegistration(
            pid=proc.pid,
            task_id=run.task_id,
            phase=phase,
            started_at=utcnow(),
            workdir=run.workdir,
            prompt=run.prompt,
            stdin_path=str(stdin_path),
            stdout_path=str(stdout_path),
            stderr_path=str(stderr_path),
            exit_code_path=str(exit_path),
            command=wrapper,
        )
        await self.registry.register(registration)

        handle = PhaseHandle(
            phase=phase,
            registration=registration,
            started=self.scheduler.time(),
            process=proc,
            waiter=asyncio.ensure_future(proc.wait()),
        )
        run.current = handle
        run.emit(PhaseChanged(run.task_id, phase))
        run.emit(ProcessStarted(run.task_id, phase, proc.pid))
        logger.info("Started %s phase for task %s (pid %d)", phase, run.task_id, proc.pid)
        return handle

    # ── Supervision ──────────────────────────────────────────────────────

    async def _supervise(self, run: AgentRun, handle: PhaseHandle, replay: bool) -> None:
        terminal: RunEvent | None = None
        try:
            while True:
                try:
                    code = await self._watch(run, handle, replay)
                except ProcessTimeoutError as e:
                    logger.warning("Task %s: %s", run.task_id, e)
                    await self._terminate(handle.registration.pid)
                    await self._retire(handle)
                    terminal = Failed(run.task_id, str(e), timed_out=True)
                    break
                await self._retire(handle)
                replay = False

                if code != 0:
                    if code is None:
                        reason = f"{handle.phase} exited with unknown status"
                    else:
                        reason = f"{handle.phase} exited with code {code}"
                    terminal = Failed(run.task_id, reason)
                    break

                next_phase = run.next_phase(handle.phase)
                if next_phase is None:
                    terminal = Completed(run.task_id)
                    break
                handle = await self._spawn(run, next_phase)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Supervisor for task %s crashed", run.task_id)
            terminal = Failed(run.task_id, str(e))
        finally:
            if terminal is not None:
                if isinstance(terminal, Completed):
                    run.emit(PhaseChanged(run.task_id, "done"))
                run.emit(terminal)
            self._finish(run)

    async def _watch(self, run: AgentRun, handle: PhaseHandle, replay: bool) -> int | None:
        """Tail a phase's output until its process exits; return the exit code."""
        if replay:
            self._pump(run, handle, historical=True)
            run.emit(Reconnected(run.task_id, handle.phase))

        last_output = self.scheduler.time()
        while True:
            if self._pump(run, handle):
                last_output = self.scheduler.time()

            exited, code = self._poll(handle)
            if exited:
                self._pump(run, handle, final=True)
                return code

            now = self.scheduler.time()
            if now - last_output >= self.config.idle_timeout:
                raise ProcessTimeoutError(
                    f"{handle.phase} produced no output for {self.config.idle_timeout / 60:.1f} minutes"
                )
            if now - handle.started >= self.config.phase_timeout:
                raise ProcessTimeoutError(
                    f"{handle.phase} exceeded {self.config.phase_timeout / 60:.1f} minutes"
                )
            await self.scheduler.sleep(self.config.tail_interval)

    def _poll(self, handle: PhaseHandle) -> tuple[bool, int | None]:
        if handle.waiter is not None:
            if not handle.waiter.done():
                return False, None
            return True, handle.process.returncode

        now = self.scheduler.time()
        if now - handle.last_liveness_check < self.config.liveness_interval:
            return False, None
        handle.last_liveness_check = now
        if _is_pid_alive(handle.registration.pid):
            return False, None
        return True, read_exit_code(handle.registration.exit_code_path)

    def _pump(self, run: AgentRun, handle: PhaseHandle, historical: bool = False, final: bool = False) -> bool:
        emitted = False
        for tail, stream in ((handle.stdout_tail, "stdout"), (handle.stderr_tail, "stderr")):
            lines = tail.flush() if final else tail.read_lines()
            for entry in entries_for_lines(
                run.task_id, handle.phase, handle.stem, tail, lines, stream=stream, historical=historical
            ):
                run.emit(OutputAppended(run.task_id, entry))
            emitted = emitted or bool(lines)
        return emitted

    async def _retire(self, handle: PhaseHandle) -> None:
        registration = handle.registration
        await self.registry.unregister(registration.task_id, registration.phase)
        _unlink(registration.stdin_path)

    def _finish(self, run: AgentRun) -> None:
        if self._runs.get(run.task_id) is run:
            del self._runs[run.task_id]
        if not run.detached:
            _unlink(run.plan_path)
        run.close()

    # ── Shutdown ─────────────────────────────────────────────────────────

    async def _terminate(self, pid: int) -> None:
        """SIGTERM the process group, wait out the grace period, then SIGKILL."""
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except PermissionError:
            logger.warning("Not permitted to signal process group %d", pid)
            return

        deadline = self.scheduler.time() + self.config.grace_period
        while self.scheduler.time() < deadline:
            if not _is_pid_alive(pid):
                return
            await self.scheduler.sleep(0.1)

        logger.warning("Process group %d ignored SIGTERM; sending SIGKILL", pid)
        try:
            os.killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def stop(self, task_id: str) -> bool:
        """Terminate a task's run and clean up after it. Returns True if anything was stopped."""
        run = self._runs.pop(task_id, None)
        stopped = False
        if run is not None:
            if run.supervisor is not None:
                run.supervisor.cancel()
                try:
                    await run.supervisor
                except asyncio.CancelledError:
                    pass
            self._finish(run)
            stopped = True

        for registration in self.registry.for_task(task_id):
            await self._terminate(registration.pid)
            _unlink(registration.stdin_path)
            stopped = True
        await self.registry.unregister_task(task_id)
        _unlink(self._plan_path(task_id, "planning"))
        if stopped:
            logger.info("Stopped agent for task %s", task_id)
        return stopped

    async def detach_all(self) -> None:
        """Stop supervising without killing anything, so a later start can adopt."""
        runs = list(self._runs.values())
        self._runs.clear()
        for run in runs:
            run.detached = True
            if run.supervisor is not None:
                run.supervisor.cancel()
                try:
                    await run.supervisor
                except asyncio.CancelledError:
                    pass
            self._finish(run)

    async def cleanup_orphans(self, known_task_ids: set[str]) -> list[str]:
        """Kill and unregister processes whose task no longer exists."""
        reaped = []
        for registration in self.registry.all():
            if registration.task_id in known_task_ids or registration.task_id in self._runs:
                continue
            logger.warning(
                "Reaping orphaned %s process %d of unknown task %s",
                registration.phase,
                registration.pid,
                registration.task_id,
            )
            if _is_pid_alive(registration.pid):
                await self._terminate(registration.pid)
            await self.registry.unregister(registration.task_id, registration.phase)
            _unlink(registration.stdin_path)
            reaped.append(registration.key)
        return reaped

    # ── Output history ───────────────────────────────────────────────────

    def output_files(self, task_id: str) -> list[tuple[str, Path]]:
        """``(phase, stdout_path)`` pairs for a task in the order they ran."""
        found = []
        if not self.output_dir.exists():
            return found
        for path in self.output_dir.glob(f"{task_id}-*.stdout"):
            match = _OUTPUT_FILE.match(path.name)
            if match and match.group("task") == task_id:
                found.append((int(match.group("ts")), match.group("phase"), path))
        return [(phase, path) for _, phase, path in sorted(found)]

    def read_outputs(self, task_id: str) -> list[OutputEntry]:
        """Rebuild a task's output history from its phase output files."""
        entries = []
        for phase, stdout_path in self.output_files(task_id):
            stem = stdout_path.stem
            for path, stream in ((stdout_path, "stdout"), (stdout_path.with_suffix(".stderr"), "stderr")):
                tail = OutputTail(path)
                entries += entries_for_lines(task_id, phase, stem, tail, tail.flush(), stream=stream, historical=True)
        return entries

    def delete_outputs(self, task_id: str) -> None:
        for _, stdout_path in self.output_files(task_id):
            for suffix in (".stdout", ".stderr", ".stdin", ".exit"):
                _unlink(stdout_path.with_suffix(suffix))
