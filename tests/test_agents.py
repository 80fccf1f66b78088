"""Tests for the agent process manager: pipelines, failures, timeouts and adoption."""

import asyncio
from pathlib import Path

import pytest

from task_conductor.core.agents import (
    Completed,
    Failed,
    OutputAppended,
    OutputTail,
    PhaseChanged,
    ProcessManager,
    ProcessStarted,
    Reconnected,
    StatusChanged,
    _is_pid_alive,
    read_exit_code,
)
from task_conductor.core.locks import FileLock
from task_conductor.db.storage import ProcessRegistry
from task_conductor.errors import ProcessError, ProcessSpawnError


def _manager(config) -> ProcessManager:
    registry = ProcessRegistry(config.data_dir / "processes.json", FileLock())
    return ProcessManager(config, registry)


async def _drain(events: asyncio.Queue, timeout: float = 15) -> list:
    collected = []
    while True:
        event = await asyncio.wait_for(events.get(), timeout=timeout)
        if event is None:
            return collected
        collected.append(event)


async def _until(events: asyncio.Queue, predicate, collected: list, timeout: float = 10) -> None:
    while True:
        event = await asyncio.wait_for(events.get(), timeout=timeout)
        assert event is not None, "run ended early"
        collected.append(event)
        if predicate(collected):
            return


def _texts(events: list) -> list[str]:
    return [e.entry.content for e in events if isinstance(e, OutputAppended) and e.entry.kind == "text"]


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


class TestOutputTail:
    def test_partial_lines_are_buffered(self, tmp_path):
        path = tmp_path / "out.stdout"
        path.write_bytes(b"one\ntw")
        tail = OutputTail(path)
        assert tail.read_lines() == ["one"]
        with path.open("ab") as handle:
            handle.write(b"o\nthree")
        assert tail.read_lines() == ["two"]
        assert tail.flush() == ["three"]
        assert tail.read_lines() == []

    def test_missing_file(self, tmp_path):
        assert OutputTail(tmp_path / "nope").read_lines() == []

    def test_read_exit_code(self, tmp_path):
        path = tmp_path / "x.exit"
        assert read_exit_code(path) is None
        path.write_text("3\n")
        assert read_exit_code(path) == 3


class TestPipeline:
    @pytest.mark.asyncio
    async def test_phases_run_in_order(self, config, workdir):
        manager = _manager(config)
        events = await manager.start("t1", str(workdir), "fix bug", "edit")
        collected = await _drain(events)

        phases = [e.phase for e in collected if isinstance(e, PhaseChanged)]
        assert phases == ["editor", "reviewer", "done"]
        assert isinstance(collected[-1], Completed)
        assert [e.status for e in collected if isinstance(e, StatusChanged)] == ["in_progress"]
        assert len([e for e in collected if isinstance(e, ProcessStarted)]) == 2
        assert _texts(collected) == ["Working on it", "Working on it"]

        # Both phases ran in the workdir with their own prompt
        notes = (workdir / "agent-notes.txt").read_text().splitlines()
        assert notes[0] == "fix bug"
        assert notes[1].startswith('Task: "fix bug"')

        assert not manager.is_running("t1")
        assert manager.registry.all() == []
        assert not list(config.output_dir.glob("*.stdin"))

    @pytest.mark.asyncio
    async def test_output_entries_have_stable_ids(self, config, workdir):
        manager = _manager(config)
        collected = await _drain(await manager.start("t2", str(workdir), "fix bug", "no_review"))
        entries = [e.entry for e in collected if isinstance(e, OutputAppended)]

        assert [e.kind for e in entries] == ["init", "text", "tool"]
        assert len({e.id for e in entries}) == len(entries)

        history = manager.read_outputs("t2")
        assert [e.id for e in history] == [e.id for e in entries]
        assert all(e.historical for e in history)

    @pytest.mark.asyncio
    async def test_planning_mode_cleans_up_plan_file(self, config, workdir):
        manager = _manager(config)
        plan = config.output_dir / "t3-plan.md"
        events = await manager.start("t3", str(workdir), "fix bug", "planning")
        plan.write_text("# plan\n")
        collected = await _drain(events)

        assert [e.phase for e in collected if isinstance(e, PhaseChanged)] == [
            "planner", "editor", "reviewer", "done",
        ]
        assert not plan.exists()


class TestFailures:
    @pytest.mark.asyncio
    async def test_non_zero_exit_fails_run(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "fail")
        manager = _manager(config)
        collected = await _drain(await manager.start("f1", str(workdir), "fix bug", "edit"))

        failed = collected[-1]
        assert isinstance(failed, Failed)
        assert failed.reason == "editor exited with code 3"
        assert not failed.timed_out
        # The reviewer never ran
        assert "reviewer" not in [e.phase for e in collected if isinstance(e, PhaseChanged)]
        raw = [e.entry.content for e in collected if isinstance(e, OutputAppended) and e.entry.kind == "raw"]
        assert raw == ["boom"]
        # Output files are kept for diagnosis
        assert [phase for phase, _ in manager.output_files("f1")] == ["editor"]

    @pytest.mark.asyncio
    async def test_idle_timeout_kills_process_group(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        config.idle_timeout = 0.5
        manager = _manager(config)
        events = await manager.start("h1", str(workdir), "fix bug", "edit")
        pid = manager.registry.for_task("h1")[0].pid

        collected = await _drain(events)

        failed = collected[-1]
        assert isinstance(failed, Failed)
        assert failed.timed_out
        assert "no output" in failed.reason
        assert not _is_pid_alive(pid)
        assert manager.registry.all() == []

    @pytest.mark.asyncio
    async def test_spawn_failure(self, config, tmp_path):
        manager = _manager(config)
        with pytest.raises(ProcessSpawnError):
            await manager.start("s1", str(tmp_path / "missing"), "fix bug", "edit")
        assert not manager.is_running("s1")
        assert manager.registry.all() == []

    @pytest.mark.asyncio
    async def test_stop_terminates_run(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        manager = _manager(config)
        events = await manager.start("k1", str(workdir), "fix bug", "edit")
        pid = manager.registry.for_task("k1")[0].pid

        assert await manager.stop("k1")

        await _drain(events)
        assert not manager.is_running("k1")
        assert manager.registry.all() == []
        await asyncio.sleep(0.1)
        assert not _is_pid_alive(pid)

    @pytest.mark.asyncio
    async def test_stop_before_supervisor_runs_still_ends_channel(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        manager = _manager(config)
        events = await manager.start("k2", str(workdir), "fix bug", "edit")
        await manager.stop("k2")

        collected = await _drain(events, timeout=5)

        assert not any(isinstance(e, (Completed, Failed)) for e in collected)
        assert manager.registry.all() == []

    @pytest.mark.asyncio
    async def test_stop_while_spawning(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        manager = _manager(config)
        starting = asyncio.create_task(manager.start("k3", str(workdir), "fix bug", "edit"))
        await asyncio.sleep(0)
        assert manager.is_running("k3")

        await manager.stop("k3")

        with pytest.raises(ProcessError):
            await starting
        assert not manager.is_running("k3")
        assert manager.registry.all() == []


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_starts_spawn_one_agent(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        manager = _manager(config)

        results = await asyncio.gather(
            manager.start("c1", str(workdir), "fix bug", "edit"),
            manager.start("c1", str(workdir), "fix bug", "edit"),
            return_exceptions=True,
        )

        assert len([r for r in results if isinstance(r, ProcessError)]) == 1
        assert len([r for r in results if isinstance(r, asyncio.Queue)]) == 1
        assert len(manager.registry.for_task("c1")) == 1
        assert len(manager.output_files("c1")) == 1
        await manager.stop("c1")
        assert manager.registry.all() == []


class TestAdoption:
    @pytest.mark.asyncio
    async def test_replays_prior_output_exactly_once(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "stream")
        monkeypatch.setenv("FAKE_AGENT_DELAY", "1.5")
        first = _manager(config)
        events = await first.start("a1", str(workdir), "fix bug", "no_review")
        seen: list = []
        await _until(events, lambda c: "line-2" in _texts(c), seen)
        await first.detach_all()

        # A fresh manager reading the same registry, as after a restart
        second = _manager(config)
        [registration] = second.registry.for_task("a1")
        assert _is_pid_alive(registration.pid)

        adopted = await second.adopt("a1", str(workdir), "no_review", registration)
        collected = await _drain(adopted)

        assert _texts(collected) == ["line-1", "line-2", "line-3", "line-4"]
        reconnect = next(i for i, e in enumerate(collected) if isinstance(e, Reconnected))
        before = [e for e in collected[:reconnect] if isinstance(e, OutputAppended)]
        after = [e for e in collected[reconnect:] if isinstance(e, OutputAppended)]
        assert before and all(e.entry.historical for e in before)
        assert not any(e.entry.historical for e in after)
        assert [e.entry.content for e in after if e.entry.kind == "text"] == ["line-3", "line-4"]
        assert isinstance(collected[-1], Completed)
        assert second.registry.all() == []

    @pytest.mark.asyncio
    async def test_adopting_a_run_that_already_exited(self, config, workdir):
        first = _manager(config)
        events = await first.start("a2", str(workdir), "fix bug", "no_review")
        seen: list = []
        await _until(events, lambda c: any(isinstance(e, ProcessStarted) for e in c), seen)
        pid = seen[-1].pid
        await first.detach_all()

        registration = first.registry.for_task("a2")[0]
        for _ in range(100):
            if Path(registration.exit_code_path).exists() and not _is_pid_alive(pid):
                break
            await asyncio.sleep(0.05)

        second = _manager(config)
        collected = await _drain(await second.adopt("a2", str(workdir), "no_review", registration))

        assert _texts(collected) == ["Working on it"]
        assert isinstance(collected[-1], Completed)

    @pytest.mark.asyncio
    async def test_cleanup_orphans(self, config, workdir, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_BEHAVIOR", "hang")
        first = _manager(config)
        await first.start("o1", str(workdir), "fix bug", "edit")
        pid = first.registry.for_task("o1")[0].pid
        await first.detach_all()

        second = _manager(config)
        reaped = await second.cleanup_orphans(known_task_ids=set())

        assert reaped == ["o1-editor"]
        assert second.registry.all() == []
        await asyncio.sleep(0.1)
        assert not _is_pid_alive(pid)
