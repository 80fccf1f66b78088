"""Fixtures shared by the test suite."""

import pytest
import pytest_asyncio

from helpers import FAKE_AGENT, init_repo, write_script
from task_conductor.config import Config
from task_conductor.orchestrator import Conductor

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "t@t.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "t@t.com",
}


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits made by the engine (worktrees, temp clones) need an identity."""
    for key, value in GIT_IDENTITY.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("FAKE_AGENT_BEHAVIOR", raising=False)


@pytest.fixture
def git_repo(tmp_path):
    return init_repo(tmp_path / "repo")


@pytest.fixture
def fake_agent(tmp_path):
    return write_script(tmp_path / "fake-agent.sh", FAKE_AGENT)


@pytest.fixture
def config(tmp_path, fake_agent):
    return Config(
        data_dir=tmp_path / "data",
        agent_command=[str(fake_agent)],
        idle_timeout=30,
        phase_timeout=60,
        grace_period=0.5,
        resolver_timeout=30,
        tail_interval=0.05,
        liveness_interval=0.1,
        save_debounce=0.05,
    )


@pytest_asyncio.fixture
async def conductor(config):
    conductor = Conductor(config)
    await conductor.start(recover=False, background=False)
    yield conductor
    await conductor.stop(kill_agents=True)
