"""Configuration loading from environment variables."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--output-format",
    "stream-json",
    "--verbose",
    "--dangerously-skip-permissions",
]

CONFLICT_POLICIES = ("memory-wins", "disk-wins", "newest-wins")


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".task_conductor")
    worktree_dir: Path | None = None
    agent_command: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))

    # Timeouts, in seconds
    idle_timeout: float = 30 * 60
    phase_timeout: float = 60 * 60
    grace_period: float = 5.0
    resolver_timeout: float = 5 * 60
    lock_timeout: float = 30.0

    tail_interval: float = 0.25
    liveness_interval: float = 5.0

    save_debounce: float = 1.0
    snapshot_interval: float = 5 * 60
    max_snapshots: int = 24
    sync_interval: float = 30.0
    conflict_policy: str = "newest-wins"

    max_active_tasks: int = 10
    auto_commit: bool = True
    auto_resolve_conflicts: bool = True

    host: str = "127.0.0.1"
    port: int = 8787

    @property
    def worktree_base(self) -> Path:
        return self.worktree_dir or self.data_dir / "worktrees"

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "outputs"

    @property
    def snapshot_dir(self) -> Path:
        return self.data_dir / "snapshots"

    @property
    def recovery_dir(self) -> Path:
        return self.data_dir / "recovery"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if data_dir := os.environ.get("TC_DATA_DIR"):
            config.data_dir = Path(data_dir)

        if wt_dir := os.environ.get("TC_WORKTREE_DIR"):
            config.worktree_dir = Path(wt_dir)

        if command := os.environ.get("TC_AGENT_COMMAND"):
            config.agent_command = shlex.split(command)

        if idle := os.environ.get("TC_IDLE_TIMEOUT"):
            config.idle_timeout = float(idle)

        if phase := os.environ.get("TC_PHASE_TIMEOUT"):
            config.phase_timeout = float(phase)

        if grace := os.environ.get("TC_GRACE_PERIOD"):
            config.grace_period = float(grace)

        if resolver := os.environ.get("TC_RESOLVER_TIMEOUT"):
            config.resolver_timeout = float(resolver)

        if lock := os.environ.get("TC_LOCK_TIMEOUT"):
            config.lock_timeout = float(lock)

        if tail := os.environ.get("TC_TAIL_INTERVAL"):
            config.tail_interval = float(tail)

        if liveness := os.environ.get("TC_LIVENESS_INTERVAL"):
            config.liveness_interval = float(liveness)

        if debounce := os.environ.get("TC_SAVE_DEBOUNCE"):
            config.save_debounce = float(debounce)

        if snap := os.environ.get("TC_SNAPSHOT_INTERVAL"):
            config.snapshot_interval = float(snap)

        if max_snaps := os.environ.get("TC_MAX_SNAPSHOTS"):
            config.max_snapshots = int(max_snaps)

        if sync := os.environ.get("TC_SYNC_INTERVAL"):
            config.sync_interval = float(sync)

        if policy := os.environ.get("TC_CONFLICT_POLICY"):
            if policy not in CONFLICT_POLICIES:
                raise ValueError(
                    f"TC_CONFLICT_POLICY must be one of {', '.join(CONFLICT_POLICIES)}"
                )
            config.conflict_policy = policy

        if max_active := os.environ.get("TC_MAX_ACTIVE_TASKS"):
            config.max_active_tasks = int(max_active)

        if auto_commit := os.environ.get("TC_AUTO_COMMIT"):
            config.auto_commit = _parse_bool(auto_commit)

        if auto_resolve := os.environ.get("TC_AUTO_RESOLVE"):
            config.auto_resolve_conflicts = _parse_bool(auto_resolve)

        if host := os.environ.get("TC_HOST"):
            config.host = host

        if port := os.environ.get("TC_PORT"):
            config.port = int(port)

        return config


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_config() -> Config:
    return Config.from_env()
