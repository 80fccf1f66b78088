"""Data models for the task conductor."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import ClassVar

from task_conductor.errors import InvalidTransitionError

MODES = ("edit", "none", "no_review", "level1", "level2", "planning")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    parsed = datetime.fromisoformat(val)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val is not None else None


# ── Task status variants ─────────────────────────────────────────────────────


@dataclass
class Starting:
    status: ClassVar[str] = "starting"


@dataclass
class InProgress:
    status: ClassVar[str] = "in_progress"


@dataclass
class Finished:
    status: ClassVar[str] = "finished"
    commit_hash: str | None = None
    previewing: bool = False
    preview_sha: str | None = None


@dataclass
class Failed:
    status: ClassVar[str] = "failed"
    reason: str = ""
    commit_hash: str | None = None


@dataclass
class Merged:
    status: ClassVar[str] = "merged"
    commit_hash: str
    merged_at: datetime = field(default_factory=utcnow)


TaskState = Starting | InProgress | Finished | Failed | Merged

TRANSITIONS: dict[str, set[str]] = {
    "starting": {"in_progress"},
    "in_progress": {"finished", "failed"},
    "finished": {"merged"},
    "failed": set(),
    "merged": set(),
}

SETTLED_STATUSES = {"finished", "failed", "merged"}


def status_reachable(current: str, target: str) -> bool:
    """True when ``target`` is ``current`` or lies ahead of it in the state machine."""
    seen, frontier = {current}, [current]
    while frontier:
        for nxt in TRANSITIONS.get(frontier.pop(), ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return target in seen


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass
class PromptCycle:
    prompt: str
    timestamp: datetime = field(default_factory=utcnow)
    commit_hash: str | None = None
    merged_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt,
            "timestamp": _iso(self.timestamp),
            "commit_hash": self.commit_hash,
            "merged_at": _iso(self.merged_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PromptCycle":
        return cls(
            prompt=data["prompt"],
            timestamp=_dt(data.get("timestamp")) or utcnow(),
            commit_hash=data.get("commit_hash"),
            merged_at=_dt(data.get("merged_at")),
        )


@dataclass
class Task:
    id: str
    prompt: str
    repo_path: str
    mode: str = "none"
    phase: str = "editor"
    worktree: str | None = None
    branch: str | None = None
    base_branch: str | None = None
    state: TaskState = field(default_factory=Starting)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    predecessor_id: str | None = None
    image_path: str | None = None
    self_modification: bool = False
    agent_prompt: str | None = None
    prompt_history: list[PromptCycle] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def commit_hash(self) -> str | None:
        return getattr(self.state, "commit_hash", None)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def transition(self, new_state: TaskState) -> None:
        """Move to ``new_state``, enforcing the allowed status edges."""
        if new_state.status not in TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, new_state.status)
        self.state = new_state
        self.touch()

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        state = self.state
        return {
            "id": self.id,
            "prompt": self.prompt,
            "status": self.status,
            "phase": self.phase,
            "mode": self.mode,
            "worktree": self.worktree,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "repo_path": self.repo_path,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "commit_hash": self.commit_hash,
            "merged_at": _iso(state.merged_at) if isinstance(state, Merged) else None,
            "previewing": state.previewing if isinstance(state, Finished) else False,
            "preview_sha": state.preview_sha if isinstance(state, Finished) else None,
            "failure_reason": state.reason if isinstance(state, Failed) else None,
            "predecessor_id": self.predecessor_id,
            "image_path": self.image_path,
            "self_modification": self.self_modification,
            "agent_prompt": self.agent_prompt,
            "prompt_history": [cycle.to_dict() for cycle in self.prompt_history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=data["id"],
            prompt=data["prompt"],
            repo_path=data["repo_path"],
            mode=data.get("mode", "none"),
            phase=data.get("phase", "editor"),
            worktree=data.get("worktree"),
            branch=data.get("branch"),
            base_branch=data.get("base_branch"),
            state=_state_from_dict(data),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
            predecessor_id=data.get("predecessor_id"),
            image_path=data.get("image_path"),
            self_modification=bool(data.get("self_modification")),
            agent_prompt=data.get("agent_prompt"),
            prompt_history=[PromptCycle.from_dict(c) for c in data.get("prompt_history", [])],
        )


def _state_from_dict(data: dict) -> TaskState:
    status = data.get("status", "starting")
    if status == "starting":
        return Starting()
    if status == "in_progress":
        return InProgress()
    if status == "finished":
        return Finished(
            commit_hash=data.get("commit_hash"),
            previewing=bool(data.get("previewing")),
            preview_sha=data.get("preview_sha"),
        )
    if status == "failed":
        return Failed(reason=data.get("failure_reason") or "", commit_hash=data.get("commit_hash"))
    if status == "merged":
        return Merged(
            commit_hash=data["commit_hash"],
            merged_at=_dt(data.get("merged_at")) or utcnow(),
        )
    raise ValueError(f"Unknown task status: {status}")


# ── Processes & output ───────────────────────────────────────────────────────


@dataclass
class ProcessRegistration:
    pid: int
    task_id: str
    phase: str
    started_at: datetime
    workdir: str
    prompt: str
    stdin_path: str
    stdout_path: str
    stderr_path: str
    exit_code_path: str
    command: str = ""

    @property
    def key(self) -> str:
        return f"{self.task_id}-{self.phase}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessRegistration":
        return cls(**{**data, "started_at": _dt(data["started_at"])})


@dataclass
class OutputEntry:
    id: str
    task_id: str
    phase: str
    kind: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    historical: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "phase": self.phase,
            "kind": self.kind,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "historical": self.historical,
        }
