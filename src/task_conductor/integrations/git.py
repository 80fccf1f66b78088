"""Async git subprocess wrappers for worktree, branch and merge operations."""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from task_conductor.errors import ConductorError


class GitError(ConductorError):
    """Raised when a git command fails."""

    code = "GIT_ERROR"


class UncommittedChangesError(GitError):
    code = "UNCOMMITTED_CHANGES"

    def __init__(self, repo_path: str | Path):
        super().__init__(f"{self.code}: {repo_path} has uncommitted changes")
        self.repo_path = str(repo_path)


class GitConflictError(GitError):
    """A conflict that was aborted, leaving the repository clean.

    ``str(err)`` is a machine-parseable code such as ``MERGE_CONFLICT:feature-x``.
    """

    code = "CONFLICT"

    def __init__(self, branch: str, detail: str | None = None):
        message = f"{self.code}:{branch}"
        if detail:
            message += f":{detail}"
        super().__init__(message)
        self.branch = branch
        self.detail = detail


class MergeConflictError(GitConflictError):
    code = "MERGE_CONFLICT"


class CherryPickConflictError(GitConflictError):
    code = "CHERRY_PICK_CONFLICT"


class RebaseConflictError(GitConflictError):
    code = "REBASE_CONFLICT"


class MergeConflictUnresolvedError(GitConflictError):
    code = "MERGE_CONFLICT_UNRESOLVED"


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


async def execute_git(args: list[str], cwd: str | Path | None = None) -> GitResult:
    """Run a git command and return its result without checking the exit code."""
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    stdout, stderr = await proc.communicate()
    return GitResult(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )


async def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    result = await execute_git(args, cwd=cwd)
    if not result.ok:
        raise GitError(f"git {' '.join(args)} failed: {result.stderr or result.stdout}")
    return result.stdout


async def is_git_repo(path: str | Path) -> bool:
    if not Path(path).is_dir():
        return False
    result = await execute_git(["rev-parse", "--git-dir"], cwd=path)
    return result.ok


async def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    start_point: str,
) -> str:
    """Create a new worktree on a new branch starting at ``start_point``."""
    return await run_git(
        ["worktree", "add", "-b", branch, str(worktree_path), start_point],
        cwd=repo_path,
    )


async def worktree_remove(repo_path: str | Path, worktree_path: str | Path) -> str:
    return await run_git(["worktree", "remove", "--force", str(worktree_path)], cwd=repo_path)


async def worktree_prune(repo_path: str | Path) -> str:
    return await run_git(["worktree", "prune"], cwd=repo_path)


async def delete_branch(repo_path: str | Path, branch: str) -> str:
    return await run_git(["branch", "-D", branch], cwd=repo_path)


async def get_status(cwd: str | Path, untracked: bool = True) -> str:
    """Porcelain status of a working directory; empty when clean."""
    args = ["status", "--porcelain"]
    if not untracked:
        args.append("--untracked-files=no")
    return await run_git(args, cwd=cwd)


async def get_current_branch(cwd: str | Path) -> str:
    return await run_git(["branch", "--show-current"], cwd=cwd)


async def get_head(cwd: str | Path) -> str:
    return await run_git(["rev-parse", "HEAD"], cwd=cwd)


async def conflicted_files(cwd: str | Path) -> list[str]:
    """Paths with unresolved merge conflicts."""
    output = await run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.split("\n") if line]
