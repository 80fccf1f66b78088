"""Git worktree lifecycle and the merge pipeline for task workspaces."""

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from task_conductor.errors import ConflictResolutionError, ValidationError
from task_conductor.integrations.git import (
    CherryPickConflictError,
    GitError,
    MergeConflictError,
    MergeConflictUnresolvedError,
    RebaseConflictError,
    UncommittedChangesError,
    conflicted_files,
    delete_branch,
    execute_git,
    get_current_branch,
    get_head,
    get_status,
    is_git_repo,
    run_git,
    worktree_add,
    worktree_prune,
    worktree_remove,
)

logger = logging.getLogger(__name__)

SAFE_BRANCH = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,62}$")
MAX_COMMIT_MESSAGE = 1000
PACKAGE_DIR = Path(__file__).resolve().parent.parent


@dataclass
class Workspace:
    path: str
    branch: str
    base_branch: str


@dataclass
class MergeContext:
    """What the conflict resolver knows about the task being merged."""

    task_id: str
    prompt: str
    branch: str
    created_at: str | None = None
    diff: str = ""


class Resolver(Protocol):
    async def resolve(self, workdir: Path, conflicts: list[str], context: MergeContext) -> str: ...


def sanitize_name(name: str) -> str:
    """Reduce ``name`` to a safe branch name of ``[A-Za-z0-9_-]``."""
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "-", name).strip("-_")[:63]
    if not SAFE_BRANCH.match(cleaned):
        raise ValidationError(f"Cannot derive a safe branch name from {name!r}")
    return cleaned


def is_self_modification(repo_path: str | Path, source: Path | None = None) -> bool:
    """True when ``repo_path`` contains the conductor's own source code."""
    source = (source or PACKAGE_DIR).resolve()
    repo = Path(repo_path).expanduser().resolve()
    return source == repo or repo in source.parents


async def validate_repo(path: str | Path) -> str:
    """Return the resolved repository path, or raise ValidationError."""
    resolved = Path(path).expanduser().resolve()
    if not await is_git_repo(resolved):
        raise ValidationError(f"Not a git repository: {path}")
    return str(resolved)


# ── Workspace lifecycle ──────────────────────────────────────────────────────


async def create_workspace(
    repo_path: str | Path,
    name: str,
    worktree_base: str | Path,
    start_point: str | None = None,
    base_branch: str | None = None,
) -> Workspace:
    """Create a worktree on a new branch without touching the source working tree.

    The branch starts at ``start_point`` (default: the repository's current
    branch). ``base_branch`` is where the work will eventually be merged.
    """
    branch = sanitize_name(name)
    current = await get_current_branch(repo_path)
    if not current and not (start_point and base_branch):
        raise ValidationError(f"Repository {repo_path} is in detached HEAD state")
    base = base_branch or current
    path = Path(worktree_base).expanduser().resolve() / branch
    if path.exists():
        raise ValidationError(f"Workspace path already exists: {path}")

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        await worktree_add(repo_path, path, branch, start_point or current)
    except GitError:
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        await execute_git(["worktree", "prune"], cwd=repo_path)
        raise

    logger.info("Created workspace %s on branch %s (from %s)", path, branch, start_point or current)
    return Workspace(path=str(path), branch=branch, base_branch=base)


async def remove_workspace(repo_path: str | Path, worktree: str | Path | None, branch: str | None) -> None:
    """Force-remove the worktree, then delete its branch on a best-effort basis."""
    if worktree and Path(worktree).exists():
        await worktree_remove(repo_path, worktree)
    else:
        await worktree_prune(repo_path)

    if branch:
        try:
            await delete_branch(repo_path, branch)
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch, e)
    logger.info("Removed workspace %s", worktree)


async def commit_changes(worktree: str | Path, message: str) -> str:
    """Commit everything in the worktree and return the new HEAD sha.

    An empty commit is made when there is nothing to commit.
    """
    message = (message.strip() or "Task changes")[:MAX_COMMIT_MESSAGE]
    if await get_status(worktree):
        await run_git(["add", "-A"], cwd=worktree)
        await run_git(["commit", "-m", message], cwd=worktree)
    else:
        await run_git(["commit", "--allow-empty", "-m", message], cwd=worktree)
    return await get_head(worktree)


async def has_uncommitted_changes(worktree: str | Path) -> bool:
    return bool(await get_status(worktree))


async def get_task_diff(cwd: str | Path, base: str, head: str = "HEAD") -> str:
    """Changes on ``head`` since it diverged from ``base``."""
    return await run_git(["diff", f"{base}...{head}"], cwd=cwd)


async def get_commit_diff(repo_path: str | Path, commit: str) -> str:
    """Changes introduced by ``commit`` relative to its first parent."""
    return await run_git(["diff", f"{commit}^1", commit], cwd=repo_path)


# ── Preview ──────────────────────────────────────────────────────────────────


async def _branch_containing(repo_path: str | Path, commit: str) -> str:
    result = await execute_git(
        ["branch", "--contains", commit, "--format=%(refname:short)"], cwd=repo_path
    )
    branches = [line.strip() for line in result.stdout.split("\n") if line.strip()]
    return branches[0] if result.ok and branches else commit[:7]


async def cherry_pick(repo_path: str | Path, commit: str) -> str:
    """Apply ``commit`` on top of the repository's current branch."""
    result = await execute_git(["cherry-pick", commit], cwd=repo_path)
    if result.ok:
        return await get_head(repo_path)

    if "CONFLICT" in result.output or await conflicted_files(repo_path):
        await execute_git(["cherry-pick", "--abort"], cwd=repo_path)
        raise CherryPickConflictError(await _branch_containing(repo_path, commit))
    raise GitError(f"git cherry-pick {commit} failed: {result.stderr}")


async def undo_cherry_pick(repo_path: str | Path, preview_sha: str | None = None) -> None:
    """Take a preview commit back off the repository's current branch.

    While the preview is still HEAD it is reset away. Once other commits have
    landed on top it is reverted instead, so those commits survive.
    """
    if preview_sha is None or await get_head(repo_path) == preview_sha:
        await run_git(["reset", "--hard", "HEAD~1"], cwd=repo_path)
        return

    contained = await execute_git(["merge-base", "--is-ancestor", preview_sha, "HEAD"], cwd=repo_path)
    if not contained.ok:
        logger.warning("Preview commit %s is no longer on the current branch", preview_sha[:7])
        return
    result = await execute_git(["revert", "--no-edit", preview_sha], cwd=repo_path)
    if not result.ok:
        await execute_git(["revert", "--abort"], cwd=repo_path)
        raise CherryPickConflictError(preview_sha[:7], "revert")
    logger.info("Reverted preview commit %s", preview_sha[:7])


async def rebase_on_base(worktree: str | Path, base_branch: str) -> str:
    """Replay the worktree's branch onto ``base_branch``; a conflict is aborted."""
    branch = await get_current_branch(worktree)
    result = await execute_git(["rebase", base_branch], cwd=worktree)
    if not result.ok:
        await execute_git(["rebase", "--abort"], cwd=worktree)
        raise RebaseConflictError(branch or str(worktree))
    return await get_head(worktree)


# ── Merge ────────────────────────────────────────────────────────────────────


async def merge_to_main(
    repo_path: str | Path,
    branch: str,
    base_branch: str,
    resolver: Resolver | None = None,
    context: MergeContext | None = None,
) -> str:
    """Merge ``branch`` into ``base_branch`` inside a temporary clone.

    The shared repository only ever sees a fast-forward to the finished merge
    commit, so a conflict leaves it exactly as it was. Returns the merge sha.
    """
    repo = Path(repo_path)
    if await get_status(repo, untracked=False):
        raise UncommittedChangesError(repo)

    tmp = Path(tempfile.mkdtemp(prefix="tc-merge-"))
    clone = tmp / "repo"
    try:
        await run_git(["clone", "--quiet", "--branch", base_branch, str(repo), str(clone)])
        result = await execute_git(
            ["merge", "--no-ff", "-m", f"Merge branch '{branch}'", f"origin/{branch}"],
            cwd=clone,
        )
        if not result.ok:
            conflicts = await conflicted_files(clone)
            if not conflicts:
                raise GitError(f"git merge {branch} failed: {result.stderr or result.stdout}")
            if resolver is None:
                await execute_git(["merge", "--abort"], cwd=clone)
                raise MergeConflictError(branch)
            logger.info("Merge of %s conflicted in %d files; running resolver", branch, len(conflicts))
            try:
                await resolver.resolve(clone, conflicts, context or MergeContext("", "", branch))
            except ConflictResolutionError as e:
                await execute_git(["merge", "--abort"], cwd=clone)
                raise MergeConflictUnresolvedError(branch, str(e)) from e

        merged = await get_head(clone)
        await _publish(repo, clone, base_branch)
        logger.info("Merged %s into %s at %s", branch, base_branch, merged[:7])
        return merged
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


async def _publish(repo: Path, clone: Path, base_branch: str) -> None:
    """Fast-forward the shared repository's base branch to the clone's."""
    if await get_current_branch(repo) == base_branch:
        await run_git(["fetch", "--quiet", str(clone), base_branch], cwd=repo)
        await run_git(["merge", "--ff-only", "FETCH_HEAD"], cwd=repo)
    else:
        await run_git(["fetch", "--quiet", str(clone), f"{base_branch}:{base_branch}"], cwd=repo)
