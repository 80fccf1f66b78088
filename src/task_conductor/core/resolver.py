"""Agent-driven repair of merge conflicts inside the temporary merge clone."""

import asyncio
import logging
import os
import re
import signal
import tempfile
from pathlib import Path

from task_conductor.core.prompts import conflict_resolution_prompt
from task_conductor.core.worktrees import MergeContext
from task_conductor.errors import ConflictResolutionError
from task_conductor.integrations.git import conflicted_files, get_head, run_git

logger = logging.getLogger(__name__)

CONFLICT_MARKER = re.compile(r"^(<<<<<<<( |$)|=======$|>>>>>>>( |$))", re.MULTILINE)


def has_conflict_markers(path: Path) -> bool:
    try:
        return bool(CONFLICT_MARKER.search(path.read_text(encoding="utf-8", errors="replace")))
    except FileNotFoundError:
        return False


class ConflictResolver:
    """Runs the agent once against a conflicted merge and commits the result.

    Either every conflict is resolved and a single merge commit is made, or
    ConflictResolutionError is raised and nothing is committed.
    """

    def __init__(self, agent_command: list[str], timeout: float = 300.0):
        self.agent_command = agent_command
        self.timeout = timeout

    async def resolve(self, workdir: Path, conflicts: list[str], context: MergeContext) -> str:
        if not conflicts:
            raise ConflictResolutionError("No conflicted files to resolve")

        prompt = conflict_resolution_prompt(
            task_prompt=context.prompt,
            task_id=context.task_id,
            branch=context.branch,
            conflicted=conflicts,
            task_diff=context.diff,
            created_at=context.created_at,
        )
        fd, prompt_path = tempfile.mkstemp(prefix="tc-resolve-", suffix=".md")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(prompt)
            await self._run_agent(workdir, Path(prompt_path))
        finally:
            os.unlink(prompt_path)

        # Unmerged paths the agent was not told about must be clean too
        pending = list(dict.fromkeys([*conflicts, *await conflicted_files(workdir)]))
        unresolved = [path for path in pending if has_conflict_markers(workdir / path)]
        if unresolved:
            raise ConflictResolutionError(
                f"{len(unresolved)} files still contain conflict markers: {', '.join(unresolved)}"
            )

        await run_git(["add", "-A"], cwd=workdir)
        message = (
            f"Merge branch '{context.branch}' (resolved conflicts automatically)\n\n"
            f"Original task: {context.prompt}"
        )
        await run_git(["commit", "--no-edit", "-m", message], cwd=workdir)
        sha = await get_head(workdir)
        logger.info("Resolved %d conflicted files for %s at %s", len(conflicts), context.branch, sha[:7])
        return sha

    async def _run_agent(self, workdir: Path, prompt_path: Path) -> None:
        with prompt_path.open("rb") as stdin:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.agent_command,
                    cwd=str(workdir),
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            except OSError as e:
                raise ConflictResolutionError(f"Could not start resolver agent: {e}") from e

            try:
                _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await proc.wait()
                raise ConflictResolutionError(f"Resolver agent timed out after {self.timeout:.0f}s")

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ConflictResolutionError(f"Resolver agent exited with code {proc.returncode}: {tail}")
