"""Tests for workspace lifecycle, preview and the temp-clone merge pipeline."""

import subprocess
import tempfile
from pathlib import Path

import pytest

from helpers import GIVE_UP_AGENT, RESOLVING_AGENT, git, write_script
from task_conductor.core import worktrees
from task_conductor.core.resolver import ConflictResolver, has_conflict_markers
from task_conductor.errors import ConflictResolutionError, ValidationError
from task_conductor.integrations.git import (
    CherryPickConflictError,
    MergeConflictError,
    MergeConflictUnresolvedError,
    RebaseConflictError,
    UncommittedChangesError,
)


@pytest.fixture
def merge_tmp(tmp_path, monkeypatch):
    """Directory that receives the temporary merge clones."""
    path = tmp_path / "merge-tmp"
    path.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(path))
    return path


@pytest.fixture
def wt_base(tmp_path):
    return tmp_path / "worktrees"


async def _workspace_with_change(repo, wt_base, name, filename, content):
    ws = await worktrees.create_workspace(repo, name, wt_base)
    (Path(ws.path) / filename).write_text(content)
    await worktrees.commit_changes(ws.path, f"{name}: edit {filename}")
    return ws


def _conflict_on_main(repo):
    (repo / "shared.txt").write_text("changed on main\n")
    git(repo, "commit", "-am", "main edit")


def _assert_clean(repo):
    assert git(repo, "status", "--porcelain") == ""
    assert not (repo / ".git" / "MERGE_HEAD").exists()
    assert not (repo / ".git" / "CHERRY_PICK_HEAD").exists()


class TestNames:
    def test_sanitize_name(self):
        assert worktrees.sanitize_name("task-abc_1") == "task-abc_1"
        assert worktrees.sanitize_name("fix: the ../bug") == "fix--the----bug"

    def test_sanitize_rejects_empty(self):
        with pytest.raises(ValidationError):
            worktrees.sanitize_name("///")

    def test_is_self_modification(self, tmp_path):
        repo = tmp_path / "repo"
        source = repo / "src" / "pkg"
        source.mkdir(parents=True)
        assert worktrees.is_self_modification(repo, source=source)
        assert worktrees.is_self_modification(source, source=source)
        assert not worktrees.is_self_modification(tmp_path / "other", source=source)
        assert not worktrees.is_self_modification(source / "sub", source=source)

    @pytest.mark.asyncio
    async def test_validate_repo(self, git_repo, tmp_path):
        assert await worktrees.validate_repo(git_repo) == str(git_repo.resolve())
        with pytest.raises(ValidationError):
            await worktrees.validate_repo(tmp_path / "nope")
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(ValidationError):
            await worktrees.validate_repo(plain)


class TestWorkspaceLifecycle:
    @pytest.mark.asyncio
    async def test_create_and_remove(self, git_repo, wt_base):
        ws = await worktrees.create_workspace(git_repo, "task-one", wt_base)

        assert Path(ws.path).is_dir()
        assert ws.branch == "task-one"
        assert ws.base_branch == "main"
        assert git(ws.path, "branch", "--show-current") == "task-one"
        # The source checkout is untouched
        assert git(git_repo, "branch", "--show-current") == "main"

        await worktrees.remove_workspace(git_repo, ws.path, ws.branch)
        assert not Path(ws.path).exists()
        assert "task-one" not in git(git_repo, "branch", "--list")

    @pytest.mark.asyncio
    async def test_existing_path_is_rejected(self, git_repo, wt_base):
        await worktrees.create_workspace(git_repo, "task-dup", wt_base)
        with pytest.raises(ValidationError):
            await worktrees.create_workspace(git_repo, "task-dup", wt_base)

    @pytest.mark.asyncio
    async def test_start_point(self, git_repo, wt_base):
        first = await _workspace_with_change(git_repo, wt_base, "task-a", "a.txt", "a\n")
        second = await worktrees.create_workspace(
            git_repo, "task-b", wt_base, start_point=first.branch, base_branch="main"
        )
        assert (Path(second.path) / "a.txt").read_text() == "a\n"
        assert second.base_branch == "main"

    @pytest.mark.asyncio
    async def test_commit_and_diff(self, git_repo, wt_base):
        ws = await worktrees.create_workspace(git_repo, "task-c", wt_base)
        (Path(ws.path) / "new.txt").write_text("hello\n")
        assert await worktrees.has_uncommitted_changes(ws.path)

        sha = await worktrees.commit_changes(ws.path, "Add new file")

        assert len(sha) == 40
        assert not await worktrees.has_uncommitted_changes(ws.path)
        assert "+hello" in await worktrees.get_task_diff(ws.path, "main")
        assert "+hello" in await worktrees.get_commit_diff(git_repo, sha)

    @pytest.mark.asyncio
    async def test_commit_with_nothing_to_commit(self, git_repo, wt_base):
        ws = await worktrees.create_workspace(git_repo, "task-d", wt_base)
        base = git(ws.path, "rev-parse", "HEAD")
        sha = await worktrees.commit_changes(ws.path, "")
        assert sha != base
        assert git(ws.path, "log", "-1", "--format=%s") == "Task changes"


class TestPreview:
    @pytest.mark.asyncio
    async def test_cherry_pick_and_undo(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-p", "p.txt", "preview\n")
        sha = git(ws.path, "rev-parse", "HEAD")
        before = git(git_repo, "rev-parse", "HEAD")

        await worktrees.cherry_pick(git_repo, sha)
        assert (git_repo / "p.txt").read_text() == "preview\n"

        await worktrees.undo_cherry_pick(git_repo)
        assert git(git_repo, "rev-parse", "HEAD") == before
        assert not (git_repo / "p.txt").exists()

    @pytest.mark.asyncio
    async def test_cherry_pick_conflict_is_aborted(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-q", "shared.txt", "from task\n")
        sha = git(ws.path, "rev-parse", "HEAD")
        _conflict_on_main(git_repo)

        with pytest.raises(CherryPickConflictError) as exc:
            await worktrees.cherry_pick(git_repo, sha)

        assert exc.value.branch == "task-q"
        assert str(exc.value) == "CHERRY_PICK_CONFLICT:task-q"
        _assert_clean(git_repo)

    @pytest.mark.asyncio
    async def test_undo_keeps_commits_made_after_the_preview(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-l", "p.txt", "preview\n")
        preview = await worktrees.cherry_pick(git_repo, git(ws.path, "rev-parse", "HEAD"))
        (git_repo / "later.txt").write_text("later\n")
        git(git_repo, "add", "later.txt")
        git(git_repo, "commit", "-m", "later work")

        await worktrees.undo_cherry_pick(git_repo, preview)

        assert not (git_repo / "p.txt").exists()
        assert (git_repo / "later.txt").read_text() == "later\n"
        assert git(git_repo, "log", "-1", "--format=%s").startswith("Revert")
        _assert_clean(git_repo)

    @pytest.mark.asyncio
    async def test_undo_of_a_preview_no_longer_on_the_branch(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-g", "p.txt", "preview\n")
        before = git(git_repo, "rev-parse", "HEAD")
        preview = await worktrees.cherry_pick(git_repo, git(ws.path, "rev-parse", "HEAD"))
        git(git_repo, "reset", "--hard", before)

        await worktrees.undo_cherry_pick(git_repo, preview)

        assert git(git_repo, "rev-parse", "HEAD") == before


class TestRebase:
    @pytest.mark.asyncio
    async def test_rebase_onto_moved_base(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-rb", "a.txt", "a\n")
        (git_repo / "b.txt").write_text("b\n")
        git(git_repo, "add", "b.txt")
        git(git_repo, "commit", "-m", "main moved")

        sha = await worktrees.rebase_on_base(ws.path, "main")

        assert sha == git(ws.path, "rev-parse", "HEAD")
        assert git(ws.path, "merge-base", "main", "HEAD") == git(git_repo, "rev-parse", "main")
        assert (Path(ws.path) / "b.txt").exists()
        assert (Path(ws.path) / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_rebase_conflict_is_aborted(self, git_repo, wt_base):
        ws = await _workspace_with_change(git_repo, wt_base, "task-rc", "shared.txt", "from task\n")
        _conflict_on_main(git_repo)
        head = git(ws.path, "rev-parse", "HEAD")

        with pytest.raises(RebaseConflictError) as exc:
            await worktrees.rebase_on_base(ws.path, "main")

        assert exc.value.branch == "task-rc"
        assert str(exc.value) == "REBASE_CONFLICT:task-rc"
        assert git(ws.path, "rev-parse", "HEAD") == head
        assert git(ws.path, "branch", "--show-current") == "task-rc"
        assert git(ws.path, "status", "--porcelain") == ""


class TestMerge:
    @pytest.mark.asyncio
    async def test_clean_merge_fast_forwards_base(self, git_repo, wt_base, merge_tmp):
        ws = await _workspace_with_change(git_repo, wt_base, "task-m", "m.txt", "merged\n")

        sha = await worktrees.merge_to_main(git_repo, ws.branch, "main")

        assert git(git_repo, "rev-parse", "main") == sha
        assert (git_repo / "m.txt").read_text() == "merged\n"
        assert git(git_repo, "log", "-1", "--format=%s") == "Merge branch 'task-m'"
        _assert_clean(git_repo)
        assert list(merge_tmp.iterdir()) == []

    @pytest.mark.asyncio
    async def test_merge_into_branch_that_is_not_checked_out(self, git_repo, wt_base, merge_tmp):
        git(git_repo, "branch", "release")
        ws = await worktrees.create_workspace(git_repo, "task-r", wt_base, base_branch="release")
        (Path(ws.path) / "r.txt").write_text("release\n")
        await worktrees.commit_changes(ws.path, "release work")

        sha = await worktrees.merge_to_main(git_repo, ws.branch, "release")

        assert git(git_repo, "rev-parse", "release") == sha
        assert git(git_repo, "branch", "--show-current") == "main"
        assert not (git_repo / "r.txt").exists()

    @pytest.mark.asyncio
    async def test_dirty_repo_is_rejected(self, git_repo, wt_base, merge_tmp):
        ws = await _workspace_with_change(git_repo, wt_base, "task-u", "u.txt", "u\n")
        (git_repo / "README.md").write_text("local edit\n")

        with pytest.raises(UncommittedChangesError):
            await worktrees.merge_to_main(git_repo, ws.branch, "main")

    @pytest.mark.asyncio
    async def test_untracked_files_do_not_block_merge(self, git_repo, wt_base, merge_tmp):
        ws = await _workspace_with_change(git_repo, wt_base, "task-n", "n.txt", "n\n")
        (git_repo / "scratch.log").write_text("local notes\n")

        sha = await worktrees.merge_to_main(git_repo, ws.branch, "main")

        assert git(git_repo, "rev-parse", "main") == sha
        assert (git_repo / "n.txt").read_text() == "n\n"
        assert (git_repo / "scratch.log").read_text() == "local notes\n"

    @pytest.mark.asyncio
    async def test_conflict_without_resolver_leaves_repo_clean(self, git_repo, wt_base, merge_tmp):
        ws = await _workspace_with_change(git_repo, wt_base, "task-x", "shared.txt", "from task\n")
        _conflict_on_main(git_repo)
        head = git(git_repo, "rev-parse", "HEAD")

        with pytest.raises(MergeConflictError) as exc:
            await worktrees.merge_to_main(git_repo, ws.branch, "main")

        assert str(exc.value) == "MERGE_CONFLICT:task-x"
        assert git(git_repo, "rev-parse", "HEAD") == head
        _assert_clean(git_repo)
        assert list(merge_tmp.iterdir()) == []

    @pytest.mark.asyncio
    async def test_conflict_resolved_by_agent(self, git_repo, wt_base, merge_tmp, tmp_path):
        ws = await _workspace_with_change(git_repo, wt_base, "task-y", "shared.txt", "from task\n")
        _conflict_on_main(git_repo)
        agent = write_script(tmp_path / "resolver.sh", RESOLVING_AGENT)
        resolver = ConflictResolver([str(agent)], timeout=30)
        context = worktrees.MergeContext(task_id="y", prompt="update shared", branch=ws.branch)

        sha = await worktrees.merge_to_main(git_repo, ws.branch, "main", resolver=resolver, context=context)

        assert git(git_repo, "rev-parse", "main") == sha
        assert (git_repo / "shared.txt").read_text() == "resolved\n"
        message = git(git_repo, "log", "-1", "--format=%B")
        assert "resolved conflicts automatically" in message
        assert "Original task: update shared" in message
        _assert_clean(git_repo)
        assert list(merge_tmp.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_resolution_leaves_repo_clean(self, git_repo, wt_base, merge_tmp, tmp_path):
        ws = await _workspace_with_change(git_repo, wt_base, "task-z", "shared.txt", "from task\n")
        _conflict_on_main(git_repo)
        head = git(git_repo, "rev-parse", "HEAD")
        agent = write_script(tmp_path / "give-up.sh", GIVE_UP_AGENT)
        resolver = ConflictResolver([str(agent)], timeout=30)

        with pytest.raises(MergeConflictUnresolvedError) as exc:
            await worktrees.merge_to_main(
                git_repo,
                ws.branch,
                "main",
                resolver=resolver,
                context=worktrees.MergeContext(task_id="z", prompt="p", branch=ws.branch),
            )

        assert exc.value.branch == "task-z"
        assert git(git_repo, "rev-parse", "HEAD") == head
        _assert_clean(git_repo)
        assert list(merge_tmp.iterdir()) == []


class TestResolver:
    @pytest.mark.asyncio
    async def test_requires_conflicts(self, tmp_path):
        resolver = ConflictResolver(["true"])
        with pytest.raises(ConflictResolutionError):
            await resolver.resolve(tmp_path, [], worktrees.MergeContext("t", "p", "b"))

    @pytest.mark.asyncio
    async def test_agent_timeout(self, tmp_path):
        agent = write_script(tmp_path / "slow.sh", "#!/bin/sh\ncat > /dev/null\nsleep 30\n")
        resolver = ConflictResolver([str(agent)], timeout=0.2)
        with pytest.raises(ConflictResolutionError, match="timed out"):
            await resolver.resolve(tmp_path, ["a.txt"], worktrees.MergeContext("t", "p", "b"))

    @pytest.mark.asyncio
    async def test_agent_failure(self, tmp_path):
        agent = write_script(tmp_path / "bad.sh", "#!/bin/sh\ncat > /dev/null\necho nope >&2\nexit 2\n")
        resolver = ConflictResolver([str(agent)])
        with pytest.raises(ConflictResolutionError, match="code 2"):
            await resolver.resolve(tmp_path, ["a.txt"], worktrees.MergeContext("t", "p", "b"))

    @pytest.mark.asyncio
    async def test_unlisted_conflicts_block_the_commit(self, git_repo, wt_base, tmp_path):
        ws = await worktrees.create_workspace(git_repo, "task-w", wt_base)
        (Path(ws.path) / "shared.txt").write_text("from task\n")
        (Path(ws.path) / "README.md").write_text("task readme\n")
        await worktrees.commit_changes(ws.path, "task edits")
        (git_repo / "shared.txt").write_text("changed on main\n")
        (git_repo / "README.md").write_text("main readme\n")
        git(git_repo, "commit", "-am", "main edits")
        merge = subprocess.run(["git", "merge", ws.branch], cwd=git_repo, capture_output=True)
        assert merge.returncode != 0
        head = git(git_repo, "rev-parse", "HEAD")
        agent = write_script(tmp_path / "partial.sh", "#!/bin/sh\ncat > /dev/null\nprintf 'resolved\\n' > shared.txt\n")
        resolver = ConflictResolver([str(agent)])

        with pytest.raises(ConflictResolutionError, match="README.md"):
            await resolver.resolve(git_repo, ["shared.txt"], worktrees.MergeContext("w", "p", ws.branch))

        assert (git_repo / "shared.txt").read_text() == "resolved\n"
        assert git(git_repo, "rev-parse", "HEAD") == head

    def test_conflict_markers(self, tmp_path):
        path = tmp_path / "f.txt"
        path.write_text("<<<<<<< HEAD\na\n=======\nb\n>>>>>>> task\n")
        assert has_conflict_markers(path)
        path.write_text("a\nb\n")
        assert not has_conflict_markers(path)
        assert not has_conflict_markers(tmp_path / "missing.txt")
