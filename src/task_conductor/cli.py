"""CLI entry point for the task conductor."""

import asyncio
import json
import logging
import sys

import click

from task_conductor.config import get_config
from task_conductor.core.agents import OutputAppended
from task_conductor.errors import ConductorError
from task_conductor.orchestrator import Conductor


def _run(action, recover: bool = False):
    """Run ``action(conductor)`` against a conductor started for one command."""

    async def _inner():
        conductor = Conductor(get_config())
        await conductor.start(recover=recover, background=False)
        try:
            return await action(conductor)
        finally:
            await conductor.stop()

    try:
        return asyncio.run(_inner())
    except ConductorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """tc - Task Conductor CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Server ────────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
def serve(host, port):
    """Run the HTTP API server."""
    from task_conductor.web.app import run_server

    config = get_config()
    host = host or config.host
    port = port or config.port
    click.echo(f"Starting task conductor at http://{host}:{port}")
    run_server(host=host, port=port, config=config)


@main.command("run")
@click.argument("prompt")
@click.option("--repo", default=".", help="Path to the git repository")
@click.option("--mode", default="none", help="Execution mode")
@click.option("--image", default=None, help="Image file to attach to the prompt")
@click.option("--merge", "merge_after", is_flag=True, help="Merge the result when the run finishes")
def run_task(prompt, repo, mode, image, merge_after):
    """Create a task, run its agent pipeline and wait for it to finish."""

    async def action(conductor: Conductor):
        store = conductor.store
        task = await store.create(prompt, repo, mode=mode, image_path=image)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Branch: {task.branch}")
        click.echo(f"  Worktree: {task.worktree}")
        if task.self_modification:
            click.echo("  Warning: this task edits the conductor itself; restart it after merging", err=True)

        def echo(update):
            if isinstance(update, OutputAppended) and update.task_id == task.id and update.entry.kind != "raw":
                click.echo(f"[{update.entry.phase}] {update.entry.content}")

        async def stream():
            while True:
                echo(await updates.get())

        updates = store.subscribe()
        printer = asyncio.create_task(stream())
        try:
            try:
                await store.start(task.id)
            except ConductorError as e:
                click.echo(f"  Failed to start: {e}", err=True)
                return store.get(task.id)
            task = await store.wait_settled(task.id)
        finally:
            printer.cancel()
            store.unsubscribe(updates)
            while not updates.empty():
                echo(updates.get_nowait())
        if merge_after and task.status == "finished":
            task = await store.merge(task.id)
        return task

    task = _run(action)
    click.echo(f"Task {task.id}: {task.status}")
    if task.commit_hash:
        click.echo(f"  Commit: {task.commit_hash}")
    if task.status == "failed":
        click.echo(f"  Reason: {task.state.reason}", err=True)
        sys.exit(1)


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Inspect and manage tasks."""
    pass


@task_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(status, json_output):
    """List tasks."""

    async def action(conductor: Conductor):
        return conductor.store.list_tasks(status=status)

    tasks = _run(action)
    if json_output:
        click.echo(json.dumps([t.to_dict() for t in tasks], indent=2))
        return
    if not tasks:
        click.echo("No tasks found.")
        return

    status_icons = {
        "starting": "○",
        "in_progress": "●",
        "finished": "✓",
        "failed": "✗",
        "merged": "⇢",
    }
    for task in tasks:
        icon = status_icons.get(task.status, "?")
        prompt = task.prompt if len(task.prompt) <= 60 else task.prompt[:57] + "..."
        click.echo(f"  {icon} {task.id}: {prompt} ({task.status}, {task.mode})")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""

    async def action(conductor: Conductor):
        return conductor.store.get(task_id)

    task = _run(action)
    click.echo(f"Task: {task.id}")
    click.echo(f"  Prompt: {task.prompt}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Mode: {task.mode}")
    click.echo(f"  Phase: {task.phase}")
    click.echo(f"  Repo: {task.repo_path}")
    if task.branch:
        click.echo(f"  Branch: {task.branch} (base {task.base_branch})")
    if task.worktree:
        click.echo(f"  Worktree: {task.worktree}")
    if task.commit_hash:
        click.echo(f"  Commit: {task.commit_hash}")
    if task.status == "failed" and task.state.reason:
        click.echo(f"  Reason: {task.state.reason}")
    if task.predecessor_id:
        click.echo(f"  Follows: {task.predecessor_id}")
    if task.prompt_history:
        click.echo("  History:")
        for cycle in task.prompt_history:
            suffix = f" -> {cycle.commit_hash[:7]}" if cycle.commit_hash else ""
            click.echo(f"    [{cycle.timestamp.isoformat()}] {cycle.prompt}{suffix}")
    click.echo(f"  Created: {task.created_at.isoformat()}")


@task_group.command("outputs")
@click.argument("task_id")
@click.option("--kind", default=None, help="Only show entries of this kind")
def task_outputs(task_id, kind):
    """Show the agent output recorded for a task."""

    async def action(conductor: Conductor):
        return conductor.store.get_outputs(task_id)

    entries = _run(action)
    if kind:
        entries = [e for e in entries if e.kind == kind]
    if not entries:
        click.echo(f"No output recorded for task: {task_id}")
        return
    for entry in entries:
        click.echo(f"[{entry.phase}] {entry.kind}: {entry.content}")


@task_group.command("remove")
@click.argument("task_id")
def task_remove(task_id):
    """Stop a task's agent and delete its worktree, branch and record."""

    async def action(conductor: Conductor):
        await conductor.store.remove(task_id)

    _run(action)
    click.echo(f"Removed task: {task_id}")


@task_group.command("clear")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
def task_clear(yes):
    """Remove every task with its worktree, branch and record."""
    if not yes:
        click.confirm("Remove all tasks?", abort=True)

    async def action(conductor: Conductor):
        return await conductor.store.remove_all()

    removed = _run(action)
    click.echo(f"Removed {len(removed)} tasks")


# ── Snapshot Commands ─────────────────────────────────────────────────────────


@main.group("snapshot")
def snapshot_group():
    """Manage state snapshots."""
    pass


@snapshot_group.command("list")
def snapshot_list():
    """List snapshots, newest first."""

    async def action(conductor: Conductor):
        return conductor.state.list_snapshots()

    snapshots = _run(action)
    if not snapshots:
        click.echo("No snapshots found.")
        return
    for info in snapshots:
        click.echo(f"  {info.name}  {info.created_at.isoformat()}  ({info.task_count} tasks)")


@snapshot_group.command("create")
def snapshot_create():
    """Take a snapshot of the current task list."""

    async def action(conductor: Conductor):
        return conductor.create_snapshot()

    info = _run(action)
    click.echo(f"Created snapshot: {info.name} ({info.task_count} tasks)")


@snapshot_group.command("restore")
@click.argument("name")
def snapshot_restore(name):
    """Replace the task list with a snapshot's contents."""

    async def action(conductor: Conductor):
        return await conductor.restore_snapshot(name)

    tasks = _run(action)
    click.echo(f"Restored {len(tasks)} tasks from {name}")


# ── Process Commands ──────────────────────────────────────────────────────────


@main.group("process")
def process_group():
    """Inspect registered agent processes."""
    pass


@process_group.command("list")
def process_list():
    """List registered agent processes."""

    async def action(conductor: Conductor):
        return conductor.registry.all()

    registrations = _run(action)
    if not registrations:
        click.echo("No registered processes.")
        return
    for reg in registrations:
        click.echo(f"  {reg.key} pid={reg.pid} started={reg.started_at.isoformat()}")


@process_group.command("cleanup")
def process_cleanup():
    """Kill and unregister processes that belong to no known task."""

    async def action(conductor: Conductor):
        return await conductor.processes.cleanup_orphans(conductor.store.ids())

    reaped = _run(action)
    if not reaped:
        click.echo("No orphaned processes.")
        return
    for key in reaped:
        click.echo(f"  Reaped: {key}")


if __name__ == "__main__":
    main()
