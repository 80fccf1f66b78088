"""JSON HTTP API for the task conductor."""

import json
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from task_conductor.config import Config, get_config
from task_conductor.db.models import Task
from task_conductor.errors import (
    ConductorError,
    InvalidTransitionError,
    LockTimeoutError,
    MergeInProgressError,
    TaskLimitError,
    TaskNotFoundError,
    TaskNotSettledError,
    ValidationError,
)
from task_conductor.integrations.git import GitConflictError, UncommittedChangesError
from task_conductor.orchestrator import Conductor

CONFLICT_ERRORS = (
    GitConflictError,
    UncommittedChangesError,
    InvalidTransitionError,
    TaskNotSettledError,
    MergeInProgressError,
    TaskLimitError,
    LockTimeoutError,
)


def _conductor(request: Request) -> Conductor:
    return request.app.state.conductor


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _task_dict(task: Task) -> dict:
    data = task.to_dict()
    data.pop("agent_prompt", None)
    return data


async def conductor_error(request: Request, exc: ConductorError):
    if isinstance(exc, TaskNotFoundError):
        status = 404
    elif isinstance(exc, ValidationError):
        status = 400
    elif isinstance(exc, CONFLICT_ERRORS):
        status = 409
    else:
        status = 500
    payload = {"error": str(exc), "code": exc.code}
    if isinstance(exc, GitConflictError):
        payload["branch"] = exc.branch
    return JSONResponse(payload, status_code=status)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    conductor = _conductor(request)
    return JSONResponse({
        "status": "ok",
        "tasks": len(conductor.store.ids()),
        "processes": len(conductor.registry.all()),
        "merge_lock_owner": conductor.merge_lock.owner,
    })


async def api_list_tasks(request: Request):
    status = request.query_params.get("status")
    tasks = _conductor(request).store.list_tasks(status=status)
    return JSONResponse([_task_dict(t) for t in tasks])


async def api_create_task(request: Request):
    body = await _json_body(request)
    store = _conductor(request).store
    task = await store.create(
        body.get("prompt", ""),
        body.get("repo_path") or body.get("repo", ""),
        mode=body.get("mode", "none"),
        image_path=body.get("image_path"),
    )
    if body.get("start", True):
        try:
            await store.start(task.id)
        except ConductorError:
            pass  # the failure is recorded on the task itself
    return JSONResponse(_task_dict(store.get(task.id)), status_code=201)


async def api_get_task(request: Request):
    task = _conductor(request).store.get(request.path_params["task_id"])
    return JSONResponse(_task_dict(task))


async def api_remove_task(request: Request):
    task_id = request.path_params["task_id"]
    await _conductor(request).store.remove(task_id)
    return JSONResponse({"removed": task_id})


async def api_remove_all_tasks(request: Request):
    removed = await _conductor(request).store.remove_all()
    return JSONResponse({"removed": removed})


async def api_start_task(request: Request):
    task = await _conductor(request).store.start(request.path_params["task_id"])
    return JSONResponse(_task_dict(task))


async def api_commit_task(request: Request):
    body = await _json_body(request)
    sha = await _conductor(request).store.commit(request.path_params["task_id"], body.get("message"))
    return JSONResponse({"commit_hash": sha})


async def api_merge_task(request: Request):
    body = await _json_body(request)
    task = await _conductor(request).store.merge(
        request.path_params["task_id"], auto_resolve=body.get("auto_resolve")
    )
    return JSONResponse(_task_dict(task))


async def api_preview(request: Request):
    store = _conductor(request).store
    task_id = request.path_params["task_id"]
    if request.method == "DELETE":
        task = await store.stop_preview(task_id)
    else:
        task = await store.start_preview(task_id)
    return JSONResponse(_task_dict(task))


async def api_send_prompt(request: Request):
    body = await _json_body(request)
    task = await _conductor(request).store.send_prompt(request.path_params["task_id"], body.get("prompt", ""))
    return JSONResponse(_task_dict(task), status_code=201)


async def api_request_changes(request: Request):
    body = await _json_body(request)
    task = await _conductor(request).store.request_changes(
        request.path_params["task_id"], body.get("changes") or body.get("prompt", "")
    )
    return JSONResponse(_task_dict(task), status_code=201)


async def api_task_outputs(request: Request):
    entries = _conductor(request).store.get_outputs(request.path_params["task_id"])
    return JSONResponse([entry.to_dict() for entry in entries])


async def api_task_diff(request: Request):
    diff = await _conductor(request).store.get_diff(request.path_params["task_id"])
    return JSONResponse({"diff": diff})


async def api_snapshots(request: Request):
    conductor = _conductor(request)
    if request.method == "POST":
        body = await _json_body(request)
        if body.get("restore"):
            tasks = await conductor.restore_snapshot(body["restore"])
            return JSONResponse({"restored": body["restore"], "tasks": len(tasks)})
        info = conductor.create_snapshot()
        return JSONResponse(info.to_dict(), status_code=201)
    return JSONResponse([info.to_dict() for info in conductor.state.list_snapshots()])


async def api_cleanup_processes(request: Request):
    conductor = _conductor(request)
    reaped = await conductor.processes.cleanup_orphans(conductor.store.ids())
    return JSONResponse({"reaped": reaped})


def create_app(config: Config | None = None) -> Starlette:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        conductor = Conductor(config)
        await conductor.start()
        app.state.conductor = conductor
        try:
            yield
        finally:
            await conductor.stop()

    routes = [
        Route("/api/health", api_health),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks", api_remove_all_tasks, methods=["DELETE"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_remove_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/start", api_start_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/commit", api_commit_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/merge", api_merge_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/preview", api_preview, methods=["POST", "DELETE"]),
        Route("/api/tasks/{task_id}/prompt", api_send_prompt, methods=["POST"]),
        Route("/api/tasks/{task_id}/changes", api_request_changes, methods=["POST"]),
        Route("/api/tasks/{task_id}/outputs", api_task_outputs),
        Route("/api/tasks/{task_id}/diff", api_task_diff),
        Route("/api/snapshots", api_snapshots, methods=["GET", "POST"]),
        Route("/api/processes/cleanup", api_cleanup_processes, methods=["POST"]),
    ]
    return Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={ConductorError: conductor_error},
    )


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
