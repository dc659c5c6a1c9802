"""HTTP API and change feed for the attempt orchestrator."""

import contextlib
import json
import logging
import queue
from dataclasses import asdict

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from attempt_orchestrator.config import get_config
from attempt_orchestrator.core import attempts as attempts_mod
from attempt_orchestrator.core import executions as executions_mod
from attempt_orchestrator.core import merges as merges_mod
from attempt_orchestrator.core import projects as projects_mod
from attempt_orchestrator.core import tasks as tasks_mod
from attempt_orchestrator.core.errors import NotFoundError, OrchestratorError, ValidationError
from attempt_orchestrator.core.orchestrator import Orchestrator
from attempt_orchestrator.core.projector import (
    Subscription,
    attempt_document,
    process_document,
    task_document,
)
from attempt_orchestrator.core.supervisor import LogStore
from attempt_orchestrator.db.engine import get_db
from attempt_orchestrator.db.models import ExecutorProfileId

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0


def _orch(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _db(request: Request):
    return get_db(_orch(request).config.db_path)


def _ok(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


async def _body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(body: dict, key: str):
    value = body.get(key)
    if value is None or value == "":
        raise ValidationError(f"Missing required field: {key}")
    return value


def _profile(body: dict) -> ExecutorProfileId | None:
    data = body.get("executor_profile_id")
    if data is None:
        return None
    if not isinstance(data, dict) or not data.get("executor"):
        raise ValidationError("executor_profile_id must be an object with an 'executor'")
    return ExecutorProfileId.from_dict(data)


# ── Error handling ────────────────────────────────────────────────────────────


async def handle_orchestrator_error(request: Request, exc: OrchestratorError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"success": False, "error": exc.to_dict()}, status_code=exc.http_status)


# ── Projects and tasks ────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    with _db(request) as db:
        return _ok([_project_dict(p) for p in projects_mod.list_projects(db)])


async def api_create_project(request: Request):
    body = await _body(request)
    with _db(request) as db:
        project_id = _require(body, "id")
        if projects_mod.get_project(db, project_id):
            raise ValidationError(f"Project already exists: {project_id}")
        project = projects_mod.create_project(
            db,
            project_id,
            body.get("name") or project_id,
            _require(body, "repo_path"),
            default_branch=body.get("default_branch") or "main",
            setup_script=body.get("setup_script"),
            dev_script=body.get("dev_script"),
            cleanup_script=body.get("cleanup_script"),
            copy_files=body.get("copy_files"),
            append_prompt=body.get("append_prompt"),
            slack_channel=body.get("slack_channel"),
        )
        return _ok(_project_dict(project), status_code=201)


async def api_list_tasks(request: Request):
    project_id = request.query_params.get("project_id")
    with _db(request) as db:
        docs = []
        for task in tasks_mod.list_tasks(db, project_id, request.query_params.get("status")):
            docs.append(_orch(request).projector.get("tasks", task.id) or task_document(task))
        return _ok(docs)


async def api_create_task(request: Request):
    body = await _body(request)
    orch = _orch(request)
    with _db(request) as db:
        project_id = body.get("project_id") or "default"
        if not projects_mod.get_project(db, project_id):
            raise NotFoundError(f"Project not found: {project_id}")
        task = tasks_mod.create_task(
            db,
            _require(body, "title"),
            project_id=project_id,
            description=body.get("description") or "",
            parent_task_attempt=body.get("parent_task_attempt"),
        )
    orch.projector.upsert_task(task)
    return _ok(orch.projector.get("tasks", task.id), status_code=201)


async def api_create_and_start_task(request: Request):
    body = await _body(request)
    orch = _orch(request)
    task, attempt = await run_in_threadpool(
        orch.coordinator.create_task_and_start,
        body.get("project_id") or "default",
        _require(body, "title"),
        body.get("description") or "",
        _profile(body),
    )
    return _ok({"task": orch.projector.get("tasks", task.id), "attempt": attempt_document(attempt)},
               status_code=201)


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _db(request) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            raise NotFoundError(f"Task not found: {task_id}")
        doc = _orch(request).projector.get("tasks", task_id) or task_document(task)
        doc["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        return _ok(doc)


async def api_delete_task(request: Request):
    task_id = request.path_params["task_id"]
    await run_in_threadpool(_orch(request).coordinator.delete_task, task_id)
    return _ok(None)


# ── Task attempts ─────────────────────────────────────────────────────────────


async def api_list_attempts(request: Request):
    with _db(request) as db:
        found = attempts_mod.list_attempts(db, request.query_params.get("task_id"))
        return _ok([attempt_document(a) for a in found])


async def api_create_attempt(request: Request):
    body = await _body(request)
    attempt = await run_in_threadpool(
        _orch(request).coordinator.create_attempt,
        _require(body, "task_id"),
        _profile(body),
        body.get("base_branch"),
        body.get("reuse_branch_of"),
        body.get("initial_instructions"),
        body.get("model_override"),
    )
    return _ok(attempt_document(attempt), status_code=201)


async def api_get_attempt(request: Request):
    attempt_id = request.path_params["attempt_id"]
    with _db(request) as db:
        attempt = attempts_mod.get_attempt(db, attempt_id)
        if not attempt:
            raise NotFoundError(f"Task attempt not found: {attempt_id}")
        doc = attempt_document(attempt)
        doc["execution_processes"] = [
            process_document(p) for p in executions_mod.list_processes(db, attempt_id)
        ]
        return _ok(doc)


async def api_delete_attempt(request: Request):
    await run_in_threadpool(_orch(request).coordinator.delete_attempt, request.path_params["attempt_id"])
    return _ok(None)


async def api_follow_up(request: Request):
    body = await _body(request)
    process = await run_in_threadpool(
        _orch(request).coordinator.follow_up,
        request.path_params["attempt_id"],
        _require(body, "prompt"),
        body.get("variant"),
        body.get("model_override"),
        body.get("image_ids"),
        _profile(body),
    )
    return _ok(process_document(process), status_code=201)


async def api_stop_attempt(request: Request):
    stopped = await run_in_threadpool(_orch(request).coordinator.stop, request.path_params["attempt_id"])
    return _ok([process_document(p) for p in stopped])


async def api_restore(request: Request):
    body = await _body(request)
    result = await run_in_threadpool(
        _orch(request).coordinator.restore,
        request.path_params["attempt_id"],
        _require(body, "process_id"),
        bool(body.get("force_when_dirty", False)),
        bool(body.get("perform_git_reset", True)),
    )
    return _ok(asdict(result))


async def api_branch_status(request: Request):
    status = await run_in_threadpool(
        _orch(request).coordinator.branch_status, request.path_params["attempt_id"]
    )
    return _ok(_branch_status_dict(status))


async def api_rebase(request: Request):
    body = await _body(request)
    status = await run_in_threadpool(
        _orch(request).coordinator.rebase,
        request.path_params["attempt_id"],
        body.get("new_base_branch"),
    )
    return _ok(_branch_status_dict(status))


async def api_merge(request: Request):
    merge = await run_in_threadpool(_orch(request).coordinator.merge, request.path_params["attempt_id"])
    return _ok(merges_mod.merge_to_dict(merge))


async def api_start_dev_server(request: Request):
    process = await run_in_threadpool(
        _orch(request).coordinator.start_dev_server, request.path_params["attempt_id"]
    )
    return _ok(process_document(process), status_code=201)


async def api_create_pr(request: Request):
    body = await _body(request)
    merge = await run_in_threadpool(
        _orch(request).coordinator.create_pr,
        request.path_params["attempt_id"],
        _require(body, "title"),
        body.get("body"),
        body.get("base_branch"),
    )
    return _ok(merges_mod.merge_to_dict(merge))


async def api_open_existing_pr(request: Request):
    merge = await run_in_threadpool(
        _orch(request).coordinator.open_existing_pr, request.path_params["attempt_id"]
    )
    return _ok(merges_mod.merge_to_dict(merge))


async def api_commit_compare(request: Request):
    sha = request.query_params.get("sha")
    if not sha:
        raise ValidationError("Missing query parameter: sha")
    result = await run_in_threadpool(
        _orch(request).coordinator.commit_compare, request.path_params["attempt_id"], sha
    )
    return _ok(result)


# ── Execution processes ──────────────────────────────────────────────────────


async def api_get_process(request: Request):
    process_id = request.path_params["process_id"]
    with _db(request) as db:
        process = executions_mod.get_process(db, process_id)
        if not process:
            raise NotFoundError(f"Execution process not found: {process_id}")
        return _ok(process_document(process))


async def api_process_logs(request: Request):
    process_id = request.path_params["process_id"]
    with _db(request) as db:
        if not executions_mod.get_process(db, process_id):
            raise NotFoundError(f"Execution process not found: {process_id}")
    store = _orch(request).supervisor.log_store(process_id)
    return _ok(store.history())


async def api_stream_process_logs(request: Request):
    process_id = request.path_params["process_id"]
    with _db(request) as db:
        if not executions_mod.get_process(db, process_id):
            raise NotFoundError(f"Execution process not found: {process_id}")
    store = _orch(request).supervisor.log_store(process_id)
    return StreamingResponse(_log_stream(store), media_type="text/event-stream")


def _log_stream(store: LogStore, heartbeat: float = HEARTBEAT_SECONDS):
    history, q = store.subscribe()
    try:
        for entry in history:
            yield _sse("log", entry)
        while True:
            try:
                entry = q.get(timeout=heartbeat)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            if entry is None:
                yield _sse("finished", {})
                return
            yield _sse("log", entry)
    finally:
        store.unsubscribe(q)


# ── State and change feed ────────────────────────────────────────────────────


async def api_state(request: Request):
    snapshot = _orch(request).projector.snapshot(
        request.query_params.get("project_id"), request.query_params.get("task_id")
    )
    return _ok(snapshot)


async def api_stream(request: Request):
    sub = _orch(request).projector.subscribe(
        request.query_params.get("project_id"), request.query_params.get("task_id")
    )
    return StreamingResponse(_event_stream(sub), media_type="text/event-stream")


def _event_stream(sub: Subscription, heartbeat: float = HEARTBEAT_SECONDS):
    try:
        yield _sse("snapshot", sub.snapshot)
        while not sub.closed:
            patch = sub.get(timeout=heartbeat)
            if patch is None:
                if not sub.closed:
                    yield ": keep-alive\n\n"
                continue
            yield _sse("patch", [patch])
    finally:
        sub.close()


def _sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "setup_script": p.setup_script,
        "dev_script": p.dev_script,
        "cleanup_script": p.cleanup_script,
        "copy_files": p.copy_files,
        "append_prompt": p.append_prompt,
        "slack_channel": p.slack_channel,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _branch_status_dict(status) -> dict:
    data = asdict(status)
    data["merges"] = [merges_mod.merge_to_dict(m) for m in status.merges]
    return data


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator | None = None) -> Starlette:
    orchestrator = orchestrator or Orchestrator(get_config())

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        await run_in_threadpool(orchestrator.start)
        try:
            yield
        finally:
            await run_in_threadpool(orchestrator.shutdown)

    attempt = "/api/task-attempts/{attempt_id}"
    routes = [
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/create-and-start", api_create_and_start_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/task-attempts", api_list_attempts, methods=["GET"]),
        Route("/api/task-attempts", api_create_attempt, methods=["POST"]),
        Route(attempt, api_get_attempt, methods=["GET"]),
        Route(attempt, api_delete_attempt, methods=["DELETE"]),
        Route(f"{attempt}/follow-up", api_follow_up, methods=["POST"]),
        Route(f"{attempt}/stop", api_stop_attempt, methods=["POST"]),
        Route(f"{attempt}/restore", api_restore, methods=["POST"]),
        Route(f"{attempt}/branch-status", api_branch_status, methods=["GET"]),
        Route(f"{attempt}/rebase", api_rebase, methods=["POST"]),
        Route(f"{attempt}/merge", api_merge, methods=["POST"]),
        Route(f"{attempt}/start-dev-server", api_start_dev_server, methods=["POST"]),
        Route(f"{attempt}/pr", api_create_pr, methods=["POST"]),
        Route(f"{attempt}/pr/open-existing", api_open_existing_pr, methods=["POST"]),
        Route(f"{attempt}/commit-compare", api_commit_compare, methods=["GET"]),
        Route("/api/execution-processes/{process_id}", api_get_process, methods=["GET"]),
        Route("/api/execution-processes/{process_id}/logs", api_process_logs, methods=["GET"]),
        Route(
            "/api/execution-processes/{process_id}/logs/stream",
            api_stream_process_logs,
            methods=["GET"],
        ),
        Route("/api/state", api_state, methods=["GET"]),
        Route("/api/stream", api_stream, methods=["GET"]),
    ]
    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={OrchestratorError: handle_orchestrator_error},
    )
    app.state.orchestrator = orchestrator
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
