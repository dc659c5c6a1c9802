"""MCP server exposing the attempt orchestrator as tools."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass

from mcp.server.fastmcp import Context, FastMCP

from attempt_orchestrator.config import Config, get_config
from attempt_orchestrator.core import attempts as attempts_mod
from attempt_orchestrator.core import executions as executions_mod
from attempt_orchestrator.core import merges as merges_mod
from attempt_orchestrator.core import projects as projects_mod
from attempt_orchestrator.core import tasks as tasks_mod
from attempt_orchestrator.core.errors import OrchestratorError
from attempt_orchestrator.core.orchestrator import Orchestrator
from attempt_orchestrator.core.projector import attempt_document, process_document
from attempt_orchestrator.db.engine import get_db
from attempt_orchestrator.db.models import ExecutorProfileId

LOG_TAIL = 200


@dataclass
class AppContext:
    orchestrator: Orchestrator
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Start the orchestrator on startup, stop its processes on shutdown."""
    config = get_config()
    orchestrator = Orchestrator(config)
    orchestrator.start()
    try:
        yield AppContext(orchestrator=orchestrator, config=config)
    finally:
        orchestrator.shutdown()


mcp = FastMCP("attempt-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _call(fn: Callable, *args, **kwargs):
    """Run an orchestrator operation, turning its errors into an error payload."""
    try:
        return fn(*args, **kwargs)
    except OrchestratorError as e:
        return {"error": e.to_dict()}


def _profile(executor: str | None, variant: str | None) -> ExecutorProfileId | None:
    if not executor:
        return None
    return ExecutorProfileId(executor, variant)


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(ctx: Context, title: str, project: str = "default", description: str = "") -> dict:
    """Create a new task in a project."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        projects_mod.ensure_default_project(db, str(app.config.repo_path))
        if not projects_mod.get_project(db, project):
            return {"error": {"code": "not_found", "message": f"Project not found: {project}"}}
        task = tasks_mod.create_task(db, title, project, description)
    app.orchestrator.projector.upsert_task(task)
    return app.orchestrator.projector.get("tasks", task.id)


@mcp.tool()
def list_tasks(ctx: Context, project: str = "default", status: str | None = None) -> list[dict]:
    """List tasks of a project with their derived attempt state."""
    app = _ctx(ctx)
    snapshot = app.orchestrator.projector.snapshot(project_id=project)
    docs = sorted(snapshot["tasks"].values(), key=lambda t: t["created_at"] or "")
    if status:
        docs = [t for t in docs if t["status"] == status]
    return docs


@mcp.tool()
def delete_task(ctx: Context, task_id: str) -> dict:
    """Delete a task, its attempts and their worktrees. Refused while processes run."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.delete_task, task_id)
    return result or {"deleted": task_id}


# ── Attempt Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def start_attempt(
    ctx: Context,
    task_id: str,
    executor: str | None = None,
    variant: str | None = None,
    base_branch: str | None = None,
    reuse_branch_of: str | None = None,
    instructions: str | None = None,
    model: str | None = None,
) -> dict:
    """Create a task attempt in a fresh worktree and launch its coding agent.

    Running processes of the task's other attempts are stopped first.
    """
    app = _ctx(ctx)
    result = _call(
        app.orchestrator.coordinator.create_attempt,
        task_id,
        _profile(executor, variant),
        base_branch=base_branch,
        reuse_branch_of=reuse_branch_of,
        initial_instructions=instructions,
        model_override=model,
    )
    if isinstance(result, dict):
        return result
    return attempt_document(result)


@mcp.tool()
def list_attempts(ctx: Context, task_id: str) -> list[dict]:
    """List the attempts of a task, newest first."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        return [attempt_document(a) for a in attempts_mod.list_attempts(db, task_id)]


@mcp.tool()
def follow_up(
    ctx: Context,
    attempt_id: str,
    prompt: str,
    variant: str | None = None,
    executor: str | None = None,
    model: str | None = None,
) -> dict:
    """Send a follow-up prompt to an attempt's coding agent."""
    app = _ctx(ctx)
    result = _call(
        app.orchestrator.coordinator.follow_up,
        attempt_id,
        prompt,
        variant=variant,
        model_override=model,
        executor_profile=_profile(executor, variant),
    )
    if isinstance(result, dict):
        return result
    return process_document(result)


@mcp.tool()
def stop_attempt(ctx: Context, attempt_id: str) -> dict:
    """Stop every running process of an attempt."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.stop, attempt_id)
    if isinstance(result, dict):
        return result
    return {"stopped": [process_document(p) for p in result]}


@mcp.tool()
def restore_attempt(
    ctx: Context,
    attempt_id: str,
    process_id: str,
    force_when_dirty: bool = False,
    perform_git_reset: bool = True,
) -> dict:
    """Roll an attempt back to the checkpoint of a coding-agent turn.

    Later turns are dropped from history. Uncommitted changes block the
    reset unless force_when_dirty is set.
    """
    app = _ctx(ctx)
    result = _call(
        app.orchestrator.coordinator.restore,
        attempt_id, process_id, force_when_dirty, perform_git_reset,
    )
    if isinstance(result, dict):
        return result
    return asdict(result)


@mcp.tool()
def branch_status(ctx: Context, attempt_id: str) -> dict:
    """Commits ahead/behind the base branch, uncommitted changes and merges."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.branch_status, attempt_id)
    if isinstance(result, dict):
        return result
    return _branch_status_dict(result)


@mcp.tool()
def rebase_attempt(ctx: Context, attempt_id: str, new_base_branch: str | None = None) -> dict:
    """Rebase an attempt onto its base branch, or onto a new base branch."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.rebase, attempt_id, new_base_branch)
    if isinstance(result, dict):
        return result
    return _branch_status_dict(result)


@mcp.tool()
def merge_attempt(ctx: Context, attempt_id: str) -> dict:
    """Squash-merge an attempt into its base branch and mark the task done."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.merge, attempt_id)
    if isinstance(result, dict):
        return result
    return merges_mod.merge_to_dict(result)


@mcp.tool()
def create_pr(
    ctx: Context,
    attempt_id: str,
    title: str,
    body: str | None = None,
    base_branch: str | None = None,
) -> dict:
    """Push the attempt branch and open a GitHub pull request."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.create_pr, attempt_id, title, body, base_branch)
    if isinstance(result, dict):
        return result
    return merges_mod.merge_to_dict(result)


@mcp.tool()
def delete_attempt(ctx: Context, attempt_id: str) -> dict:
    """Delete an attempt and its worktree."""
    app = _ctx(ctx)
    result = _call(app.orchestrator.coordinator.delete_attempt, attempt_id)
    return result or {"deleted": attempt_id}


# ── Process Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def list_processes(ctx: Context, attempt_id: str, include_dropped: bool = False) -> list[dict]:
    """List an attempt's execution processes in creation order."""
    app = _ctx(ctx)
    with get_db(app.config.db_path) as db:
        found = executions_mod.list_processes(db, attempt_id, include_dropped=include_dropped)
        return [process_document(p) for p in found]


@mcp.tool()
def process_logs(ctx: Context, process_id: str, normalized_only: bool = True) -> dict:
    """Read the logs of an execution process (live or persisted)."""
    app = _ctx(ctx)
    entries = app.orchestrator.supervisor.log_store(process_id).history()
    if normalized_only:
        normalized = [e for e in entries if e.get("channel") == "normalized_entry"]
        entries = normalized or entries
    truncated = len(entries) > LOG_TAIL
    return {"entries": entries[-LOG_TAIL:], "truncated": truncated, "total": len(entries)}


def _branch_status_dict(status) -> dict:
    data = asdict(status)
    data["merges"] = [merges_mod.merge_to_dict(m) for m in status.merges]
    return data
