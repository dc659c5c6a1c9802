"""CLI entry point for the attempt orchestrator."""

import json
import logging
import os
import sys
from contextlib import contextmanager

import click

from attempt_orchestrator.config import get_config
from attempt_orchestrator.core import attempts as attempts_mod
from attempt_orchestrator.core import executions as executions_mod
from attempt_orchestrator.core import projects as projects_mod
from attempt_orchestrator.core import tasks as tasks_mod
from attempt_orchestrator.core.errors import OrchestratorError
from attempt_orchestrator.core.orchestrator import Orchestrator
from attempt_orchestrator.db.engine import init_db


@contextmanager
def _get_db():
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield db
    finally:
        db.close()


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


def _orchestrator() -> Orchestrator:
    """An orchestrator for one-off commands. Live processes belong to the server."""
    config = get_config()
    init_db(config.db_path).close()
    return Orchestrator(config)


@click.group()
def main():
    """ao - Attempt Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--setup-script", default=None, help="Script run before the first agent turn")
@click.option("--dev-script", default=None, help="Script that starts a dev server")
@click.option("--cleanup-script", default=None, help="Script run after every agent turn")
@click.option("--copy-files", default=None, help="Comma-separated paths copied into new worktrees")
@click.option("--append-prompt", default=None, help="Text appended to every agent prompt")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
def init_project(project_name, repo_path, branch, setup_script, dev_script, cleanup_script,
                 copy_files, append_prompt, slack_channel):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            _fail(f"Project already exists: {project_id}")
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch,
            setup_script=setup_script,
            dev_script=dev_script,
            cleanup_script=cleanup_script,
            copy_files=copy_files,
            append_prompt=append_prompt,
            slack_channel=slack_channel,
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
def task_add(title, project, description):
    """Create a new task."""
    config = get_config()
    with _get_db() as db:
        projects_mod.ensure_default_project(db, str(config.repo_path))
        if not projects_mod.get_project(db, project):
            _fail(f"Project not found: {project}")
        task = tasks_mod.create_task(db, title, project, description)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(db, t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "todo": "○",
            "inprogress": "●",
            "inreview": "◐",
            "done": "✓",
            "cancelled": "✗",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            count = len(attempts_mod.list_attempts(db, task.id))
            suffix = f" [{count} attempt{'s' if count != 1 else ''}]" if count else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status}){suffix}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.parent_task_attempt:
            click.echo(f"  Parent attempt: {task.parent_task_attempt}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")

        found = attempts_mod.list_attempts(db, task_id)
        if found:
            click.echo("  Attempts:")
            for a in found:
                click.echo(f"    - {a.id}: {a.branch} from {a.base_branch} ({a.executor_profile_id})")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task with its attempts and worktrees."""
    orchestrator = _orchestrator()
    try:
        orchestrator.coordinator.delete_task(task_id)
    except OrchestratorError as e:
        _fail(f"Error: {e.message}")
    click.echo(f"Deleted task: {task_id}")


# ── Attempt Commands ──────────────────────────────────────────────────────────


@main.group("attempt")
def attempt_group():
    """Inspect task attempts."""
    pass


@attempt_group.command("list")
@click.argument("task_id")
def attempt_list(task_id):
    """List the attempts of a task, newest first."""
    with _get_db() as db:
        found = attempts_mod.list_attempts(db, task_id)
        if not found:
            click.echo("No attempts found.")
            return
        for a in found:
            gone = " [worktree deleted]" if a.worktree_deleted else ""
            click.echo(f"  {a.id} {a.branch} <- {a.base_branch} ({a.executor_profile_id}){gone}")


@attempt_group.command("show")
@click.argument("attempt_id")
def attempt_show(attempt_id):
    """Show an attempt and its execution processes."""
    with _get_db() as db:
        attempt = attempts_mod.get_attempt(db, attempt_id)
        if not attempt:
            _fail(f"Attempt not found: {attempt_id}")

        click.echo(f"Attempt: {attempt.id}")
        click.echo(f"  Task: {attempt.task_id}")
        click.echo(f"  Branch: {attempt.branch}")
        click.echo(f"  Base: {attempt.base_branch}")
        click.echo(f"  Worktree: {attempt.container_ref}")
        click.echo(f"  Executor: {attempt.executor_profile_id}")

        processes = executions_mod.list_processes(db, attempt_id)
        if processes:
            click.echo("  Processes:")
            for p in processes:
                dropped = " [dropped]" if p.dropped else ""
                code = f" exit={p.exit_code}" if p.exit_code is not None else ""
                click.echo(f"    {p.seq}. {p.id} {p.run_reason} {p.status}{code}{dropped}")
                if p.result_summary:
                    click.echo(f"       {p.result_summary[:120]}")


@attempt_group.command("status")
@click.argument("attempt_id")
def attempt_status(attempt_id):
    """Show the branch status of an attempt."""
    orchestrator = _orchestrator()
    try:
        status = orchestrator.coordinator.branch_status(attempt_id)
    except OrchestratorError as e:
        _fail(f"Error: {e.message}")

    click.echo(f"Base: {status.base_branch_name}")
    click.echo(f"  Ahead: {status.commits_ahead}  Behind: {status.commits_behind}")
    if status.remote_commits_ahead is not None:
        click.echo(f"  Remote ahead: {status.remote_commits_ahead}  behind: {status.remote_commits_behind}")
    if status.has_uncommitted_changes:
        click.echo(
            f"  Uncommitted: {status.uncommitted_count} tracked, {status.untracked_count} untracked"
        )
    if status.head_oid:
        click.echo(f"  HEAD: {status.head_oid}")
    for m in status.merges:
        if m.merge_type == "direct":
            click.echo(f"  Merged into {m.target_branch} as {m.merge_commit}")
        else:
            click.echo(f"  PR #{m.pr_info.number} ({m.pr_info.status}): {m.pr_info.url}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the HTTP API and change feed."""
    from attempt_orchestrator.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}/api")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from attempt_orchestrator.mcp.server import mcp
    from attempt_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(db, task) -> dict:
    latest = attempts_mod.get_latest_attempt(db, task.id)
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "project": task.project_id,
        "description": task.description,
        "parent_task_attempt": task.parent_task_attempt,
        "latest_attempt": latest.id if latest else None,
        "branch": latest.branch if latest else None,
    }


if __name__ == "__main__":
    main()
