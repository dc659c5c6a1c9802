"""MCP prompt templates for common attempt workflows."""

from attempt_orchestrator.mcp.server import mcp


@mcp.prompt()
def review_attempt(attempt_id: str) -> str:
    """Generate a prompt to review the work of a task attempt."""
    return (
        f"Please review the work done in task attempt '{attempt_id}'.\n\n"
        f"Use list_processes to see the agent turns, process_logs to read what the agent "
        f"reported, and branch_status to check commits and uncommitted changes.\n"
        f"Then provide:\n"
        f"1. Summary of changes made\n"
        f"2. Whether the task goals appear to be met\n"
        f"3. Any issues or concerns\n"
        f"4. Whether it's ready to merge, needs a follow_up, or should be restored to an earlier turn"
    )


@mcp.prompt()
def dispatch_attempts(project: str = "default") -> str:
    """Generate a prompt to start attempts on open tasks."""
    return (
        f"I want coding agents working on the open tasks of the '{project}' project.\n\n"
        f"Please:\n"
        f"1. Use list_tasks with status='todo' to find tasks nobody has started\n"
        f"2. For each one, use start_attempt with clear instructions for the agent\n"
        f"3. Use list_tasks again and confirm each started task reports has_in_progress_attempt\n\n"
        f"Give me a short summary of which attempts were started and on which branches."
    )


@mcp.prompt()
def land_attempt(attempt_id: str) -> str:
    """Generate a prompt to bring an attempt up to date and merge it."""
    return (
        f"Please land task attempt '{attempt_id}'.\n\n"
        f"1. Use branch_status to check commits behind the base branch\n"
        f"2. If it is behind, use rebase_attempt; if that reports conflicts, stop and list them\n"
        f"3. Use merge_attempt to squash-merge it, or create_pr if the project works through pull requests\n"
        f"4. Report the resulting merge commit or PR URL"
    )
