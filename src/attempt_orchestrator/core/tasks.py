"""Task management operations."""

import re
import sqlite3
from datetime import datetime

from attempt_orchestrator.db.models import TASK_STATUSES, Task, TaskEvent


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    parent_task_attempt: str | None = None,
) -> Task:
    """Create a new task."""
    task_id = _unique_id(db, slugify(title))

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, parent_task_attempt)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, parent_task_attempt),
    )
    _log_event(db, task_id, "created", None, "todo")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY created_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task | None:
    """Update a task's status. Returns the updated task."""
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status: {status}")
    task = get_task(db, task_id)
    if not task:
        return None
    if task.status == status:
        return task

    db.execute(
        "UPDATE tasks SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, task_id),
    )
    _log_event(db, task_id, "status_changed", task.status, status)
    db.commit()
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task. Attempts, processes, logs and merges cascade."""
    task = get_task(db, task_id)
    if not task:
        return False
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def list_child_tasks(db: sqlite3.Connection, attempt_id: str) -> list[Task]:
    """Tasks spun off from the given attempt."""
    rows = db.execute(
        "SELECT * FROM tasks WHERE parent_task_attempt = ? ORDER BY created_at ASC",
        (attempt_id,),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        parent_task_attempt=row["parent_task_attempt"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
