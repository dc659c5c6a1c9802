"""Task attempt records."""

import sqlite3
import uuid
from datetime import datetime

from attempt_orchestrator.core.tasks import _log_event
from attempt_orchestrator.db.models import TaskAttempt


def create_attempt(
    db: sqlite3.Connection,
    task_id: str,
    base_branch: str,
    executor: str,
    variant: str | None = None,
    branch: str | None = None,
    container_ref: str | None = None,
    attempt_id: str | None = None,
) -> TaskAttempt:
    """Insert a new attempt row."""
    attempt_id = attempt_id or str(uuid.uuid4())
    db.execute(
        """INSERT INTO task_attempts
           (id, task_id, branch, base_branch, container_ref, executor, variant)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (attempt_id, task_id, branch, base_branch, container_ref, executor, variant),
    )
    _log_event(db, task_id, "attempt_created", None, attempt_id)
    db.commit()
    return get_attempt(db, attempt_id)


def get_attempt(db: sqlite3.Connection, attempt_id: str) -> TaskAttempt | None:
    row = db.execute(
        "SELECT * FROM task_attempts WHERE id = ?", (attempt_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_attempt(row)


def list_attempts(
    db: sqlite3.Connection,
    task_id: str | None = None,
) -> list[TaskAttempt]:
    """List attempts, newest first."""
    query = "SELECT * FROM task_attempts"
    params: list = []
    if task_id:
        query += " WHERE task_id = ?"
        params.append(task_id)
    query += " ORDER BY created_at DESC, rowid DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_attempt(r) for r in rows]


def list_live_attempts(db: sqlite3.Connection) -> list[TaskAttempt]:
    """Attempts whose worktree has not been deleted."""
    rows = db.execute(
        "SELECT * FROM task_attempts WHERE worktree_deleted = 0 AND container_ref IS NOT NULL"
    ).fetchall()
    return [_row_to_attempt(r) for r in rows]


def get_latest_attempt(db: sqlite3.Connection, task_id: str) -> TaskAttempt | None:
    """The most recently created attempt of a task that still has a worktree."""
    for attempt in list_attempts(db, task_id):
        if not attempt.worktree_deleted and attempt.branch:
            return attempt
    return None


def update_attempt(db: sqlite3.Connection, attempt_id: str, **kwargs) -> TaskAttempt | None:
    """Update branch/base_branch/container_ref/worktree_deleted."""
    allowed = {"branch", "base_branch", "container_ref", "worktree_deleted"}
    updates = {k: v for k, v in kwargs.items() if k in allowed}
    if not updates:
        return get_attempt(db, attempt_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = [int(v) if isinstance(v, bool) else v for v in updates.values()]
    db.execute(
        f"UPDATE task_attempts SET {set_clause}, "
        "updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now') WHERE id = ?",
        values + [attempt_id],
    )
    db.commit()
    return get_attempt(db, attempt_id)


def delete_attempt(db: sqlite3.Connection, attempt_id: str) -> bool:
    attempt = get_attempt(db, attempt_id)
    if not attempt:
        return False
    db.execute("DELETE FROM task_attempts WHERE id = ?", (attempt_id,))
    _log_event(db, attempt.task_id, "attempt_deleted", attempt_id, None)
    db.commit()
    return True


def _row_to_attempt(row: sqlite3.Row) -> TaskAttempt:
    return TaskAttempt(
        id=row["id"],
        task_id=row["task_id"],
        branch=row["branch"],
        base_branch=row["base_branch"],
        container_ref=row["container_ref"],
        executor=row["executor"],
        variant=row["variant"],
        worktree_deleted=bool(row["worktree_deleted"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
