"""Execution process records and their persisted logs."""

import json
import sqlite3
from datetime import datetime

from attempt_orchestrator.db.models import EXCLUSIVE_RUN_REASONS, ExecutionProcess

_EXCLUSIVE = ", ".join(f"'{r}'" for r in EXCLUSIVE_RUN_REASONS)


def insert_process(db: sqlite3.Connection, process: ExecutionProcess) -> ExecutionProcess:
    db.execute(
        """INSERT INTO execution_processes
           (id, task_attempt_id, run_reason, action, status, pid, before_head_commit)
           VALUES (?, ?, ?, ?, 'running', ?, ?)""",
        (
            process.id,
            process.task_attempt_id,
            process.run_reason,
            json.dumps(process.action),
            process.pid,
            process.before_head_commit,
        ),
    )
    db.commit()
    return get_process(db, process.id)


def get_process(db: sqlite3.Connection, process_id: str) -> ExecutionProcess | None:
    row = db.execute(
        "SELECT * FROM execution_processes WHERE id = ?", (process_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_process(row)


def list_processes(
    db: sqlite3.Connection,
    attempt_id: str,
    include_dropped: bool = True,
) -> list[ExecutionProcess]:
    """Processes of an attempt in creation order."""
    query = "SELECT * FROM execution_processes WHERE task_attempt_id = ?"
    if not include_dropped:
        query += " AND dropped = 0"
    query += " ORDER BY seq ASC"
    rows = db.execute(query, (attempt_id,)).fetchall()
    return [_row_to_process(r) for r in rows]


def list_running(db: sqlite3.Connection) -> list[ExecutionProcess]:
    rows = db.execute(
        "SELECT * FROM execution_processes WHERE status = 'running' ORDER BY seq"
    ).fetchall()
    return [_row_to_process(r) for r in rows]


def running_for_attempt(
    db: sqlite3.Connection,
    attempt_id: str,
    exclusive_only: bool = True,
) -> list[ExecutionProcess]:
    query = "SELECT * FROM execution_processes WHERE task_attempt_id = ? AND status = 'running'"
    if exclusive_only:
        query += f" AND run_reason IN ({_EXCLUSIVE})"
    rows = db.execute(query + " ORDER BY seq", (attempt_id,)).fetchall()
    return [_row_to_process(r) for r in rows]


def running_for_task(
    db: sqlite3.Connection,
    task_id: str,
    exclusive_only: bool = True,
) -> list[ExecutionProcess]:
    """Running processes across every attempt of a task."""
    query = """SELECT ep.* FROM execution_processes ep
               JOIN task_attempts ta ON ep.task_attempt_id = ta.id
               WHERE ta.task_id = ? AND ep.status = 'running'"""
    if exclusive_only:
        query += f" AND ep.run_reason IN ({_EXCLUSIVE})"
    rows = db.execute(query + " ORDER BY ep.seq", (task_id,)).fetchall()
    return [_row_to_process(r) for r in rows]


def latest_by_run_reason(
    db: sqlite3.Connection,
    attempt_id: str,
    run_reason: str,
) -> ExecutionProcess | None:
    """Latest non-dropped process of the given kind."""
    row = db.execute(
        """SELECT * FROM execution_processes
           WHERE task_attempt_id = ? AND run_reason = ? AND dropped = 0
           ORDER BY seq DESC LIMIT 1""",
        (attempt_id, run_reason),
    ).fetchone()
    if not row:
        return None
    return _row_to_process(row)


def finish_process(
    db: sqlite3.Connection,
    process_id: str,
    status: str,
    exit_code: int | None,
    result_summary: str | None = None,
) -> ExecutionProcess | None:
    """Move a running process to a terminal status. Terminal rows are left alone."""
    db.execute(
        """UPDATE execution_processes
           SET status = ?, exit_code = ?, result_summary = ?,
               completed_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
           WHERE id = ? AND status = 'running'""",
        (status, exit_code, result_summary, process_id),
    )
    db.commit()
    return get_process(db, process_id)


def set_after_head_commit(db: sqlite3.Connection, process_id: str, commit: str | None):
    db.execute(
        "UPDATE execution_processes SET after_head_commit = ? WHERE id = ?",
        (commit, process_id),
    )
    db.commit()


def drop_later_than(db: sqlite3.Connection, attempt_id: str, process: ExecutionProcess) -> list[str]:
    """Mark every process created after ``process`` as dropped. Returns their ids."""
    rows = db.execute(
        """SELECT id FROM execution_processes
           WHERE task_attempt_id = ? AND seq > ? AND dropped = 0""",
        (attempt_id, process.seq),
    ).fetchall()
    ids = [r["id"] for r in rows]
    if ids:
        db.execute(
            "UPDATE execution_processes SET dropped = 1 WHERE task_attempt_id = ? AND seq > ?",
            (attempt_id, process.seq),
        )
        db.commit()
    return ids


def count_later_than(db: sqlite3.Connection, attempt_id: str, process: ExecutionProcess) -> int:
    row = db.execute(
        "SELECT COUNT(1) AS n FROM execution_processes WHERE task_attempt_id = ? AND seq > ?",
        (attempt_id, process.seq),
    ).fetchone()
    return row["n"]


def save_logs(db: sqlite3.Connection, process_id: str, entries: list[dict]):
    """Persist a process's log entries as JSONL."""
    payload = "\n".join(json.dumps(e) for e in entries)
    db.execute(
        """INSERT OR REPLACE INTO execution_process_logs (execution_id, logs, byte_size)
           VALUES (?, ?, ?)""",
        (process_id, payload, len(payload.encode())),
    )
    db.commit()


def load_logs(db: sqlite3.Connection, process_id: str) -> list[dict]:
    row = db.execute(
        "SELECT logs FROM execution_process_logs WHERE execution_id = ?", (process_id,)
    ).fetchone()
    if not row or not row["logs"]:
        return []
    return [json.loads(line) for line in row["logs"].split("\n") if line]


def _row_to_process(row: sqlite3.Row) -> ExecutionProcess:
    return ExecutionProcess(
        id=row["id"],
        seq=row["seq"],
        task_attempt_id=row["task_attempt_id"],
        run_reason=row["run_reason"],
        action=json.loads(row["action"]),
        status=row["status"],
        pid=row["pid"],
        exit_code=row["exit_code"],
        dropped=bool(row["dropped"]),
        before_head_commit=row["before_head_commit"],
        after_head_commit=row["after_head_commit"],
        result_summary=row["result_summary"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
