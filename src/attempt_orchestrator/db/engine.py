"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    setup_script TEXT,
    dev_script TEXT,
    cleanup_script TEXT,
    copy_files TEXT,
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'todo'
        CHECK (status IN ('todo', 'inprogress', 'inreview', 'done', 'cancelled')),
    parent_task_attempt TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS task_attempts (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    branch TEXT,
    base_branch TEXT NOT NULL,
    container_ref TEXT,
    executor TEXT NOT NULL,
    variant TEXT,
    worktree_deleted INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS execution_processes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    task_attempt_id TEXT NOT NULL REFERENCES task_attempts(id) ON DELETE CASCADE,
    run_reason TEXT NOT NULL
        CHECK (run_reason IN ('setup_script', 'cleanup_script', 'coding_agent', 'dev_server')),
    action TEXT NOT NULL,
    status TEXT DEFAULT 'running'
        CHECK (status IN ('running', 'completed', 'failed', 'killed')),
    pid INTEGER,
    exit_code INTEGER,
    dropped INTEGER DEFAULT 0,
    before_head_commit TEXT,
    after_head_commit TEXT,
    result_summary TEXT,
    started_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS execution_process_logs (
    execution_id TEXT PRIMARY KEY REFERENCES execution_processes(id) ON DELETE CASCADE,
    logs TEXT NOT NULL,
    byte_size INTEGER NOT NULL,
    inserted_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS merges (
    id TEXT PRIMARY KEY,
    task_attempt_id TEXT NOT NULL REFERENCES task_attempts(id) ON DELETE CASCADE,
    merge_type TEXT NOT NULL CHECK (merge_type IN ('direct', 'pr')),
    target_branch TEXT NOT NULL,
    merge_commit TEXT,
    pr_number INTEGER,
    pr_url TEXT,
    pr_status TEXT CHECK (pr_status IN ('open', 'merged', 'closed')),
    pr_merged_at TEXT,
    pr_merge_commit_sha TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_processes_attempt ON execution_processes(task_attempt_id, seq);
CREATE INDEX IF NOT EXISTS idx_attempts_task ON task_attempts(task_id, created_at);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE projects ADD COLUMN append_prompt TEXT",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection to an already initialized database."""
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()
