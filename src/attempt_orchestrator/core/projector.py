"""In-memory projection of tasks, attempts and processes, with a patch feed.

Every mutation is diffed against the current document and turned into
JSON-Patch style operations (``add``/``replace``/``remove`` at
``/<table>/<id>``). Subscribers receive a scoped snapshot plus every later
patch in mutation order.
"""

import logging
import queue
import threading
from datetime import datetime

from attempt_orchestrator.db.models import (
    EXCLUSIVE_RUN_REASONS,
    ExecutionProcess,
    Task,
    TaskAttempt,
)

logger = logging.getLogger(__name__)

TABLES = ("tasks", "task_attempts", "execution_processes")


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def task_document(task: Task) -> dict:
    return {
        "id": task.id,
        "project_id": task.project_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "parent_task_attempt": task.parent_task_attempt,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


def attempt_document(attempt: TaskAttempt) -> dict:
    return {
        "id": attempt.id,
        "task_id": attempt.task_id,
        "branch": attempt.branch,
        "base_branch": attempt.base_branch,
        "container_ref": attempt.container_ref,
        "executor": attempt.executor,
        "variant": attempt.variant,
        "worktree_deleted": attempt.worktree_deleted,
        "created_at": _iso(attempt.created_at),
        "updated_at": _iso(attempt.updated_at),
    }


def process_document(process: ExecutionProcess) -> dict:
    return {
        "id": process.id,
        "seq": process.seq,
        "task_attempt_id": process.task_attempt_id,
        "run_reason": process.run_reason,
        "action": process.action,
        "status": process.status,
        "pid": process.pid,
        "exit_code": process.exit_code,
        "dropped": process.dropped,
        "before_head_commit": process.before_head_commit,
        "after_head_commit": process.after_head_commit,
        "result_summary": process.result_summary,
        "started_at": _iso(process.started_at),
        "completed_at": _iso(process.completed_at),
    }


class Subscription:
    """A registered observer. ``snapshot`` is the state patches apply to."""

    def __init__(self, projector: "StateProjector", snapshot: dict, project_id: str | None,
                 task_id: str | None):
        self.snapshot = snapshot
        self.project_id = project_id
        self.task_id = task_id
        self.queue: queue.Queue = queue.Queue()
        self._projector = projector
        self.closed = False

    def matches(self, owner: tuple[str | None, str | None]) -> bool:
        project_id, task_id = owner
        if self.project_id and project_id != self.project_id:
            return False
        if self.task_id and task_id != self.task_id:
            return False
        return True

    def get(self, timeout: float | None = None) -> dict | None:
        """Next patch, or None on timeout or once closed."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict]:
        patches = []
        while True:
            try:
                patch = self.queue.get_nowait()
            except queue.Empty:
                return patches
            if patch is not None:
                patches.append(patch)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._projector.unsubscribe(self)
        self.queue.put(None)


class StateProjector:
    """Holds the live documents and fans patches out to subscribers."""

    def __init__(self):
        self._lock = threading.RLock()
        self._raw_tasks: dict[str, dict] = {}
        self._tables: dict[str, dict[str, dict]] = {t: {} for t in TABLES}
        self._owners: dict[tuple[str, str], tuple[str | None, str | None]] = {}
        self._merged_attempts: set[str] = set()
        self._subscribers: list[Subscription] = []

    # ── Loading ──────────────────────────────────────────────────────────────

    def load(
        self,
        tasks: list[Task],
        attempts: list[TaskAttempt],
        processes: list[ExecutionProcess],
        merged_attempt_ids: set[str] | None = None,
    ):
        """Replace all state without emitting patches."""
        with self._lock:
            self._raw_tasks = {t.id: task_document(t) for t in tasks}
            self._tables = {t: {} for t in TABLES}
            self._owners = {}
            self._merged_attempts = set(merged_attempt_ids or ())
            for attempt in attempts:
                self._tables["task_attempts"][attempt.id] = attempt_document(attempt)
            for process in processes:
                self._tables["execution_processes"][process.id] = process_document(process)
            for task_id in self._raw_tasks:
                self._tables["tasks"][task_id] = self._derive_task(task_id)
            for table, docs in self._tables.items():
                for doc_id, doc in docs.items():
                    self._owners[(table, doc_id)] = self._owner_of(table, doc)

    # ── Mutations ────────────────────────────────────────────────────────────

    def upsert_task(self, task: Task):
        with self._lock:
            self._raw_tasks[task.id] = task_document(task)
            self._refresh_task(task.id)

    def remove_task(self, task_id: str):
        with self._lock:
            for attempt_id in [a["id"] for a in self._attempts_of(task_id)]:
                self._remove_attempt_locked(attempt_id)
            self._raw_tasks.pop(task_id, None)
            self._set("tasks", task_id, None)

    def upsert_attempt(self, attempt: TaskAttempt):
        with self._lock:
            self._set("task_attempts", attempt.id, attempt_document(attempt))
            self._refresh_task(attempt.task_id)

    def remove_attempt(self, attempt_id: str):
        with self._lock:
            self._remove_attempt_locked(attempt_id)

    def upsert_process(self, process: ExecutionProcess):
        with self._lock:
            self._set("execution_processes", process.id, process_document(process))
            attempt = self._tables["task_attempts"].get(process.task_attempt_id)
            if attempt:
                self._refresh_task(attempt["task_id"])

    def mark_merged(self, attempt_id: str):
        with self._lock:
            self._merged_attempts.add(attempt_id)
            attempt = self._tables["task_attempts"].get(attempt_id)
            if attempt:
                self._refresh_task(attempt["task_id"])

    # ── Reads ────────────────────────────────────────────────────────────────

    def snapshot(self, project_id: str | None = None, task_id: str | None = None) -> dict:
        with self._lock:
            return self._snapshot_locked(project_id, task_id)

    def get(self, table: str, doc_id: str) -> dict | None:
        with self._lock:
            doc = self._tables[table].get(doc_id)
            return dict(doc) if doc else None

    def subscribe(self, project_id: str | None = None, task_id: str | None = None) -> Subscription:
        """Atomically take a scoped snapshot and register for later patches."""
        with self._lock:
            sub = Subscription(self, self._snapshot_locked(project_id, task_id), project_id, task_id)
            self._subscribers.append(sub)
            return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def close_all(self):
        with self._lock:
            subs = list(self._subscribers)
        for sub in subs:
            sub.close()

    # ── Internals (callers hold the lock) ────────────────────────────────────

    def _snapshot_locked(self, project_id: str | None, task_id: str | None) -> dict:
        result: dict[str, dict[str, dict]] = {t: {} for t in TABLES}
        for table, docs in self._tables.items():
            for doc_id, doc in docs.items():
                owner_project, owner_task = self._owners.get((table, doc_id), (None, None))
                if project_id and owner_project != project_id:
                    continue
                if task_id and owner_task != task_id:
                    continue
                result[table][doc_id] = dict(doc)
        return result

    def _remove_attempt_locked(self, attempt_id: str):
        attempt = self._tables["task_attempts"].get(attempt_id)
        if attempt is None:
            return
        for proc_id in [p["id"] for p in self._processes_of(attempt_id)]:
            self._set("execution_processes", proc_id, None)
        self._set("task_attempts", attempt_id, None)
        self._merged_attempts.discard(attempt_id)
        self._refresh_task(attempt["task_id"])

    def _attempts_of(self, task_id: str) -> list[dict]:
        attempts = [a for a in self._tables["task_attempts"].values() if a["task_id"] == task_id]
        return sorted(attempts, key=lambda a: a["created_at"] or "", reverse=True)

    def _processes_of(self, attempt_id: str) -> list[dict]:
        procs = [
            p for p in self._tables["execution_processes"].values()
            if p["task_attempt_id"] == attempt_id
        ]
        return sorted(procs, key=lambda p: p["seq"] or 0)

    def _derive_task(self, task_id: str) -> dict:
        doc = dict(self._raw_tasks[task_id])
        attempts = self._attempts_of(task_id)
        in_progress = False
        for attempt in attempts:
            for proc in self._processes_of(attempt["id"]):
                if proc["status"] == "running" and proc["run_reason"] in EXCLUSIVE_RUN_REASONS:
                    in_progress = True
        last_failed = False
        if attempts:
            turns = [
                p for p in self._processes_of(attempts[0]["id"])
                if not p["dropped"] and p["run_reason"] in EXCLUSIVE_RUN_REASONS
            ]
            if turns:
                last_failed = turns[-1]["status"] in ("failed", "killed")
        doc["has_in_progress_attempt"] = in_progress
        doc["has_merged_attempt"] = any(a["id"] in self._merged_attempts for a in attempts)
        doc["last_attempt_failed"] = last_failed
        doc["executor"] = attempts[0]["executor"] if attempts else None
        return doc

    def _refresh_task(self, task_id: str):
        if task_id in self._raw_tasks:
            self._set("tasks", task_id, self._derive_task(task_id))

    def _owner_of(self, table: str, doc: dict) -> tuple[str | None, str | None]:
        if table == "tasks":
            return doc["project_id"], doc["id"]
        if table == "task_attempts":
            task = self._raw_tasks.get(doc["task_id"])
            return (task["project_id"] if task else None), doc["task_id"]
        attempt = self._tables["task_attempts"].get(doc["task_attempt_id"])
        if attempt is None:
            return None, None
        return self._owner_of("task_attempts", attempt)

    def _set(self, table: str, doc_id: str, doc: dict | None):
        """Store (or remove, when ``doc`` is None) a document and emit the patch."""
        current = self._tables[table].get(doc_id)
        path = f"/{table}/{doc_id}"
        if doc is None:
            if current is None:
                return
            del self._tables[table][doc_id]
            owner = self._owners.pop((table, doc_id), (None, None))
            self._emit({"op": "remove", "path": path}, owner)
            return

        if current == doc:
            return
        self._tables[table][doc_id] = doc
        owner = self._owner_of(table, doc)
        self._owners[(table, doc_id)] = owner
        op = "add" if current is None else "replace"
        self._emit({"op": op, "path": path, "value": dict(doc)}, owner)

    def _emit(self, patch: dict, owner: tuple[str | None, str | None]):
        for sub in self._subscribers:
            if sub.matches(owner):
                sub.queue.put(patch)
