"""Process supervision: launching, streaming, stopping and reaping executions."""

import json
import logging
import os
import queue
import signal
import subprocess
import threading
import uuid
from collections.abc import Callable
from pathlib import Path

from attempt_orchestrator.core import executions
from attempt_orchestrator.core.errors import SpawnError, ValidationError
from attempt_orchestrator.core.profiles import ProfileRegistry
from attempt_orchestrator.core.projector import StateProjector
from attempt_orchestrator.db.engine import get_db
from attempt_orchestrator.db.models import (
    RUN_REASONS,
    ExecutionProcess,
    ExecutorProfileId,
    TaskAttempt,
)
from attempt_orchestrator.integrations.git import GitError, get_head_oid

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 500

# Agent stream-json ``type`` values mapped to normalized entry types.
NORMALIZED_TYPES = {
    "assistant": "assistant_message",
    "assistant_message": "assistant_message",
    "result": "assistant_message",
    "user": "user_message",
    "user_message": "user_message",
    "system": "system_message",
    "system_message": "system_message",
    "error": "error_message",
    "error_message": "error_message",
    "tool_use": "tool_use",
}

AGENT_ACTIONS = ("coding_agent_initial", "coding_agent_follow_up")


# ── Log entries ──────────────────────────────────────────────────────────────


def _content_of(obj: dict) -> str:
    for key in ("content", "text", "result"):
        val = obj.get(key)
        if isinstance(val, str):
            return val
    message = obj.get("message")
    if isinstance(message, dict):
        parts = message.get("content")
        if isinstance(parts, str):
            return parts
        if isinstance(parts, list):
            texts = [p.get("text", "") for p in parts if isinstance(p, dict) and p.get("text")]
            if texts:
                return "\n".join(texts)
    return json.dumps(obj)


def normalize_line(line: str) -> dict | None:
    """Turn one line of agent output into a normalized entry, if it is one."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        obj = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    entry_type = NORMALIZED_TYPES.get(obj.get("type"))
    if entry_type is None:
        return None
    return {"channel": "normalized_entry", "entry_type": entry_type, "content": _content_of(obj)}


def summarize(entries: list[dict]) -> str | None:
    """Last diagnostic line: the final assistant message, else the last output line."""
    for entry in reversed(entries):
        if entry.get("entry_type") == "assistant_message" and entry["content"].strip():
            return entry["content"].strip()[:SUMMARY_LIMIT]
    for entry in reversed(entries):
        if entry["channel"] in ("stdout", "stderr") and entry["content"].strip():
            return entry["content"].strip()[:SUMMARY_LIMIT]
    return None


class LogStore:
    """Append-only, ordered log of one process with live subscribers."""

    def __init__(self, entries: list[dict] | None = None, closed: bool = False):
        self._lock = threading.Lock()
        self._entries: list[dict] = list(entries or [])
        self._subscribers: list[queue.Queue] = []
        self.closed = closed

    def append(self, entry: dict):
        with self._lock:
            self._entries.append(entry)
            for q in self._subscribers:
                q.put(entry)

    def history(self) -> list[dict]:
        with self._lock:
            return list(self._entries)

    def subscribe(self) -> tuple[list[dict], queue.Queue]:
        """History so far plus a queue of later entries; ``None`` marks the end."""
        q: queue.Queue = queue.Queue()
        with self._lock:
            if self.closed:
                q.put(None)
            else:
                self._subscribers.append(q)
            return list(self._entries), q

    def unsubscribe(self, q: queue.Queue):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def close(self):
        with self._lock:
            self.closed = True
            for q in self._subscribers:
                q.put(None)
            self._subscribers = []


# ── Supervisor ───────────────────────────────────────────────────────────────


class _Handle:
    def __init__(self, process_id: str, proc: subprocess.Popen, run_reason: str, logs: LogStore):
        self.process_id = process_id
        self.proc = proc
        self.run_reason = run_reason
        self.logs = logs
        self.stop_requested = False
        self.exited = threading.Event()
        self.readers: list[threading.Thread] = []


class ProcessSupervisor:
    """Launches execution processes and owns their lifetime.

    Each process gets its own process group, a reader thread per output
    channel and a waiter thread. The waiter records the final status,
    persists logs, sets the handle's ``exited`` event and only then runs
    ``on_exit``, so a caller blocked in :meth:`stop` never waits on the hook.
    """

    def __init__(
        self,
        db_path: Path,
        profiles: ProfileRegistry,
        projector: StateProjector | None = None,
        stop_timeout: float = 5.0,
        on_exit: Callable[[ExecutionProcess], None] | None = None,
    ):
        self.db_path = db_path
        self.profiles = profiles
        self.projector = projector
        self.stop_timeout = stop_timeout
        self.on_exit = on_exit
        self._handles: dict[str, _Handle] = {}
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)
        self._active = 0

    # ── Launch ───────────────────────────────────────────────────────────────

    def resolve_command(self, action: dict) -> tuple[list[str], dict[str, str], str | None]:
        """argv, extra environment and stdin payload for an executor action."""
        action_type = action.get("type")
        if action_type == "script":
            language = action.get("language", "bash")
            if language not in ("bash", "sh"):
                raise SpawnError(f"Unsupported script language: {language}")
            return [language, "-c", action["script"]], {}, None
        if action_type in AGENT_ACTIONS:
            profile_id = ExecutorProfileId.from_dict(action["executor_profile_id"])
            argv, env = self.profiles.build_command(profile_id, action.get("model_override"))
            return argv, env, action.get("prompt", "")
        raise SpawnError(f"Unknown executor action type: {action_type}")

    def spawn(self, attempt: TaskAttempt, run_reason: str, action: dict) -> ExecutionProcess:
        """Start ``action`` in the attempt's worktree and record a running process."""
        if run_reason not in RUN_REASONS:
            raise ValidationError(f"Invalid run reason: {run_reason}")
        if not attempt.container_ref or not Path(attempt.container_ref).is_dir():
            raise SpawnError(f"Worktree for attempt {attempt.id} does not exist")

        argv, extra_env, stdin_payload = self.resolve_command(action)
        try:
            before = get_head_oid(attempt.container_ref)
        except GitError:
            before = None

        env = dict(os.environ)
        env.update(extra_env)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=attempt.container_ref,
                stdin=subprocess.PIPE if stdin_payload is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Cannot launch {argv[0]}: {e}") from e

        process_id = str(uuid.uuid4())
        try:
            with get_db(self.db_path) as db:
                process = executions.insert_process(
                    db,
                    ExecutionProcess(
                        id=process_id,
                        task_attempt_id=attempt.id,
                        run_reason=run_reason,
                        action=action,
                        pid=proc.pid,
                        before_head_commit=before,
                    ),
                )
        except Exception:
            _kill_group(proc, signal.SIGKILL)
            proc.wait()
            raise

        handle = _Handle(process_id, proc, run_reason, LogStore())
        with self._lock:
            self._handles[process_id] = handle
            self._active += 1
        if self.projector:
            self.projector.upsert_process(process)

        is_agent = action.get("type") in AGENT_ACTIONS
        for channel, stream in (("stdout", proc.stdout), ("stderr", proc.stderr)):
            reader = threading.Thread(
                target=self._read_stream,
                args=(handle, channel, stream, is_agent and channel == "stdout"),
                name=f"reader-{channel}-{process_id[:8]}",
                daemon=True,
            )
            reader.start()
            handle.readers.append(reader)
        if stdin_payload is not None:
            threading.Thread(
                target=_feed_stdin, args=(proc, stdin_payload), daemon=True,
                name=f"stdin-{process_id[:8]}",
            ).start()
        threading.Thread(
            target=self._await_exit, args=(handle,), name=f"waiter-{process_id[:8]}", daemon=True
        ).start()

        logger.info(
            "Started %s process %s (pid %s) for attempt %s",
            run_reason, process_id, proc.pid, attempt.id,
        )
        return process

    def _read_stream(self, handle: _Handle, channel: str, stream, normalize: bool):
        try:
            for line in stream:
                content = line.rstrip("\n")
                handle.logs.append({"channel": channel, "content": content})
                if normalize:
                    entry = normalize_line(content)
                    if entry:
                        handle.logs.append(entry)
        except ValueError:
            pass  # stream closed underneath us
        finally:
            stream.close()

    def _await_exit(self, handle: _Handle):
        returncode = handle.proc.wait()
        for reader in handle.readers:
            reader.join(timeout=self.stop_timeout)

        if handle.stop_requested:
            status = "killed"
        elif returncode == 0:
            status = "completed"
        else:
            status = "failed"

        entries = handle.logs.history()
        process = None
        try:
            with get_db(self.db_path) as db:
                process = executions.finish_process(
                    db, handle.process_id, status, returncode, summarize(entries)
                )
                executions.save_logs(db, handle.process_id, entries)
        except Exception:
            logger.exception("Failed to record exit of process %s", handle.process_id)

        handle.logs.close()
        with self._lock:
            self._handles.pop(handle.process_id, None)
        if process and self.projector:
            self.projector.upsert_process(process)
        handle.exited.set()

        logger.info(
            "Process %s (%s) %s with exit code %s",
            handle.process_id, handle.run_reason, status, returncode,
        )
        try:
            if process and self.on_exit:
                self.on_exit(process)
        except Exception:
            logger.exception("Exit hook failed for process %s", handle.process_id)
        finally:
            with self._settled:
                self._active -= 1
                self._settled.notify_all()

    # ── Control ──────────────────────────────────────────────────────────────

    def stop(self, process_id: str, timeout: float | None = None) -> ExecutionProcess | None:
        """Terminate a process group; escalate to SIGKILL after ``timeout``.

        Returns once the exit has been recorded. Terminal processes are left as is.
        """
        with self._lock:
            handle = self._handles.get(process_id)
        if handle is None:
            with get_db(self.db_path) as db:
                return executions.get_process(db, process_id)

        timeout = self.stop_timeout if timeout is None else timeout
        if handle.proc.poll() is not None:
            # Already exited on its own; let the waiter record it.
            handle.exited.wait(timeout + self.stop_timeout)
            with get_db(self.db_path) as db:
                return executions.get_process(db, process_id)

        handle.stop_requested = True
        _kill_group(handle.proc, signal.SIGTERM)
        if not handle.exited.wait(timeout):
            logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process_id)
            _kill_group(handle.proc, signal.SIGKILL)
            handle.exited.wait(timeout + self.stop_timeout)

        with get_db(self.db_path) as db:
            return executions.get_process(db, process_id)

    def wait(self, process_id: str, timeout: float | None = None) -> bool:
        """Block until the process has exited and its status is recorded."""
        with self._lock:
            handle = self._handles.get(process_id)
        if handle is None:
            return True
        return handle.exited.wait(timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no process is running and every exit hook has finished."""
        with self._settled:
            return self._settled.wait_for(lambda: self._active == 0, timeout)

    def is_live(self, process_id: str) -> bool:
        with self._lock:
            return process_id in self._handles

    def live_process_ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def log_store(self, process_id: str) -> LogStore:
        """Live log store of a running process, else one built from persisted logs."""
        with self._lock:
            handle = self._handles.get(process_id)
        if handle is not None:
            return handle.logs
        with get_db(self.db_path) as db:
            return LogStore(executions.load_logs(db, process_id), closed=True)

    def shutdown(self, timeout: float | None = None):
        """Stop every live process and wait for their exit hooks."""
        for process_id in self.live_process_ids():
            try:
                self.stop(process_id, timeout)
            except Exception:
                logger.exception("Failed to stop process %s during shutdown", process_id)
        if not self.wait_idle(self.stop_timeout if timeout is None else timeout):
            logger.warning("Exit hooks still running at shutdown")


def _feed_stdin(proc: subprocess.Popen, payload: str):
    try:
        proc.stdin.write(payload)
        proc.stdin.close()
    except (BrokenPipeError, OSError, ValueError):
        logger.debug("stdin of pid %s closed before prompt was written", proc.pid)


def _kill_group(proc: subprocess.Popen, sig: int):
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.warning("Not permitted to signal process group %s", proc.pid)
