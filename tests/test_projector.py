"""Tests for the in-memory state projection and its patch feed."""

from dataclasses import replace
from datetime import datetime

import pytest

from attempt_orchestrator.core.projector import StateProjector
from attempt_orchestrator.db.models import ExecutionProcess, Task, TaskAttempt


def _task(task_id="t1", project_id="p1", status="todo"):
    return Task(id=task_id, project_id=project_id, title=task_id, status=status,
                created_at=datetime(2026, 1, 1))


def _attempt(attempt_id="a1", task_id="t1", minute=0, executor="WRITER"):
    return TaskAttempt(id=attempt_id, task_id=task_id, base_branch="main", executor=executor,
                       branch=f"ao/{attempt_id}", created_at=datetime(2026, 1, 1, 0, minute))


def _process(process_id="e1", attempt_id="a1", seq=1, status="running", run_reason="coding_agent"):
    return ExecutionProcess(id=process_id, task_attempt_id=attempt_id, run_reason=run_reason,
                            action={"type": "coding_agent_initial"}, status=status, seq=seq)


@pytest.fixture
def projector():
    p = StateProjector()
    p.upsert_task(_task())
    return p


class TestPatches:
    def test_add_then_replace(self, projector):
        sub = projector.subscribe()
        projector.upsert_task(_task(status="inprogress"))
        projector.upsert_task(_task(status="inprogress"))  # unchanged, no patch
        patches = sub.drain()
        assert [p["op"] for p in patches] == ["replace"]
        assert patches[0]["path"] == "/tasks/t1"
        assert patches[0]["value"]["status"] == "inprogress"

    def test_process_patches_follow_mutation_order(self, projector):
        projector.upsert_attempt(_attempt())
        sub = projector.subscribe()
        projector.upsert_process(_process())
        projector.upsert_process(_process(status="completed"))
        ops = [(p["op"], p["path"]) for p in sub.drain()]
        assert ops == [
            ("add", "/execution_processes/e1"),
            ("replace", "/tasks/t1"),
            ("replace", "/execution_processes/e1"),
            ("replace", "/tasks/t1"),
        ]

    def test_remove_task_cascades(self, projector):
        projector.upsert_attempt(_attempt())
        projector.upsert_process(_process(status="completed"))
        sub = projector.subscribe()
        projector.remove_task("t1")
        removed = [p["path"] for p in sub.drain() if p["op"] == "remove"]
        assert removed == ["/execution_processes/e1", "/task_attempts/a1", "/tasks/t1"]
        assert projector.snapshot() == {"tasks": {}, "task_attempts": {}, "execution_processes": {}}

    def test_load_emits_nothing(self, projector):
        sub = projector.subscribe()
        projector.load([_task()], [_attempt()], [_process(status="completed")], {"a1"})
        assert sub.drain() == []
        assert projector.get("tasks", "t1")["has_merged_attempt"] is True


class TestScopedSubscriptions:
    def test_snapshot_is_scoped(self, projector):
        projector.upsert_task(_task("t2", project_id="p2"))
        sub = projector.subscribe(project_id="p2")
        assert list(sub.snapshot["tasks"]) == ["t2"]

    def test_only_matching_patches(self, projector):
        projector.upsert_task(_task("t2"))
        sub = projector.subscribe(task_id="t2")
        projector.upsert_attempt(_attempt("a1", "t1"))
        projector.upsert_attempt(_attempt("a2", "t2"))
        projector.upsert_process(_process("e2", "a2"))
        paths = [p["path"] for p in sub.drain()]
        assert "/task_attempts/a1" not in paths
        assert "/task_attempts/a2" in paths
        assert "/execution_processes/e2" in paths

    def test_close_stops_delivery(self, projector):
        sub = projector.subscribe()
        sub.close()
        projector.upsert_task(_task(status="done"))
        assert sub.get(timeout=0.01) is None
        assert sub.drain() == []

    def test_close_all(self, projector):
        sub = projector.subscribe()
        projector.close_all()
        assert sub.closed is True


class TestDerivedFields:
    def test_in_progress_from_running_process(self, projector):
        projector.upsert_attempt(_attempt())
        projector.upsert_process(_process())
        assert projector.get("tasks", "t1")["has_in_progress_attempt"] is True
        projector.upsert_process(_process(status="completed"))
        assert projector.get("tasks", "t1")["has_in_progress_attempt"] is False

    def test_dev_server_is_not_in_progress(self, projector):
        projector.upsert_attempt(_attempt())
        projector.upsert_process(_process(run_reason="dev_server"))
        assert projector.get("tasks", "t1")["has_in_progress_attempt"] is False

    def test_last_attempt_failed_uses_latest_attempt(self, projector):
        projector.upsert_attempt(_attempt("a1", minute=0))
        projector.upsert_process(_process("e1", "a1", seq=1, status="failed"))
        assert projector.get("tasks", "t1")["last_attempt_failed"] is True

        projector.upsert_attempt(_attempt("a2", minute=5, executor="ECHO"))
        projector.upsert_process(_process("e2", "a2", seq=2, status="completed"))
        doc = projector.get("tasks", "t1")
        assert doc["last_attempt_failed"] is False
        assert doc["executor"] == "ECHO"

    def test_dropped_turns_are_ignored(self, projector):
        projector.upsert_attempt(_attempt())
        projector.upsert_process(_process("e1", seq=1, status="completed"))
        projector.upsert_process(replace(_process("e2", seq=2, status="killed"), dropped=True))
        assert projector.get("tasks", "t1")["last_attempt_failed"] is False

    def test_mark_merged(self, projector):
        projector.upsert_attempt(_attempt())
        projector.mark_merged("a1")
        assert projector.get("tasks", "t1")["has_merged_attempt"] is True
        projector.remove_attempt("a1")
        assert projector.get("tasks", "t1")["has_merged_attempt"] is False
