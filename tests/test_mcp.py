"""Tests for the MCP tools, called directly with a stub request context."""

from types import SimpleNamespace

import pytest

from attempt_orchestrator.mcp import server
from attempt_orchestrator.mcp.server import AppContext


@pytest.fixture
def ctx(orchestrator, config):
    app = AppContext(orchestrator=orchestrator, config=config)
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))


class TestTaskTools:
    def test_create_and_list(self, ctx):
        created = server.create_task(ctx, "Fix login", project="demo")
        assert created["id"] == "fix-login"
        assert created["has_in_progress_attempt"] is False

        titles = {t["title"] for t in server.list_tasks(ctx, project="demo")}
        assert titles == {"Add greeting", "Fix login"}
        assert server.list_tasks(ctx, project="demo", status="done") == []

    def test_unknown_project(self, ctx):
        assert server.create_task(ctx, "X", project="nope")["error"]["code"] == "not_found"

    def test_delete_missing(self, ctx):
        assert server.delete_task(ctx, "nope")["error"]["code"] == "not_found"


class TestAttemptTools:
    def test_start_follow_up_and_merge(self, ctx, task, settle):
        attempt = server.start_attempt(ctx, task.id, executor="WRITER")
        assert attempt["executor"] == "WRITER"
        settle()

        process = server.follow_up(ctx, attempt["id"], "again")
        assert process["run_reason"] == "coding_agent"
        settle()

        processes = server.list_processes(ctx, attempt["id"])
        assert [p["status"] for p in processes] == ["completed", "completed"]

        logs = server.process_logs(ctx, processes[0]["id"])
        assert logs["truncated"] is False
        assert logs["entries"][0]["content"] == "wrote agent.txt"

        status = server.branch_status(ctx, attempt["id"])
        assert status["commits_ahead"] == 2

        merge = server.merge_attempt(ctx, attempt["id"])
        assert merge["type"] == "direct"
        assert server.list_tasks(ctx, project="demo", status="done")[0]["id"] == task.id

    def test_restore(self, ctx, task, settle):
        attempt = server.start_attempt(ctx, task.id, executor="WRITER")
        settle()
        server.follow_up(ctx, attempt["id"], "again")
        settle()
        first = server.list_processes(ctx, attempt["id"])[0]

        result = server.restore_attempt(ctx, attempt["id"], first["id"])
        assert result["had_later_processes"] is True
        assert len(server.list_processes(ctx, attempt["id"])) == 1
        assert len(server.list_processes(ctx, attempt["id"], include_dropped=True)) == 2

    def test_stop(self, ctx, task):
        attempt = server.start_attempt(ctx, task.id, executor="SLEEPER")
        stopped = server.stop_attempt(ctx, attempt["id"])["stopped"]
        assert [p["status"] for p in stopped] == ["killed"]

    def test_errors_are_payloads(self, ctx, task):
        assert server.start_attempt(ctx, task.id, executor="NOBODY")["error"]["code"] == "spawn_error"
        assert server.follow_up(ctx, "nope", "hi")["error"]["code"] == "not_found"
        assert server.merge_attempt(ctx, "nope")["error"]["code"] == "not_found"

    def test_list_and_delete(self, ctx, task, settle):
        attempt = server.start_attempt(ctx, task.id, executor="WRITER")
        settle()
        assert [a["id"] for a in server.list_attempts(ctx, task.id)] == [attempt["id"]]
        assert server.delete_attempt(ctx, attempt["id"]) == {"deleted": attempt["id"]}
        assert server.list_attempts(ctx, task.id) == []
