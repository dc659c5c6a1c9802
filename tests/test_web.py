"""Tests for the HTTP API and change feed."""

import json
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from attempt_orchestrator.core import tasks as tasks_mod
from attempt_orchestrator.core.supervisor import LogStore
from attempt_orchestrator.web.app import _event_stream, _log_stream, create_app


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as c:
        yield c


def _start(client, executor="WRITER"):
    resp = client.post(
        "/api/task-attempts",
        json={"task_id": "add-greeting", "executor_profile_id": {"executor": executor}},
    )
    assert resp.status_code == 201
    return resp.json()["data"]


class TestProjectsAPI:
    def test_list_projects(self, client):
        data = client.get("/api/projects").json()
        assert data["success"] is True
        assert [p["id"] for p in data["data"]] == ["demo"]

    def test_create_project(self, client, git_repo):
        resp = client.post("/api/projects", json={
            "id": "other", "repo_path": str(git_repo), "dev_script": "npm run dev",
        })
        assert resp.status_code == 201
        assert resp.json()["data"]["dev_script"] == "npm run dev"

    def test_duplicate_project(self, client, git_repo):
        resp = client.post("/api/projects", json={"id": "demo", "repo_path": str(git_repo)})
        assert resp.status_code == 400
        assert resp.json() == {
            "success": False,
            "error": {"code": "validation_error", "message": "Project already exists: demo"},
        }


class TestTasksAPI:
    def test_list_tasks(self, client):
        data = client.get("/api/tasks", params={"project_id": "demo"}).json()["data"]
        assert [t["id"] for t in data] == ["add-greeting"]
        assert data[0]["has_in_progress_attempt"] is False

    def test_create_task(self, client):
        resp = client.post("/api/tasks", json={"project_id": "demo", "title": "Fix login"})
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["id"] == "fix-login"
        assert data["status"] == "todo"
        assert data["last_attempt_failed"] is False

    def test_create_task_requires_title(self, client):
        resp = client.post("/api/tasks", json={"project_id": "demo"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Missing required field: title"

    def test_create_task_unknown_project(self, client):
        resp = client.post("/api/tasks", json={"project_id": "nope", "title": "X"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_invalid_json(self, client):
        resp = client.post("/api/tasks", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_get_task_with_events(self, client):
        data = client.get("/api/tasks/add-greeting").json()["data"]
        assert data["title"] == "Add greeting"
        assert data["events"][0]["event_type"] == "created"

    def test_get_missing_task(self, client):
        assert client.get("/api/tasks/nope").status_code == 404

    def test_create_and_start(self, client, settle):
        resp = client.post("/api/tasks/create-and-start", json={
            "project_id": "demo", "title": "Write docs",
            "executor_profile_id": {"executor": "WRITER"},
        })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["task"]["status"] == "inprogress"
        assert data["attempt"]["base_branch"] == "main"
        settle()

    def test_delete_task(self, client, settle):
        _start(client)
        settle()
        assert client.delete("/api/tasks/add-greeting").json()["success"] is True
        assert client.get("/api/tasks/add-greeting").status_code == 404


class TestAttemptsAPI:
    def test_attempt_runs(self, client, settle):
        attempt = _start(client)
        assert attempt["executor"] == "WRITER"
        settle()

        data = client.get(f"/api/task-attempts/{attempt['id']}").json()["data"]
        [process] = data["execution_processes"]
        assert process["status"] == "completed"
        assert process["after_head_commit"]

        listed = client.get("/api/task-attempts", params={"task_id": "add-greeting"}).json()["data"]
        assert [a["id"] for a in listed] == [attempt["id"]]
        assert client.get("/api/tasks/add-greeting").json()["data"]["status"] == "inreview"

    def test_unknown_executor(self, client):
        resp = client.post(
            "/api/task-attempts",
            json={"task_id": "add-greeting", "executor_profile_id": {"executor": "NOBODY"}},
        )
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "spawn_error"

    def test_bad_profile_shape(self, client):
        resp = client.post(
            "/api/task-attempts",
            json={"task_id": "add-greeting", "executor_profile_id": "WRITER"},
        )
        assert resp.status_code == 400

    def test_busy_follow_up_and_stop(self, client):
        attempt = _start(client, "SLEEPER")
        resp = client.post(f"/api/task-attempts/{attempt['id']}/follow-up", json={"prompt": "more"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "attempt_busy"

        stopped = client.post(f"/api/task-attempts/{attempt['id']}/stop").json()["data"]
        assert [p["status"] for p in stopped] == ["killed"]

    def test_follow_up_requires_prompt(self, client, settle):
        attempt = _start(client)
        settle()
        resp = client.post(f"/api/task-attempts/{attempt['id']}/follow-up", json={})
        assert resp.status_code == 400

    def test_follow_up(self, client, settle):
        attempt = _start(client)
        settle()
        resp = client.post(f"/api/task-attempts/{attempt['id']}/follow-up", json={"prompt": "again"})
        assert resp.status_code == 201
        assert resp.json()["data"]["run_reason"] == "coding_agent"
        settle()

    def test_restore_dirty(self, client, settle):
        attempt = _start(client)
        settle()
        client.post(f"/api/task-attempts/{attempt['id']}/follow-up", json={"prompt": "again"})
        settle()
        processes = client.get(f"/api/task-attempts/{attempt['id']}").json()["data"]["execution_processes"]
        (Path(attempt["container_ref"]) / "wip.txt").write_text("wip\n")

        url = f"/api/task-attempts/{attempt['id']}/restore"
        resp = client.post(url, json={"process_id": processes[0]["id"]})
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "dirty_worktree"
        assert error["flag"] == "force_when_dirty"

        resp = client.post(url, json={"process_id": processes[0]["id"], "force_when_dirty": True})
        assert resp.json()["data"]["had_later_processes"] is True

    def test_branch_status_and_merge(self, client, settle):
        attempt = _start(client)
        settle()
        status = client.get(f"/api/task-attempts/{attempt['id']}/branch-status").json()["data"]
        assert status["commits_ahead"] == 1
        assert status["merges"] == []

        merge = client.post(f"/api/task-attempts/{attempt['id']}/merge").json()["data"]
        assert merge["type"] == "direct"
        assert merge["target_branch_name"] == "main"

        status = client.get(f"/api/task-attempts/{attempt['id']}/branch-status").json()["data"]
        assert status["commits_ahead"] == 0
        assert status["merges"][0]["merge_commit"] == merge["merge_commit"]

    def test_commit_compare_requires_sha(self, client, settle):
        attempt = _start(client)
        settle()
        resp = client.get(f"/api/task-attempts/{attempt['id']}/commit-compare")
        assert resp.status_code == 400

    def test_dev_server_without_script(self, client, settle):
        attempt = _start(client)
        settle()
        resp = client.post(f"/api/task-attempts/{attempt['id']}/start-dev-server")
        assert resp.status_code == 400

    def test_missing_attempt(self, client):
        assert client.get("/api/task-attempts/nope").status_code == 404
        assert client.post("/api/task-attempts/nope/merge").status_code == 404


class TestProcessesAPI:
    def test_logs(self, client, settle):
        attempt = _start(client)
        settle()
        processes = client.get(f"/api/task-attempts/{attempt['id']}").json()["data"]["execution_processes"]
        process_id = processes[0]["id"]

        entries = client.get(f"/api/execution-processes/{process_id}/logs").json()["data"]
        assert {"channel": "normalized_entry", "entry_type": "assistant_message",
                "content": "wrote agent.txt"} in entries

        resp = client.get(f"/api/execution-processes/{process_id}/logs/stream")
        assert "event: log" in resp.text
        assert resp.text.rstrip().endswith("event: finished\ndata: {}")

    def test_missing_process(self, client):
        assert client.get("/api/execution-processes/nope").status_code == 404
        assert client.get("/api/execution-processes/nope/logs").status_code == 404


class TestStateFeed:
    def test_state_snapshot(self, client):
        data = client.get("/api/state", params={"project_id": "demo"}).json()["data"]
        assert set(data) == {"tasks", "task_attempts", "execution_processes"}
        assert "add-greeting" in data["tasks"]

    def test_state_scoped_to_other_project(self, client):
        data = client.get("/api/state", params={"project_id": "nope"}).json()["data"]
        assert data["tasks"] == {}

    def test_event_stream(self, orchestrator, db, task):
        sub = orchestrator.projector.subscribe(task_id=task.id)
        stream = _event_stream(sub, heartbeat=0.05)

        first = next(stream)
        assert first.startswith("event: snapshot\n")
        assert "add-greeting" in json.loads(first.split("data: ", 1)[1])["tasks"]

        orchestrator.projector.upsert_task(tasks_mod.update_task_status(db, task.id, "cancelled"))
        event, data = next(stream).strip().split("\n")
        assert event == "event: patch"
        [patch] = json.loads(data[len("data: "):])
        assert patch["op"] == "replace"
        assert patch["path"] == f"/tasks/{task.id}"
        assert patch["value"]["status"] == "cancelled"

        assert next(stream) == ": keep-alive\n\n"
        stream.close()
        assert sub.closed is True


class TestLogStream:
    def test_keep_alive_while_silent(self):
        store = LogStore([{"channel": "stdout", "content": "hi"}])
        stream = _log_stream(store, heartbeat=0.05)

        assert next(stream).startswith("event: log\n")
        assert next(stream) == ": keep-alive\n\n"
        store.append({"channel": "stdout", "content": "later"})
        assert '"later"' in next(stream)
        store.close()
        assert next(stream) == "event: finished\ndata: {}\n\n"
        with pytest.raises(StopIteration):
            next(stream)

    def test_abandoned_stream_unsubscribes(self):
        store = LogStore()
        stream = _log_stream(store, heartbeat=0.05)
        assert next(stream) == ": keep-alive\n\n"
        assert len(store._subscribers) == 1
        stream.close()
        assert store._subscribers == []
