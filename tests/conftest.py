"""Shared fixtures: temporary git repositories and a wired orchestrator."""

import os
import subprocess
import tempfile
import time
from pathlib import Path

import pytest

from attempt_orchestrator.config import Config
from attempt_orchestrator.core import projects as projects_mod
from attempt_orchestrator.core import tasks as tasks_mod
from attempt_orchestrator.core.orchestrator import Orchestrator
from attempt_orchestrator.core.profiles import ExecutorProfile, ProfileRegistry
from attempt_orchestrator.db.engine import get_db, init_db

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}

# Agents used in tests are small shell programs. The prompt arrives on stdin.
TEST_PROFILES = {
    # Appends a line to agent.txt and reports one assistant message.
    "WRITER": {
        "DEFAULT": ExecutorProfile(
            ["sh", "-c",
             "cat > /dev/null; echo turn >> agent.txt; "
             "echo '{\"type\": \"assistant\", \"content\": \"wrote agent.txt\"}'"],
        ),
    },
    # Echoes its prompt back so tests can inspect what it was sent.
    "ECHO": {
        "DEFAULT": ExecutorProfile(["sh", "-c", "cat"]),
    },
    "SLEEPER": {
        "DEFAULT": ExecutorProfile(["sh", "-c", "cat > /dev/null; sleep 30"]),
    },
    "FAILER": {
        "DEFAULT": ExecutorProfile(["sh", "-c", "cat > /dev/null; echo boom >&2; exit 3"]),
    },
    "MISSING": {
        "DEFAULT": ExecutorProfile(["definitely-not-an-installed-agent-binary"]),
    },
}


def git(repo, *args) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )
    return result.stdout.strip()


def commit_file(repo, name: str, content: str, message: str) -> str:
    (Path(repo) / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


def wait_for(predicate, timeout: float = 10.0, interval: float = 0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    raise AssertionError("condition not met within timeout")


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def git_repo(tmp_dir):
    """A git repository on ``main`` with one commit."""
    repo = tmp_dir / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "user.email", "test@test.com")
    commit_file(repo, "README.md", "# Test\n", "init")
    return repo


@pytest.fixture
def config(tmp_dir, git_repo):
    return Config(
        db_path=tmp_dir / "ao.db",
        repo_path=git_repo,
        stop_timeout=2.0,
    )


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()


@pytest.fixture
def project(db, git_repo):
    return projects_mod.create_project(db, "demo", "Demo", str(git_repo))


@pytest.fixture
def task(db, project):
    return tasks_mod.create_task(db, "Add greeting", "demo", description="Say hello")


@pytest.fixture
def orchestrator(config, db, task):
    orch = Orchestrator(config, profiles=ProfileRegistry(TEST_PROFILES))
    orch.start()
    yield orch
    orch.shutdown()


@pytest.fixture
def coordinator(orchestrator):
    return orchestrator.coordinator


@pytest.fixture
def settle(orchestrator):
    """Wait until every process and exit hook has finished."""
    def _settle(timeout: float = 15.0):
        assert orchestrator.supervisor.wait_idle(timeout), "processes still running"
    return _settle


@pytest.fixture
def read_db(config):
    """Run a function against a fresh connection."""
    def _read(fn, *args, **kwargs):
        with get_db(config.db_path) as conn:
            return fn(conn, *args, **kwargs)
    return _read
