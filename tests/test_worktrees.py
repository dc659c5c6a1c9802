"""Tests for per-attempt git worktrees and branch operations."""

from pathlib import Path

import pytest

from attempt_orchestrator.core.errors import ConflictError, DirtyWorktreeError, VcsError
from attempt_orchestrator.core.worktrees import WorktreeManager
from attempt_orchestrator.db.models import TaskAttempt
from attempt_orchestrator.integrations.git import branch_exists, worktree_list

from conftest import commit_file, git


@pytest.fixture
def manager():
    return WorktreeManager()


@pytest.fixture
def worktree(manager, git_repo):
    return manager.create(git_repo, "main", "ao/1234-feature")


class TestAllocation:
    def test_create(self, manager, git_repo, worktree):
        path = Path(worktree)
        assert path.is_dir()
        assert path.parent == (git_repo / ".worktrees").resolve()
        assert path.name == "ao-1234-feature"
        assert branch_exists(git_repo, "ao/1234-feature")
        assert git(worktree, "branch", "--show-current") == "ao/1234-feature"

    def test_unresolvable_base(self, manager, git_repo):
        with pytest.raises(VcsError, match="cannot be resolved"):
            manager.create(git_repo, "no-such-branch", "ao/1234-x")

    def test_existing_branch(self, manager, git_repo, worktree):
        with pytest.raises(VcsError, match="already exists"):
            manager.create(git_repo, "main", "ao/1234-feature")

    def test_path_in_use(self, manager, git_repo):
        taken = manager.worktree_root(git_repo) / "ao-5678-x"
        with pytest.raises(VcsError, match="in use"):
            manager.create(git_repo, "main", "ao/5678-x", in_use=[str(taken)])

    def test_copy_files(self, manager, git_repo):
        (git_repo / ".env").write_text("SECRET=1\n")
        path = manager.create(git_repo, "main", "ao/9999-env", copy_files=".env, missing.txt")
        assert (Path(path) / ".env").read_text() == "SECRET=1\n"
        assert not (Path(path) / "missing.txt").exists()

    def test_reuse_shares_path(self, manager, worktree):
        existing = TaskAttempt(id="a1", task_id="t", base_branch="main", executor="X",
                               branch="ao/1234-feature", container_ref=worktree)
        assert manager.reuse(existing) == worktree

    def test_reuse_deleted(self, manager, worktree):
        existing = TaskAttempt(id="a1", task_id="t", base_branch="main", executor="X",
                               container_ref=worktree, worktree_deleted=True)
        with pytest.raises(VcsError):
            manager.reuse(existing)

    def test_destroy_is_idempotent(self, manager, git_repo, worktree):
        assert manager.destroy(git_repo, worktree) is True
        assert not Path(worktree).exists()
        assert manager.destroy(git_repo, worktree) is False
        assert all(wt.branch != "ao/1234-feature" for wt in worktree_list(git_repo))

    def test_ensure_exists_recreates(self, manager, git_repo, worktree):
        commit_file(worktree, "feature.txt", "x\n", "feature")
        manager.destroy(git_repo, worktree)
        attempt = TaskAttempt(id="a1", task_id="t", base_branch="main", executor="X",
                              branch="ao/1234-feature", container_ref=worktree)
        assert manager.ensure_exists(git_repo, attempt) == worktree
        assert (Path(worktree) / "feature.txt").exists()

    def test_delete_branch(self, manager, git_repo, worktree):
        manager.destroy(git_repo, worktree)
        assert manager.delete_branch(git_repo, "ao/1234-feature") is True
        assert manager.delete_branch(git_repo, "ao/1234-feature") is False


class TestStatus:
    def test_ahead_and_behind(self, manager, git_repo, worktree):
        commit_file(worktree, "feature.txt", "x\n", "feature")
        commit_file(git_repo, "other.txt", "y\n", "other")
        status = manager.status(git_repo, worktree, "ao/1234-feature", "main")
        assert status.base_branch_name == "main"
        assert (status.commits_ahead, status.commits_behind) == (1, 1)
        assert status.remote_commits_ahead is None
        assert status.has_uncommitted_changes is False
        assert status.head_oid == git(worktree, "rev-parse", "HEAD")

    def test_uncommitted_counts(self, manager, git_repo, worktree):
        (Path(worktree) / "README.md").write_text("changed\n")
        (Path(worktree) / "new.txt").write_text("new\n")
        status = manager.status(git_repo, worktree, "ao/1234-feature", "main")
        assert status.has_uncommitted_changes is True
        assert (status.uncommitted_count, status.untracked_count) == (1, 1)

    def test_github_remote(self, manager, git_repo, worktree):
        git(git_repo, "remote", "add", "origin", "git@github.com:acme/widgets.git")
        status = manager.status(git_repo, worktree, "ao/1234-feature", "main")
        assert status.repo_url_base == "https://github.com/acme/widgets"
        assert manager.github_repo(git_repo) == ("acme", "widgets")

    def test_compare(self, manager, git_repo, worktree):
        base = git(git_repo, "rev-parse", "main")
        commit_file(worktree, "feature.txt", "x\n", "feature")
        result = manager.compare(worktree, base)
        assert result["subject"] == "init"
        assert result["behind_from_head"] == 1
        assert result["ahead_from_head"] == 0
        assert result["is_linear"] is True

    def test_compare_unknown_sha(self, manager, worktree):
        with pytest.raises(VcsError):
            manager.compare(worktree, "0" * 40)


class TestRebase:
    def test_rebase_onto_moved_base(self, manager, git_repo, worktree):
        commit_file(worktree, "feature.txt", "x\n", "feature")
        commit_file(git_repo, "other.txt", "y\n", "other")
        manager.rebase(worktree, "main")
        status = manager.status(git_repo, worktree, "ao/1234-feature", "main")
        assert (status.commits_ahead, status.commits_behind) == (1, 0)

    def test_rebase_onto_new_base(self, manager, git_repo, worktree):
        git(git_repo, "branch", "develop")
        commit_file(worktree, "feature.txt", "x\n", "feature")
        git(git_repo, "worktree", "add", str(git_repo.parent / "develop"), "develop")
        commit_file(git_repo.parent / "develop", "dev.txt", "d\n", "dev work")
        manager.rebase(worktree, "main", "develop")
        status = manager.status(git_repo, worktree, "ao/1234-feature", "develop")
        assert (status.commits_ahead, status.commits_behind) == (1, 0)

    def test_conflict_reports_files(self, manager, git_repo, worktree):
        commit_file(worktree, "README.md", "ours\n", "ours")
        commit_file(git_repo, "README.md", "theirs\n", "theirs")
        with pytest.raises(ConflictError) as exc:
            manager.rebase(worktree, "main")
        assert exc.value.conflicted_files == ["README.md"]

    def test_dirty_worktree(self, manager, worktree):
        (Path(worktree) / "README.md").write_text("dirty\n")
        with pytest.raises(DirtyWorktreeError):
            manager.rebase(worktree, "main")


class TestMerge:
    def test_squash_merge(self, manager, git_repo, worktree):
        commit_file(worktree, "a.txt", "a\n", "first")
        commit_file(worktree, "b.txt", "b\n", "second")
        commit = manager.merge(git_repo, worktree, "ao/1234-feature", "main", "Feature\n\nDetails")

        assert git(git_repo, "rev-parse", "main") == commit
        assert git(git_repo, "log", "-1", "--format=%s", "main") == "Feature"
        assert git(git_repo, "rev-list", "--count", "main") == "2"
        # The checked-out base reflects the merge.
        assert (git_repo / "b.txt").read_text() == "b\n"
        status = manager.status(git_repo, worktree, "ao/1234-feature", "main")
        assert (status.commits_ahead, status.commits_behind) == (0, 0)

    def test_dirty_attempt_worktree(self, manager, git_repo, worktree):
        commit_file(worktree, "a.txt", "a\n", "first")
        (Path(worktree) / "a.txt").write_text("changed\n")
        with pytest.raises(DirtyWorktreeError):
            manager.merge(git_repo, worktree, "ao/1234-feature", "main", "msg")

    def test_dirty_base_checkout(self, manager, git_repo, worktree):
        commit_file(worktree, "a.txt", "a\n", "first")
        (git_repo / "README.md").write_text("local edit\n")
        with pytest.raises(DirtyWorktreeError, match="checked out"):
            manager.merge(git_repo, worktree, "ao/1234-feature", "main", "msg")

    def test_conflict(self, manager, git_repo, worktree):
        commit_file(worktree, "README.md", "ours\n", "ours")
        commit_file(git_repo, "README.md", "theirs\n", "theirs")
        with pytest.raises(ConflictError) as exc:
            manager.merge(git_repo, worktree, "ao/1234-feature", "main", "msg")
        assert exc.value.conflicted_files == ["README.md"]
        assert git(git_repo, "log", "-1", "--format=%s", "main") == "theirs"


class TestReset:
    def test_reset_to_commit(self, manager, worktree):
        base = git(worktree, "rev-parse", "HEAD")
        commit_file(worktree, "a.txt", "a\n", "first")
        manager.reset_to_commit(worktree, base)
        assert git(worktree, "rev-parse", "HEAD") == base
        assert not (Path(worktree) / "a.txt").exists()

    def test_dirty_requires_force(self, manager, worktree):
        base = git(worktree, "rev-parse", "HEAD")
        (Path(worktree) / "scratch.txt").write_text("wip\n")
        with pytest.raises(DirtyWorktreeError) as exc:
            manager.reset_to_commit(worktree, base)
        assert exc.value.flag == "force_when_dirty"
        manager.reset_to_commit(worktree, base, force_if_dirty=True)
        assert not (Path(worktree) / "scratch.txt").exists()

    def test_commit_changes(self, manager, worktree):
        assert manager.commit_changes(worktree, "nothing") is None
        (Path(worktree) / "a.txt").write_text("a\n")
        oid = manager.commit_changes(worktree, "Add a")
        assert oid == manager.head_commit(worktree)
        assert manager.is_dirty(worktree) is False
