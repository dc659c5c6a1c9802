"""Per-attempt git worktree lifecycle and branch operations."""

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from attempt_orchestrator.core.errors import ConflictError, DirtyWorktreeError, VcsError
from attempt_orchestrator.db.models import BranchStatus, TaskAttempt
from attempt_orchestrator.integrations import git
from attempt_orchestrator.integrations.git import GitConflictError, GitError

logger = logging.getLogger(__name__)


class WorktreeManager:
    """Creates, inspects and rewrites the isolated working copy of each attempt."""

    def __init__(self, worktree_dir: str = ".worktrees"):
        self.worktree_dir = worktree_dir

    def worktree_root(self, repo_path: str | Path) -> Path:
        root = Path(self.worktree_dir).expanduser()
        if not root.is_absolute():
            root = Path(repo_path) / root
        return root.resolve()

    # ── Allocation ───────────────────────────────────────────────────────────

    def create(
        self,
        repo_path: str | Path,
        base_branch: str,
        attempt_branch: str,
        copy_files: str | None = None,
        in_use: Iterable[str] = (),
    ) -> str:
        """Check out a fresh ``attempt_branch`` from ``base_branch`` in a new worktree."""
        repo = Path(repo_path)
        wt_path = self.validate_create(repo, base_branch, attempt_branch, in_use)

        wt_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            git.worktree_add(repo, wt_path, attempt_branch, base_branch, create_branch=True)
        except GitError as e:
            raise VcsError(str(e)) from e

        if copy_files:
            self._copy_files(repo, wt_path, copy_files)

        logger.info("Created worktree %s on branch %s from %s", wt_path, attempt_branch, base_branch)
        return str(wt_path)

    def validate_create(
        self,
        repo_path: str | Path,
        base_branch: str,
        attempt_branch: str,
        in_use: Iterable[str] = (),
    ) -> Path:
        """Check that :meth:`create` would succeed and return the worktree path it would use."""
        repo = Path(repo_path)
        try:
            git.resolve_ref(repo, base_branch)
        except GitError as e:
            raise VcsError(f"Base branch '{base_branch}' cannot be resolved") from e

        if git.branch_exists(repo, attempt_branch):
            raise VcsError(f"Branch '{attempt_branch}' already exists")

        wt_path = self.worktree_root(repo) / attempt_branch.replace("/", "-")
        if str(wt_path) in {str(Path(p).resolve()) for p in in_use} or wt_path.exists():
            raise VcsError(f"Worktree path already in use: {wt_path}")
        return wt_path

    def reuse(self, existing: TaskAttempt) -> str:
        """Share an existing attempt's worktree. Nothing is allocated."""
        if not existing.container_ref or existing.worktree_deleted:
            raise VcsError(f"Attempt {existing.id} has no worktree to reuse")
        return existing.container_ref

    def ensure_exists(self, repo_path: str | Path, attempt: TaskAttempt) -> str:
        """Recreate the worktree of a cold attempt whose directory has gone."""
        if not attempt.container_ref or not attempt.branch:
            raise VcsError(f"Attempt {attempt.id} has no worktree")
        wt_path = Path(attempt.container_ref)
        if wt_path.exists():
            return str(wt_path)

        repo = Path(repo_path)
        if not git.branch_exists(repo, attempt.branch):
            raise VcsError(f"Branch '{attempt.branch}' no longer exists")
        try:
            git.worktree_prune(repo)
            git.worktree_add(repo, wt_path, attempt.branch, create_branch=False)
        except GitError as e:
            raise VcsError(str(e)) from e
        logger.info("Recreated worktree %s for attempt %s", wt_path, attempt.id)
        return str(wt_path)

    def destroy(self, repo_path: str | Path, container_ref: str) -> bool:
        """Remove a worktree. Missing paths are not an error."""
        wt_path = Path(container_ref)
        repo = Path(repo_path)
        if not wt_path.exists():
            try:
                git.worktree_prune(repo)
            except GitError:
                logger.warning("git worktree prune failed in %s", repo)
            return False

        try:
            git.worktree_remove(repo, wt_path, force=True)
        except GitError:
            logger.warning("git worktree remove failed for %s, deleting directory", wt_path)
            shutil.rmtree(wt_path, ignore_errors=True)
            try:
                git.worktree_prune(repo)
            except GitError:
                logger.warning("git worktree prune failed in %s", repo)
        logger.info("Removed worktree %s", wt_path)
        return True

    # ── Inspection ───────────────────────────────────────────────────────────

    def status(
        self,
        repo_path: str | Path,
        container_ref: str,
        branch: str,
        base_branch: str,
    ) -> BranchStatus:
        """Ahead/behind counts, remote counts and working tree state."""
        repo = Path(repo_path)
        result = BranchStatus(base_branch_name=base_branch)

        try:
            result.commits_ahead, result.commits_behind = git.ahead_behind(repo, branch, base_branch)
        except GitError as e:
            raise VcsError(f"Cannot compare '{branch}' with '{base_branch}': {e}") from e

        upstream = git.upstream_ref(repo, branch)
        if upstream:
            result.remote_commits_ahead, result.remote_commits_behind = git.ahead_behind(
                repo, branch, upstream
            )

        wt_path = Path(container_ref)
        if wt_path.exists():
            tracked, untracked = git.change_counts(wt_path)
            result.uncommitted_count = tracked
            result.untracked_count = untracked
            result.has_uncommitted_changes = bool(tracked or untracked)
            result.head_oid = git.get_head_oid(wt_path)

        parsed = self.github_repo(repo)
        if parsed:
            result.repo_url_base = f"https://github.com/{parsed[0]}/{parsed[1]}"
        return result

    def head_commit(self, container_ref: str) -> str | None:
        try:
            return git.get_head_oid(container_ref)
        except GitError:
            return None

    def is_dirty(self, container_ref: str) -> bool:
        return git.is_dirty(container_ref)

    def compare(self, container_ref: str, sha: str) -> dict:
        """Relationship between the worktree HEAD and an arbitrary commit."""
        try:
            git.resolve_ref(container_ref, sha)
            ahead, behind = git.ahead_behind(container_ref, sha, "HEAD")
            return {
                "head_oid": git.get_head_oid(container_ref),
                "subject": git.get_commit_subject(container_ref, sha),
                "ahead_from_head": ahead,
                "behind_from_head": behind,
                "is_linear": ahead == 0 or behind == 0,
            }
        except GitError as e:
            raise VcsError(f"Cannot compare HEAD with {sha}: {e}") from e

    def push(self, container_ref: str, branch: str):
        try:
            git.push_branch(container_ref, branch)
        except GitError as e:
            raise VcsError(str(e)) from e

    def delete_branch(self, repo_path: str | Path, branch: str) -> bool:
        """Force-delete a branch. Returns False when git refuses."""
        try:
            git.delete_branch(repo_path, branch, force=True)
        except GitError:
            logger.warning("Could not delete branch %s", branch)
            return False
        return True

    def current_branch(self, repo_path: str | Path) -> str | None:
        try:
            return git.get_current_branch(repo_path) or None
        except GitError:
            return None

    def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        return git.branch_exists(repo_path, branch)

    def github_repo(self, repo_path: str | Path) -> tuple[str, str] | None:
        url = git.get_remote_url(repo_path)
        return git.parse_github_repo(url) if url else None

    # ── History rewrites ─────────────────────────────────────────────────────

    def rebase(
        self,
        container_ref: str,
        old_base_branch: str,
        new_base_branch: str | None = None,
    ) -> str:
        """Replay the attempt's own commits onto the tip of the (new) base."""
        target = new_base_branch or old_base_branch
        if git.is_dirty(container_ref, untracked=False):
            raise DirtyWorktreeError(
                "Worktree has uncommitted changes; commit or discard them before rebasing"
            )
        try:
            git.resolve_ref(container_ref, target)
            upstream = git.merge_base(container_ref, old_base_branch, "HEAD")
            return git.rebase_onto(container_ref, target, upstream)
        except GitConflictError as e:
            raise ConflictError(str(e), e.files) from e
        except GitError as e:
            raise VcsError(str(e)) from e

    def merge(
        self,
        repo_path: str | Path,
        container_ref: str,
        branch: str,
        base_branch: str,
        message: str,
    ) -> str:
        """Squash the attempt branch into ``base_branch`` locally. Returns the commit."""
        repo = Path(repo_path)
        if git.is_dirty(container_ref):
            raise DirtyWorktreeError(
                "Worktree has uncommitted changes; commit or discard them before merging"
            )

        checkout = git.find_checkout(repo, base_branch)
        if checkout and git.is_dirty(checkout, untracked=False):
            raise DirtyWorktreeError(
                f"'{base_branch}' is checked out with uncommitted changes at {checkout}"
            )

        try:
            old_base = git.resolve_ref(repo, base_branch)
            squash = git.squash_commit(repo, branch, base_branch, message)
            git.update_branch_ref(repo, base_branch, squash, old_base)
            if checkout:
                git.reset_hard(checkout, "HEAD")
            # The attempt branch now sits on the merged commit.
            git.reset_hard(container_ref, squash)
        except GitConflictError as e:
            raise ConflictError(str(e), e.files) from e
        except GitError as e:
            raise VcsError(str(e)) from e

        logger.info("Squash-merged %s into %s as %s", branch, base_branch, squash)
        return squash

    def reset_to_commit(self, container_ref: str, commit: str, force_if_dirty: bool = False):
        """Hard-reset the worktree to ``commit``."""
        if git.is_dirty(container_ref) and not force_if_dirty:
            raise DirtyWorktreeError(
                "Worktree has uncommitted changes; pass force_when_dirty=true to discard them",
                flag="force_when_dirty",
            )
        try:
            git.reset_hard(container_ref, commit, clean=force_if_dirty)
        except GitError as e:
            raise VcsError(str(e)) from e

    def commit_changes(self, container_ref: str, message: str) -> str | None:
        try:
            return git.commit_all(container_ref, message)
        except GitError as e:
            raise VcsError(str(e)) from e

    def _copy_files(self, repo: Path, wt_path: Path, copy_files: str):
        for entry in (p.strip() for p in copy_files.split(",")):
            if not entry:
                continue
            src = repo / entry
            dst = wt_path / entry
            if not src.exists():
                logger.warning("copy_files entry not found: %s", src)
                continue
            dst.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dst, dirs_exist_ok=True)
            else:
                shutil.copy2(src, dst)
