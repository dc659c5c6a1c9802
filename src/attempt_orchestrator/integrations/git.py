"""Git subprocess wrappers for worktree, branch and history operations."""

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

FALLBACK_NAME = "Attempt Orchestrator"
FALLBACK_EMAIL = "orchestrator@localhost"


class GitError(Exception):
    """Raised when a git command fails."""


class GitConflictError(GitError):
    """Raised when a history operation stops on conflicts."""

    def __init__(self, message: str, files: list[str]):
        super().__init__(message)
        self.files = files


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def _run(args: list[str], cwd: str | Path | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git"] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
    )


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    result = _run(args, cwd=cwd)
    if result.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return result.stdout.strip()


def identity_args(cwd: str | Path) -> list[str]:
    """``-c`` flags supplying a committer identity when none is configured."""
    if _run(["config", "user.name"], cwd=cwd).returncode == 0 and \
            _run(["config", "user.email"], cwd=cwd).returncode == 0:
        return []
    return ["-c", f"user.name={FALLBACK_NAME}", "-c", f"user.email={FALLBACK_EMAIL}"]


# ── Worktrees ────────────────────────────────────────────────────────────────


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch]
    args += [str(worktree_path)]
    if not create_branch:
        args.append(branch)
    else:
        args.append(base_branch)
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    for line in output.split("\n") + [""]:
        if not line:
            if current:
                worktrees.append(
                    WorktreeInfo(
                        path=current.get("worktree", ""),
                        branch=current.get("branch", "").replace("refs/heads/", ""),
                        head=current.get("HEAD", ""),
                        is_bare=current.get("bare", False),
                    )
                )
                current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def find_checkout(repo_path: str | Path, branch: str) -> str | None:
    """Path of the worktree that has ``branch`` checked out, if any."""
    for wt in worktree_list(repo_path):
        if wt.branch == branch:
            return wt.path
    return None


# ── Refs and branches ────────────────────────────────────────────────────────


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    return _run(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo_path).returncode == 0


def remote_branch_exists(repo_path: str | Path, ref: str) -> bool:
    """Check if ``ref`` (e.g. ``origin/main``) is a remote-tracking branch."""
    return _run(["rev-parse", "--verify", "--quiet", f"refs/remotes/{ref}"], cwd=repo_path).returncode == 0


def resolve_ref(repo_path: str | Path, ref: str) -> str:
    """Resolve a ref to a commit oid."""
    return run_git(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def get_head_oid(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def ahead_behind(repo_path: str | Path, branch: str, base: str) -> tuple[int, int]:
    """Commits on ``branch`` not on ``base`` and vice versa."""
    output = run_git(["rev-list", "--left-right", "--count", f"{branch}...{base}"], cwd=repo_path)
    ahead, behind = output.split()
    return int(ahead), int(behind)


def upstream_ref(cwd: str | Path, branch: str) -> str | None:
    """Remote-tracking ref for ``branch``: its upstream, else ``origin/<branch>``."""
    result = _run(["rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}"], cwd=cwd)
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    if remote_branch_exists(cwd, f"origin/{branch}"):
        return f"origin/{branch}"
    return None


def merge_base(cwd: str | Path, a: str, b: str) -> str:
    return run_git(["merge-base", a, b], cwd=cwd)


def get_commit_subject(cwd: str | Path, sha: str) -> str:
    return run_git(["log", "-1", "--format=%s", sha], cwd=cwd)


# ── Working tree state ───────────────────────────────────────────────────────


def get_status(cwd: str | Path, untracked: bool = True) -> str:
    """Get git status of a working directory."""
    args = ["status", "--porcelain"]
    if not untracked:
        args.append("--untracked-files=no")
    return run_git(args, cwd=cwd)


def is_dirty(cwd: str | Path, untracked: bool = True) -> bool:
    return bool(get_status(cwd, untracked=untracked))


def change_counts(cwd: str | Path) -> tuple[int, int]:
    """(tracked changes, untracked files) in a working directory."""
    tracked = untracked = 0
    for line in get_status(cwd).splitlines():
        if line.startswith("??"):
            untracked += 1
        elif line.strip():
            tracked += 1
    return tracked, untracked


def conflicted_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.splitlines() if line]


# ── History operations ───────────────────────────────────────────────────────


def commit_all(cwd: str | Path, message: str) -> str | None:
    """Stage everything and commit. Returns the new oid, or None if nothing changed."""
    if not is_dirty(cwd):
        return None
    run_git(["add", "-A"], cwd=cwd)
    run_git(identity_args(cwd) + ["commit", "--no-verify", "-m", message], cwd=cwd)
    return get_head_oid(cwd)


def rebase_onto(cwd: str | Path, new_base: str, upstream: str) -> str:
    """Replay commits after ``upstream`` onto ``new_base``. Returns the new HEAD."""
    result = _run(identity_args(cwd) + ["rebase", "--onto", new_base, upstream], cwd=cwd)
    if result.returncode != 0:
        files = conflicted_files(cwd)
        if files:
            raise GitConflictError(
                f"Rebase onto {new_base} stopped with conflicts in: {', '.join(files)}",
                files,
            )
        raise GitError(f"git rebase --onto {new_base} {upstream} failed: {result.stderr.strip()}")
    return get_head_oid(cwd)


def squash_commit(repo_path: str | Path, branch: str, base: str, message: str) -> str:
    """Create a single commit on top of ``base`` with the merged tree of ``branch``.

    Only writes objects; no ref or working tree is touched.
    """
    result = _run(["merge-tree", "--write-tree", "--name-only", base, branch], cwd=repo_path)
    lines = result.stdout.splitlines()
    if result.returncode == 1:
        files = []
        for line in lines[1:]:
            if not line:
                break
            if line not in files:
                files.append(line)
        raise GitConflictError(
            f"Merging {branch} into {base} conflicts in: {', '.join(files)}", files
        )
    if result.returncode != 0 or not lines:
        raise GitError(f"git merge-tree {base} {branch} failed: {result.stderr.strip()}")
    tree = lines[0].strip()
    base_oid = resolve_ref(repo_path, base)
    return run_git(
        identity_args(repo_path) + ["commit-tree", tree, "-p", base_oid, "-m", message],
        cwd=repo_path,
    )


def update_branch_ref(repo_path: str | Path, branch: str, new_oid: str, old_oid: str) -> str:
    return run_git(["update-ref", f"refs/heads/{branch}", new_oid, old_oid], cwd=repo_path)


def reset_hard(cwd: str | Path, commit: str, clean: bool = False) -> str:
    output = run_git(["reset", "--hard", commit], cwd=cwd)
    if clean:
        run_git(["clean", "-fd"], cwd=cwd)
    return output


def push_branch(cwd: str | Path, branch: str, remote: str = "origin") -> str:
    return run_git(["push", "-u", remote, f"refs/heads/{branch}:refs/heads/{branch}"], cwd=cwd)


# ── Remotes ──────────────────────────────────────────────────────────────────


_GITHUB_URL = re.compile(r"github\.com[:/](?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$")


def get_remote_url(repo_path: str | Path, remote: str = "origin") -> str | None:
    result = _run(["remote", "get-url", remote], cwd=repo_path)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def parse_github_repo(url: str) -> tuple[str, str] | None:
    """Extract (owner, repo) from a GitHub remote URL."""
    match = _GITHUB_URL.search(url)
    if not match:
        return None
    return match.group("owner"), match.group("repo")
