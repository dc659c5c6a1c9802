"""Data models for the attempt orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("todo", "inprogress", "inreview", "done", "cancelled")
RUN_REASONS = ("setup_script", "cleanup_script", "coding_agent", "dev_server")
PROCESS_STATUSES = ("running", "completed", "failed", "killed")

# Run reasons covered by the one-running-process-per-attempt/task rule.
EXCLUSIVE_RUN_REASONS = ("setup_script", "cleanup_script", "coding_agent")


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    setup_script: str | None = None
    dev_script: str | None = None
    cleanup_script: str | None = None
    copy_files: str | None = None
    append_prompt: str | None = None
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "todo"
    parent_task_attempt: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ExecutorProfileId:
    executor: str
    variant: str | None = None

    def to_dict(self) -> dict:
        return {"executor": self.executor, "variant": self.variant}

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutorProfileId":
        return cls(executor=data["executor"], variant=data.get("variant"))

    def __str__(self) -> str:
        return f"{self.executor}:{self.variant}" if self.variant else self.executor


@dataclass
class TaskAttempt:
    id: str
    task_id: str
    base_branch: str
    executor: str
    variant: str | None = None
    branch: str | None = None
    container_ref: str | None = None
    worktree_deleted: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def executor_profile_id(self) -> ExecutorProfileId:
        return ExecutorProfileId(self.executor, self.variant)


@dataclass
class ExecutionProcess:
    id: str
    task_attempt_id: str
    run_reason: str
    action: dict
    status: str = "running"
    seq: int | None = None
    pid: int | None = None
    exit_code: int | None = None
    dropped: bool = False
    before_head_commit: str | None = None
    after_head_commit: str | None = None
    result_summary: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass
class PullRequestInfo:
    number: int
    url: str
    status: str = "open"
    merged_at: datetime | None = None
    merge_commit_sha: str | None = None


@dataclass
class Merge:
    id: str
    task_attempt_id: str
    merge_type: str
    target_branch: str
    merge_commit: str | None = None
    pr_info: PullRequestInfo | None = None
    created_at: datetime | None = None


@dataclass
class BranchStatus:
    base_branch_name: str
    commits_ahead: int | None = None
    commits_behind: int | None = None
    remote_commits_ahead: int | None = None
    remote_commits_behind: int | None = None
    has_uncommitted_changes: bool | None = None
    uncommitted_count: int | None = None
    untracked_count: int | None = None
    head_oid: str | None = None
    repo_url_base: str | None = None
    merges: list[Merge] = field(default_factory=list)


@dataclass
class RestoreResult:
    had_later_processes: bool
    git_reset_needed: bool
    git_reset_applied: bool
    target_after_oid: str | None = None
