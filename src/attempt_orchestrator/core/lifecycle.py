"""Attempt lifecycle: create, follow up, stop, restore, rebase, merge, delete.

Every operation validates first and mutates afterwards. A per-task lock wraps
anything that may launch a non-dev process, and a per-attempt lock serializes
operations on one attempt. Locks are always taken task first, then attempt.
"""

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from pathlib import Path

from attempt_orchestrator.config import Config
from attempt_orchestrator.core import attempts, executions, merges
from attempt_orchestrator.core.errors import (
    AttemptBusyError,
    DirtyWorktreeError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
)
from attempt_orchestrator.core.projector import StateProjector
from attempt_orchestrator.core.projects import get_project
from attempt_orchestrator.core.supervisor import AGENT_ACTIONS, ProcessSupervisor
from attempt_orchestrator.core.tasks import (
    create_task,
    delete_task,
    get_task,
    list_child_tasks,
    slugify,
    update_task_status,
)
from attempt_orchestrator.core.worktrees import WorktreeManager
from attempt_orchestrator.db.engine import get_db
from attempt_orchestrator.db.models import (
    BranchStatus,
    ExecutionProcess,
    ExecutorProfileId,
    Merge,
    Project,
    RestoreResult,
    Task,
    TaskAttempt,
)
from attempt_orchestrator.integrations.github import GitHubError, GitHubProvider

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 8000
TRANSCRIPT_HEADER = "Context from previous agent (shortened):\n"


def script_action(script: str, context: str, next_action: dict | None = None) -> dict:
    return {
        "type": "script",
        "script": script,
        "language": "bash",
        "context": context,
        "next_action": next_action,
    }


def agent_action(
    kind: str,
    prompt: str,
    profile: ExecutorProfileId,
    model_override: str | None = None,
    image_ids: list[str] | None = None,
    next_action: dict | None = None,
) -> dict:
    return {
        "type": kind,
        "prompt": prompt,
        "executor_profile_id": profile.to_dict(),
        "model_override": model_override,
        "image_ids": list(image_ids or []),
        "next_action": next_action,
    }


def run_reason_for(action: dict) -> str:
    if action["type"] in AGENT_ACTIONS:
        return "coding_agent"
    return action.get("context") or "setup_script"


class AttemptCoordinator:
    """Sequences attempt operations across worktrees, processes and the projector."""

    def __init__(
        self,
        config: Config,
        worktrees: WorktreeManager,
        supervisor: ProcessSupervisor,
        projector: StateProjector,
        pr_provider_factory: Callable[[Project], GitHubProvider] | None = None,
    ):
        self.config = config
        self.db_path = config.db_path
        self.worktrees = worktrees
        self.supervisor = supervisor
        self.projector = projector
        self.pr_provider_factory = pr_provider_factory or self._default_pr_provider
        self._locks_guard = threading.Lock()
        self._task_locks: dict[str, threading.RLock] = {}
        self._attempt_locks: dict[str, threading.RLock] = {}

    # ── Locks ────────────────────────────────────────────────────────────────

    def _task_lock(self, task_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._task_locks.setdefault(task_id, threading.RLock())

    def _attempt_lock(self, attempt_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._attempt_locks.setdefault(attempt_id, threading.RLock())

    def _forget_locks(self, task_id: str | None = None, attempt_ids: Iterable[str] = ()):
        """Drop the locks of deleted rows."""
        with self._locks_guard:
            if task_id is not None:
                self._task_locks.pop(task_id, None)
            for attempt_id in attempt_ids:
                self._attempt_locks.pop(attempt_id, None)

    # ── Loading and publishing ───────────────────────────────────────────────

    def _load(self, db, attempt_id: str) -> tuple[TaskAttempt, Task, Project]:
        attempt = attempts.get_attempt(db, attempt_id)
        if not attempt:
            raise NotFoundError(f"Task attempt not found: {attempt_id}")
        task = get_task(db, attempt.task_id)
        if not task:
            raise NotFoundError(f"Task not found: {attempt.task_id}")
        project = get_project(db, task.project_id)
        if not project:
            raise NotFoundError(f"Project not found: {task.project_id}")
        return attempt, task, project

    def _publish_task(self, db, task_id: str):
        task = get_task(db, task_id)
        if task:
            self.projector.upsert_task(task)

    def _publish_process(self, db, process_id: str):
        process = executions.get_process(db, process_id)
        if process:
            self.projector.upsert_process(process)

    def _set_task_status(self, db, task_id: str, status: str):
        update_task_status(db, task_id, status)
        self._publish_task(db, task_id)

    # ── Create ───────────────────────────────────────────────────────────────

    def create_attempt(
        self,
        task_id: str,
        executor_profile: ExecutorProfileId | None = None,
        base_branch: str | None = None,
        reuse_branch_of: str | None = None,
        initial_instructions: str | None = None,
        model_override: str | None = None,
    ) -> TaskAttempt:
        """Create an attempt and launch its first process."""
        profile = executor_profile or ExecutorProfileId(self.config.default_executor)
        self.supervisor.profiles.resolve(profile)

        with self._task_lock(task_id):
            with get_db(self.db_path) as db:
                task = get_task(db, task_id)
                if not task:
                    raise NotFoundError(f"Task not found: {task_id}")
                project = get_project(db, task.project_id)
                if not project:
                    raise NotFoundError(f"Project not found: {task.project_id}")

                source = None
                if reuse_branch_of:
                    source = attempts.get_attempt(db, reuse_branch_of)
                    if not source:
                        raise NotFoundError(f"Task attempt not found: {reuse_branch_of}")
                    if source.task_id != task_id:
                        raise ValidationError("Can only reuse the branch of an attempt of the same task")
                    if source.worktree_deleted or not source.branch:
                        raise ValidationError(f"Attempt {source.id} has no worktree to reuse")

                base = self._resolve_base_branch(db, task, project, base_branch, source)
                live_refs = [a.container_ref for a in attempts.list_live_attempts(db)]

            attempt_id = str(uuid.uuid4())
            if source:
                container_ref = self.worktrees.reuse(source)
                branch = source.branch
            else:
                branch = self._branch_name(attempt_id, task.title)
                self.worktrees.validate_create(project.repo_path, base, branch, live_refs)

            self._stop_task_processes(task_id)

            if not source:
                container_ref = self.worktrees.create(
                    project.repo_path, base, branch, project.copy_files, in_use=live_refs
                )

            with get_db(self.db_path) as db:
                attempt = attempts.create_attempt(
                    db, task_id, base, profile.executor, profile.variant,
                    branch=branch, container_ref=container_ref, attempt_id=attempt_id,
                )
                self.projector.upsert_attempt(attempt)
                if task.status == "todo":
                    self._set_task_status(db, task_id, "inprogress")

            cleanup = self._cleanup_action(project)
            first = agent_action(
                "coding_agent_initial",
                self._initial_prompt(task, project, initial_instructions),
                profile,
                model_override=model_override,
                next_action=cleanup,
            )
            if project.setup_script:
                first = script_action(project.setup_script, "setup_script", next_action=first)

            with self._attempt_lock(attempt.id):
                try:
                    self.supervisor.spawn(attempt, run_reason_for(first), first)
                except OrchestratorError:
                    self._discard_attempt(project, task, attempt, owns_worktree=source is None)
                    raise

        logger.info("Created attempt %s for task %s on %s (base %s)", attempt.id, task_id, branch, base)
        return attempt

    def create_task_and_start(
        self,
        project_id: str,
        title: str,
        description: str = "",
        executor_profile: ExecutorProfileId | None = None,
    ) -> tuple[Task, TaskAttempt]:
        """Create a task and start its first attempt from the checked-out branch."""
        with get_db(self.db_path) as db:
            project = get_project(db, project_id)
            if not project:
                raise NotFoundError(f"Project not found: {project_id}")
            profile = executor_profile or ExecutorProfileId(self.config.default_executor)
            self.supervisor.profiles.resolve(profile)
            task = create_task(db, title, project_id=project_id, description=description)
        self.projector.upsert_task(task)

        base = self.worktrees.current_branch(project.repo_path) or project.default_branch
        attempt = self.create_attempt(task.id, profile, base_branch=base)
        with get_db(self.db_path) as db:
            task = get_task(db, task.id)
        return task, attempt

    def _resolve_base_branch(
        self,
        db,
        task: Task,
        project: Project,
        explicit: str | None,
        source: TaskAttempt | None,
    ) -> str:
        if explicit:
            return explicit
        if source:
            return source.base_branch
        latest = attempts.get_latest_attempt(db, task.id)
        if latest:
            if latest.branch and self.worktrees.branch_exists(project.repo_path, latest.branch):
                return latest.branch
            return latest.base_branch
        current = self.worktrees.current_branch(project.repo_path)
        if current:
            return current
        return project.default_branch or self.config.default_branch

    def _branch_name(self, attempt_id: str, title: str) -> str:
        slug = slugify(title)[:24].strip("-") or "task"
        return f"{self.config.branch_prefix}/{attempt_id[:4]}-{slug}"

    def _initial_prompt(self, task: Task, project: Project, instructions: str | None) -> str:
        prompt = task.title
        if task.description:
            prompt += f"\n\n{task.description}"
        if instructions:
            prompt += f"\n\n{instructions}"
        return self._with_append_prompt(prompt, project)

    def _with_append_prompt(self, prompt: str, project: Project) -> str:
        if project.append_prompt:
            return f"{prompt}\n\n{project.append_prompt}"
        return prompt

    def _cleanup_action(self, project: Project) -> dict | None:
        if not project.cleanup_script:
            return None
        return script_action(project.cleanup_script, "cleanup_script")

    def _stop_task_processes(self, task_id: str, except_attempt: str | None = None):
        """Stop running non-dev processes of the task's attempts. Best-effort."""
        with get_db(self.db_path) as db:
            running = executions.running_for_task(db, task_id)
        for process in running:
            if process.task_attempt_id == except_attempt:
                continue
            try:
                self.supervisor.stop(process.id)
                logger.info("Stopped process %s of sibling attempt %s", process.id, process.task_attempt_id)
            except Exception:
                logger.exception("Failed to stop sibling process %s", process.id)

    def _discard_attempt(self, project: Project, task: Task, attempt: TaskAttempt, owns_worktree: bool):
        """Undo an attempt whose first process never started."""
        if owns_worktree:
            self.worktrees.destroy(project.repo_path, attempt.container_ref)
            self.worktrees.delete_branch(project.repo_path, attempt.branch)
        with get_db(self.db_path) as db:
            attempts.delete_attempt(db, attempt.id)
            self.projector.remove_attempt(attempt.id)
            if task.status == "todo":
                self._set_task_status(db, task.id, "todo")
        self._forget_locks(attempt_ids=[attempt.id])
        logger.warning("Discarded attempt %s: its first process failed to start", attempt.id)

    # ── Follow-up ────────────────────────────────────────────────────────────

    def follow_up(
        self,
        attempt_id: str,
        prompt: str,
        variant: str | None = None,
        model_override: str | None = None,
        image_ids: list[str] | None = None,
        executor_profile: ExecutorProfileId | None = None,
    ) -> ExecutionProcess:
        """Send another coding-agent turn to an attempt."""
        if not prompt or not prompt.strip():
            raise ValidationError("Follow-up prompt must not be empty")

        with get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)

        with self._task_lock(task.id), self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                if executions.running_for_attempt(db, attempt_id):
                    raise AttemptBusyError(f"Attempt {attempt_id} already has a running process")

                latest = executions.latest_by_run_reason(db, attempt_id, "coding_agent")
                if latest:
                    previous = ExecutorProfileId.from_dict(latest.action["executor_profile_id"])
                else:
                    previous = attempt.executor_profile_id
                if executor_profile:
                    profile = executor_profile
                else:
                    profile = ExecutorProfileId(
                        previous.executor, variant if variant is not None else previous.variant
                    )
                self.supervisor.profiles.resolve(profile)

                full_prompt = prompt
                if latest and profile.executor != previous.executor:
                    transcript = self._transcript(latest)
                    if transcript:
                        full_prompt = f"{TRANSCRIPT_HEADER}{transcript}\n\n{prompt}"
                full_prompt = self._with_append_prompt(full_prompt, project)

            attempt = self._ensure_worktree(project, attempt)
            self._stop_task_processes(task.id, except_attempt=attempt_id)

            action = agent_action(
                "coding_agent_follow_up",
                full_prompt,
                profile,
                model_override=model_override,
                image_ids=image_ids,
                next_action=self._cleanup_action(project),
            )
            process = self.supervisor.spawn(attempt, "coding_agent", action)

            with get_db(self.db_path) as db:
                if task.status != "inprogress":
                    self._set_task_status(db, task.id, "inprogress")
        return process

    def _transcript(self, process: ExecutionProcess) -> str:
        """Shortened user/assistant transcript of an earlier agent turn."""
        lines = []
        if process.action.get("prompt"):
            lines.append(f"User: {process.action['prompt']}")
        for entry in self.supervisor.log_store(process.id).history():
            if entry.get("channel") != "normalized_entry":
                continue
            if entry["entry_type"] == "user_message":
                lines.append(f"User: {entry['content']}")
            elif entry["entry_type"] == "assistant_message":
                lines.append(f"Assistant: {entry['content']}")
        text = "\n".join(lines)
        if len(text) > TRANSCRIPT_LIMIT:
            text = "..." + text[-(TRANSCRIPT_LIMIT - 3):]
        return text

    def _ensure_worktree(self, project: Project, attempt: TaskAttempt) -> TaskAttempt:
        if attempt.container_ref and Path(attempt.container_ref).is_dir() and not attempt.worktree_deleted:
            return attempt
        self.worktrees.ensure_exists(project.repo_path, attempt)
        with get_db(self.db_path) as db:
            attempt = attempts.update_attempt(db, attempt.id, worktree_deleted=False)
            self.projector.upsert_attempt(attempt)
        return attempt

    # ── Stop ─────────────────────────────────────────────────────────────────

    def stop(self, attempt_id: str) -> list[ExecutionProcess]:
        """Stop every running process of the attempt, dev servers included."""
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                self._load(db, attempt_id)
                running = executions.running_for_attempt(db, attempt_id, exclusive_only=False)
            stopped = []
            for process in running:
                result = self.supervisor.stop(process.id)
                if result:
                    stopped.append(result)
        return stopped

    # ── Restore ──────────────────────────────────────────────────────────────

    def restore(
        self,
        attempt_id: str,
        process_id: str,
        force_when_dirty: bool = False,
        perform_git_reset: bool = True,
    ) -> RestoreResult:
        """Roll an attempt back to the checkpoint of one of its agent turns."""
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                process = executions.get_process(db, process_id)
                if not process:
                    raise NotFoundError(f"Execution process not found: {process_id}")
                if process.task_attempt_id != attempt_id:
                    raise ValidationError(f"Process {process_id} does not belong to attempt {attempt_id}")
                if process.run_reason != "coding_agent":
                    raise ValidationError("Only coding agent turns can be restored")
                if process.dropped:
                    raise ValidationError(f"Process {process_id} has already been dropped")
                if executions.running_for_attempt(db, attempt_id):
                    raise AttemptBusyError("Stop the running process before restoring")
                later = executions.count_later_than(db, attempt_id, process)

            target = process.after_head_commit or process.before_head_commit
            reset_needed = dirty = False
            if target:
                if perform_git_reset:
                    attempt = self._ensure_worktree(project, attempt)
                if attempt.container_ref and Path(attempt.container_ref).is_dir():
                    head = self.worktrees.head_commit(attempt.container_ref)
                    dirty = self.worktrees.is_dirty(attempt.container_ref)
                    reset_needed = head != target or dirty
            reset_applied = perform_git_reset and reset_needed
            if reset_applied and dirty and not force_when_dirty:
                raise DirtyWorktreeError(
                    "Worktree has uncommitted changes; pass force_when_dirty=true to discard them",
                    flag="force_when_dirty",
                )

            with get_db(self.db_path) as db:
                for dropped_id in executions.drop_later_than(db, attempt_id, process):
                    self._publish_process(db, dropped_id)

            if reset_applied:
                self.worktrees.reset_to_commit(attempt.container_ref, target, force_if_dirty=True)

        logger.info(
            "Restored attempt %s to process %s (later=%s, reset=%s)",
            attempt_id, process_id, later, reset_applied,
        )
        return RestoreResult(
            had_later_processes=later > 0,
            git_reset_needed=reset_needed,
            git_reset_applied=reset_applied,
            target_after_oid=target,
        )

    # ── Branch operations ────────────────────────────────────────────────────

    def branch_status(self, attempt_id: str) -> BranchStatus:
        with get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)

        with self._task_lock(task.id), get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)
            if not attempt.branch:
                raise ValidationError(f"Attempt {attempt_id} has no branch")
            status = self.worktrees.status(
                project.repo_path, attempt.container_ref or "", attempt.branch, attempt.base_branch
            )
            self._refresh_prs(db, attempt, project)
            status.merges = merges.find_by_attempt(db, attempt_id)
        return status

    def _refresh_prs(self, db, attempt: TaskAttempt, project: Project):
        """Update open PR records from the provider. Best-effort."""
        open_prs = [
            m for m in merges.find_by_attempt(db, attempt.id)
            if m.merge_type == "pr" and m.pr_info.status == "open"
        ]
        if not open_prs:
            return
        try:
            provider = self.pr_provider_factory(project)
        except OrchestratorError as e:
            logger.debug("Skipping PR refresh for attempt %s: %s", attempt.id, e)
            return
        for merge in open_prs:
            try:
                info = provider.get_pr(merge.pr_info.number)
            except GitHubError:
                logger.warning("Could not refresh PR #%s", merge.pr_info.number)
                continue
            if info.status == "open":
                continue
            merges.update_pr_status(db, merge.id, info.status, info.merged_at, info.merge_commit_sha)
            if info.status == "merged":
                self._set_task_status(db, attempt.task_id, "done")
                self.projector.mark_merged(attempt.id)

    def rebase(self, attempt_id: str, new_base_branch: str | None = None) -> BranchStatus:
        """Rebase the attempt branch onto the tip of its (new) base branch."""
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                if executions.running_for_attempt(db, attempt_id):
                    raise AttemptBusyError("Stop the running process before rebasing")
            attempt = self._ensure_worktree(project, attempt)
            self.worktrees.rebase(attempt.container_ref, attempt.base_branch, new_base_branch)
            if new_base_branch and new_base_branch != attempt.base_branch:
                with get_db(self.db_path) as db:
                    attempt = attempts.update_attempt(db, attempt_id, base_branch=new_base_branch)
                    self.projector.upsert_attempt(attempt)
        return self.branch_status(attempt_id)

    def merge(self, attempt_id: str) -> Merge:
        """Squash-merge the attempt into its base branch and close the task."""
        with get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)

        with self._task_lock(task.id), self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                if executions.running_for_attempt(db, attempt_id):
                    raise AttemptBusyError("Stop the running process before merging")
            attempt = self._ensure_worktree(project, attempt)
            status = self.worktrees.status(
                project.repo_path, attempt.container_ref, attempt.branch, attempt.base_branch
            )
            if not status.commits_ahead:
                raise ValidationError(f"'{attempt.branch}' has no commits ahead of '{attempt.base_branch}'")

            message = task.title
            if task.description:
                message += f"\n\n{task.description}"
            commit = self.worktrees.merge(
                project.repo_path, attempt.container_ref, attempt.branch, attempt.base_branch, message
            )
            with get_db(self.db_path) as db:
                merge = merges.create_direct(db, attempt_id, attempt.base_branch, commit)
                self._set_task_status(db, task.id, "done")
                self.projector.mark_merged(attempt_id)
        return merge

    def commit_compare(self, attempt_id: str, sha: str) -> dict:
        with get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)
        attempt = self._ensure_worktree(project, attempt)
        return self.worktrees.compare(attempt.container_ref, sha)

    # ── Pull requests ────────────────────────────────────────────────────────

    def _default_pr_provider(self, project: Project) -> GitHubProvider:
        repo = self.worktrees.github_repo(project.repo_path)
        if not repo:
            raise ValidationError("Repository has no GitHub 'origin' remote")
        if not self.config.github_token:
            raise ValidationError("GitHub not configured: GITHUB_TOKEN not set")
        return GitHubProvider(self.config.github_token, repo[0], repo[1])

    def create_pr(
        self,
        attempt_id: str,
        title: str,
        body: str | None = None,
        base_branch: str | None = None,
    ) -> Merge:
        """Push the attempt branch and open a pull request, or return the open one."""
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                for existing in merges.find_by_attempt(db, attempt_id):
                    if existing.merge_type == "pr" and existing.pr_info.status == "open":
                        return existing

            target = base_branch or attempt.base_branch
            attempt = self._ensure_worktree(project, attempt)
            status = self.worktrees.status(
                project.repo_path, attempt.container_ref, attempt.branch, target
            )
            if not status.commits_ahead:
                raise ValidationError(f"'{attempt.branch}' has no commits ahead of '{target}'")

            provider = self.pr_provider_factory(project)
            try:
                info = provider.find_open_pr_for_branch(attempt.branch)
                if info is None:
                    self.worktrees.push(attempt.container_ref, attempt.branch)
                    info = provider.create_pr(title, body, attempt.branch, target)
            except GitHubError as e:
                raise ValidationError(str(e)) from e

            with get_db(self.db_path) as db:
                merge = merges.create_pr(db, attempt_id, target, info.number, info.url)
        self._notify(project, task, attempt, pr_url=info.url)
        return merge

    def open_existing_pr(self, attempt_id: str) -> Merge:
        """Attach an already open pull request for the attempt branch."""
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                for existing in merges.find_by_attempt(db, attempt_id):
                    if existing.merge_type == "pr" and existing.pr_info.status == "open":
                        return existing
            provider = self.pr_provider_factory(project)
            try:
                info = provider.find_open_pr_for_branch(attempt.branch)
            except GitHubError as e:
                raise ValidationError(str(e)) from e
            if info is None:
                raise NotFoundError(f"No open pull request for branch '{attempt.branch}'")
            with get_db(self.db_path) as db:
                return merges.create_pr(db, attempt_id, attempt.base_branch, info.number, info.url)

    # ── Dev server ───────────────────────────────────────────────────────────

    def start_dev_server(self, attempt_id: str) -> ExecutionProcess:
        with self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
            if not project.dev_script:
                raise ValidationError(f"Project {project.id} has no dev script")
            attempt = self._ensure_worktree(project, attempt)
            return self.supervisor.spawn(
                attempt, "dev_server", script_action(project.dev_script, "dev_server")
            )

    # ── Deletion ─────────────────────────────────────────────────────────────

    def delete_attempt(self, attempt_id: str):
        """Delete an attempt, its processes and (unless shared) its worktree."""
        with get_db(self.db_path) as db:
            attempt, task, project = self._load(db, attempt_id)

        with self._task_lock(task.id), self._attempt_lock(attempt_id):
            with get_db(self.db_path) as db:
                attempt, task, project = self._load(db, attempt_id)
                children = list_child_tasks(db, attempt_id)
                if children:
                    raise ValidationError(
                        f"Attempt {attempt_id} has {len(children)} child task(s); delete them first"
                    )
                if merges.find_by_attempt(db, attempt_id):
                    raise ValidationError(f"Attempt {attempt_id} has merges and cannot be deleted")
                shared = any(
                    a.id != attempt_id and a.container_ref == attempt.container_ref
                    for a in attempts.list_live_attempts(db)
                )
                running = executions.running_for_attempt(db, attempt_id, exclusive_only=False)

            for process in running:
                self.supervisor.stop(process.id)

            if attempt.container_ref and not shared:
                self.worktrees.destroy(project.repo_path, attempt.container_ref)
                if attempt.branch:
                    self.worktrees.delete_branch(project.repo_path, attempt.branch)

            with get_db(self.db_path) as db:
                attempts.delete_attempt(db, attempt_id)
                self.projector.remove_attempt(attempt_id)
                self._publish_task(db, task.id)
        self._forget_locks(attempt_ids=[attempt_id])
        logger.info("Deleted attempt %s", attempt_id)

    def delete_task(self, task_id: str):
        """Delete a task with all its attempts and worktrees."""
        with self._task_lock(task_id):
            with get_db(self.db_path) as db:
                task = get_task(db, task_id)
                if not task:
                    raise NotFoundError(f"Task not found: {task_id}")
                if executions.running_for_task(db, task_id, exclusive_only=False):
                    raise AttemptBusyError(f"Task {task_id} has running processes")
                project = get_project(db, task.project_id)
                task_attempts = attempts.list_attempts(db, task_id)
                outside_refs = {
                    a.container_ref for a in attempts.list_live_attempts(db) if a.task_id != task_id
                }

            if project:
                destroyed = set()
                for attempt in task_attempts:
                    ref = attempt.container_ref
                    if not ref or ref in outside_refs or ref in destroyed:
                        continue
                    self.worktrees.destroy(project.repo_path, ref)
                    destroyed.add(ref)
                    if attempt.branch:
                        self.worktrees.delete_branch(project.repo_path, attempt.branch)

            with get_db(self.db_path) as db:
                delete_task(db, task_id)
            self.projector.remove_task(task_id)
        self._forget_locks(task_id, [a.id for a in task_attempts])
        logger.info("Deleted task %s with %d attempt(s)", task_id, len(task_attempts))

    # ── Exit hook ────────────────────────────────────────────────────────────

    def handle_exit(self, process: ExecutionProcess):
        """Runs on the waiter thread once a process's final status is recorded."""
        if process.run_reason == "dev_server":
            return
        with get_db(self.db_path) as db:
            attempt = attempts.get_attempt(db, process.task_attempt_id)
        if not attempt:
            return

        with self._task_lock(attempt.task_id), self._attempt_lock(attempt.id):
            with get_db(self.db_path) as db:
                try:
                    attempt, task, project = self._load(db, attempt.id)
                except NotFoundError:
                    return
                process = executions.get_process(db, process.id)
                if process is None:
                    return

                if process.run_reason in ("coding_agent", "cleanup_script") and not process.dropped:
                    self._checkpoint(db, attempt, task, process)

                next_action = process.action.get("next_action")
                spawned = False
                if process.status == "completed" and next_action and not process.dropped:
                    if executions.running_for_task(db, task.id):
                        logger.info(
                            "Skipping next action of %s: another attempt of task %s is running",
                            process.id, task.id,
                        )
                    else:
                        try:
                            self.supervisor.spawn(attempt, run_reason_for(next_action), next_action)
                            spawned = True
                        except OrchestratorError:
                            logger.exception("Failed to start next action after process %s", process.id)

                if (
                    not spawned
                    and process.status != "killed"
                    and task.status == "inprogress"
                    and not executions.running_for_task(db, task.id)
                ):
                    self._set_task_status(db, task.id, "inreview")

        self._notify(project, task, attempt, process=process)

    def _checkpoint(self, db, attempt: TaskAttempt, task: Task, process: ExecutionProcess):
        """Commit whatever the process left behind and record the resulting head."""
        if not attempt.container_ref or not Path(attempt.container_ref).is_dir():
            return
        label = process.run_reason.replace("_", " ")
        try:
            self.worktrees.commit_changes(attempt.container_ref, f"{task.title} ({label})")
        except OrchestratorError:
            logger.exception("Could not commit changes of process %s", process.id)
        head = self.worktrees.head_commit(attempt.container_ref)
        executions.set_after_head_commit(db, process.id, head)
        self._publish_process(db, process.id)

    def _notify(
        self,
        project: Project,
        task: Task,
        attempt: TaskAttempt,
        process: ExecutionProcess | None = None,
        pr_url: str | None = None,
    ):
        """Send a Slack notification. Best-effort."""
        if not self.config.slack_bot_token or not project.slack_channel:
            return
        try:
            from attempt_orchestrator.integrations.slack import (
                format_pr_review_request,
                format_process_notification,
                send_message,
            )

            if process is not None:
                blocks = format_process_notification(
                    task.id, task.title, process.run_reason, process.status,
                    branch=attempt.branch, summary=process.result_summary,
                )
                text = f"{process.run_reason} {process.status} for task {task.title}"
            else:
                blocks = format_pr_review_request(task.id, task.title, attempt.branch, pr_url)
                text = f"Review requested for task {task.title}"
            send_message(self.config.slack_bot_token, project.slack_channel, text, blocks=blocks)
        except Exception:
            logger.exception("Failed to send Slack notification for attempt %s", attempt.id)
