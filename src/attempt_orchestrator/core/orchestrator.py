"""Wires the orchestration components together and owns their lifetime."""

import logging

from attempt_orchestrator.config import Config
from attempt_orchestrator.core import attempts, executions, merges
from attempt_orchestrator.core.lifecycle import AttemptCoordinator
from attempt_orchestrator.core.profiles import ProfileRegistry
from attempt_orchestrator.core.projector import StateProjector
from attempt_orchestrator.core.supervisor import ProcessSupervisor
from attempt_orchestrator.core.tasks import list_tasks
from attempt_orchestrator.core.worktrees import WorktreeManager
from attempt_orchestrator.db.engine import init_db

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns the worktree manager, supervisor, projector and coordinator."""

    def __init__(
        self,
        config: Config,
        profiles: ProfileRegistry | None = None,
        pr_provider_factory=None,
    ):
        self.config = config
        self.projector = StateProjector()
        self.worktrees = WorktreeManager(config.worktree_dir)
        self.supervisor = ProcessSupervisor(
            config.db_path,
            profiles or ProfileRegistry.from_file(config.profiles_path),
            projector=self.projector,
            stop_timeout=config.stop_timeout,
        )
        self.coordinator = AttemptCoordinator(
            config,
            self.worktrees,
            self.supervisor,
            self.projector,
            pr_provider_factory=pr_provider_factory,
        )
        self.supervisor.on_exit = self.coordinator.handle_exit
        self.started = False

    def start(self):
        """Initialize storage, reconcile orphaned processes and load the projection."""
        if self.started:
            return
        db = init_db(self.config.db_path)
        try:
            orphans = executions.list_running(db)
            for process in orphans:
                executions.finish_process(
                    db, process.id, "failed", None, "Orchestrator restarted while process was running"
                )
            if orphans:
                logger.warning("Marked %d orphaned process(es) as failed", len(orphans))

            all_attempts = attempts.list_attempts(db)
            all_processes = []
            for attempt in all_attempts:
                all_processes.extend(executions.list_processes(db, attempt.id))
            self.projector.load(
                list_tasks(db),
                all_attempts,
                all_processes,
                merges.merged_attempt_ids(db),
            )
        finally:
            db.close()
        self.started = True
        logger.info("Orchestrator started (db %s)", self.config.db_path)

    def shutdown(self):
        """Stop every live process and close all subscriptions."""
        if not self.started:
            return
        self.supervisor.shutdown()
        self.projector.close_all()
        self.started = False
        logger.info("Orchestrator stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.shutdown()
