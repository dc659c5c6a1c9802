"""Error taxonomy for orchestration operations.

Every rejected operation raises one of these. Each carries a stable ``code``
and the HTTP status the web layer should answer with, so callers can render
the failure without parsing messages.
"""


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""

    code = "orchestrator_error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(OrchestratorError):
    """A referenced project, task, attempt or process does not exist."""

    code = "not_found"
    http_status = 404


class ValidationError(OrchestratorError):
    """The request is well-formed but cannot be applied to the current state."""

    code = "validation_error"
    http_status = 400


class VcsError(OrchestratorError):
    """A git operation failed (unresolvable ref, branch collision, ...)."""

    code = "vcs_error"
    http_status = 409


class ConflictError(VcsError):
    """A rebase or merge stopped on conflicts. Never auto-resolved."""

    code = "conflict"

    def __init__(self, message: str, conflicted_files: list[str] | None = None):
        super().__init__(message)
        self.conflicted_files = conflicted_files or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["conflicted_files"] = self.conflicted_files
        return data


class DirtyWorktreeError(VcsError):
    """Uncommitted changes block a destructive operation."""

    code = "dirty_worktree"

    def __init__(self, message: str, flag: str | None = None):
        super().__init__(message)
        self.flag = flag

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["flag"] = self.flag
        return data


class SpawnError(OrchestratorError):
    """An external process could not be launched."""

    code = "spawn_error"
    http_status = 500


class AttemptBusyError(OrchestratorError):
    """Another process is already running where only one may run."""

    code = "attempt_busy"
    http_status = 409
