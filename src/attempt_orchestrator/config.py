"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".attempt_orchestrator" / "ao.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    worktree_dir: str = ".worktrees"
    default_branch: str = "main"
    branch_prefix: str = "ao"
    profiles_path: Path | None = None
    default_executor: str = "CLAUDE_CODE"
    stop_timeout: float = 5.0
    log_level: str = "INFO"
    github_token: str | None = None
    slack_bot_token: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("AO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("AO_REPO_PATH"):
            config.repo_path = Path(repo)

        if wt_dir := os.environ.get("AO_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if branch := os.environ.get("AO_DEFAULT_BRANCH"):
            config.default_branch = branch

        if prefix := os.environ.get("AO_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        if profiles := os.environ.get("AO_PROFILES_PATH"):
            config.profiles_path = Path(profiles)

        if executor := os.environ.get("AO_DEFAULT_EXECUTOR"):
            config.default_executor = executor

        if timeout := os.environ.get("AO_STOP_TIMEOUT"):
            config.stop_timeout = float(timeout)

        if level := os.environ.get("AO_LOG_LEVEL"):
            config.log_level = level.upper()

        config.github_token = os.environ.get("GITHUB_TOKEN")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        return config


def get_config() -> Config:
    return Config.from_env()
