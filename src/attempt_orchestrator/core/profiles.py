"""Executor profiles: how a coding agent is turned into a command line.

A profile is addressed by ``(executor, variant)``. The prompt is always fed
on stdin, so a profile only describes the argv, the flag used to pass a
model override, and extra environment.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from attempt_orchestrator.core.errors import SpawnError, ValidationError
from attempt_orchestrator.db.models import ExecutorProfileId

logger = logging.getLogger(__name__)

DEFAULT_VARIANT = "DEFAULT"


@dataclass
class ExecutorProfile:
    command: list[str]
    model_flag: str | None = "--model"
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutorProfile":
        command = data.get("command")
        if not command or not isinstance(command, list):
            raise ValidationError("Executor profile needs a non-empty 'command' list")
        return cls(
            command=[str(c) for c in command],
            model_flag=data.get("model_flag", "--model"),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )


BUILTIN_PROFILES: dict[str, dict[str, ExecutorProfile]] = {
    "CLAUDE_CODE": {
        DEFAULT_VARIANT: ExecutorProfile(
            ["claude", "-p", "--output-format", "stream-json", "--verbose",
             "--dangerously-skip-permissions"],
        ),
        "PLAN": ExecutorProfile(
            ["claude", "-p", "--output-format", "stream-json", "--verbose",
             "--permission-mode", "plan"],
        ),
    },
    "CODEX": {
        DEFAULT_VARIANT: ExecutorProfile(["codex", "exec", "--json", "--full-auto"]),
    },
    "GEMINI": {
        DEFAULT_VARIANT: ExecutorProfile(["gemini", "--yolo"]),
    },
}


class ProfileRegistry:
    """Built-in executor profiles, optionally extended from a JSON file.

    File format::

        {"executors": {"CLAUDE_CODE": {"DEFAULT": {"command": [...]},
                                       "FAST": {"command": [...], "env": {...}}}}}

    Entries in the file replace built-ins with the same executor and variant.
    """

    def __init__(self, profiles: dict[str, dict[str, ExecutorProfile]] | None = None):
        self._profiles: dict[str, dict[str, ExecutorProfile]] = {
            executor: dict(variants) for executor, variants in BUILTIN_PROFILES.items()
        }
        for executor, variants in (profiles or {}).items():
            self._profiles.setdefault(executor, {}).update(variants)

    @classmethod
    def from_file(cls, path: Path | None) -> "ProfileRegistry":
        if path is None:
            return cls()
        path = Path(path).expanduser()
        if not path.exists():
            logger.warning("Profiles file %s not found, using built-in profiles", path)
            return cls()
        data = json.loads(path.read_text())
        return cls(_parse_profiles(data))

    def register(self, executor: str, variant: str | None, profile: ExecutorProfile):
        self._profiles.setdefault(executor, {})[variant or DEFAULT_VARIANT] = profile

    def executors(self) -> dict[str, list[str]]:
        return {name: sorted(variants) for name, variants in sorted(self._profiles.items())}

    def resolve(self, profile_id: ExecutorProfileId) -> ExecutorProfile:
        variants = self._profiles.get(profile_id.executor)
        if variants is None:
            raise SpawnError(f"Unknown executor: {profile_id.executor}")
        variant = profile_id.variant or DEFAULT_VARIANT
        profile = variants.get(variant)
        if profile is None:
            raise SpawnError(f"Unknown variant '{variant}' for executor {profile_id.executor}")
        return profile

    def build_command(
        self,
        profile_id: ExecutorProfileId,
        model_override: str | None = None,
    ) -> tuple[list[str], dict[str, str]]:
        """Return the argv and extra environment for an agent turn."""
        profile = self.resolve(profile_id)
        argv = list(profile.command)
        if model_override and profile.model_flag:
            argv += [profile.model_flag, model_override]
        return argv, dict(profile.env)


def _parse_profiles(data: dict) -> dict[str, dict[str, ExecutorProfile]]:
    executors = data.get("executors")
    if not isinstance(executors, dict):
        raise ValidationError("Profiles file must contain an 'executors' object")
    parsed: dict[str, dict[str, ExecutorProfile]] = {}
    for executor, variants in executors.items():
        if not isinstance(variants, dict):
            raise ValidationError(f"Profiles for {executor} must be an object of variants")
        parsed[executor] = {
            variant: ExecutorProfile.from_dict(profile)
            for variant, profile in variants.items()
        }
    return parsed
