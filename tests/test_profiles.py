"""Tests for executor profile resolution."""

import json

import pytest

from attempt_orchestrator.core.errors import SpawnError, ValidationError
from attempt_orchestrator.core.profiles import ExecutorProfile, ProfileRegistry
from attempt_orchestrator.db.models import ExecutorProfileId


class TestRegistry:
    def test_builtins(self):
        registry = ProfileRegistry()
        assert "CLAUDE_CODE" in registry.executors()
        assert registry.executors()["CLAUDE_CODE"] == ["DEFAULT", "PLAN"]

    def test_default_variant(self):
        profile = ProfileRegistry().resolve(ExecutorProfileId("CODEX"))
        assert profile.command[0] == "codex"

    def test_unknown_executor(self):
        with pytest.raises(SpawnError, match="Unknown executor"):
            ProfileRegistry().resolve(ExecutorProfileId("NOPE"))

    def test_unknown_variant(self):
        with pytest.raises(SpawnError, match="Unknown variant"):
            ProfileRegistry().resolve(ExecutorProfileId("CODEX", "TURBO"))

    def test_custom_profiles_override_builtins(self):
        registry = ProfileRegistry({"CODEX": {"DEFAULT": ExecutorProfile(["my-codex"])}})
        assert registry.resolve(ExecutorProfileId("CODEX")).command == ["my-codex"]
        assert registry.resolve(ExecutorProfileId("CLAUDE_CODE", "PLAN")).command[0] == "claude"

    def test_register(self):
        registry = ProfileRegistry()
        registry.register("LOCAL", None, ExecutorProfile(["local-agent"]))
        assert registry.resolve(ExecutorProfileId("LOCAL", "DEFAULT")).command == ["local-agent"]


class TestBuildCommand:
    def test_model_override(self):
        registry = ProfileRegistry({"X": {"DEFAULT": ExecutorProfile(["agent", "run"], env={"A": "1"})}})
        argv, env = registry.build_command(ExecutorProfileId("X"), "big-model")
        assert argv == ["agent", "run", "--model", "big-model"]
        assert env == {"A": "1"}

    def test_no_model_flag(self):
        registry = ProfileRegistry({"X": {"DEFAULT": ExecutorProfile(["agent"], model_flag=None)}})
        argv, _ = registry.build_command(ExecutorProfileId("X"), "big-model")
        assert argv == ["agent"]


class TestFromFile:
    def test_loads_file(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({
            "executors": {
                "CLAUDE_CODE": {"FAST": {"command": ["claude", "-p"], "env": {"X": 1}}},
            }
        }))
        registry = ProfileRegistry.from_file(path)
        profile = registry.resolve(ExecutorProfileId("CLAUDE_CODE", "FAST"))
        assert profile.command == ["claude", "-p"]
        assert profile.env == {"X": "1"}
        assert "DEFAULT" in registry.executors()["CLAUDE_CODE"]

    def test_missing_file_uses_builtins(self, tmp_path):
        registry = ProfileRegistry.from_file(tmp_path / "nope.json")
        assert "GEMINI" in registry.executors()

    def test_rejects_missing_command(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({"executors": {"X": {"DEFAULT": {"env": {}}}}}))
        with pytest.raises(ValidationError):
            ProfileRegistry.from_file(path)

    def test_rejects_bad_shape(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({"X": []}))
        with pytest.raises(ValidationError):
            ProfileRegistry.from_file(path)
