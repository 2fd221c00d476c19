"""Tests for configuration, profiles, role templates and task requests."""
from __future__ import annotations

import json

import pytest

from config import (
    DEFAULT_AGENTS, RoleLibrary, build_descriptors, load_config, load_frontmatter_doc,
    load_task_request, merge_profile,
)
from models import AgentRequest, CompositionError, ConfigError


class TestDescriptors:
    def test_builtin_defaults(self):
        descriptors = build_descriptors({})
        assert set(DEFAULT_AGENTS) <= set(descriptors)
        assert descriptors["claude"].injects_role
        assert descriptors["codex"].output_format == "jsonl"
        assert descriptors["codex"].detection_strategy == "markers"

    def test_override_merges_capabilities(self):
        descriptors = build_descriptors({"gemini": {"timeout": 60, "capabilities": {"completion_marker": False}}})
        gemini = descriptors["gemini"]
        assert gemini.timeout == 60
        assert gemini.supports_structured_output
        assert not gemini.supports_completion_marker
        assert gemini.uses_idle_fallback
        assert gemini.detection_strategy == "idle"

    def test_custom_agent_requires_cmd(self):
        with pytest.raises(ConfigError, match="cmd"):
            build_descriptors({"local": {"kind": "custom"}})

    def test_unknown_output_format(self):
        with pytest.raises(ConfigError, match="output_format"):
            build_descriptors({"local": {"cmd": ["llm"], "output_format": "xml"}})


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        settings, descriptors = load_config(tmp_path / "missing.json")
        assert settings.max_concurrency == 0
        assert settings.default_timeout == 300
        assert "codex" in descriptors

    def test_profile_overrides_settings_and_agents(self, tmp_path):
        state_dir = tmp_path / ".council"
        (state_dir / "profiles").mkdir(parents=True)
        (state_dir / "profiles" / "fast.json").write_text(json.dumps({
            "settings": {"max_concurrency": 2},
            "agents": {"codex": {"timeout": 30}},
        }))
        config = tmp_path / "council.config.json"
        config.write_text(json.dumps({
            "state_dir": str(state_dir),
            "settings": {"grace_period": 1},
            "agents": {"codex": {"retry_budget": 1}},
        }))
        settings, descriptors = load_config(config, "fast")
        assert settings.max_concurrency == 2
        assert settings.grace_period == 1
        assert descriptors["codex"].timeout == 30
        assert descriptors["codex"].retry_budget == 1

    def test_identical_markers_rejected(self, tmp_path):
        config = tmp_path / "c.json"
        config.write_text(json.dumps({"settings": {"marker_start": "X", "marker_end": "X"}}))
        with pytest.raises(ConfigError):
            load_config(config)

    def test_invalid_profile_name(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "c.json", "../escape")

    def test_merge_profile_keeps_other_agents(self):
        merged = merge_profile({"agents": {"a": {"x": 1}, "b": {"y": 2}}}, {"agents": {"a": {"z": 3}}})
        assert merged["agents"] == {"a": {"x": 1, "z": 3}, "b": {"y": 2}}


class TestRoleLibrary:
    def test_state_dir_overrides_global(self, tmp_path):
        local, shared = tmp_path / "local", tmp_path / "shared"
        for base, text in ((local, "local role"), (shared, "shared role")):
            (base / "roles").mkdir(parents=True)
            (base / "roles" / "security.md").write_text(f"---\ndescription: x\n---\n{text}\n")
        (shared / "roles" / "architecture.md").write_text("shared architecture\n")
        roles = RoleLibrary(local, shared)
        assert roles.get("security") == "local role"
        assert roles.get("architecture") == "shared architecture\n"

    def test_missing_role(self, tmp_path):
        with pytest.raises(CompositionError, match="not found"):
            RoleLibrary(tmp_path).get("nobody")

    def test_path_traversal_rejected(self, tmp_path):
        with pytest.raises(CompositionError, match="Invalid role name"):
            RoleLibrary(tmp_path).get("../../etc/passwd")


class TestFrontmatter:
    def test_metadata_and_body(self, tmp_path):
        doc = tmp_path / "r.md"
        doc.write_text("---\ndescription: Reviewer\n---\nBody text\n")
        assert load_frontmatter_doc(doc) == ({"description": "Reviewer"}, "Body text")

    def test_no_frontmatter(self, tmp_path):
        doc = tmp_path / "r.md"
        doc.write_text("Just a body")
        assert load_frontmatter_doc(doc) == ({}, "Just a body")


class TestTaskRequest:
    def test_yaml_request(self, tmp_path):
        (tmp_path / "task.md").write_text("Review the retry policy.")
        (tmp_path / "src.py").write_text("pass\n")
        req = tmp_path / "request.yaml"
        req.write_text(
            "task_file: task.md\n"
            "files: [src.py]\n"
            "agents:\n"
            "  - codex:security\n"
            "  - {agent: claude, role: architecture, timeout: 90}\n"
            "timeouts: {codex: 120}\n"
            "deadline: 600\n"
        )
        request = load_task_request(req)
        assert request.task == "Review the retry policy."
        assert request.files == [tmp_path / "src.py"]
        assert request.agents == [
            AgentRequest("codex", "security"),
            AgentRequest("claude", "architecture", 90.0),
        ]
        assert request.timeout_for(request.agents[0], None) == 120
        assert request.timeout_for(request.agents[1], None) == 90
        assert request.deadline == 600

    def test_agent_entry_defaults_role_to_agent(self):
        assert AgentRequest.parse("gemini") == AgentRequest("gemini", "gemini")

    def test_bad_agent_entry(self, tmp_path):
        req = tmp_path / "r.yaml"
        req.write_text("task: x\nagents: [42]\n")
        with pytest.raises(ConfigError):
            load_task_request(req)
