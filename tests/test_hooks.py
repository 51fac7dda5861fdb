"""Tests for hook deployment into agent workspaces."""

from __future__ import annotations

import json
import os

import pytest

from foreman.errors import AgentError
from foreman.hooks import (
    AGENT_NAME_PLACEHOLDER,
    HOOK_CATEGORIES,
    SETTINGS_DIR,
    SETTINGS_FILE,
    build_settings,
    deploy_hooks,
)
from foreman.models import Capability


def _read_settings(workspace):
    path = workspace / SETTINGS_DIR / SETTINGS_FILE
    return path, path.read_text()


class TestDeployHooks:
    def test_creates_settings_file(self, tmp_path):
        workspace = tmp_path / "worktree"
        output = deploy_hooks(workspace, "test-agent")
        assert output == workspace / ".claude" / "settings.local.json"
        assert output.exists()

    def test_pretty_printed_with_trailing_newline(self, tmp_path):
        deploy_hooks(tmp_path, "a1")
        _, content = _read_settings(tmp_path)
        assert content.endswith("}\n")
        assert "\n\t" in content

    @pytest.mark.parametrize("name", ["my-builder", "scout-alpha", "lead.2", "x"])
    def test_replaces_every_placeholder(self, tmp_path, name):
        deploy_hooks(tmp_path, name, Capability.SCOUT)
        _, content = _read_settings(tmp_path)
        assert AGENT_NAME_PLACEHOLDER not in content
        assert content.count(f"--agent {name}") >= 6

    def test_all_categories_present(self, tmp_path):
        deploy_hooks(tmp_path, "hook-check")
        _, content = _read_settings(tmp_path)
        hooks = json.loads(content)["hooks"]
        for category in HOOK_CATEGORIES:
            assert isinstance(hooks[category], list)
            assert hooks[category]
            for entry in hooks[category]:
                assert isinstance(entry["matcher"], str)
                assert entry["hooks"][0]["type"] == "command"

    def test_template_commands(self, tmp_path):
        deploy_hooks(tmp_path, "builder-1")
        hooks = json.loads(_read_settings(tmp_path)[1])["hooks"]
        assert hooks["SessionStart"][0]["hooks"][0]["command"] == "foreman prime --agent builder-1"
        assert "mail check --inject" in hooks["UserPromptSubmit"][0]["hooks"][0]["command"]
        assert "log tool-end" in hooks["PostToolUse"][0]["hooks"][0]["command"]
        assert "log session-end" in hooks["Stop"][0]["hooks"][0]["command"]
        assert hooks["PreCompact"][0]["hooks"][0]["command"].endswith("--compact")

    @pytest.mark.parametrize("capability", list(Capability) + [None, "custom-role"])
    def test_guards_precede_unconditional_rule(self, tmp_path, capability):
        deploy_hooks(tmp_path, "agent-x", capability)
        pre = json.loads(_read_settings(tmp_path)[1])["hooks"]["PreToolUse"]
        first_empty = next(i for i, entry in enumerate(pre) if entry["matcher"] == "")
        assert all(entry["matcher"] != "" for entry in pre[:first_empty])
        assert all(entry["matcher"] == "" for entry in pre[first_empty:])
        assert "log tool-start" in pre[first_empty]["hooks"][0]["command"]

    def test_pre_tool_use_counts(self, tmp_path):
        scout = build_settings("s1", Capability.SCOUT)["hooks"]["PreToolUse"]
        builder = build_settings("b1", Capability.BUILDER)["hooks"]["PreToolUse"]
        # danger guard + capability guards + template logging rule
        assert len(scout) == 1 + 14 + 1
        assert len(builder) == 1 + 10 + 1

    def test_read_only_file_tools_block(self, tmp_path):
        deploy_hooks(tmp_path, "reviewer-1", "reviewer")
        pre = json.loads(_read_settings(tmp_path)[1])["hooks"]["PreToolUse"]
        write_hooks = [e for e in pre if e["matcher"] == "Write"]
        assert len(write_hooks) == 1
        assert "reviewer agents cannot modify files" in write_hooks[0]["hooks"][0]["command"]

    def test_danger_guard_scoped_to_agent(self, tmp_path):
        deploy_hooks(tmp_path, "builder-7", namespace="crew")
        pre = json.loads(_read_settings(tmp_path)[1])["hooks"]["PreToolUse"]
        assert pre[0]["matcher"] == "Bash"
        assert "crew/builder-7/" in pre[0]["hooks"][0]["command"]

    def test_overwrites_existing(self, tmp_path):
        deploy_hooks(tmp_path, "alpha-agent")
        deploy_hooks(tmp_path, "omega-agent")
        content = _read_settings(tmp_path)[1]
        assert "omega-agent" in content
        assert "alpha-agent" not in content


class TestDeployFailures:
    def test_missing_template(self, tmp_path):
        with pytest.raises(AgentError) as exc_info:
            deploy_hooks(tmp_path, "a1", template_path=tmp_path / "nope.json")
        assert exc_info.value.agent_name == "a1"

    def test_malformed_template(self, tmp_path):
        template = tmp_path / "bad.json"
        template.write_text("{not json")
        with pytest.raises(AgentError):
            deploy_hooks(tmp_path / "ws", "a1", template_path=template)

    def test_template_missing_category(self, tmp_path):
        template = tmp_path / "partial.json"
        template.write_text(json.dumps({"hooks": {"SessionStart": []}}))
        with pytest.raises(AgentError, match="must define all of"):
            deploy_hooks(tmp_path / "ws", "a1", template_path=template)

    def test_destination_is_a_file(self, tmp_path):
        blocker = tmp_path / "ws"
        blocker.write_text("not a directory")
        with pytest.raises(AgentError) as exc_info:
            deploy_hooks(blocker, "a1")
        assert exc_info.value.agent_name == "a1"

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_permission_denied(self, tmp_path):
        workspace = tmp_path / "ro"
        workspace.mkdir()
        workspace.chmod(0o500)
        try:
            with pytest.raises(AgentError):
                deploy_hooks(workspace, "a1")
        finally:
            workspace.chmod(0o700)
