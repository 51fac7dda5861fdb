"""Hook deployment: sandbox an agent's workspace.

Writes ``.claude/settings.local.json`` into the agent's worktree: the
packaged lifecycle hook template with the agent's name filled in, and the
agent's guard rules prepended to ``PreToolUse`` ahead of the template's
unconditional logging rule.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Sequence

from foreman.errors import AgentError
from foreman.guards import pre_tool_guards
from foreman.models import Capability

logger = logging.getLogger(__name__)

AGENT_NAME_PLACEHOLDER = "{{AGENT_NAME}}"
HOOK_CATEGORIES = (
    "SessionStart",
    "UserPromptSubmit",
    "PreToolUse",
    "PostToolUse",
    "Stop",
    "PreCompact",
)
SETTINGS_DIR = ".claude"
SETTINGS_FILE = "settings.local.json"

DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "templates" / "hooks.json"


def _substitute(node: Any, agent_name: str) -> Any:
    """Replace the placeholder in every string of a JSON tree."""
    if isinstance(node, str):
        return node.replace(AGENT_NAME_PLACEHOLDER, agent_name)
    if isinstance(node, list):
        return [_substitute(item, agent_name) for item in node]
    if isinstance(node, dict):
        return {key: _substitute(value, agent_name) for key, value in node.items()}
    return node


def load_template(agent_name: str, template_path: Path | None = None) -> dict[str, Any]:
    """Read the hook template and fill in the agent name.

    Raises:
        AgentError: If the template is missing, unreadable or malformed.
    """
    path = template_path or DEFAULT_TEMPLATE_PATH
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError as e:
        raise AgentError(f"Hook template not found: {path}", agent_name=agent_name) from e
    except OSError as e:
        raise AgentError(f"Failed to read hook template {path}: {e}", agent_name=agent_name) from e
    except json.JSONDecodeError as e:
        raise AgentError(f"Hook template {path} is not valid JSON: {e}", agent_name=agent_name) from e

    hooks = raw.get("hooks") if isinstance(raw, dict) else None
    if not isinstance(hooks, dict) or any(
        not isinstance(hooks.get(category), list) for category in HOOK_CATEGORIES
    ):
        raise AgentError(
            f"Hook template {path} must define all of: {', '.join(HOOK_CATEGORIES)}",
            agent_name=agent_name,
        )
    return _substitute(raw, agent_name)


def build_settings(
    agent_name: str,
    capability: Capability | str | None = None,
    *,
    extra_safe_prefixes: Sequence[str] | None = None,
    elevated_labels: Sequence[str] = (),
    namespace: str = "foreman",
    template_path: Path | None = None,
) -> dict[str, Any]:
    """Assemble the settings document without touching the workspace."""
    settings = load_template(agent_name, template_path)
    guards = pre_tool_guards(
        agent_name,
        capability,
        namespace=namespace,
        extra_safe_prefixes=extra_safe_prefixes,
        elevated_labels=elevated_labels,
    )
    hooks = settings["hooks"]
    hooks["PreToolUse"] = [guard.to_hook() for guard in guards] + hooks["PreToolUse"]
    return settings


def deploy_hooks(
    workspace_path: str | Path,
    agent_name: str,
    capability: Capability | str | None = None,
    *,
    extra_safe_prefixes: Sequence[str] | None = None,
    elevated_labels: Sequence[str] = (),
    namespace: str = "foreman",
    template_path: Path | None = None,
) -> Path:
    """Write the agent's hook settings into its workspace.

    Args:
        workspace_path: The agent's worktree (or the project root for the
            coordinator).
        agent_name: Substituted into every hook command.
        capability: Role used to pick guards; ``None`` behaves like an
            implementation role.

    Returns:
        Path of the written settings file.

    Raises:
        AgentError: On any I/O failure, tagged with ``agent_name``.
    """
    settings = build_settings(
        agent_name,
        capability,
        extra_safe_prefixes=extra_safe_prefixes,
        elevated_labels=elevated_labels,
        namespace=namespace,
        template_path=template_path,
    )

    settings_dir = Path(workspace_path) / SETTINGS_DIR
    output_path = settings_dir / SETTINGS_FILE
    try:
        settings_dir.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(settings, indent="\t") + "\n")
    except OSError as e:
        raise AgentError(
            f"Failed to deploy hooks to {output_path}: {e}", agent_name=agent_name
        ) from e

    logger.info(
        "Deployed hooks for %s (%s, %d pre-tool rules) to %s",
        agent_name,
        getattr(capability, "value", capability) or "default",
        len(settings["hooks"]["PreToolUse"]),
        output_path,
    )
    return output_path
