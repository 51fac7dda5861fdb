"""Configuration loading for Foreman.

Reads ``.foreman/config.yaml`` from the project root. Pydantic models
validate the schema; every section has defaults so a minimal file only
needs ``project.name``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from foreman.errors import ConfigError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".foreman"
CONFIG_FILE_NAME = "config.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "project"
    root: str = ""  # filled in by load_config when empty
    canonical_branch: str = "main"
    branch_namespace: str = "foreman"  # <namespace>/<agent>/<bead>

    @field_validator("branch_namespace")
    @classmethod
    def _validate_namespace(cls, v: str) -> str:
        if not v or "/" in v or v.strip() != v:
            raise ValueError(f"branch_namespace must be a single path segment, got {v!r}")
        return v


class AgentsConfig(BaseModel):
    max_depth: int = Field(default=2, ge=0)
    spawn_delay: float = Field(default=3.0, ge=0)  # warm-up before first input
    submit_delay: float = Field(default=0.5, ge=0)  # gap before the follow-up Enter
    launch_command: str = "claude --model sonnet --dangerously-skip-permissions"
    coordinator_command: str = "claude --model opus --dangerously-skip-permissions"
    # Unrecognized role labels that still get the read-only guard set.
    elevated_capabilities: list[str] = Field(default_factory=list)
    # Extra safe Bash prefixes per capability, on top of the built-in table.
    extra_safe_prefixes: dict[str, list[str]] = Field(default_factory=dict)


class MultiplexerConfig(BaseModel):
    session_prefix: str = "foreman"
    command_timeout: int = 15  # seconds

    def session_name(self, agent_name: str) -> str:
        return f"{self.session_prefix}-{agent_name}"


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class ForemanConfig(BaseModel):
    """Top-level configuration (matches .foreman/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    multiplexer: MultiplexerConfig = Field(default_factory=MultiplexerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # ── Derived paths ────────────────────────────────────────────────────

    @property
    def root(self) -> Path:
        return Path(self.project.root)

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR_NAME

    @property
    def sessions_path(self) -> Path:
        return self.state_dir / "sessions.json"

    @property
    def merge_queue_path(self) -> Path:
        return self.state_dir / "merge-queue.json"

    @property
    def mail_db_path(self) -> Path:
        return self.state_dir / "mail.db"

    @property
    def metrics_db_path(self) -> Path:
        return self.state_dir / "metrics.db"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / "worktrees"

    def safe_prefixes_for(self, capability: str) -> list[str]:
        return list(self.agents.extra_safe_prefixes.get(capability, []))


# ── Config Loader ────────────────────────────────────────────────────────────


def find_project_root(start: Path | None = None) -> Path | None:
    """Locate the project root by walking up from ``start``.

    ``FOREMAN_ROOT`` wins when set. Agent worktrees live under
    ``<root>/.foreman/worktrees/`` so hooks running inside a worktree
    resolve to the same project.
    """
    env_root = os.environ.get("FOREMAN_ROOT")
    if env_root:
        return Path(env_root)

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / STATE_DIR_NAME / CONFIG_FILE_NAME).is_file():
            return candidate
    return None


def load_config(root: Path) -> ForemanConfig:
    """Load Foreman configuration for a project root.

    Raises:
        FileNotFoundError: If .foreman/config.yaml doesn't exist.
        ConfigError: If the file doesn't parse or validate.
    """
    config_path = root / STATE_DIR_NAME / CONFIG_FILE_NAME
    if not config_path.exists():
        raise FileNotFoundError(f"Foreman config not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        config = ForemanConfig(**raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    except (PydanticValidationError, TypeError) as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e

    if not config.project.root:
        config.project.root = str(root.resolve())

    # Environment variable overrides
    canonical = os.environ.get("FOREMAN_CANONICAL_BRANCH")
    if canonical:
        config.project.canonical_branch = canonical

    spawn_delay = os.environ.get("FOREMAN_SPAWN_DELAY")
    if spawn_delay:
        try:
            config.agents.spawn_delay = max(0.0, float(spawn_delay))
        except ValueError:
            logger.warning("Ignoring non-numeric FOREMAN_SPAWN_DELAY=%r", spawn_delay)

    log_level = os.environ.get("FOREMAN_LOG_LEVEL")
    if log_level and log_level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR"):
        config.logging.level = log_level.upper()

    logger.debug("Loaded Foreman config: project=%s root=%s", config.project.name, config.root)
    return config


def default_config_yaml(project_name: str, canonical_branch: str = "main") -> str:
    """Starter config written by ``foreman init``."""
    return f"""\
# .foreman/config.yaml: Foreman project configuration

project:
  name: "{project_name}"
  canonical_branch: {canonical_branch}
  branch_namespace: foreman

agents:
  max_depth: 2
  spawn_delay: 3.0
  submit_delay: 0.5
  elevated_capabilities: []
  extra_safe_prefixes: {{}}

multiplexer:
  session_prefix: foreman

logging:
  level: INFO
"""
