"""Error hierarchy for Foreman.

Every error carries a stable ``code`` tag so callers (and ``--json`` CLI
output) can distinguish bad input from operational failures without
string matching.
"""

from __future__ import annotations

from typing import Any


class ForemanError(Exception):
    """Base class for all errors raised by the kernel."""

    code = "FOREMAN_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.context}


class ValidationError(ForemanError):
    """Bad input: unknown branch, unknown subcommand, malformed flag."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None, value: Any = None) -> None:
        super().__init__(message, field=field, value=value)
        self.field = field
        self.value = value


class AgentError(ForemanError):
    """Operational failure tied to a specific agent."""

    code = "AGENT_ERROR"

    def __init__(self, message: str, *, agent_name: str) -> None:
        super().__init__(message, agent_name=agent_name)
        self.agent_name = agent_name


class MergeError(ForemanError):
    """Unexpected git failure while integrating a branch."""

    code = "MERGE_ERROR"

    def __init__(self, message: str, *, branch_name: str = "", **context: Any) -> None:
        super().__init__(message, branch_name=branch_name, **context)
        self.branch_name = branch_name


class ConfigError(ForemanError):
    """Config file exists but does not validate."""

    code = "CONFIG_ERROR"
