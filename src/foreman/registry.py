"""Session Registry: the durable record of every spawned agent.

The registry is a single JSON file (``.foreman/sessions.json``) shared by
every foreman process on the host: CLI invocations, hook commands running
inside agents, the merge engine. Nothing holds it in memory across
operations. Each operation loads the file, mutates a local copy and writes
it back with an atomic replace, so concurrent readers never observe a
partial write. Concurrent writers are last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from foreman.models import AgentSession, Capability

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write ``data`` as tab-indented JSON via temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(data, indent="\t") + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json_list(path: Path) -> list[Any] | None:
    """Return the JSON list stored at ``path``, or None if absent or unreadable."""
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return None
    if not isinstance(raw, list):
        logger.warning("Ignoring %s: expected a JSON list, got %s", path, type(raw).__name__)
        return None
    return raw


RecordT = TypeVar("RecordT", bound=BaseModel)


def validate_rows(model: type[RecordT], raw: list[Any], path: Path) -> list[RecordT]:
    """Validate each row of a JSON list; rows that fail are logged and dropped."""
    rows: list[RecordT] = []
    for index, item in enumerate(raw):
        try:
            rows.append(model.model_validate(item))
        except PydanticValidationError as e:
            logger.warning("Skipping malformed row %d in %s: %s", index, path, e)
    return rows

class SessionRegistry:
    """JSON-file-backed agent session registry."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    # ── Load / Save ──────────────────────────────────────────────────────

    def load(self) -> list[AgentSession]:
        """Load all sessions.

        Missing or unparseable files yield an empty list. Individual rows
        that fail validation are skipped so the rest survive the next save.
        """
        raw = read_json_list(self.path)
        if raw is None:
            return []
        return validate_rows(AgentSession, raw, self.path)

    def save(self, sessions: Iterable[AgentSession]) -> None:
        write_json_atomic(self.path, [s.to_json_dict() for s in sessions])

    # ── Queries ──────────────────────────────────────────────────────────

    @staticmethod
    def find_active(
        sessions: Iterable[AgentSession],
        agent_name: str,
        capability: Capability | str | None = None,
    ) -> AgentSession | None:
        """Active (booting/working/stalled) session for an agent name."""
        wanted = Capability.parse(capability) if capability is not None else None
        for session in sessions:
            if session.agent_name != agent_name or not session.is_active:
                continue
            if wanted is not None and session.capability is not wanted:
                continue
            return session
        return None

    @staticmethod
    def find_by_worktree(
        sessions: Iterable[AgentSession], worktree_path: str | Path
    ) -> AgentSession | None:
        target = os.path.realpath(worktree_path)
        for session in sessions:
            if session.is_active and os.path.realpath(session.worktree_path) == target:
                return session
        return None

    @staticmethod
    def find_latest(sessions: Iterable[AgentSession], agent_name: str) -> AgentSession | None:
        """Most recently started session for an agent, in any state."""
        matching = [s for s in sessions if s.agent_name == agent_name]
        if not matching:
            return None
        return max(matching, key=lambda s: s.started_at)

    def get(self, agent_name: str) -> AgentSession | None:
        """Active session for ``agent_name``, else its latest one."""
        sessions = self.load()
        return self.find_active(sessions, agent_name) or self.find_latest(sessions, agent_name)

    # ── Mutation ─────────────────────────────────────────────────────────

    def update(
        self, agent_name: str, mutate: Callable[[AgentSession], None]
    ) -> AgentSession | None:
        """Reload, apply ``mutate`` to the agent's session, save.

        Targets the active session when there is one, else the latest.
        Returns the mutated record, or None if the agent is unknown.
        """
        sessions = self.load()
        session = self.find_active(sessions, agent_name) or self.find_latest(sessions, agent_name)
        if session is None:
            return None
        mutate(session)
        self.save(sessions)
        return session
