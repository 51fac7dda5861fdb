"""Hook-driven event logging and the state transitions it triggers.

Agents never call into the kernel directly; their hook settings run
``foreman log <event> --agent <name>`` around every tool call and when
the session ends. Each call appends one JSON line to the agent's current
log directory and nudges the session registry:

- ``tool-start``: booting/stalled → working, lastActivity bumped
- ``tool-end``: lastActivity bumped
- ``session-end``: → completed, metrics row recorded, log session closed
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from foreman.config import ForemanConfig
from foreman.errors import ValidationError
from foreman.models import AgentSession, SessionMetrics, SessionState, utcnow
from foreman.registry import SessionRegistry
from foreman.stores import MetricsStore

logger = logging.getLogger(__name__)

# CLI event name -> logged event type
EVENT_TYPES = {
    "tool-start": "tool.start",
    "tool-end": "tool.end",
    "session-end": "session.end",
}
DEFAULT_TOOL_NAME = "unknown"
CURRENT_SESSION_MARKER = ".current-session"
EVENTS_FILE = "events.ndjson"


def tool_name_from_hook_input(text: str) -> str | None:
    """Extract ``tool_name`` from the JSON a hook receives on stdin."""
    if not text.strip():
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Hook input is not JSON; ignoring")
        return None
    if isinstance(payload, dict) and isinstance(payload.get("tool_name"), str):
        return payload["tool_name"] or None
    return None


class EventLog:
    """Per-agent ndjson log directories under ``.foreman/logs/<agent>/``."""

    def __init__(self, logs_dir: str | Path):
        self.logs_dir = Path(logs_dir)

    def agent_dir(self, agent_name: str) -> Path:
        return self.logs_dir / agent_name

    def marker_path(self, agent_name: str) -> Path:
        return self.agent_dir(agent_name) / CURRENT_SESSION_MARKER

    def current_session_dir(self, agent_name: str) -> Path | None:
        try:
            recorded = self.marker_path(agent_name).read_text().strip()
        except FileNotFoundError:
            return None
        if not recorded or not Path(recorded).is_dir():
            return None
        return Path(recorded)

    def open_session_dir(self, agent_name: str) -> Path:
        """The agent's current log directory, created on first use."""
        existing = self.current_session_dir(agent_name)
        if existing is not None:
            return existing
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        session_dir = self.agent_dir(agent_name) / stamp
        session_dir.mkdir(parents=True, exist_ok=True)
        self.marker_path(agent_name).write_text(f"{session_dir.resolve()}\n")
        return session_dir.resolve()

    def close_session(self, agent_name: str) -> None:
        try:
            self.marker_path(agent_name).unlink()
        except FileNotFoundError:
            pass

    def append(self, agent_name: str, event: dict[str, Any]) -> Path:
        path = self.open_session_dir(agent_name) / EVENTS_FILE
        with open(path, "a") as f:
            f.write(json.dumps(event) + "\n")
        return path


class EventRecorder:
    """Applies one hook event to the log, the registry and the metrics store."""

    def __init__(
        self,
        config: ForemanConfig,
        registry: SessionRegistry | None = None,
        event_log: EventLog | None = None,
    ):
        self.config = config
        self.registry = registry or SessionRegistry(config.sessions_path)
        self.event_log = event_log or EventLog(config.logs_dir)

    async def record(self, event: str, agent_name: str | None, tool_name: str | None = None) -> dict[str, Any]:
        """Record ``event`` for ``agent_name`` and return the logged line.

        Raises:
            ValidationError: If the event is unknown or no agent is named.
        """
        if event not in EVENT_TYPES:
            raise ValidationError(
                f"Invalid event {event!r}; expected one of: {', '.join(EVENT_TYPES)}",
                field="event",
                value=event,
            )
        if not agent_name:
            raise ValidationError("--agent is required", field="agent")

        entry = {
            "event": EVENT_TYPES[event],
            "agent": agent_name,
            "tool": tool_name or DEFAULT_TOOL_NAME,
            "timestamp": utcnow().isoformat(),
        }
        self.event_log.append(agent_name, entry)

        if event == "tool-start":
            self._mark_working(agent_name)
        elif event == "tool-end":
            self._touch(agent_name)
        else:
            session = self._mark_completed(agent_name)
            if session is not None:
                await self._record_metrics(session)
            self.event_log.close_session(agent_name)
        return entry

    # ── Registry transitions ─────────────────────────────────────────────

    def _mark_working(self, agent_name: str) -> None:
        def mutate(session: AgentSession) -> None:
            if session.state in (SessionState.BOOTING, SessionState.STALLED):
                logger.info("%s: %s -> working", agent_name, session.state.value)
                session.state = SessionState.WORKING
                session.stalled_since = None
            session.touch()

        self._update_active(agent_name, mutate)

    def _touch(self, agent_name: str) -> None:
        self._update_active(agent_name, lambda session: session.touch())

    def _mark_completed(self, agent_name: str) -> AgentSession | None:
        def mutate(session: AgentSession) -> None:
            session.state = SessionState.COMPLETED
            session.touch()

        return self._update_active(agent_name, mutate)

    def _update_active(self, agent_name: str, mutate) -> AgentSession | None:
        sessions = self.registry.load()
        session = self.registry.find_active(sessions, agent_name)
        if session is None:
            logger.debug("No active session for %s; registry left unchanged", agent_name)
            return None
        mutate(session)
        self.registry.save(sessions)
        return session

    async def _record_metrics(self, session: AgentSession) -> None:
        metrics = SessionMetrics(
            agent_name=session.agent_name,
            bead_id=session.bead_id,
            capability=session.capability,
            parent_agent=session.parent_agent,
            started_at=session.started_at,
            completed_at=session.last_activity,
        )
        store = MetricsStore(self.config.metrics_db_path)
        await store.initialize()
        try:
            await store.record_session(metrics)
        finally:
            await store.close()
