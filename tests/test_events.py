"""Tests for hook event logging and the registry transitions it drives."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from foreman.errors import ValidationError
from foreman.events import (
    CURRENT_SESSION_MARKER,
    EVENTS_FILE,
    EventLog,
    EventRecorder,
    tool_name_from_hook_input,
)
from foreman.models import AgentSession, SessionState, utcnow
from foreman.stores import MetricsStore


def _session(agent_name: str = "builder-1", state=SessionState.BOOTING, **kwargs) -> AgentSession:
    return AgentSession(
        id=f"session-1-{agent_name}",
        agent_name=agent_name,
        capability="builder",
        worktree_path=f"/tmp/{agent_name}",
        branch_name=f"foreman/{agent_name}/bead-1",
        bead_id="bead-1",
        multiplexer_session_id=f"foreman-{agent_name}",
        state=state,
        **kwargs,
    )


def _read_events(session_dir) -> list[dict]:
    lines = (session_dir / EVENTS_FILE).read_text().splitlines()
    return [json.loads(line) for line in lines]


@pytest.fixture
def recorder(config, registry) -> EventRecorder:
    return EventRecorder(config, registry=registry)


class TestEventLog:
    def test_first_event_creates_dir_and_marker(self, recorder, config):
        log = recorder.event_log
        assert log.current_session_dir("builder-1") is None

        log.append("builder-1", {"event": "tool.start"})

        session_dir = log.current_session_dir("builder-1")
        assert session_dir is not None
        assert session_dir.parent == (config.logs_dir / "builder-1").resolve()
        assert (config.logs_dir / "builder-1" / CURRENT_SESSION_MARKER).exists()

    def test_reuses_current_dir(self, tmp_path):
        log = EventLog(tmp_path / "logs")
        first = log.append("a", {"n": 1})
        second = log.append("a", {"n": 2})
        assert first == second
        assert len(first.read_text().splitlines()) == 2

    def test_stale_marker_opens_new_dir(self, tmp_path):
        log = EventLog(tmp_path / "logs")
        log.agent_dir("a").mkdir(parents=True)
        log.marker_path("a").write_text(str(tmp_path / "gone") + "\n")
        path = log.append("a", {"n": 1})
        assert path.parent != tmp_path / "gone"
        assert log.current_session_dir("a") == path.parent

    def test_close_session_is_idempotent(self, tmp_path):
        log = EventLog(tmp_path / "logs")
        log.append("a", {})
        log.close_session("a")
        log.close_session("a")
        assert log.current_session_dir("a") is None


class TestRecord:
    async def test_tool_start_logs_and_marks_working(self, recorder, registry):
        registry.save([_session()])

        entry = await recorder.record("tool-start", "builder-1", "Bash")

        assert entry["event"] == "tool.start"
        assert entry["tool"] == "Bash"
        assert registry.load()[0].state is SessionState.WORKING
        logged = _read_events(recorder.event_log.current_session_dir("builder-1"))
        assert logged == [entry]

    async def test_tool_name_defaults_to_unknown(self, recorder):
        entry = await recorder.record("tool-start", "builder-1")
        assert entry["tool"] == "unknown"

    async def test_tool_start_clears_stall(self, recorder, registry):
        registry.save([_session(state=SessionState.STALLED, stalled_since=utcnow(), escalation_level=2)])

        await recorder.record("tool-start", "builder-1", "Read")

        stored = registry.load()[0]
        assert stored.state is SessionState.WORKING
        assert stored.stalled_since is None

    async def test_tool_end_touches_only(self, recorder, registry):
        old = utcnow() - timedelta(minutes=5)
        registry.save([_session(state=SessionState.BOOTING, last_activity=old)])

        await recorder.record("tool-end", "builder-1", "Read")

        stored = registry.load()[0]
        assert stored.state is SessionState.BOOTING
        assert stored.last_activity > old

    async def test_tool_end_appends_to_same_dir(self, recorder):
        await recorder.record("tool-start", "builder-1", "Edit")
        await recorder.record("tool-end", "builder-1", "Edit")
        events = _read_events(recorder.event_log.current_session_dir("builder-1"))
        assert [e["event"] for e in events] == ["tool.start", "tool.end"]

    async def test_session_end_completes_and_records_metrics(self, recorder, registry, config):
        registry.save([_session(state=SessionState.WORKING, started_at=utcnow() - timedelta(minutes=2))])
        await recorder.record("tool-start", "builder-1", "Bash")

        await recorder.record("session-end", "builder-1")

        assert registry.load()[0].state is SessionState.COMPLETED
        assert recorder.event_log.current_session_dir("builder-1") is None
        async with MetricsStore(config.metrics_db_path) as store:
            rows = await store.get_recent_sessions()
        assert len(rows) == 1
        assert rows[0].agent_name == "builder-1"
        assert rows[0].bead_id == "bead-1"
        assert rows[0].duration_ms >= 120_000

    async def test_session_end_without_session(self, recorder, config):
        await recorder.record("session-end", "ghost")
        assert not config.metrics_db_path.exists()
        assert not config.sessions_path.exists()

    async def test_missing_registry_is_fine(self, recorder, config):
        await recorder.record("tool-start", "builder-1", "Bash")
        assert not config.sessions_path.exists()

    async def test_only_active_session_touched(self, recorder, registry):
        registry.save([_session(state=SessionState.COMPLETED)])
        await recorder.record("tool-start", "builder-1", "Bash")
        assert registry.load()[0].state is SessionState.COMPLETED

    async def test_invalid_event(self, recorder):
        with pytest.raises(ValidationError, match="Invalid event") as exc_info:
            await recorder.record("tool-middle", "builder-1")
        assert exc_info.value.field == "event"

    @pytest.mark.parametrize("agent_name", [None, ""])
    async def test_agent_required(self, recorder, agent_name):
        with pytest.raises(ValidationError, match="--agent is required"):
            await recorder.record("tool-start", agent_name)


class TestHookInput:
    def test_extracts_tool_name(self):
        assert tool_name_from_hook_input('{"tool_name": "Write", "tool_input": {}}') == "Write"

    @pytest.mark.parametrize("text", ["", "   ", "not json", "[1, 2]", '{"tool_name": 3}', '{"tool_name": ""}'])
    def test_no_tool_name(self, text):
        assert tool_name_from_hook_input(text) is None
