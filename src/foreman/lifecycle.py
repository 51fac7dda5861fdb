"""Agent lifecycle: start, stop and inspect agents running in tmux.

Every agent gets a sandboxed workspace (hooks deployed into its worktree),
a detached tmux session running the agent CLI, a startup beacon typed into
that session, and a ``booting`` record in the session registry. The
persistent coordinator is the same machinery pointed at the project root.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from foreman.config import ForemanConfig
from foreman.errors import AgentError, ValidationError
from foreman.git import Git
from foreman.hooks import deploy_hooks
from foreman.models import (
    AgentSession,
    Capability,
    SessionState,
    agent_branch_name,
    new_session_id,
)
from foreman.multiplexer import TmuxMultiplexer
from foreman.reconciliation import LivenessReconciler
from foreman.registry import SessionRegistry

logger = logging.getLogger(__name__)

COORDINATOR_NAME = "coordinator"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# Multiplexer failures other than tmux reporting an error.
_MULTIPLEXER_ERRORS = (AgentError, asyncio.TimeoutError, OSError)


def build_coordinator_beacon(now: datetime | None = None) -> str:
    """First message typed into the coordinator's session after boot."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    parts = [
        f"[FOREMAN] {COORDINATOR_NAME} (coordinator) {timestamp}",
        "Depth: 0 | Parent: none | Role: persistent orchestrator",
        f"Startup: run mulch prime, check mail (foreman mail check --agent {COORDINATOR_NAME}), "
        "check bd ready, check foreman status, then await instructions",
    ]
    return " — ".join(parts)


def build_agent_beacon(session: AgentSession, now: datetime | None = None) -> str:
    """First message typed into a slung agent's session."""
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    parts = [
        f"[FOREMAN] {session.agent_name} ({session.capability.value}) {timestamp}",
        f"Depth: {session.depth} | Parent: {session.parent_agent or 'none'} | Bead: {session.bead_id or 'none'}",
        f"Startup: run foreman prime --agent {session.agent_name}, "
        f"check mail (foreman mail check --agent {session.agent_name}), "
        f"then begin work on branch {session.branch_name}",
    ]
    return " — ".join(parts)


def resolve_attach(attach: bool, no_attach: bool, is_tty: bool) -> bool:
    """``--attach`` wins over ``--no-attach``; otherwise attach on a TTY."""
    if attach:
        return True
    if no_attach:
        return False
    return is_tty


def validate_agent_name(agent_name: str) -> str:
    if not agent_name or not _NAME_RE.match(agent_name):
        raise ValidationError(
            f"Invalid agent name {agent_name!r}: use letters, digits, '.', '_' or '-'",
            field="agent",
            value=agent_name,
        )
    return agent_name


class AgentLifecycle:
    """Spawns and tears down agents, keeping the registry in step."""

    def __init__(
        self,
        config: ForemanConfig,
        registry: SessionRegistry | None = None,
        multiplexer: Any = None,
        git: Git | None = None,
    ):
        self.config = config
        self.registry = registry or SessionRegistry(config.sessions_path)
        self.multiplexer = multiplexer or TmuxMultiplexer(timeout=config.multiplexer.command_timeout)
        self.git = git or Git(config.root)

    # ── Start ────────────────────────────────────────────────────────────

    async def start(
        self,
        agent_name: str,
        capability: Capability | str,
        worktree_path: str | Path,
        branch_name: str,
        *,
        bead_id: str = "",
        parent_agent: str | None = None,
        depth: int = 0,
        command: str | None = None,
        beacon: str | None = None,
    ) -> AgentSession:
        """Start an agent in its own tmux session and record it as booting.

        A recorded-but-dead session for the same name is retired first.

        Raises:
            ValidationError: If ``depth`` exceeds ``agents.max_depth``.
            AgentError: If the agent is already running, its worktree is
                owned by another active session, or spawning fails.
        """
        max_depth = self.config.agents.max_depth
        if depth < 0 or depth > max_depth:
            raise ValidationError(
                f"Depth {depth} for {agent_name} exceeds the maximum of {max_depth}",
                field="depth",
                value=depth,
            )

        label = capability.value if isinstance(capability, Capability) else str(capability)
        worktree = str(Path(worktree_path).resolve())

        sessions = self.registry.load()
        existing = self.registry.find_active(sessions, agent_name)
        if existing is not None:
            if await self.multiplexer.is_alive(existing.multiplexer_session_id):
                raise AgentError(
                    f"{agent_name} is already running "
                    f"(tmux: {existing.multiplexer_session_id}, since: {existing.started_at.isoformat()})",
                    agent_name=agent_name,
                )
            logger.info("Retiring stale session %s for %s", existing.id, agent_name)
            existing.state = SessionState.COMPLETED
            existing.touch()
            self.registry.save(sessions)

        owner = self.registry.find_by_worktree(sessions, worktree)
        if owner is not None and owner.agent_name != agent_name:
            raise AgentError(
                f"Worktree {worktree} is already in use by {owner.agent_name}",
                agent_name=agent_name,
            )

        deploy_hooks(
            worktree,
            agent_name,
            label,
            extra_safe_prefixes=self.config.safe_prefixes_for(label),
            elevated_labels=self.config.agents.elevated_capabilities,
            namespace=self.config.project.branch_namespace,
        )

        tmux_name = self.config.multiplexer.session_name(agent_name)
        env = {
            "FOREMAN_AGENT_NAME": agent_name,
            "FOREMAN_ROOT": str(self.config.root),
        }
        pid = await self.multiplexer.create_session(
            tmux_name,
            worktree,
            command or self.config.agents.launch_command,
            env,
            agent_name=agent_name,
        )

        session = AgentSession(
            id=new_session_id(agent_name),
            agent_name=agent_name,
            capability=label,
            worktree_path=worktree,
            branch_name=branch_name,
            bead_id=bead_id,
            multiplexer_session_id=tmux_name,
            pid=pid,
            parent_agent=parent_agent,
            depth=depth,
        )

        sessions = self.registry.load()
        sessions.append(session)
        self.registry.save(sessions)

        try:
            # The agent CLI needs a moment to draw its input box.
            await asyncio.sleep(self.config.agents.spawn_delay)
            await self.multiplexer.send_keys(tmux_name, beacon or build_agent_beacon(session), agent_name=agent_name)
            await asyncio.sleep(self.config.agents.submit_delay)
            await self.multiplexer.send_keys(tmux_name, "", agent_name=agent_name)
        except _MULTIPLEXER_ERRORS as e:
            logger.error("Could not deliver the startup beacon to %s: %r", agent_name, e)
            await self._abandon(session)
            raise
        logger.info(
            "Started %s (%s, depth=%d, parent=%s) in %s",
            agent_name,
            label,
            depth,
            parent_agent or "none",
            tmux_name,
        )
        return session

    # ── Stop ─────────────────────────────────────────────────────────────

    async def stop(self, agent_name: str, capability: Capability | str | None = None) -> AgentSession:
        """Kill the agent's tmux session and mark the record completed.

        The record is completed even if the kill fails (the session may
        already be gone).
        """
        sessions = self.registry.load()
        session = self.registry.find_active(sessions, agent_name, capability)
        if session is None:
            raise AgentError(f"No active session found for {agent_name}", agent_name=agent_name)

        try:
            await self.multiplexer.kill_session(session.multiplexer_session_id, agent_name=agent_name)
        except _MULTIPLEXER_ERRORS as e:
            logger.warning("Could not kill %s, marking completed anyway: %r", agent_name, e)

        session.state = SessionState.COMPLETED
        session.touch()
        self.registry.save(sessions)
        logger.info("Stopped %s (session %s)", agent_name, session.id)
        return session

    async def _abandon(self, session: AgentSession) -> None:
        """Kill a half-started agent and retire its record."""
        try:
            await self.multiplexer.kill_session(session.multiplexer_session_id, agent_name=session.agent_name)
        except _MULTIPLEXER_ERRORS as e:
            logger.warning("Could not kill %s after a failed start: %r", session.agent_name, e)
        session.state = SessionState.COMPLETED
        session.touch()
        sessions = self.registry.load()
        for recorded in sessions:
            if recorded.id == session.id:
                recorded.state = session.state
                recorded.last_activity = session.last_activity
        self.registry.save(sessions)

    # ── Status ───────────────────────────────────────────────────────────

    async def status(self, agent_name: str, capability: Capability | str | None = None) -> dict[str, Any]:
        """Reconcile, then report the agent's live state."""
        sessions = self.registry.load()
        session = self.registry.find_active(sessions, agent_name, capability)
        if session is None:
            return {"running": False}

        await LivenessReconciler(self.registry, self.multiplexer).reconcile(sessions)
        return {
            "running": session.is_active,
            "sessionId": session.id,
            "state": session.state.value,
            "multiplexerSession": session.multiplexer_session_id,
            "pid": session.pid,
            "startedAt": session.started_at.isoformat(),
            "lastActivity": session.last_activity.isoformat(),
        }

    # ── Sling ────────────────────────────────────────────────────────────

    async def sling(
        self,
        agent_name: str,
        capability: Capability | str,
        bead_id: str,
        *,
        parent_agent: str | None = None,
        depth: int | None = None,
    ) -> AgentSession:
        """Dispatch an agent into a fresh worktree on its own branch.

        Re-slinging an agent that died on the same bead resumes it in the
        worktree it left behind.
        """
        validate_agent_name(agent_name)
        if not bead_id or "/" in bead_id or bead_id.strip() != bead_id:
            raise ValidationError(f"Invalid bead id {bead_id!r}", field="bead", value=bead_id)

        if parent_agent:
            parent = self.registry.find_active(self.registry.load(), parent_agent)
            if parent is not None:
                depth = parent.depth + 1
        if depth is None:
            depth = 1
        if depth > self.config.agents.max_depth:
            raise ValidationError(
                f"Depth {depth} for {agent_name} exceeds the maximum of {self.config.agents.max_depth}",
                field="depth",
                value=depth,
            )

        # A recorded session whose tmux session is gone is retired by start().
        sessions = self.registry.load()
        existing = self.registry.find_active(sessions, agent_name)
        if existing is not None and await self.multiplexer.is_alive(existing.multiplexer_session_id):
            raise AgentError(
                f"{agent_name} is already running (tmux: {existing.multiplexer_session_id})",
                agent_name=agent_name,
            )

        branch = agent_branch_name(self.config.project.branch_namespace, agent_name, bead_id)
        worktree = self.config.worktrees_dir / agent_name
        if worktree.exists():
            previous = self.registry.find_latest(sessions, agent_name)
            if (
                previous is None
                or previous.branch_name != branch
                or os.path.realpath(previous.worktree_path) != os.path.realpath(worktree)
            ):
                raise AgentError(
                    f"Worktree {worktree} is left over from an earlier session; "
                    f"remove it with 'git worktree remove' before slinging {agent_name} onto {branch}",
                    agent_name=agent_name,
                )
            logger.info("Resuming %s in its existing worktree %s", agent_name, worktree)
        else:
            worktree.parent.mkdir(parents=True, exist_ok=True)
            result = await self.git.add_worktree(worktree, branch, self.config.project.canonical_branch)
            if not result.ok:
                raise AgentError(
                    f"Failed to create worktree for {agent_name}: {result.stderr.strip()}",
                    agent_name=agent_name,
                )
            logger.info("Created worktree %s on %s", worktree, branch)

        return await self.start(
            agent_name,
            capability,
            worktree,
            branch,
            bead_id=bead_id,
            parent_agent=parent_agent,
            depth=depth,
        )

    # ── Coordinator ──────────────────────────────────────────────────────

    async def start_coordinator(self) -> AgentSession:
        return await self.start(
            COORDINATOR_NAME,
            Capability.COORDINATOR,
            self.config.root,
            self.config.project.canonical_branch,
            depth=0,
            command=self.config.agents.coordinator_command,
            beacon=build_coordinator_beacon(),
        )

    async def stop_coordinator(self) -> AgentSession:
        return await self.stop(COORDINATOR_NAME, Capability.COORDINATOR)

    async def coordinator_status(self) -> dict[str, Any]:
        return await self.status(COORDINATOR_NAME, Capability.COORDINATOR)
