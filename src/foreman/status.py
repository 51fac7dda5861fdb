"""Project status: agents, worktrees, tmux sessions, mail and merge queue.

Gathering status reconciles the registry first, so a status query is also
how crashed agents get noticed. Every auxiliary source (git, tmux, the
SQLite stores, the merge queue) is best-effort: a missing database or a
stopped tmux server just shows up as zero.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import aiosqlite
from pydantic import Field

from foreman.config import ForemanConfig
from foreman.git import Git
from foreman.merge import MergeQueue
from foreman.models import AgentSession, _Record, utcnow
from foreman.reconciliation import LivenessReconciler
from foreman.registry import SessionRegistry
from foreman.stores import MailStore, MetricsStore

logger = logging.getLogger(__name__)

_SOURCE_ERRORS = (OSError, aiosqlite.Error, asyncio.TimeoutError)


class WorktreeInfo(_Record):
    path: str
    branch: str = ""
    head: str = ""


class MultiplexerSessionInfo(_Record):
    name: str
    pid: int | None = None


class VerboseAgentDetail(_Record):
    worktree_path: str
    logs_dir: str
    capability: str
    last_mail_sent: datetime | None = None
    last_mail_received: datetime | None = None


class StatusData(_Record):
    agents: list[AgentSession] = Field(default_factory=list)
    worktrees: list[WorktreeInfo] = Field(default_factory=list)
    multiplexer_sessions: list[MultiplexerSessionInfo] = Field(default_factory=list)
    unread_mail_count: int = 0
    merge_queue_count: int = 0
    recent_metrics_count: int = 0
    verbose_details: dict[str, VerboseAgentDetail] | None = None

    @property
    def active_agents(self) -> list[AgentSession]:
        return [a for a in self.agents if a.is_active]


async def gather_status(
    config: ForemanConfig,
    multiplexer: Any,
    agent_name: str = "orchestrator",
    verbose: bool = False,
    git: Git | None = None,
) -> StatusData:
    """Collect a status snapshot.

    Args:
        multiplexer: Used both as the liveness probe and to list sessions.
        agent_name: Whose unread mail is counted.
        verbose: Add per-agent worktree, log dir and last-mail details.
    """
    registry = SessionRegistry(config.sessions_path)
    sessions = await LivenessReconciler(registry, multiplexer).reconcile()
    data = StatusData(agents=sessions)

    git = git or Git(config.root)
    try:
        data.worktrees = [
            WorktreeInfo(path=wt.path, branch=wt.branch, head=wt.head) for wt in await git.list_worktrees()
        ]
    except _SOURCE_ERRORS as e:
        logger.debug("Could not list worktrees: %s", e)

    try:
        data.multiplexer_sessions = [
            MultiplexerSessionInfo(name=s.name, pid=s.pid) for s in await multiplexer.list_sessions()
        ]
    except _SOURCE_ERRORS as e:
        logger.debug("Could not list tmux sessions: %s", e)

    data.merge_queue_count = len(MergeQueue(config.merge_queue_path).pending())

    if config.mail_db_path.exists():
        try:
            async with MailStore(config.mail_db_path) as mail:
                data.unread_mail_count = len(await mail.get_all(to=agent_name, unread=True))
                if verbose:
                    data.verbose_details = await _verbose_details(config, sessions, mail)
        except _SOURCE_ERRORS as e:
            logger.debug("Could not read mail: %s", e)
    if verbose and data.verbose_details is None:
        data.verbose_details = await _verbose_details(config, sessions, None)

    if config.metrics_db_path.exists():
        try:
            async with MetricsStore(config.metrics_db_path) as metrics:
                data.recent_metrics_count = len(await metrics.get_recent_sessions(100))
        except _SOURCE_ERRORS as e:
            logger.debug("Could not read metrics: %s", e)

    return data


async def _verbose_details(
    config: ForemanConfig, sessions: list[AgentSession], mail: MailStore | None
) -> dict[str, VerboseAgentDetail]:
    details = {}
    for session in sessions:
        detail = VerboseAgentDetail(
            worktree_path=session.worktree_path,
            logs_dir=str(config.logs_dir / session.agent_name),
            capability=session.capability.value,
        )
        if mail is not None:
            sent = await mail.get_all(sender=session.agent_name, limit=1)
            received = await mail.get_all(to=session.agent_name, limit=1)
            detail.last_mail_sent = sent[0].created_at if sent else None
            detail.last_mail_received = received[0].created_at if received else None
        details[session.agent_name] = detail
    return details


def format_duration(seconds: float) -> str:
    seconds = int(max(seconds, 0))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def render_status(data: StatusData, namespace: str = "foreman", now: datetime | None = None) -> str:
    """Human-readable status report."""
    now = now or utcnow()
    live = {s.name for s in data.multiplexer_sessions}
    lines = ["Foreman Status", "=" * 60, ""]

    active = data.active_agents
    lines.append(f"Agents: {len(active)} active")
    for agent in active:
        marker = "*" if agent.multiplexer_session_id in live else "o"
        duration = format_duration((now - agent.started_at).total_seconds())
        lines.append(
            f"  {marker} {agent.agent_name} [{agent.capability.value}] "
            f"{agent.state.value} | {agent.bead_id or '-'} | {duration}"
        )
        detail = (data.verbose_details or {}).get(agent.agent_name)
        if detail:
            sent = detail.last_mail_sent.isoformat() if detail.last_mail_sent else "none"
            received = detail.last_mail_received.isoformat() if detail.last_mail_received else "none"
            lines.append(f"      Worktree: {detail.worktree_path}")
            lines.append(f"      Logs:     {detail.logs_dir}")
            lines.append(f"      Mail sent: {sent} | received: {received}")
    if not active:
        lines.append("  No active agents")
    lines.append("")

    agent_worktrees = [wt for wt in data.worktrees if wt.branch.startswith(f"{namespace}/")]
    lines.append(f"Worktrees: {len(agent_worktrees)}")
    for wt in agent_worktrees:
        lines.append(f"  {wt.branch}")
    if not agent_worktrees:
        lines.append("  No agent worktrees")
    lines.append("")

    lines.append(f"Mail: {data.unread_mail_count} unread")
    lines.append(f"Merge queue: {data.merge_queue_count} pending")
    lines.append(f"Sessions recorded: {data.recent_metrics_count}")
    return "\n".join(lines) + "\n"
