"""Liveness reconciliation: catch agents that died without reporting.

A session's recorded state says what the agent last told us; the
multiplexer says whether its process still exists. Whenever status is
read, active sessions whose multiplexer session is gone are demoted to
ZOMBIE. Persisting the demotion is best-effort so status stays readable
on a momentarily read-only filesystem.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from foreman.models import AgentSession, SessionState

if TYPE_CHECKING:
    from foreman.multiplexer import Liveness
    from foreman.registry import SessionRegistry

logger = logging.getLogger(__name__)


class LivenessReconciler:
    """Cross-checks registry state against real multiplexer liveness."""

    def __init__(self, registry: SessionRegistry, liveness: Liveness):
        self.registry = registry
        self.liveness = liveness

    async def reconcile(self, sessions: list[AgentSession] | None = None) -> list[AgentSession]:
        """Run one reconciliation pass and return the (possibly updated) sessions.

        When ``sessions`` is omitted the registry is loaded and any change
        is written back. When given, the caller's list is reconciled and
        also persisted, since it came from the same file.
        """
        if sessions is None:
            sessions = self.registry.load()

        changed = False
        for session in sessions:
            if not session.is_active:
                continue
            try:
                alive = await self.liveness.is_alive(session.multiplexer_session_id)
            except Exception:
                logger.warning(
                    "Could not query liveness of %s (%s); leaving state %s",
                    session.agent_name,
                    session.multiplexer_session_id,
                    session.state.value,
                    exc_info=True,
                )
                continue
            if alive:
                continue

            logger.info(
                "Agent %s was %s but %s is gone; marking zombie",
                session.agent_name,
                session.state.value,
                session.multiplexer_session_id,
            )
            session.state = SessionState.ZOMBIE
            session.touch()
            changed = True

        if changed:
            try:
                self.registry.save(sessions)
            except OSError:
                logger.warning("Failed to persist reconciled sessions to %s", self.registry.path)

        return sessions
