"""tmux adapter: every agent runs inside its own detached tmux session.

The kernel's contract with tmux is argument shape and exit codes only.
Liveness is exposed through the ``Liveness`` protocol so reconciliation
can be driven by a deterministic fake in tests.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from foreman.errors import AgentError

logger = logging.getLogger(__name__)


@runtime_checkable
class Liveness(Protocol):
    """Answers "is this named multiplexer session alive"."""

    async def is_alive(self, session_name: str) -> bool: ...


@dataclass
class MultiplexerSession:
    name: str
    pid: int | None = None


class TmuxMultiplexer:
    """Thin async wrapper around the ``tmux`` CLI."""

    def __init__(self, tmux_exe: str = "tmux", timeout: int = 15):
        self.tmux_exe = tmux_exe
        self.timeout = timeout

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Run a tmux command. Returns (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.tmux_exe,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return 127, "", f"{self.tmux_exe} not found"
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout or b"").decode(errors="replace"),
            (stderr or b"").decode(errors="replace"),
        )

    async def create_session(
        self,
        name: str,
        cwd: str | Path,
        command: str,
        env: dict[str, str] | None = None,
        *,
        agent_name: str | None = None,
    ) -> int | None:
        """Start a detached session running ``command``. Returns the pane PID."""
        args = ["new-session", "-d", "-s", name, "-c", str(cwd)]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(command)

        rc, _, stderr = await self._run(*args)
        if rc != 0:
            raise AgentError(
                f"Failed to create tmux session {name}: {stderr.strip()}",
                agent_name=agent_name or name,
            )

        rc, stdout, _ = await self._run("list-panes", "-t", name, "-F", "#{pane_pid}")
        pid: int | None = None
        if rc == 0 and stdout.strip():
            try:
                pid = int(stdout.split()[0])
            except ValueError:
                logger.debug("Unparseable pane pid for %s: %r", name, stdout)
        logger.info("Created tmux session %s (pid=%s) in %s", name, pid, cwd)
        return pid

    async def is_alive(self, session_name: str) -> bool:
        rc, _, _ = await self._run("has-session", "-t", f"={session_name}")
        return rc == 0

    async def list_sessions(self) -> list[MultiplexerSession]:
        """All tmux sessions on the default server. Empty when no server runs."""
        rc, stdout, stderr = await self._run("list-sessions", "-F", "#{session_name}:#{pid}")
        if rc != 0:
            logger.debug("tmux list-sessions failed (rc=%d): %s", rc, stderr.strip())
            return []
        sessions = []
        for line in stdout.splitlines():
            name, _, pid = line.rpartition(":")
            if not name:
                continue
            sessions.append(MultiplexerSession(name=name, pid=int(pid) if pid.isdigit() else None))
        return sessions

    async def kill_session(self, session_name: str, *, agent_name: str | None = None) -> None:
        rc, _, stderr = await self._run("kill-session", "-t", f"={session_name}")
        if rc != 0:
            raise AgentError(
                f"Failed to kill tmux session {session_name}: {stderr.strip()}",
                agent_name=agent_name or session_name,
            )
        logger.info("Killed tmux session %s", session_name)

    async def send_keys(self, session_name: str, text: str, *, agent_name: str | None = None) -> None:
        """Type ``text`` into the session followed by Enter."""
        args = ["send-keys", "-t", session_name]
        if text:
            args.extend(["-l", text])
            rc, _, stderr = await self._run(*args)
            if rc != 0:
                raise AgentError(
                    f"Failed to send keys to {session_name}: {stderr.strip()}",
                    agent_name=agent_name or session_name,
                )
        rc, _, stderr = await self._run("send-keys", "-t", session_name, "Enter")
        if rc != 0:
            raise AgentError(
                f"Failed to send Enter to {session_name}: {stderr.strip()}",
                agent_name=agent_name or session_name,
            )

    async def attach(self, session_name: str) -> None:
        """Attach the current terminal to a session (blocks until detach)."""
        proc = await asyncio.create_subprocess_exec(self.tmux_exe, "attach-session", "-t", session_name)
        await proc.wait()
