"""Shared fixtures: an in-memory multiplexer and throwaway git repositories."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from foreman.config import AgentsConfig, ForemanConfig, ProjectConfig
from foreman.errors import AgentError
from foreman.registry import SessionRegistry


class FakeMultiplexer:
    """Deterministic stand-in for TmuxMultiplexer."""

    def __init__(self, alive: set[str] | None = None):
        self.alive: set[str] = set(alive or ())
        self.created: list[dict] = []
        self.killed: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.fail_kill = False
        self.fail_probe = False
        self.next_pid = 4242

    async def is_alive(self, session_name: str) -> bool:
        if self.fail_probe:
            raise RuntimeError("tmux server unreachable")
        return session_name in self.alive

    async def create_session(self, name, cwd, command, env=None, *, agent_name=None):
        self.created.append({"name": name, "cwd": str(cwd), "command": command, "env": dict(env or {})})
        self.alive.add(name)
        self.next_pid += 1
        return self.next_pid

    async def kill_session(self, session_name, *, agent_name=None):
        if self.fail_kill or session_name not in self.alive:
            raise AgentError(f"can't find session: {session_name}", agent_name=agent_name or session_name)
        self.alive.discard(session_name)
        self.killed.append(session_name)

    async def send_keys(self, session_name, text, *, agent_name=None):
        self.sent.append((session_name, text))

    async def list_sessions(self):
        from foreman.multiplexer import MultiplexerSession

        return [MultiplexerSession(name=name, pid=None) for name in sorted(self.alive)]


@pytest.fixture
def fake_mux() -> FakeMultiplexer:
    return FakeMultiplexer()


@pytest.fixture
def config(tmp_path) -> ForemanConfig:
    """Config rooted at tmp_path with no spawn delays."""
    return ForemanConfig(
        project=ProjectConfig(name="test", root=str(tmp_path)),
        agents=AgentsConfig(spawn_delay=0, submit_delay=0),
    )


@pytest.fixture
def registry(config) -> SessionRegistry:
    return SessionRegistry(config.sessions_path)


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(repo), capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo: Path, path: str, content: str | bytes, message: str | None = None) -> None:
    target = repo / path
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        target.write_bytes(content)
    else:
        target.write_text(content)
    git(repo, "add", "--", path)
    git(repo, "commit", "-q", "-m", message or f"update {path}")


@pytest.fixture
def git_repo(tmp_path) -> Path:
    """A repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    git(repo, "config", "user.email", "foreman@example.com")
    git(repo, "config", "user.name", "Foreman Tests")
    git(repo, "config", "commit.gpgsign", "false")
    commit_file(repo, "README.md", "# test\n", "initial")
    return repo


@pytest.fixture
def run_git():
    """``run_git(repo, *args)`` runs git and returns stripped stdout."""
    return git


@pytest.fixture
def commit():
    """``commit(repo, path, content)`` writes, stages and commits one file."""
    return commit_file
