"""Async git adapter used by the merge engine and worktree creation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class WorktreeEntry:
    path: str
    branch: str = ""
    head: str = ""


@dataclass
class StatusEntry:
    """One line of ``git status --porcelain``."""

    code: str  # two-letter XY code, e.g. "UU", "DU", " M"
    path: str

    @property
    def is_conflicted(self) -> bool:
        return self.code in CONFLICT_CODES


# Unmerged XY codes from git-status(1).
CONFLICT_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})
# Both sides changed the content of the same path.
CONTENT_CONFLICT_CODES = frozenset({"UU", "AA"})


class Git:
    """Runs git in a fixed working directory."""

    def __init__(self, cwd: str | Path, git_exe: str = "git", timeout: int = 120):
        self.cwd = Path(cwd)
        self.git_exe = git_exe
        self.timeout = timeout

    async def run(self, *args: str) -> GitResult:
        """Run a git command without blocking the event loop."""
        proc = await asyncio.create_subprocess_exec(
            self.git_exe,
            *args,
            cwd=str(self.cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        result = GitResult(
            returncode=proc.returncode or 0,
            stdout=(stdout_bytes or b"").decode(errors="replace"),
            stderr=(stderr_bytes or b"").decode(errors="replace"),
        )
        if not result.ok:
            logger.debug("git %s failed (rc=%d): %s", " ".join(args), result.returncode, result.stderr.strip())
        return result

    async def run_bytes(self, *args: str) -> bytes | None:
        proc = await asyncio.create_subprocess_exec(
            self.git_exe,
            *args,
            cwd=str(self.cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return stdout if proc.returncode == 0 else None

    # ── Queries ──────────────────────────────────────────────────────────

    async def branch_exists(self, branch: str) -> bool:
        result = await self.run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.ok

    async def current_branch(self) -> str:
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD")
        return result.stdout.strip()

    async def head(self) -> str:
        result = await self.run("rev-parse", "HEAD")
        return result.stdout.strip()

    async def changed_files(self, base: str, branch: str) -> list[str]:
        """Files ``branch`` changes relative to its merge base with ``base``."""
        result = await self.run("diff", "--name-only", f"{base}...{branch}")
        if not result.ok:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def status(self) -> list[StatusEntry]:
        result = await self.run("status", "--porcelain", "--untracked-files=no")
        entries = []
        for line in result.stdout.splitlines():
            if len(line) < 4:
                continue
            entries.append(StatusEntry(code=line[:2], path=line[3:]))
        return entries

    async def merge_in_progress(self) -> bool:
        result = await self.run("rev-parse", "-q", "--verify", "MERGE_HEAD")
        return result.ok

    async def is_binary_at(self, rev: str, path: str) -> bool:
        """Whether the blob at ``rev:path`` looks binary (contains NUL)."""
        blob = await self.run_bytes("show", f"{rev}:{path}")
        return blob is not None and b"\0" in blob[:8000]

    async def list_worktrees(self) -> list[WorktreeEntry]:
        result = await self.run("worktree", "list", "--porcelain")
        if not result.ok:
            return []
        entries: list[WorktreeEntry] = []
        current: WorktreeEntry | None = None
        for line in result.stdout.splitlines():
            if line.startswith("worktree "):
                current = WorktreeEntry(path=line[len("worktree "):])
                entries.append(current)
            elif current is not None and line.startswith("HEAD "):
                current.head = line[len("HEAD "):]
            elif current is not None and line.startswith("branch "):
                current.branch = line[len("branch "):].removeprefix("refs/heads/")
        return entries

    # ── Mutations ────────────────────────────────────────────────────────

    async def checkout(self, branch: str) -> GitResult:
        return await self.run("checkout", branch)

    async def merge(self, branch: str) -> GitResult:
        return await self.run("merge", "--no-edit", branch)

    async def abort_merge(self) -> GitResult:
        return await self.run("merge", "--abort")

    async def reset_hard(self, rev: str) -> GitResult:
        return await self.run("reset", "--hard", rev)

    async def take_theirs(self, path: str) -> GitResult:
        result = await self.run("checkout", "--theirs", "--", path)
        if not result.ok:
            return result
        return await self.run("add", "--", path)

    async def commit_no_edit(self) -> GitResult:
        return await self.run("commit", "--no-edit")

    async def add_worktree(self, path: str | Path, branch: str, base: str) -> GitResult:
        """Check out ``branch`` at ``path``, creating it from ``base`` if it doesn't exist yet."""
        if await self.branch_exists(branch):
            return await self.run("worktree", "add", str(path), branch)
        return await self.run("worktree", "add", "-b", branch, str(path), base)
