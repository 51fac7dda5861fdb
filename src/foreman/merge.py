"""Merge Integration Engine: fold agent branches into the canonical branch.

Branches wait in a durable queue (``.foreman/merge-queue.json``) and are
integrated one at a time with escalating conflict resolution:

1. ``clean-merge``: a plain ``git merge --no-edit`` succeeds.
2. ``content-merge``: every conflict is a text content conflict, so the
   incoming branch's version of each conflicting file is taken whole.

Anything else (delete/modify, renames, binary files) is rolled back to
the pre-attempt HEAD and reported with the unresolved paths. Queue entries
are never deleted; they record the outcome of each attempt.

Integration refuses to start while the checkout has uncommitted changes
to tracked files, so a rollback never discards the operator's work.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from foreman.errors import ForemanError, MergeError, ValidationError
from foreman.git import CONTENT_CONFLICT_CODES, Git
from foreman.models import (
    BatchMergeResult,
    MergeQueueEntry,
    MergeResult,
    MergeStatus,
    ResolutionTier,
    SessionState,
    parse_branch_name,
)
from foreman.registry import SessionRegistry, read_json_list, validate_rows, write_json_atomic

logger = logging.getLogger(__name__)

# Failures of the git subprocess itself, as opposed to git reporting an error.
_GIT_ERRORS = (asyncio.TimeoutError, OSError)


# ── Queue ────────────────────────────────────────────────────────────────────


class MergeQueue:
    """JSON-file-backed FIFO of branches awaiting integration."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> list[MergeQueueEntry]:
        raw = read_json_list(self.path)
        if raw is None:
            return []
        return validate_rows(MergeQueueEntry, raw, self.path)

    def save(self, entries: list[MergeQueueEntry]) -> None:
        write_json_atomic(self.path, [e.to_json_dict() for e in entries])

    def enqueue(self, branch_name: str, files_modified: list[str] | None = None) -> MergeQueueEntry:
        """Add a branch. A branch that is already pending is not added twice."""
        entries = self.load()
        for entry in entries:
            if entry.branch_name == branch_name and entry.status is MergeStatus.PENDING:
                logger.info("Branch %s is already queued", branch_name)
                return entry

        identity = parse_branch_name(branch_name)
        entry = MergeQueueEntry(
            branch_name=branch_name,
            agent_name=identity.agent_name,
            bead_id=identity.bead_id,
            files_modified=list(files_modified or []),
        )
        entries.append(entry)
        self.save(entries)
        logger.info("Enqueued %s (agent=%s, bead=%s)", branch_name, entry.agent_name or "-", entry.bead_id or "-")
        return entry

    def pending(self) -> list[MergeQueueEntry]:
        return [e for e in self.load() if e.status is MergeStatus.PENDING]


# ── Engine ───────────────────────────────────────────────────────────────────


class MergeEngine:
    """Integrates queued agent branches into the canonical branch."""

    def __init__(
        self,
        git: Git,
        queue: MergeQueue,
        registry: SessionRegistry,
        canonical_branch: str = "main",
    ):
        self.git = git
        self.queue = queue
        self.registry = registry
        self.canonical_branch = canonical_branch

    async def integrate(self, branch_name: str, dry_run: bool = False) -> MergeResult:
        """Integrate one branch and resolve its pending queue entry, if any.

        Raises:
            ValidationError: If the branch does not exist.
            MergeError: If the checkout has uncommitted tracked changes, or
                git fails outside of conflict handling.
        """
        if not dry_run:
            await self._ensure_clean_checkout()
        result = await self._integrate(branch_name, dry_run=dry_run)
        if dry_run:
            return result

        entries = self.queue.load()
        touched = False
        for entry in entries:
            if entry.branch_name == branch_name and entry.status is MergeStatus.PENDING:
                self._record(entry, result)
                touched = True
        if touched:
            self.queue.save(entries)
        return result

    async def integrate_all(self, dry_run: bool = False) -> BatchMergeResult:
        """Integrate every pending entry in enqueue order.

        A failing branch is recorded and the batch moves on.

        Raises:
            MergeError: If the checkout has uncommitted tracked changes.
                No entry is attempted in that case.
        """
        entries = self.queue.load()
        pending = [e for e in entries if e.status is MergeStatus.PENDING]
        batch = BatchMergeResult()
        if not pending:
            return batch
        if not dry_run:
            await self._ensure_clean_checkout()

        for entry in pending:
            if dry_run:
                try:
                    result = await self._integrate(entry.branch_name, dry_run=True)
                except (ForemanError, *_GIT_ERRORS) as e:
                    result = self._failure(entry.branch_name, _describe(e))
                    result.status = MergeStatus.PENDING
                batch.results.append(result)
                continue

            try:
                result = await self._integrate(entry.branch_name)
            except (ForemanError, *_GIT_ERRORS) as e:
                logger.error("Merge of %s failed: %s", entry.branch_name, _describe(e))
                result = self._failure(entry.branch_name, _describe(e))
            self._record(entry, result)
            self.queue.save(entries)
            batch.results.append(result)
            if result.success:
                batch.success_count += 1
            else:
                batch.fail_count += 1

        batch.count = len(batch.results)
        return batch

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _record(entry: MergeQueueEntry, result: MergeResult) -> None:
        if result.success:
            entry.status = MergeStatus.MERGED
            entry.resolved_tier = result.tier
            entry.error = None
        else:
            entry.status = MergeStatus.FAILED
            entry.error = result.error

    @staticmethod
    def _failure(branch_name: str, error: str, conflicts: list[str] | None = None) -> MergeResult:
        identity = parse_branch_name(branch_name)
        return MergeResult(
            branch_name=branch_name,
            status=MergeStatus.FAILED,
            agent_name=identity.agent_name,
            bead_id=identity.bead_id,
            conflicts=conflicts or [],
            error=error,
        )

    async def _ensure_clean_checkout(self) -> None:
        dirty = [e.path for e in await self.git.status()]
        if dirty:
            raise MergeError(
                f"Uncommitted changes in {self.git.cwd}; commit or stash them first: {', '.join(dirty)}",
                dirty_paths=dirty,
            )

    async def _integrate(self, branch_name: str, dry_run: bool = False) -> MergeResult:
        if not await self.git.branch_exists(branch_name):
            raise ValidationError(f"Branch not found: {branch_name}", field="branch", value=branch_name)

        identity = parse_branch_name(branch_name)
        files = await self.git.changed_files(self.canonical_branch, branch_name)
        result = MergeResult(
            branch_name=branch_name,
            agent_name=identity.agent_name,
            bead_id=identity.bead_id,
            files_modified=files,
        )
        if dry_run:
            logger.info("Dry run: %s would bring in %d file(s)", branch_name, len(files))
            return result

        checkout = await self.git.checkout(self.canonical_branch)
        if not checkout.ok:
            raise MergeError(
                f"Cannot check out {self.canonical_branch}: {checkout.stderr.strip()}",
                branch_name=branch_name,
            )
        pre_merge_head = await self.git.head()

        try:
            return await self._merge_with_tiers(result, pre_merge_head)
        except _GIT_ERRORS:
            logger.error("git failed while merging %s; rolling back", branch_name)
            await self._rollback(pre_merge_head)
            raise

    async def _merge_with_tiers(self, result: MergeResult, pre_merge_head: str) -> MergeResult:
        branch_name = result.branch_name

        # Tier 1
        merge = await self.git.merge(branch_name)
        if merge.ok:
            return self._succeed(result, ResolutionTier.CLEAN_MERGE)

        # Tier 2
        conflicted = [e for e in await self.git.status() if e.is_conflicted]
        conflicts = [e.path for e in conflicted]
        if not conflicts:
            await self._rollback(pre_merge_head)
            return self._failure(branch_name, f"git merge failed: {merge.stderr.strip() or merge.stdout.strip()}")

        structural = [e.path for e in conflicted if e.code not in CONTENT_CONFLICT_CODES]
        for entry in conflicted:
            if entry.path not in structural and await self.git.is_binary_at(branch_name, entry.path):
                structural.append(entry.path)
        if structural:
            await self._rollback(pre_merge_head)
            logger.error("Cannot auto-resolve %s: structural conflicts in %s", branch_name, ", ".join(structural))
            return self._failure(
                branch_name,
                f"Unresolvable conflicts in {len(structural)} file(s): {', '.join(structural)}",
                conflicts,
            )

        logger.warning(
            "Resolving %s by taking the incoming version of: %s", branch_name, ", ".join(conflicts)
        )
        for path in conflicts:
            taken = await self.git.take_theirs(path)
            if not taken.ok:
                await self._rollback(pre_merge_head)
                return self._failure(branch_name, f"Failed to resolve {path}: {taken.stderr.strip()}", conflicts)
        commit = await self.git.commit_no_edit()
        if not commit.ok:
            await self._rollback(pre_merge_head)
            return self._failure(branch_name, f"Failed to commit resolution: {commit.stderr.strip()}", conflicts)

        result.conflicts = conflicts
        return self._succeed(result, ResolutionTier.CONTENT_MERGE)

    async def _rollback(self, head: str) -> None:
        """Undo an in-progress merge. Does nothing if git never started one."""
        if not await self.git.merge_in_progress():
            logger.debug("No merge in progress; nothing to roll back")
            return
        await self.git.abort_merge()
        reset = await self.git.reset_hard(head)
        if not reset.ok:
            logger.error("Failed to reset to %s after aborted merge: %s", head, reset.stderr.strip())

    def _succeed(self, result: MergeResult, tier: ResolutionTier) -> MergeResult:
        result.success = True
        result.status = MergeStatus.MERGED
        result.tier = tier
        logger.info("Merged %s via %s", result.branch_name, tier.value)
        if result.agent_name:
            self._complete_session(result.agent_name, result.branch_name)
        return result

    def _complete_session(self, agent_name: str, branch_name: str) -> None:
        sessions = self.registry.load()
        changed = False
        for session in sessions:
            if session.agent_name == agent_name and session.branch_name == branch_name and session.is_active:
                session.state = SessionState.COMPLETED
                session.touch()
                changed = True
        if changed:
            try:
                self.registry.save(sessions)
            except OSError as e:
                logger.warning("Could not mark %s completed after merge: %s", agent_name, e)


def _describe(error: BaseException) -> str:
    if isinstance(error, ForemanError):
        return error.message
    if isinstance(error, asyncio.TimeoutError):
        return "git timed out"
    return str(error) or type(error).__name__
