"""Tests for the merge queue and tiered merge engine, against real git repos."""

from __future__ import annotations

import asyncio
import json

import pytest

from foreman.errors import MergeError, ValidationError
from foreman.git import Git
from foreman.merge import MergeEngine, MergeQueue
from foreman.models import AgentSession, MergeStatus, ResolutionTier, SessionState
from foreman.registry import SessionRegistry


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def queue(state_dir) -> MergeQueue:
    return MergeQueue(state_dir / "merge-queue.json")


@pytest.fixture
def sessions(state_dir) -> SessionRegistry:
    return SessionRegistry(state_dir / "sessions.json")


@pytest.fixture
def engine(git_repo, queue, sessions) -> MergeEngine:
    return MergeEngine(Git(git_repo), queue, sessions, "main")


@pytest.fixture
def make_branch(git_repo, run_git, commit):
    """Create ``branch`` off main with the given files committed, then return to main."""

    def _make(branch: str, files: dict[str, str | bytes], delete: tuple[str, ...] = ()) -> None:
        run_git(git_repo, "checkout", "-q", "-b", branch, "main")
        for path, content in files.items():
            commit(git_repo, path, content)
        for path in delete:
            run_git(git_repo, "rm", "-q", path)
            run_git(git_repo, "commit", "-q", "-m", f"delete {path}")
        run_git(git_repo, "checkout", "-q", "main")

    return _make


class TestQueue:
    def test_enqueue_parses_identity(self, queue):
        entry = queue.enqueue("foreman/builder-1/bead-42", ["src/a.py"])
        assert entry.agent_name == "builder-1"
        assert entry.bead_id == "bead-42"
        assert entry.status is MergeStatus.PENDING
        assert queue.load() == [entry]

    def test_enqueue_idempotent_for_pending(self, queue):
        first = queue.enqueue("foreman/a/b1")
        second = queue.enqueue("foreman/a/b1", ["ignored.py"])
        assert second == first
        assert len(queue.load()) == 1

    def test_requeue_after_failure(self, queue):
        queue.enqueue("foreman/a/b1")
        entries = queue.load()
        entries[0].status = MergeStatus.FAILED
        queue.save(entries)
        queue.enqueue("foreman/a/b1")
        assert [e.status for e in queue.load()] == [MergeStatus.FAILED, MergeStatus.PENDING]

    def test_pending_in_enqueue_order(self, queue):
        for name in ("foreman/a/1", "foreman/b/2", "foreman/c/3"):
            queue.enqueue(name)
        assert [e.branch_name for e in queue.pending()] == ["foreman/a/1", "foreman/b/2", "foreman/c/3"]

    def test_corrupt_queue_is_empty(self, queue):
        queue.path.parent.mkdir(parents=True)
        queue.path.write_text("not json")
        assert queue.load() == []

    def test_malformed_row_skipped(self, queue):
        good = queue.enqueue("foreman/a/1")
        rows = [good.to_json_dict(), {"branchName": 7}, {"status": "pending"}]
        queue.path.write_text(json.dumps(rows))

        assert queue.load() == [good]
        queue.enqueue("foreman/b/2")
        assert [e.branch_name for e in queue.load()] == ["foreman/a/1", "foreman/b/2"]

    def test_non_namespaced_branch(self, queue):
        entry = queue.enqueue("hotfix")
        assert entry.agent_name == ""
        assert entry.bead_id == ""


class TestIntegrate:
    async def test_clean_merge(self, engine, git_repo, make_branch):
        make_branch("ns/agent1/bead-100", {"src/new.py": "print('hi')\n"})

        result = await engine.integrate("ns/agent1/bead-100")

        assert result.success is True
        assert result.tier is ResolutionTier.CLEAN_MERGE
        assert result.status is MergeStatus.MERGED
        assert result.agent_name == "agent1"
        assert result.bead_id == "bead-100"
        assert result.files_modified == ["src/new.py"]
        assert (git_repo / "src" / "new.py").exists()

    async def test_content_merge_takes_incoming(self, engine, git_repo, make_branch, commit):
        commit(git_repo, "shared.txt", "base\n")
        make_branch("foreman/b1/bead-1", {"shared.txt": "incoming version\n"})
        commit(git_repo, "shared.txt", "target version\n")

        result = await engine.integrate("foreman/b1/bead-1")

        assert result.success is True
        assert result.tier is ResolutionTier.CONTENT_MERGE
        assert result.conflicts == ["shared.txt"]
        assert (git_repo / "shared.txt").read_text() == "incoming version\n"

    async def test_structural_conflict_rolls_back(self, engine, git_repo, make_branch, commit, run_git):
        commit(git_repo, "doomed.txt", "original\n")
        make_branch("foreman/b1/bead-2", {"doomed.txt": "modified on branch\n"})
        run_git(git_repo, "rm", "-q", "doomed.txt")
        run_git(git_repo, "commit", "-q", "-m", "delete doomed")
        head_before = run_git(git_repo, "rev-parse", "HEAD")

        result = await engine.integrate("foreman/b1/bead-2")

        assert result.success is False
        assert result.status is MergeStatus.FAILED
        assert "doomed.txt" in result.conflicts
        assert "doomed.txt" in result.error
        assert run_git(git_repo, "rev-parse", "HEAD") == head_before
        assert run_git(git_repo, "status", "--porcelain", "--untracked-files=no") == ""

    async def test_binary_conflict_rolls_back(self, engine, git_repo, make_branch, commit, run_git):
        commit(git_repo, "blob.bin", b"\x00\x01base")
        make_branch("foreman/b1/bead-3", {"blob.bin": b"\x00\x02incoming"})
        commit(git_repo, "blob.bin", b"\x00\x03target")
        head_before = run_git(git_repo, "rev-parse", "HEAD")

        result = await engine.integrate("foreman/b1/bead-3")

        assert result.success is False
        assert result.conflicts == ["blob.bin"]
        assert run_git(git_repo, "rev-parse", "HEAD") == head_before
        assert (git_repo / "blob.bin").read_bytes() == b"\x00\x03target"

    async def test_unknown_branch(self, engine):
        with pytest.raises(ValidationError, match="nonexistent-branch"):
            await engine.integrate("nonexistent-branch")

    async def test_dry_run_changes_nothing(self, engine, git_repo, make_branch, run_git, queue):
        make_branch("foreman/b1/bead-4", {"feature.py": "x = 1\n"})
        queue.enqueue("foreman/b1/bead-4")
        head_before = run_git(git_repo, "rev-parse", "HEAD")

        result = await engine.integrate("foreman/b1/bead-4", dry_run=True)

        assert result.success is False
        assert result.status is MergeStatus.PENDING
        assert result.files_modified == ["feature.py"]
        assert run_git(git_repo, "rev-parse", "HEAD") == head_before
        assert not (git_repo / "feature.py").exists()
        assert queue.load()[0].status is MergeStatus.PENDING

    async def test_checks_out_canonical_branch(self, engine, git_repo, make_branch, run_git):
        make_branch("foreman/b1/bead-5", {"f.py": "1\n"})
        run_git(git_repo, "checkout", "-q", "-b", "elsewhere")

        result = await engine.integrate("foreman/b1/bead-5")

        assert result.success
        assert run_git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    async def test_resolves_queue_entry(self, engine, make_branch, queue):
        make_branch("foreman/b1/bead-6", {"g.py": "1\n"})
        queue.enqueue("foreman/b1/bead-6")

        await engine.integrate("foreman/b1/bead-6")

        entry = queue.load()[0]
        assert entry.status is MergeStatus.MERGED
        assert entry.resolved_tier is ResolutionTier.CLEAN_MERGE

    async def test_marks_agent_session_completed(self, engine, make_branch, sessions):
        make_branch("foreman/builder-9/bead-7", {"h.py": "1\n"})
        sessions.save(
            [
                AgentSession(
                    id="s1",
                    agent_name="builder-9",
                    capability="builder",
                    worktree_path="/tmp/builder-9",
                    branch_name="foreman/builder-9/bead-7",
                    multiplexer_session_id="foreman-builder-9",
                    state=SessionState.WORKING,
                )
            ]
        )

        await engine.integrate("foreman/builder-9/bead-7")

        assert sessions.load()[0].state is SessionState.COMPLETED

    async def test_refuses_dirty_checkout(self, engine, git_repo, make_branch, run_git):
        make_branch("foreman/b1/bead-8", {"README.md": "from the branch\n"})
        (git_repo / "README.md").write_text("unsaved local edit\n")
        head_before = run_git(git_repo, "rev-parse", "HEAD")

        with pytest.raises(MergeError, match="README.md") as exc_info:
            await engine.integrate("foreman/b1/bead-8")

        assert exc_info.value.context["dirty_paths"] == ["README.md"]
        assert (git_repo / "README.md").read_text() == "unsaved local edit\n"
        assert run_git(git_repo, "rev-parse", "HEAD") == head_before

    async def test_untracked_file_in_the_way_is_kept(self, engine, git_repo, make_branch, run_git):
        make_branch("foreman/b1/bead-9", {"notes.txt": "from the branch\n"})
        (git_repo / "notes.txt").write_text("local scratch\n")
        head_before = run_git(git_repo, "rev-parse", "HEAD")

        result = await engine.integrate("foreman/b1/bead-9")

        assert result.success is False
        assert "git merge failed" in result.error
        assert (git_repo / "notes.txt").read_text() == "local scratch\n"
        assert run_git(git_repo, "rev-parse", "HEAD") == head_before


class TestIntegrateAll:
    async def test_two_clean_entries(self, engine, git_repo, make_branch, queue):
        make_branch("foreman/a/1", {"a.py": "a\n"})
        make_branch("foreman/b/2", {"b.py": "b\n"})
        queue.enqueue("foreman/a/1")
        queue.enqueue("foreman/b/2")

        batch = await engine.integrate_all()

        assert batch.success_count == 2
        assert batch.fail_count == 0
        assert batch.count == 2
        assert [e.status for e in queue.load()] == [MergeStatus.MERGED, MergeStatus.MERGED]
        assert (git_repo / "a.py").exists()
        assert (git_repo / "b.py").exists()

    async def test_empty_queue(self, engine, queue):
        batch = await engine.integrate_all()
        assert batch.results == []
        assert batch.count == 0
        assert not queue.path.exists()

    async def test_failure_does_not_abort_batch(self, engine, git_repo, make_branch, queue, commit, run_git):
        commit(git_repo, "doomed.txt", "original\n")
        make_branch("foreman/a/bad", {"doomed.txt": "changed\n"})
        run_git(git_repo, "rm", "-q", "doomed.txt")
        run_git(git_repo, "commit", "-q", "-m", "delete doomed")
        make_branch("foreman/b/good", {"good.py": "ok\n"})
        queue.enqueue("foreman/a/bad")
        queue.enqueue("foreman/c/vanished")
        queue.enqueue("foreman/b/good")

        batch = await engine.integrate_all()

        assert batch.success_count == 1
        assert batch.fail_count == 2
        entries = {e.branch_name: e for e in queue.load()}
        assert entries["foreman/a/bad"].status is MergeStatus.FAILED
        assert "doomed.txt" in entries["foreman/a/bad"].error
        assert entries["foreman/c/vanished"].status is MergeStatus.FAILED
        assert "foreman/c/vanished" in entries["foreman/c/vanished"].error
        assert entries["foreman/b/good"].status is MergeStatus.MERGED

    async def test_dry_run_counts_nothing(self, engine, make_branch, queue):
        make_branch("foreman/a/1", {"a.py": "a\n"})
        queue.enqueue("foreman/a/1")
        before = queue.path.read_text()

        batch = await engine.integrate_all(dry_run=True)

        assert batch.count == 1
        assert batch.success_count == 0
        assert batch.fail_count == 0
        assert batch.results[0].status is MergeStatus.PENDING
        assert queue.path.read_text() == before

    async def test_merged_entries_skipped(self, engine, make_branch, queue):
        make_branch("foreman/a/1", {"a.py": "a\n"})
        queue.enqueue("foreman/a/1")
        await engine.integrate_all()

        batch = await engine.integrate_all()
        assert batch.count == 0

    async def test_dirty_checkout_attempts_nothing(self, engine, git_repo, make_branch, queue, run_git):
        make_branch("foreman/a/1", {"a.py": "a\n"})
        queue.enqueue("foreman/a/1")
        (git_repo / "README.md").write_text("unsaved local edit\n")

        with pytest.raises(MergeError, match="Uncommitted changes"):
            await engine.integrate_all()

        assert queue.load()[0].status is MergeStatus.PENDING
        assert not (git_repo / "a.py").exists()
        assert (git_repo / "README.md").read_text() == "unsaved local edit\n"

    @pytest.mark.parametrize(
        "error, message",
        [(asyncio.TimeoutError(), "git timed out"), (OSError("git vanished"), "git vanished")],
    )
    async def test_git_process_failure_does_not_abort_batch(
        self, git_repo, make_branch, queue, sessions, error, message
    ):
        class StallingGit(Git):
            async def merge(self, branch):
                if branch == "foreman/a/slow":
                    raise error
                return await super().merge(branch)

        make_branch("foreman/a/slow", {"slow.py": "1\n"})
        make_branch("foreman/b/fast", {"fast.py": "2\n"})
        queue.enqueue("foreman/a/slow")
        queue.enqueue("foreman/b/fast")

        batch = await MergeEngine(StallingGit(git_repo), queue, sessions, "main").integrate_all()

        assert batch.success_count == 1
        assert batch.fail_count == 1
        entries = {e.branch_name: e for e in queue.load()}
        assert entries["foreman/a/slow"].status is MergeStatus.FAILED
        assert entries["foreman/a/slow"].error == message
        assert entries["foreman/b/fast"].status is MergeStatus.MERGED
        assert (git_repo / "fast.py").exists()
