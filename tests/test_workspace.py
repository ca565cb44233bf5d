"""Tests for attempt workspaces: isolation, apply, commit and promotion."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import GREETING_DIFF, GREETING_PY, STALE_DIFF, git
from git_integration.local_repo import LocalRepo
from orchestrator.models.attempt import AttemptState
from orchestrator.services.errors import ConfigurationError, MalformedOutputError, WorkspaceError
from workspace.attempt_manager import AttemptManager, CopyBackend, WorktreeBackend, check_isolation, create_backend


@pytest.fixture(params=["worktree", "copy"])
def isolation(request, settings) -> str:
    settings.attempt_isolation = request.param
    return request.param


@pytest.fixture
def repo(settings, base_checkout) -> LocalRepo:
    return LocalRepo(str(base_checkout), settings=settings)


@pytest.fixture
def manager(settings, repo, tmp_path, isolation) -> AttemptManager:
    return AttemptManager(repo, str(tmp_path / "work" / "task-1"), settings=settings)


class TestBackends:
    def test_factory(self, repo):
        assert isinstance(create_backend("worktree", repo), WorktreeBackend)
        assert isinstance(create_backend("copy", repo), CopyBackend)
        with pytest.raises(ConfigurationError, match="Unknown attempt isolation: 'docker'"):
            create_backend("docker", repo)

    def test_check_isolation(self):
        check_isolation("worktree")
        check_isolation("copy")
        with pytest.raises(ConfigurationError):
            check_isolation("")


class TestAttemptManager:
    @pytest.mark.asyncio
    async def test_create_is_clean_at_base(self, manager, repo):
        sha = await repo.resolve_base("main")
        attempt = await manager.create("task-1", 1, sha)
        try:
            assert attempt.state == AttemptState.READY
            assert attempt.id == "task-1-iter1"
            assert git(attempt.path, "rev-parse", "HEAD") == sha
            assert git(attempt.path, "status", "--porcelain") == ""
        finally:
            await manager.destroy(attempt)

        assert attempt.state == AttemptState.DESTROYED
        assert not Path(attempt.path).exists()

    @pytest.mark.asyncio
    async def test_apply_stages_changes_in_attempt_only(self, manager, repo, base_checkout):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha) as attempt:
            staged = await manager.apply(attempt, GREETING_DIFF)

            assert staged == ["src/greeting.py"]
            assert attempt.state == AttemptState.APPLIED
            assert "Hi, {name}" in (Path(attempt.path) / "src" / "greeting.py").read_text()
            assert not list(manager.work_dir.glob("*.diff"))

        assert (base_checkout / "src" / "greeting.py").read_text() == GREETING_PY

    @pytest.mark.asyncio
    async def test_apply_failure_reports_files(self, manager, repo):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha) as attempt:
            with pytest.raises(MalformedOutputError) as exc:
                await manager.apply(attempt, STALE_DIFF)

        assert exc.value.apply_failure
        assert exc.value.failed_files == ["src/greeting.py"]
        assert "git apply failed" in exc.value.message
        assert not list(manager.work_dir.glob("*.diff"))

    @pytest.mark.asyncio
    async def test_next_attempt_does_not_inherit_changes(self, manager, repo):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha) as first:
            await manager.apply(first, GREETING_DIFF)
            (Path(first.path) / "leftover.txt").write_text("junk")

        async with manager.attempt("task-1", 2, sha) as second:
            assert (Path(second.path) / "src" / "greeting.py").read_text() == GREETING_PY
            assert not (Path(second.path) / "leftover.txt").exists()
            assert git(second.path, "status", "--porcelain") == ""

    @pytest.mark.asyncio
    async def test_stale_directory_is_replaced(self, manager, repo):
        sha = await repo.resolve_base("main")
        stale = manager.work_dir / "attempt-1"
        stale.mkdir(parents=True)
        (stale / "crash.log").write_text("left behind")

        async with manager.attempt("task-1", 1, sha) as attempt:
            assert not (Path(attempt.path) / "crash.log").exists()
            assert (Path(attempt.path) / "src" / "app.py").exists()

    @pytest.mark.asyncio
    async def test_commit_and_promote(self, manager, repo, base_checkout):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha) as attempt:
            await manager.apply(attempt, GREETING_DIFF)
            commit_sha = await manager.commit(attempt, "vibe: say hi (iteration 1)")
            await manager.promote(attempt, "vibe/task-1")

        assert attempt.commit_sha == commit_sha
        assert git(base_checkout, "rev-parse", "refs/heads/vibe/task-1") == commit_sha
        assert git(base_checkout, "log", "-1", "--format=%s", "vibe/task-1") == "vibe: say hi (iteration 1)"
        assert git(base_checkout, "rev-parse", "HEAD") == sha

    @pytest.mark.asyncio
    async def test_promote_requires_commit(self, manager, repo):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha) as attempt:
            with pytest.raises(WorkspaceError, match="no commit to promote"):
                await manager.promote(attempt, "vibe/task-1")

    @pytest.mark.asyncio
    async def test_worktrees_are_pruned(self, manager, repo, base_checkout, isolation):
        sha = await repo.resolve_base("main")
        async with manager.attempt("task-1", 1, sha):
            pass
        worktrees = git(base_checkout, "worktree", "list", "--porcelain")
        assert worktrees.count("worktree ") == 1
