"""
Attempt Manager — a fresh, verified-clean workspace for every iteration.

Lifecycle:
    create → reset to base SHA → verify clean → apply diff → [preflight] → destroy
                                                     │
                                          commit (successful attempt only)

Nothing from a failed attempt can reach the next one: each attempt gets a
new directory derived from the task's base checkout, and the directory is
destroyed at the end of the iteration whatever the outcome. The base
checkout's branches are never touched by an attempt.

Backends:
    WorktreeBackend — ``git worktree add --detach`` (default, cheap)
    CopyBackend     — full directory copy (for repos where worktrees misbehave)
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from executor.diff_validator import extract_failed_files
from git_integration.local_repo import LocalRepo
from orchestrator.models.attempt import Attempt, AttemptState
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import ConfigurationError, MalformedOutputError, WorkspaceError

logger = structlog.get_logger()


class AttemptBackend(ABC):
    """How an attempt directory is materialised from the base checkout."""

    def __init__(self, base: LocalRepo):
        self.base = base

    @abstractmethod
    async def create(self, attempt: Attempt) -> None:
        """Create ``attempt.path`` holding the repository at ``attempt.base_sha``."""
        ...

    @abstractmethod
    async def destroy(self, attempt: Attempt) -> None:
        """Remove the attempt directory completely."""
        ...


class WorktreeBackend(AttemptBackend):
    async def create(self, attempt: Attempt) -> None:
        await self.base.add_worktree(attempt.path, attempt.base_sha)

    async def destroy(self, attempt: Attempt) -> None:
        await self.base.remove_worktree(attempt.path)
        if Path(attempt.path).exists():
            await asyncio.to_thread(shutil.rmtree, attempt.path, True)


class CopyBackend(AttemptBackend):
    async def create(self, attempt: Attempt) -> None:
        async with self.base.lock:
            await asyncio.to_thread(
                shutil.copytree, self.base.path, attempt.path, symlinks=True
            )

    async def destroy(self, attempt: Attempt) -> None:
        await asyncio.to_thread(shutil.rmtree, attempt.path, True)


BACKENDS: dict[str, type[AttemptBackend]] = {
    "worktree": WorktreeBackend,
    "copy": CopyBackend,
}


def check_isolation(kind: str) -> None:
    if kind not in BACKENDS:
        raise ConfigurationError(f"Unknown attempt isolation: {kind!r}. Use 'worktree' or 'copy'.")


def create_backend(kind: str, base: LocalRepo) -> AttemptBackend:
    check_isolation(kind)
    return BACKENDS[kind](base)


class AttemptManager:
    """Creates, applies to, and tears down attempt workspaces for one task."""

    def __init__(
        self,
        base: LocalRepo,
        work_dir: str,
        backend: Optional[AttemptBackend] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.base = base
        self.work_dir = Path(work_dir)
        self.backend = backend or create_backend(self.settings.attempt_isolation, base)

    async def create(self, task_id: str, iteration: int, base_sha: str) -> Attempt:
        attempt = Attempt(
            task_id=task_id,
            iteration=iteration,
            path=str(self.work_dir / f"attempt-{iteration}"),
            base_sha=base_sha,
        )
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if Path(attempt.path).exists():
            # left behind by a crashed run
            await self.backend.destroy(attempt)

        try:
            await self.backend.create(attempt)
            await self.base.reset_clean(attempt.path, base_sha)
            dirty = await self.base.status_porcelain(attempt.path)
        except WorkspaceError:
            attempt.state = AttemptState.ERROR
            await self.destroy(attempt)
            raise

        if dirty:
            attempt.state = AttemptState.ERROR
            await self.destroy(attempt)
            raise WorkspaceError(f"Attempt workspace {attempt.id} is not clean after reset:\n{dirty[:500]}")

        attempt.state = AttemptState.READY
        await logger.ainfo("Attempt workspace ready", attempt=attempt.id, path=attempt.path)
        return attempt

    async def apply(self, attempt: Attempt, diff: str) -> list[str]:
        """Stage ``diff`` in the attempt. Returns the staged paths.

        Raises MalformedOutputError with git's stderr when the patch does not apply.
        """
        patch_path = self.work_dir / f"{attempt.id}.diff"
        await asyncio.to_thread(patch_path.write_text, diff)
        try:
            for args in (("apply", "--check", "--index"), ("apply", "--index")):
                result = await self.base.git(*args, str(patch_path), cwd=attempt.path, check=False)
                if not result.ok:
                    stderr = result.stderr.strip() or result.stdout.strip()
                    raise MalformedOutputError(
                        f"git apply failed:\n{stderr}",
                        failed_files=extract_failed_files(stderr),
                        apply_failure=True,
                    )
        finally:
            patch_path.unlink(missing_ok=True)

        attempt.staged_files = await self.base.staged_files(attempt.path)
        attempt.state = AttemptState.APPLIED
        return attempt.staged_files

    async def commit(self, attempt: Attempt, message: str) -> str:
        attempt.commit_sha = await self.base.commit(attempt.path, message)
        attempt.state = AttemptState.COMMITTED
        return attempt.commit_sha

    async def promote(self, attempt: Attempt, branch: str) -> None:
        """Point ``branch`` in the base checkout at the attempt's commit."""
        if attempt.commit_sha is None:
            raise WorkspaceError(f"Attempt {attempt.id} has no commit to promote")
        if isinstance(self.backend, WorktreeBackend):
            # worktrees share the object store, the commit is already there
            await self.base.set_branch(branch, attempt.commit_sha)
        else:
            await self.base.fetch_into_branch(attempt.path, branch)

    async def destroy(self, attempt: Attempt) -> None:
        """Tear the attempt down. Never raises: cleanup must not mask the real outcome."""
        try:
            await self.backend.destroy(attempt)
        except Exception as e:
            await logger.awarning("Attempt teardown failed", attempt=attempt.id, error=str(e))
        attempt.mark_destroyed()

    @asynccontextmanager
    async def attempt(self, task_id: str, iteration: int, base_sha: str) -> AsyncIterator[Attempt]:
        attempt = await self.create(task_id, iteration, base_sha)
        try:
            yield attempt
        finally:
            await self.destroy(attempt)
