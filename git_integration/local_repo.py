"""
Local git operations — base checkouts, branches, commits, pushes and tags.

Every command goes through ``run_command`` under GIT_TIMEOUT_SECONDS.
Credentials are handed to git through GIT_CONFIG_* environment variables as
an HTTP auth header, so they never land in argv, remote URLs or .git/config.

Operations that mutate a shared base checkout (fetch, worktree add/remove,
branch moves) hold a per-path lock; two tasks on the same project never
race on the repository's index or ref locks.
"""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Optional

import structlog

from executor.process import CommandResult, run_command
from git_integration.git_manager import redact_url
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import GitCommandError

logger = structlog.get_logger()

_repo_locks: dict[str, asyncio.Lock] = {}


def repo_lock(path: str) -> asyncio.Lock:
    key = str(Path(path).resolve())
    lock = _repo_locks.get(key)
    if lock is None:
        lock = _repo_locks[key] = asyncio.Lock()
    return lock


def auth_env(credentials: Optional[dict]) -> dict[str, str]:
    """Environment that makes git send HTTP basic auth for github.com."""
    env = {"GIT_TERMINAL_PROMPT": "0"}
    if credentials and credentials.get("password"):
        token = base64.b64encode(
            f"{credentials['username']}:{credentials['password']}".encode()
        ).decode()
        env.update(
            {
                "GIT_CONFIG_COUNT": "1",
                "GIT_CONFIG_KEY_0": "http.https://github.com/.extraheader",
                "GIT_CONFIG_VALUE_0": f"AUTHORIZATION: basic {token}",
            }
        )
    return env


class LocalRepo:
    """A git checkout on local disk."""

    def __init__(
        self,
        path: str,
        credentials: Optional[dict] = None,
        settings: Optional[Settings] = None,
    ):
        self.path = str(path)
        self.settings = settings or get_settings()
        self.env = {
            **auth_env(credentials),
            "GIT_AUTHOR_NAME": self.settings.git_author_name,
            "GIT_AUTHOR_EMAIL": self.settings.git_author_email,
            "GIT_COMMITTER_NAME": self.settings.git_author_name,
            "GIT_COMMITTER_EMAIL": self.settings.git_author_email,
        }

    @property
    def lock(self) -> asyncio.Lock:
        return repo_lock(self.path)

    async def git(
        self, *args: str, cwd: Optional[str] = None, check: bool = True
    ) -> CommandResult:
        result = await run_command(
            ["git", *args],
            cwd=cwd or self.path,
            timeout=self.settings.git_timeout_seconds,
            env=self.env,
        )
        if check and not result.ok:
            raise GitCommandError(list(args), result.exit_code, result.stderr or result.stdout)
        return result

    # ── Base checkout ─────────────────────────────────────────────

    @classmethod
    async def ensure_checkout(
        cls,
        url: str,
        path: str,
        credentials: Optional[dict] = None,
        settings: Optional[Settings] = None,
    ) -> tuple["LocalRepo", bool]:
        """Clone ``url`` into ``path``, or fetch if a clone is already there.

        Returns (repo, freshly_cloned).
        """
        repo = cls(path, credentials=credentials, settings=settings)
        async with repo.lock:
            if (Path(path) / ".git").exists():
                await repo.git("fetch", "--all", "--prune")
                await logger.ainfo("Fetched base checkout", path=path)
                return repo, False

            Path(path).parent.mkdir(parents=True, exist_ok=True)
            await repo.git("clone", "--no-tags", url, path, cwd=str(Path(path).parent))
            await logger.ainfo("Cloned repository", url=redact_url(url), path=path)
            return repo, True

    async def resolve_base(self, branch: str) -> Optional[str]:
        """SHA of ``origin/<branch>``, falling back to the local branch."""
        for ref in (f"refs/remotes/origin/{branch}", f"refs/heads/{branch}"):
            result = await self.git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
            if result.ok and result.stdout.strip():
                return result.stdout.strip()
        return None

    async def has_remote(self, name: str = "origin") -> bool:
        result = await self.git("remote", check=False)
        return name in result.stdout.split()

    # ── Worktrees ─────────────────────────────────────────────────

    async def add_worktree(self, path: str, sha: str) -> None:
        async with self.lock:
            await self.git("worktree", "add", "--detach", "--force", path, sha)

    async def remove_worktree(self, path: str) -> None:
        async with self.lock:
            await self.git("worktree", "remove", "--force", path, check=False)
            await self.git("worktree", "prune", check=False)

    # ── Working tree state (run inside any checkout) ──────────────

    async def reset_clean(self, cwd: str, sha: str) -> None:
        await self.git("reset", "--hard", sha, cwd=cwd)
        await self.git("clean", "-fdx", cwd=cwd)

    async def status_porcelain(self, cwd: str) -> str:
        result = await self.git("status", "--porcelain", "--untracked-files=all", cwd=cwd)
        return result.stdout.strip()

    async def staged_files(self, cwd: str) -> list[str]:
        result = await self.git("diff", "--cached", "--name-only", cwd=cwd)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def commit(self, cwd: str, message: str) -> str:
        await self.git("commit", "--no-verify", "-m", message, cwd=cwd)
        result = await self.git("rev-parse", "HEAD", cwd=cwd)
        return result.stdout.strip()

    # ── Refs ──────────────────────────────────────────────────────

    async def set_branch(self, branch: str, sha: str) -> None:
        """Point ``branch`` at ``sha`` (created if missing)."""
        async with self.lock:
            await self.git("branch", "--force", branch, sha)

    async def fetch_into_branch(self, source_path: str, branch: str) -> None:
        """Copy HEAD of another checkout into ``branch`` of this one."""
        async with self.lock:
            await self.git("fetch", "--no-tags", source_path, f"+HEAD:refs/heads/{branch}")

    async def push_branch(self, branch: str, remote: str = "origin") -> None:
        await self.git("push", "--force", remote, f"refs/heads/{branch}:refs/heads/{branch}")

    async def tag(self, name: str, ref: str) -> None:
        await self.git("tag", "--force", name, ref)
