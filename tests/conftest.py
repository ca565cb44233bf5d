"""Shared test fixtures for the Vibe test suite."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from llm.base import LLMProvider, LLMResponse, LLMUsage
from orchestrator.models.task import Task
from orchestrator.services.config import Settings
from orchestrator.services.errors import TransientInfraError
from orchestrator.services.log_hub import EventLog, LogHub
from orchestrator.services.store import TaskStore

GREETING_PY = 'def greet(name):\n    return f"Hello, {name}!"\n'

APP_PY = "from .greeting import greet\n\n\ndef main():\n    print(greet(\"world\"))\n"

GREETING_DIFF = """diff --git a/src/greeting.py b/src/greeting.py
--- a/src/greeting.py
+++ b/src/greeting.py
@@ -1,2 +1,2 @@
 def greet(name):
-    return f"Hello, {name}!"
+    return f"Hi, {name}!"
"""

# context lines that do not match the file, so git apply rejects it
STALE_DIFF = """diff --git a/src/greeting.py b/src/greeting.py
--- a/src/greeting.py
+++ b/src/greeting.py
@@ -1,2 +1,2 @@
 def welcome(name):
-    return f"Welcome, {name}!"
+    return f"Hi, {name}!"
"""

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def git(cwd, *args: str) -> str:
    """Run git synchronously for fixture setup and assertions."""
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env={**os.environ, **_GIT_ENV},
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


class FakeProvider(LLMProvider):
    """An LLM provider that replays scripted answers instead of calling an API.

    Each script entry is either the text to return or an exception to raise.
    """

    def __init__(self, script: list, model: str = "fake-model"):
        super().__init__(api_key="test-key", model=model, base_url="http://llm.invalid")
        self.script = list(script)
        self.calls: list[dict] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def _headers(self) -> dict[str, str]:
        return {}

    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResponse:
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        if not self.script:
            raise TransientInfraError("fake provider script exhausted")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return LLMResponse(text=item, usage=LLMUsage.of(100, 50))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temp directory with every external command disabled."""
    return Settings(
        env="test",
        api_key="",
        database_path=str(tmp_path / "vibe.db"),
        repos_base_dir=str(tmp_path / "repos"),
        work_base_dir=str(tmp_path / "work"),
        patches_dir=str(tmp_path / "patches"),
        previews_dir=str(tmp_path / "previews"),
        anthropic_api_key="test-anthropic-key",
        openai_api_key="",
        gemini_api_key="",
        llm_provider="anthropic",
        llm_model="",
        github_token="ghp_test",
        git_timeout_seconds=30,
        max_iterations=3,
        llm_transient_retries=2,
        lint_command="",
        typecheck_command="",
        test_command="",
        smoke_command="",
        preflight_timeout_seconds=30,
        security_scan_enabled=True,
        preview_build_command="",
        attempt_isolation="worktree",
        worker_pool_size=1,
    )


@pytest.fixture
def store():
    """An in-memory TaskStore."""
    s = TaskStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def log_hub() -> LogHub:
    return LogHub()


@pytest.fixture
def events(store, log_hub) -> EventLog:
    return EventLog(store, log_hub)


@pytest.fixture
def sample_task() -> Task:
    """Return a sample Task with sensible defaults."""
    return Task(
        user_prompt="Change the greeting to say Hi instead of Hello",
        repository_url="https://github.com/example-org/greeter",
    )


@pytest.fixture
def origin_repo(tmp_path) -> str:
    """A bare 'origin' repository with one commit on main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    origin = tmp_path / "origin.git"
    git(tmp_path, "init", "--bare", "--initial-branch=main", str(origin))

    seed = tmp_path / "seed"
    git(tmp_path, "init", "--initial-branch=main", str(seed))
    (seed / "src").mkdir()
    (seed / "src" / "greeting.py").write_text(GREETING_PY)
    (seed / "src" / "app.py").write_text(APP_PY)
    (seed / "README.md").write_text("# Greeter\n\nSays hello.\n")
    git(seed, "add", "-A")
    git(seed, "commit", "-m", "Initial commit")
    git(seed, "remote", "add", "origin", str(origin))
    git(seed, "push", "origin", "main")
    return str(origin)


@pytest.fixture
def base_checkout(tmp_path, origin_repo) -> Path:
    """A working clone of ``origin_repo``."""
    path = tmp_path / "base"
    git(tmp_path, "clone", origin_repo, str(path))
    return path
