"""Central configuration for the Vibe executor."""

from __future__ import annotations

import os
from functools import lru_cache

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env file before reading any env vars
load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Core
    env: str = os.getenv("VIBE_ENV", "development")
    log_level: str = os.getenv("VIBE_LOG_LEVEL", "INFO")
    api_key: str = os.getenv("VIBE_API_KEY", "")
    host: str = os.getenv("VIBE_HOST", "0.0.0.0")
    port: int = int(os.getenv("VIBE_PORT", "8000"))
    cors_origins: str = os.getenv("VIBE_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
    default_tenant_id: str = os.getenv("DEFAULT_TENANT_ID", "default")

    # Database
    database_path: str = os.getenv("DATABASE_PATH", "/data/vibe.db")

    # GitHub
    github_token: str = os.getenv("GITHUB_TOKEN", "")
    git_author_name: str = os.getenv("GIT_AUTHOR_NAME", "Vibe Executor")
    git_author_email: str = os.getenv("GIT_AUTHOR_EMAIL", "vibe@users.noreply.github.com")
    git_timeout_seconds: int = int(os.getenv("GIT_TIMEOUT_SECONDS", "120"))

    # LLM providers
    llm_provider: str = os.getenv("LLM_PROVIDER", "anthropic")  # "anthropic", "openai" or "gemini"
    llm_model: str = os.getenv("LLM_MODEL", "")
    anthropic_api_key: str = os.getenv("ANTHROPIC_API_KEY", "")
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    llm_max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "4096"))
    llm_timeout_seconds: int = int(os.getenv("LLM_TIMEOUT_SECONDS", "120"))
    llm_transient_retries: int = int(os.getenv("LLM_TRANSIENT_RETRIES", "2"))

    # Budgets
    max_iterations: int = int(os.getenv("MAX_ITERATIONS", "6"))
    max_context_size: int = int(os.getenv("MAX_CONTEXT_SIZE", "50000"))
    max_diff_lines: int = int(os.getenv("MAX_DIFF_LINES", "5000"))
    context_skip_patterns: str = os.getenv(
        "CONTEXT_SKIP_PATTERNS",
        "node_modules,dist,build,.git,__pycache__,.venv,venv,coverage,*.min.js,*.lock,*.map,vendor,target",
    )

    # Worker pool
    worker_pool_size: int = int(os.getenv("WORKER_POOL_SIZE", "2"))

    # Preflight stages (blank = skipped)
    lint_command: str = os.getenv("LINT_COMMAND", "")
    typecheck_command: str = os.getenv("TYPECHECK_COMMAND", "")
    test_command: str = os.getenv("TEST_COMMAND", "")
    smoke_command: str = os.getenv("SMOKE_COMMAND", "")
    preflight_timeout_seconds: int = int(os.getenv("PREFLIGHT_TIMEOUT_SECONDS", "300"))

    # Static security scan of changed files, run after preflight
    security_scan_enabled: bool = os.getenv("SECURITY_SCAN_ENABLED", "true").lower() == "true"

    # Attempt isolation
    attempt_isolation: str = os.getenv("ATTEMPT_ISOLATION", "worktree")  # "worktree" or "copy"

    # Directories
    repos_base_dir: str = os.getenv("REPOS_BASE_DIR", "/data/repos")
    work_base_dir: str = os.getenv("WORK_BASE_DIR", "/data/work")
    patches_dir: str = os.getenv("PATCHES_DIR", "/data/patches")
    previews_dir: str = os.getenv("PREVIEWS_DIR", "/data/previews")

    # Static previews
    preview_build_command: str = os.getenv("PREVIEW_BUILD_COMMAND", "")
    preview_output_dir: str = os.getenv("PREVIEW_OUTPUT_DIR", "dist")
    preview_base_url: str = os.getenv("PREVIEW_BASE_URL", "/previews")

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def preflight_stages(self) -> list[tuple[str, str]]:
        """Ordered (stage, command) pairs, including unconfigured stages."""
        return [
            ("lint", self.lint_command),
            ("typecheck", self.typecheck_command),
            ("test", self.test_command),
            ("smoke", self.smoke_command),
        ]

    def validate_production_settings(self) -> list[str]:
        """Return warnings for insecure settings in production."""
        warnings: list[str] = []
        if self.is_production:
            if not self.api_key:
                warnings.append("VIBE_API_KEY is not set — API is unauthenticated")
            if self.attempt_isolation not in ("worktree", "copy"):
                warnings.append(f"ATTEMPT_ISOLATION={self.attempt_isolation!r} is not recognised")
        return warnings

    def validate_required_keys(self) -> list[str]:
        """Check that required API keys are configured for the selected provider.

        Returns a list of warning messages for missing configuration. Tasks
        still fail fast with a ConfigurationError when they need a missing key.
        """
        warnings: list[str] = []

        if self.llm_provider == "anthropic" and not self.anthropic_api_key:
            warnings.append("LLM_PROVIDER=anthropic requires ANTHROPIC_API_KEY")
        elif self.llm_provider == "openai" and not self.openai_api_key:
            warnings.append("LLM_PROVIDER=openai requires OPENAI_API_KEY")
        elif self.llm_provider == "gemini" and not self.gemini_api_key:
            warnings.append("LLM_PROVIDER=gemini requires GEMINI_API_KEY")

        if not self.github_token:
            warnings.append("GITHUB_TOKEN is not set — pull requests cannot be created")

        if not any(command.strip() for _, command in self.preflight_stages):
            warnings.append("No preflight commands configured — diffs will not be validated")

        return warnings


@lru_cache
def get_settings() -> Settings:
    return Settings()
