"""LLM Diff Generator — turns (prompt, context, previous error) into a validated unified diff."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from executor.context_builder import ProjectContext, format_context
from executor.diff_validator import (
    NO_CHANGES,
    normalize_llm_output,
    sanitize_unified_diff,
    validate_unified_diff,
)
from llm.base import LLMProvider, LLMUsage
from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import MalformedOutputError

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are a code modification engine.
Given a user request and repository context, output ONLY a valid unified diff (git diff format).
- Do NOT include any explanation, prose, or markdown code fences.
- The diff must apply cleanly with: git apply --index
- Every file block starts with "diff --git a/<path> b/<path>" followed by "---" and "+++" headers.
- Paths must be relative to the repository root.
- To create a new file, use /dev/null as the source path.
- Hunk headers must have correct line counts and context lines must match the file exactly.
- If no change is needed, output exactly: NO_CHANGES"""

FALLBACK_INSTRUCTIONS = """
For each listed file, emit a diff that deletes every existing line and adds the complete new
file content, with a single hunk covering the whole file. Do not try to match small hunks."""


@dataclass
class DiffResult:
    diff: str
    usage: LLMUsage

    @property
    def no_changes(self) -> bool:
        return self.diff == NO_CHANGES


class DiffGenerator:
    """Builds the prompt, calls the bound provider, validates the answer."""

    def __init__(self, provider: LLMProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    def build_user_prompt(
        self,
        prompt: str,
        context: ProjectContext,
        previous_error: Optional[str] = None,
        fallback_files: Optional[list[str]] = None,
    ) -> str:
        sections = [f"## Task\n{prompt}"]
        if previous_error:
            sections.append(
                "## Previous Attempt Failed\n"
                "Your previous diff was rejected with the error below. Fix the cause and "
                f"produce a corrected diff against the ORIGINAL files.\n\n{previous_error}"
            )
        if fallback_files is not None:
            listed = ", ".join(fallback_files) if fallback_files else "every file you change"
            sections.append(f"## FALLBACK MODE for files: {listed}{FALLBACK_INSTRUCTIONS}")
        if context.truncated:
            sections.append("Note: the repository context below was truncated to fit the size limit.")
        sections.append(f"## Repository Context\n{format_context(context) or '(no files selected)'}")
        return "\n\n".join(sections)

    async def generate_diff(
        self,
        prompt: str,
        context: ProjectContext,
        previous_error: Optional[str] = None,
        fallback_files: Optional[list[str]] = None,
    ) -> DiffResult:
        """Return a diff ready for ``git apply`` or the NO_CHANGES sentinel.

        Raises MalformedOutputError (carrying the token usage) when the answer
        is not a usable diff. Provider errors propagate unchanged.
        """
        user_prompt = self.build_user_prompt(prompt, context, previous_error, fallback_files)
        response = await self.provider.generate(
            SYSTEM_PROMPT, user_prompt, self.settings.llm_max_tokens
        )

        normalized = normalize_llm_output(response.text)
        if normalized == NO_CHANGES:
            return DiffResult(diff=NO_CHANGES, usage=response.usage)

        sanitized = sanitize_unified_diff(normalized)
        if sanitized is None:
            await logger.awarning("LLM output rejected by sanitizer", preview=normalized[:200])
            raise MalformedOutputError(
                "LLM output is not a bare unified diff: it has commentary, markdown fences "
                "or no 'diff --git' header",
                usage=response.usage,
            )

        validation = validate_unified_diff(sanitized, self.settings.max_diff_lines)
        if not validation.ok:
            raise MalformedOutputError(
                "Invalid unified diff: " + "; ".join(validation.errors), usage=response.usage
            )

        return DiffResult(diff=sanitized, usage=response.usage)
