"""
Preflight — lint, typecheck, test and smoke commands run inside an attempt.

Stages run in a fixed order and stop at the first failure. A stage with no
command is skipped, never failed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from executor.process import run_command, tail
from orchestrator.services.config import Settings, get_settings

logger = structlog.get_logger()

SKIPPED = "skipped"


@dataclass
class PreflightResult:
    success: bool
    stage: str
    output: str = ""
    error: Optional[str] = None
    duration_seconds: float = 0.0
    stages_run: list[str] = field(default_factory=list)
    stages_skipped: list[str] = field(default_factory=list)


class PreflightRunner:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def run(self, workspace: str) -> PreflightResult:
        started = time.monotonic()
        timeout = self.settings.preflight_timeout_seconds
        run: list[str] = []
        skipped: list[str] = []

        for stage, command in self.settings.preflight_stages:
            if not command.strip():
                skipped.append(stage)
                continue

            await logger.ainfo("Running preflight stage", stage=stage, workspace=workspace)
            result = await run_command(command, cwd=workspace, timeout=timeout)
            run.append(stage)

            if not result.ok:
                if result.timed_out:
                    error = f"{stage} timed out after {timeout}s"
                else:
                    error = f"{stage} exited with code {result.exit_code}"
                await logger.awarning("Preflight stage failed", stage=stage, exit_code=result.exit_code)
                return PreflightResult(
                    success=False,
                    stage=stage,
                    output=tail(result.output),
                    error=error,
                    duration_seconds=time.monotonic() - started,
                    stages_run=run,
                    stages_skipped=skipped,
                )

        return PreflightResult(
            success=True,
            stage=run[-1] if run else SKIPPED,
            duration_seconds=time.monotonic() - started,
            stages_run=run,
            stages_skipped=skipped,
        )
