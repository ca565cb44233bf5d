"""Static preview — build the attempt's frontend and publish it under /previews."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import structlog

from executor.process import run_command, tail
from orchestrator.services.config import Settings, get_settings

logger = structlog.get_logger()


class PreviewError(Exception):
    """The preview build or publish failed. Never fails the task."""


class PreviewBuilder:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.preview_build_command.strip())

    def preview_url(self, task_id: str) -> str:
        return f"{self.settings.preview_base_url.rstrip('/')}/{task_id}/index.html"

    async def build(self, workspace: str, task_id: str) -> Optional[str]:
        """Build and publish a preview. Returns its URL, or None when disabled.

        Raises PreviewError with the build output on failure.
        """
        if not self.enabled:
            return None

        result = await run_command(
            self.settings.preview_build_command,
            cwd=workspace,
            timeout=self.settings.preflight_timeout_seconds,
        )
        if not result.ok:
            raise PreviewError(f"Preview build exited with code {result.exit_code}:\n{tail(result.output, 1000)}")

        output_dir = Path(workspace) / self.settings.preview_output_dir
        if not output_dir.is_dir():
            raise PreviewError(f"Preview output directory not found: {self.settings.preview_output_dir}")

        target = Path(self.settings.previews_dir) / task_id
        await asyncio.to_thread(shutil.rmtree, target, True)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copytree, output_dir, target)

        await logger.ainfo("Preview published", task_id=task_id, path=str(target))
        return self.preview_url(task_id)
