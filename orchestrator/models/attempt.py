"""Attempt model — one iteration's isolated workspace."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AttemptState(str, Enum):
    CREATING = "creating"
    READY = "ready"  # verified clean, nothing applied yet
    APPLIED = "applied"  # diff staged
    COMMITTED = "committed"
    DESTROYED = "destroyed"
    ERROR = "error"


class Attempt(BaseModel):
    task_id: str
    iteration: int
    path: str
    base_sha: str
    state: AttemptState = AttemptState.CREATING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    destroyed_at: Optional[datetime] = None
    staged_files: list[str] = Field(default_factory=list)
    commit_sha: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.task_id[:8]}-iter{self.iteration}"

    def mark_destroyed(self) -> None:
        self.state = AttemptState.DESTROYED
        self.destroyed_at = datetime.now(timezone.utc)
