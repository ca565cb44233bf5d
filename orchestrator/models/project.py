"""Project model — a registered repository that tasks run against."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from orchestrator.models.task import validate_repo_url


class ProjectCreate(BaseModel):
    """Request body for registering a project."""

    name: str = Field(..., min_length=1, max_length=200)
    repository_url: str = Field(..., description="GitHub repository URL")

    @field_validator("repository_url")
    @classmethod
    def check_repository_url(cls, v: str) -> str:
        return validate_repo_url(v)


class Project(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    repository_url: str
    local_path: str = ""
    last_synced: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
