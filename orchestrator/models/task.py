"""Task model — one request to transform a repository per a natural-language prompt."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from orchestrator.services.errors import InvalidTransitionError


class ExecutionState(str, Enum):
    QUEUED = "queued"
    CLONING = "cloning"
    BUILDING_CONTEXT = "building_context"
    CALLING_LLM = "calling_llm"
    APPLYING_DIFF = "applying_diff"
    RUNNING_PREFLIGHT = "running_preflight"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED)


# Forward-only lifecycle. The calling_llm -> applying_diff -> running_preflight
# cycle is the iteration loop; failed is reachable from every non-terminal state.
_TRANSITIONS: dict[ExecutionState, frozenset[ExecutionState]] = {
    ExecutionState.QUEUED: frozenset({ExecutionState.CLONING}),
    ExecutionState.CLONING: frozenset({ExecutionState.BUILDING_CONTEXT}),
    ExecutionState.BUILDING_CONTEXT: frozenset({ExecutionState.CALLING_LLM}),
    ExecutionState.CALLING_LLM: frozenset(
        {ExecutionState.APPLYING_DIFF, ExecutionState.CALLING_LLM}
    ),
    ExecutionState.APPLYING_DIFF: frozenset(
        {ExecutionState.RUNNING_PREFLIGHT, ExecutionState.CALLING_LLM}
    ),
    ExecutionState.RUNNING_PREFLIGHT: frozenset(
        {ExecutionState.CREATING_PR, ExecutionState.CALLING_LLM}
    ),
    ExecutionState.CREATING_PR: frozenset({ExecutionState.COMPLETED}),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.FAILED: frozenset(),
}


def can_transition(current: ExecutionState, target: ExecutionState) -> bool:
    if target == ExecutionState.FAILED:
        return not current.is_terminal
    return target in _TRANSITIONS[current]


_ALLOWED_REPO_URL_RE = re.compile(
    r"^(https://github\.com/|git@github\.com:)[a-zA-Z0-9._-]+/[a-zA-Z0-9._-]+?(\.git)?$"
)
_BRANCH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]{0,199}$")


def validate_repo_url(v: str) -> str:
    """Validate a repository URL to prevent SSRF and argument injection."""
    if not _ALLOWED_REPO_URL_RE.match(v):
        raise ValueError(
            "repository_url must be a GitHub HTTPS or SSH URL "
            "(e.g., https://github.com/org/repo)"
        )
    return v


def validate_branch_name(v: str) -> str:
    if not _BRANCH_RE.match(v) or ".." in v or v.endswith(("/", ".lock")) or "//" in v:
        raise ValueError(f"Invalid branch name: {v!r}")
    return v


class TaskCreate(BaseModel):
    """Request body for creating a new task."""

    prompt: str = Field(..., min_length=3, max_length=4000, description="What to change")
    project_id: Optional[str] = Field(default=None, description="Registered project to run against")
    repository_url: Optional[str] = Field(
        default=None, description="Repository URL, when not using a registered project"
    )
    source_branch: str = Field(default="main", description="Branch the change is based on")
    destination_branch: Optional[str] = Field(
        default=None, description="Branch to push the change to (default vibe/<task id>)"
    )
    llm_provider: Optional[str] = Field(default=None, description="anthropic, openai or gemini")
    llm_model: Optional[str] = None

    @field_validator("repository_url")
    @classmethod
    def check_repository_url(cls, v: Optional[str]) -> Optional[str]:
        return validate_repo_url(v) if v is not None else v

    @field_validator("source_branch", "destination_branch")
    @classmethod
    def check_branch(cls, v: Optional[str]) -> Optional[str]:
        return validate_branch_name(v) if v is not None else v

    @field_validator("llm_provider")
    @classmethod
    def check_provider(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("anthropic", "openai", "gemini"):
            raise ValueError("llm_provider must be one of: anthropic, openai, gemini")
        return v

    @model_validator(mode="after")
    def check_target(self) -> "TaskCreate":
        if not self.project_id and not self.repository_url:
            raise ValueError("Either project_id or repository_url is required")
        if self.destination_branch and self.destination_branch == self.source_branch:
            raise ValueError("destination_branch must differ from source_branch")
        return self


class Task(BaseModel):
    """Full task record."""

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_prompt: str
    project_id: Optional[str] = None
    repository_url: str
    source_branch: str = "main"
    destination_branch: str = ""
    execution_state: ExecutionState = ExecutionState.QUEUED
    pull_request_link: Optional[str] = None
    preview_url: Optional[str] = None
    iteration_count: int = 0
    initiated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_modified: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tenant_id: str = "default"
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None
    llm_prompt_tokens: int = 0
    llm_completion_tokens: int = 0
    llm_total_tokens: int = 0
    preflight_seconds: float = 0.0
    total_job_seconds: Optional[float] = None
    files_changed_count: int = 0
    last_diff: Optional[str] = None
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def default_destination(self) -> "Task":
        if not self.destination_branch:
            self.destination_branch = f"vibe/{self.task_id[:8]}"
        return self

    def transition_to(self, state: ExecutionState) -> ExecutionState:
        """Move to ``state``, enforcing the lifecycle. Returns the previous state."""
        previous = self.execution_state
        if not can_transition(previous, state):
            raise InvalidTransitionError(
                f"Illegal transition {previous.value} -> {state.value} for task {self.task_id}"
            )
        self.execution_state = state
        self.last_modified = datetime.now(timezone.utc)
        return previous

    def mark_completed(self, pull_request_link: str):
        self.transition_to(ExecutionState.COMPLETED)
        self.pull_request_link = pull_request_link
        self.total_job_seconds = (self.last_modified - self.initiated_at).total_seconds()

    def mark_failed(self, error: str):
        self.transition_to(ExecutionState.FAILED)
        self.error_message = error
        self.total_job_seconds = (self.last_modified - self.initiated_at).total_seconds()

    def add_usage(self, input_tokens: int, output_tokens: int, total_tokens: int):
        self.llm_prompt_tokens += input_tokens
        self.llm_completion_tokens += output_tokens
        self.llm_total_tokens += total_tokens


class TaskResponse(BaseModel):
    """API response for a task."""

    task_id: str
    user_prompt: str
    project_id: Optional[str]
    repository_url: str
    source_branch: str
    destination_branch: str
    execution_state: ExecutionState
    pull_request_link: Optional[str]
    preview_url: Optional[str]
    iteration_count: int
    initiated_at: datetime
    last_modified: datetime
    llm_provider: Optional[str]
    llm_model: Optional[str]
    llm_prompt_tokens: int
    llm_completion_tokens: int
    llm_total_tokens: int
    preflight_seconds: float
    total_job_seconds: Optional[float]
    files_changed_count: int
    error_message: Optional[str]


class TaskListResponse(BaseModel):
    """List of tasks."""

    tasks: list[TaskResponse]
    total: int
