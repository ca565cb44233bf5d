"""Failure taxonomy for task execution.

The pipeline decides what to do with a failure by its class:

- iteration-scoped errors (MalformedOutputError, ValidationFailure) become
  feedback for the next LLM call and consume exactly one iteration
- TransientInfraError gets a few immediate retries without consuming one
- everything else ends the task in ``failed``
"""

from __future__ import annotations

from typing import Optional


class VibeError(Exception):
    """Base for all executor exceptions."""

    terminal: bool = True

    def __init__(self, message: str = "Task execution failed"):
        super().__init__(message)
        self.message = message


class TransientInfraError(VibeError):
    """Network failure, timeout or 5xx from an upstream service."""

    terminal = False

    def __init__(self, message: str = "Transient infrastructure error", *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class IterationError(VibeError):
    """A failure that is recovered by feeding it into the next iteration."""

    terminal = False


class MalformedOutputError(IterationError):
    """LLM output is not a usable diff, or the diff does not apply."""

    def __init__(
        self,
        message: str = "Malformed diff",
        *,
        usage=None,
        failed_files: Optional[list[str]] = None,
        apply_failure: bool = False,
    ):
        super().__init__(message)
        self.usage = usage
        self.failed_files = failed_files or []
        self.apply_failure = apply_failure


class ValidationFailure(IterationError):
    """A preflight stage exited non-zero or timed out, or the security scan blocked the attempt."""

    def __init__(self, stage: str, output: str = ""):
        super().__init__(f"Preflight stage '{stage}' failed")
        self.stage = stage
        self.output = output


class BudgetExceededError(VibeError):
    """MAX_ITERATIONS reached without a passing attempt."""

    def __init__(self, max_iterations: int, last_error: str = ""):
        message = f"Max iterations ({max_iterations}) exhausted"
        if last_error:
            message = f"{message}. Last error: {last_error}"
        super().__init__(message)
        self.max_iterations = max_iterations
        self.last_error = last_error


class ExternalServiceError(VibeError):
    """Push or PR creation failed. The validated branch is left in place."""


class ConfigurationError(VibeError):
    """Missing credentials, unknown provider or unusable repository reference."""


class WorkspaceError(VibeError):
    """An attempt workspace could not be created or verified clean."""


class GitCommandError(WorkspaceError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: list[str], exit_code: int, stderr: str):
        super().__init__(f"git {' '.join(args[:3])} failed (exit {exit_code}): {stderr.strip()[:500]}")
        self.exit_code = exit_code
        self.stderr = stderr


class TaskCancelledError(VibeError):
    """Cancellation was requested; honoured at the next iteration boundary."""

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)


class InvalidTransitionError(VibeError):
    """A state change that the task lifecycle does not allow."""
