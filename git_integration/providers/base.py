"""Abstract base for source-control hosting providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class PRResult:
    """Result of creating a pull request."""

    pr_url: str
    pr_number: int
    title: str
    branch: str
    provider: str
    already_existed: bool = False


class GitProvider(ABC):
    """Abstract interface for Git hosting providers."""

    @abstractmethod
    async def create_pull_request(
        self,
        repo: str,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str = "main",
        labels: Optional[list[str]] = None,
    ) -> PRResult:
        """Create a pull request, or return the open one for ``head_branch``."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def get_credentials(self) -> dict:
        """Return credentials for git authentication (never embed in URLs).

        Returns a dict with 'username' and 'password' keys, or an empty
        dict if no credentials are configured (e.g. public repos).
        """
        return {}
