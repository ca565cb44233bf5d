"""GitHub provider — opens pull requests via the GitHub REST API."""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import ExternalServiceError

from .base import GitProvider, PRResult

logger = structlog.get_logger()


class GitHubProvider(GitProvider):
    """GitHub integration using the REST API (via httpx, no PyGithub dep needed)."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or get_settings()
        self.token = settings.github_token
        self.base_url = "https://api.github.com"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def close(self) -> None:
        """Close the HTTP client to release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    async def create_pull_request(
        self,
        repo: str,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str = "main",
        labels: Optional[list[str]] = None,
    ) -> PRResult:
        pr_data = {
            "title": title,
            "body": body,
            "head": head_branch,
            "base": base_branch,
        }
        try:
            resp = await self.client.post(f"/repos/{repo}/pulls", json=pr_data)
            if resp.status_code == 422 and "already exists" in resp.text:
                existing = await self._find_open_pull_request(repo, head_branch)
                if existing:
                    return existing
            resp.raise_for_status()
            pr = resp.json()

            pr_number = pr["number"]
            pr_url = pr["html_url"]

            if labels:
                label_resp = await self.client.post(
                    f"/repos/{repo}/issues/{pr_number}/labels",
                    json={"labels": labels},
                )
                if label_resp.status_code >= 400:
                    await logger.awarning(
                        "Failed to label PR", repo=repo, pr_number=pr_number, status=label_resp.status_code
                    )
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                f"GitHub PR creation failed (HTTP {e.response.status_code}): {e.response.text[:300]}"
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"GitHub PR creation failed: {e}") from e

        await logger.ainfo(
            "GitHub PR created",
            repo=repo,
            pr_number=pr_number,
            pr_url=pr_url,
            title=title,
        )

        return PRResult(
            pr_url=pr_url,
            pr_number=pr_number,
            title=title,
            branch=head_branch,
            provider="github",
        )

    async def _find_open_pull_request(self, repo: str, head_branch: str) -> Optional[PRResult]:
        owner = repo.split("/", 1)[0]
        resp = await self.client.get(
            f"/repos/{repo}/pulls", params={"head": f"{owner}:{head_branch}", "state": "open"}
        )
        resp.raise_for_status()
        pulls = resp.json()
        if not pulls:
            return None
        pr = pulls[0]
        await logger.ainfo("Reusing open GitHub PR", repo=repo, pr_number=pr["number"])
        return PRResult(
            pr_url=pr["html_url"],
            pr_number=pr["number"],
            title=pr.get("title", ""),
            branch=head_branch,
            provider="github",
            already_existed=True,
        )

    def get_credentials(self) -> dict:
        """Return credentials for git authentication (never embed in URLs)."""
        if self.token:
            return {"username": "x-access-token", "password": self.token}
        return {}
