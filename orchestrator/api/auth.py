"""Bearer-key guard for the job and project endpoints."""

from __future__ import annotations

import hmac
from typing import Optional

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orchestrator.services.config import get_settings

logger = structlog.get_logger()

ANONYMOUS = "anonymous"

_bearer = HTTPBearer(auto_error=False)


def _key_matches(presented: Optional[str], expected: str) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(_bearer),
) -> str:
    """Check the bearer token against VIBE_API_KEY.

    With no key configured every caller is ``anonymous``; health checks
    never depend on this guard.
    """
    expected = get_settings().api_key
    if not expected:
        return ANONYMOUS

    presented = credentials.credentials if credentials else None
    if not _key_matches(presented, expected):
        await logger.awarning(
            "Rejected API request",
            path=request.url.path,
            client=request.client.host if request.client else None,
            reason="missing key" if presented is None else "wrong key",
        )
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return "api-key"
