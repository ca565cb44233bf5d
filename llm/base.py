"""
LLMProvider ABC — one interface over the chat-completion backends.

A provider is bound once per task by ``create_provider`` and then only ever
asked to ``generate``. HTTP failures are classified here so callers never
look at status codes:

    timeout / connection error / 5xx / 429  →  TransientInfraError
    401 / 403                               →  ConfigurationError
    any other 4xx                           →  ExternalServiceError
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from orchestrator.services.config import Settings, get_settings
from orchestrator.services.errors import (
    ConfigurationError,
    ExternalServiceError,
    TransientInfraError,
)

logger = structlog.get_logger()


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, input_tokens: int, output_tokens: int) -> "LLMUsage":
        return cls(input_tokens, output_tokens, input_tokens + output_tokens)


@dataclass
class LLMResponse:
    text: str
    usage: LLMUsage


class LLMProvider(ABC):
    """Abstract base for LLM backends (Anthropic, OpenAI, Gemini)."""

    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = 120.0):
        if not api_key:
            raise ConfigurationError(f"{self.name} provider requires an API key")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def _headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResponse:
        """Send one system + user exchange and return the text and token usage."""
        ...

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post_json(self, path: str, payload: dict, params: Optional[dict] = None) -> dict:
        try:
            resp = await self.client.post(path, json=payload, params=params)
        except httpx.TimeoutException as e:
            raise TransientInfraError(f"{self.name} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientInfraError(f"{self.name} connection error: {e}") from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientInfraError(
                f"{self.name} returned HTTP {resp.status_code}", status_code=resp.status_code
            )
        if resp.status_code in (401, 403):
            raise ConfigurationError(
                f"{self.name} rejected the credentials (HTTP {resp.status_code})"
            )
        if resp.status_code >= 400:
            raise ExternalServiceError(
                f"{self.name} returned HTTP {resp.status_code}: {resp.text[:300]}"
            )
        try:
            return resp.json()
        except ValueError as e:
            raise TransientInfraError(f"{self.name} returned a non-JSON body") from e


DEFAULT_PROVIDER = "anthropic"


def create_provider(
    provider_name: Optional[str] = None,
    model: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> LLMProvider:
    """Factory: bind the backend for one task. Unknown names are a configuration error."""
    settings = settings or get_settings()
    name = (provider_name or settings.llm_provider or DEFAULT_PROVIDER).lower()
    model = model or settings.llm_model or None
    timeout = float(settings.llm_timeout_seconds)

    if name == "anthropic":
        from llm.anthropic_provider import AnthropicProvider

        return AnthropicProvider(api_key=settings.anthropic_api_key, model=model, timeout=timeout)
    elif name == "openai":
        from llm.openai_provider import OpenAIProvider

        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=model,
            base_url=settings.openai_base_url,
            timeout=timeout,
        )
    elif name == "gemini":
        from llm.gemini_provider import GeminiProvider

        return GeminiProvider(api_key=settings.gemini_api_key, model=model, timeout=timeout)
    else:
        raise ConfigurationError(
            f"Unknown LLM provider: {name!r}. Use 'anthropic', 'openai' or 'gemini'."
        )
