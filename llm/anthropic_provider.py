"""Anthropic provider — Messages API over httpx."""

from __future__ import annotations

from typing import Optional

import structlog

from llm.base import LLMProvider, LLMResponse, LLMUsage

logger = structlog.get_logger()

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
API_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: str = "https://api.anthropic.com",
        timeout: float = 120.0,
    ):
        super().__init__(api_key, model or DEFAULT_MODEL, base_url, timeout)

    @property
    def name(self) -> str:
        return "anthropic"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResponse:
        data = await self._post_json(
            "/v1/messages",
            {
                "model": self.model,
                "max_tokens": max_tokens,
                "system": system_prompt,
                "messages": [{"role": "user", "content": user_prompt}],
            },
        )
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage", {})
        result = LLMResponse(
            text=text,
            usage=LLMUsage.of(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
        )
        await logger.adebug(
            "Anthropic completion", model=self.model, total_tokens=result.usage.total_tokens
        )
        return result
