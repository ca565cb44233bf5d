"""OpenAI provider — Chat Completions API (also works with compatible gateways)."""

from __future__ import annotations

from typing import Optional

import structlog

from llm.base import LLMProvider, LLMResponse, LLMUsage

logger = structlog.get_logger()

DEFAULT_MODEL = "gpt-4-turbo-preview"


class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
    ):
        super().__init__(api_key, model or DEFAULT_MODEL, base_url.rstrip("/"), timeout)

    @property
    def name(self) -> str:
        return "openai"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResponse:
        data = await self._post_json(
            "/chat/completions",
            {
                "model": self.model,
                "temperature": 0,
                "max_tokens": max_tokens,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            },
        )
        choices = data.get("choices") or [{}]
        text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage", {})
        prompt_tokens = usage.get("prompt_tokens", 0)
        completion_tokens = usage.get("completion_tokens", 0)
        result = LLMResponse(
            text=text,
            usage=LLMUsage(
                input_tokens=prompt_tokens,
                output_tokens=completion_tokens,
                total_tokens=usage.get("total_tokens", prompt_tokens + completion_tokens),
            ),
        )
        await logger.adebug("OpenAI completion", model=self.model, total_tokens=result.usage.total_tokens)
        return result
