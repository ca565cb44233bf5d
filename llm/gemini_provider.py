"""Gemini provider — generateContent REST API."""

from __future__ import annotations

from typing import Optional

from llm.base import LLMProvider, LLMResponse, LLMUsage

DEFAULT_MODEL = "gemini-1.5-pro"


class GeminiProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 120.0,
    ):
        super().__init__(api_key, model or DEFAULT_MODEL, base_url, timeout)

    @property
    def name(self) -> str:
        return "gemini"

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    async def generate(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResponse:
        data = await self._post_json(
            f"/v1beta/models/{self.model}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {"temperature": 0, "maxOutputTokens": max_tokens},
            },
        )
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts", [])
        text = "".join(part.get("text", "") for part in parts)
        meta = data.get("usageMetadata", {})
        input_tokens = meta.get("promptTokenCount", 0)
        output_tokens = meta.get("candidatesTokenCount", 0)
        return LLMResponse(
            text=text,
            usage=LLMUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=meta.get("totalTokenCount", input_tokens + output_tokens),
            ),
        )
