"""Providers speaking the OpenAI-compatible ``/chat/completions`` protocol."""

from __future__ import annotations

from typing import Any, Mapping

from ...models import ContentType
from .base import SYSTEM_PROMPT, RecommendationProvider


class ChatCompletionsProvider(RecommendationProvider):
    """Shared request/response handling for chat-completions style APIs."""

    @staticmethod
    def client_headers(api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def response_format(self, include_reason: bool) -> dict[str, Any]:
        return {"type": "json_object"}

    def build_request(
        self,
        prompt: str,
        *,
        content_type: ContentType,
        temperature: float,
        max_output_tokens: int,
        include_reason: bool,
    ) -> tuple[str, dict[str, Any]]:
        label = "movies" if content_type == "movie" else "series"
        body = {
            "model": self.model,
            "temperature": temperature,
            "max_tokens": max_output_tokens,
            "messages": [
                {
                    "role": "system",
                    "content": f"{SYSTEM_PROMPT} Only recommend {label}.",
                },
                {"role": "user", "content": prompt},
            ],
            "response_format": self.response_format(include_reason),
        }
        return "/chat/completions", body

    def extract_text(self, payload: Mapping[str, Any]) -> str | None:
        choices = payload.get("choices") or []
        if not choices:
            return None
        message = choices[0].get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
        return None

    async def _check_key(self) -> None:
        await self._send("GET", "/models")
