"""Perplexity provider; its Sonar models always ground answers in web search."""

from __future__ import annotations

from typing import Any

from .base import recommendation_schema
from .chat_completions import ChatCompletionsProvider


class PerplexityProvider(ChatCompletionsProvider):
    name = "perplexity"
    search_used = True

    def response_format(self, include_reason: bool) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {"schema": recommendation_schema(include_reason)},
        }

    async def _check_key(self) -> None:
        # No model listing endpoint; a one-token completion is the cheapest check.
        await self._send(
            "POST",
            "/chat/completions",
            json={
                "model": self.model,
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "ping"}],
            },
        )
