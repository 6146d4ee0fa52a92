"""OpenAI provider with strict JSON-schema structured output."""

from __future__ import annotations

from typing import Any

from .base import recommendation_schema
from .chat_completions import ChatCompletionsProvider


class OpenAIProvider(ChatCompletionsProvider):
    name = "openai"

    def response_format(self, include_reason: bool) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": "recommendations",
                "strict": True,
                "schema": recommendation_schema(include_reason),
            },
        }
