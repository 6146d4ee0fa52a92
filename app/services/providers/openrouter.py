"""OpenRouter provider for any model exposed through its gateway."""

from __future__ import annotations

from .chat_completions import ChatCompletionsProvider


class OpenRouterProvider(ChatCompletionsProvider):
    name = "openrouter"

    @staticmethod
    def client_headers(api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": "https://github.com/nowpicks/nowpicks",
            "X-Title": "NowPicks",
        }

    async def _check_key(self) -> None:
        await self._send("GET", "/key")
