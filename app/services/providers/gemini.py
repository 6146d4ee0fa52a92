"""Google Gemini provider using the REST ``generateContent`` endpoint."""

from __future__ import annotations

from typing import Any, Mapping

from ...errors import SchemaError
from ...models import ContentType
from .base import SYSTEM_PROMPT, RecommendationProvider, recommendation_schema

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]


def _gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Convert a JSON schema into Gemini's OpenAPI subset (upper-case types)."""

    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "additionalProperties":
            continue
        if key == "type":
            converted[key] = str(value).upper()
        elif key == "properties":
            converted[key] = {name: _gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            converted[key] = _gemini_schema(value)
        else:
            converted[key] = value
    return converted


class GeminiProvider(RecommendationProvider):
    name = "gemini"

    @staticmethod
    def client_headers(api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    @property
    def _is_thinking_model(self) -> bool:
        return self.model.startswith(("gemini-2.5", "gemini-3"))

    def build_request(
        self,
        prompt: str,
        *,
        content_type: ContentType,
        temperature: float,
        max_output_tokens: int,
        include_reason: bool,
    ) -> tuple[str, dict[str, Any]]:
        generation_config: dict[str, Any] = {
            "responseMimeType": "application/json",
            "responseSchema": _gemini_schema(recommendation_schema(include_reason)),
            "maxOutputTokens": max_output_tokens,
        }
        # Gemini 3 models reject custom temperatures.
        if not self.model.startswith("gemini-3"):
            generation_config["temperature"] = temperature
        # Thinking tokens eat the output budget and break structured JSON.
        if self._is_thinking_model:
            generation_config["thinkingConfig"] = {"thinkingBudget": 0}

        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
            "safetySettings": SAFETY_SETTINGS,
        }
        return f"/models/{self.model}:generateContent", body

    def extract_text(self, payload: Mapping[str, Any]) -> str | None:
        candidates = payload.get("candidates") or []
        if not candidates:
            feedback = payload.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise SchemaError(
                    f"Prompt blocked: {feedback['blockReason']}", provider=self.name
                )
            return None
        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        texts = [part.get("text") for part in parts if isinstance(part.get("text"), str)]
        return "".join(texts) or None

    async def _check_key(self) -> None:
        await self._send("GET", f"/models/{self.model}")
