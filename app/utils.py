"""Utility helpers for the NowPicks service."""

from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from typing import Any


JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)
LEADING_ARTICLE_RE = re.compile(r"^(the|a|an)\s+")
WHITESPACE_RE = re.compile(r"\s+")


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower()


def extract_json_object(content: str) -> dict[str, Any]:
    """Extract and parse the first JSON object from the model response."""

    stripped = content.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

    match = JSON_BLOCK_RE.search(content)
    if match:
        raw = match.group(1)
    else:
        match = BARE_JSON_RE.search(content)
        if not match:
            raise ValueError("No JSON object found in response")
        raw = match.group(0)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON payload produced by the model") from exc
    if not isinstance(payload, dict):
        raise ValueError("Model response is not a JSON object")
    return payload


def normalize_title(title: str) -> str:
    """Lower-case a title, collapse whitespace and drop a leading article."""

    value = WHITESPACE_RE.sub(" ", title.strip().lower())
    return LEADING_ARTICLE_RE.sub("", value)


def dedup_key(title: str, year: int | None) -> str:
    return f"{normalize_title(title)}:{year if year is not None else ''}"


def hash_api_key(api_key: str, prefix: str = "key") -> str:
    """Return a stable, non-reversible identifier for an API key."""

    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}"


SEARCH_PUNCTUATION_RE = re.compile(r"[^\w\s'-]")


def normalize_search_query(query: str) -> str:
    """Lower-case a search query and drop punctuation for use in cache keys."""

    value = SEARCH_PUNCTUATION_RE.sub("", query.lower())
    return WHITESPACE_RE.sub(" ", value).strip()
