"""Tests for title resolution against the metadata add-on."""

from __future__ import annotations

import asyncio
from urllib.parse import unquote

import httpx
import pytest

from app.models import Recommendation
from app.services.metadata_addon import (
    MetadataAddonClient,
    MetadataUnavailableError,
    score_candidate,
)
from app.utils import dedup_key


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (
            "https://provider.example.com/manifest.json",
            "https://provider.example.com",
        ),
        (
            "https://addons.example.com/custom/manifest.json?token=abc",
            "https://addons.example.com/custom",
        ),
        (
            "https://addons.example.com/custom/manifest.json/",
            "https://addons.example.com/custom",
        ),
        (
            "https://addons.example.com/custom/",
            "https://addons.example.com/custom",
        ),
        (
            "https://example.com/addons/nowpicks",
            "https://example.com/addons/nowpicks",
        ),
    ],
)
def test_normalize_base_url_handles_common_variations(raw: str, expected: str) -> None:
    """Various manifest URL formats normalize to the service base URL."""

    assert MetadataAddonClient._normalize_base_url(raw) == expected


def test_normalize_base_url_rejects_empty_values() -> None:
    """Empty strings or ``None`` are treated as missing URLs."""

    assert MetadataAddonClient._normalize_base_url(None) is None
    assert MetadataAddonClient._normalize_base_url("   ") is None


def test_score_prefers_exact_title_and_year() -> None:
    exact = score_candidate("Heat", 1995, {"name": "Heat", "releaseInfo": "1995"})
    near = score_candidate("Heat", 1995, {"name": "Heat", "releaseInfo": "1996"})
    partial = score_candidate("Heat", 1995, {"name": "Heat Wave", "releaseInfo": "2009"})
    unrelated = score_candidate("Heat", 1995, {"name": "Ronin", "releaseInfo": "1998"})

    assert exact == 130
    assert near == 115
    assert partial == 50
    assert unrelated == 0


def _search_handler(results: dict[str, list[dict[str, object]]]):
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        query = path.split("search=", 1)[1].removesuffix(".json")
        calls.append(query)
        if query not in results:
            return httpx.Response(404)
        return httpx.Response(200, json={"metas": results[query]})

    return handler, calls


def test_resolve_batch_picks_best_match_and_caches_lookups() -> None:
    handler, calls = _search_handler(
        {
            "Heat": [
                {"id": "tt9999999", "name": "Heat Wave", "type": "movie", "releaseInfo": "2009"},
                {"id": "tt0113277", "name": "Heat", "type": "movie", "releaseInfo": "1995"},
            ],
            "Ronin": [
                {
                    "id": "tt0122690",
                    "name": "Ronin",
                    "type": "movie",
                    "releaseInfo": "1998",
                    "poster": "https://img.test/ronin.jpg",
                }
            ],
        }
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = MetadataAddonClient(http_client, "https://cinemeta.test/manifest.json")
    items = [
        Recommendation(title="Heat", year=1995),
        Recommendation(title="Ronin", year=1998),
        Recommendation(title="Missing Movie", year=2001),
    ]

    async def runner():
        first = await client.resolve_batch(items, content_type="movie")
        second = await client.resolve_batch(items, content_type="movie")
        return first, second

    first, second = asyncio.run(runner())

    heat, ronin = dedup_key("Heat", 1995), dedup_key("Ronin", 1998)
    assert set(first) == {heat, ronin}
    assert first[heat].id == "tt0113277"
    assert first[heat].poster == "https://images.metahub.space/poster/medium/tt0113277/img"
    assert first[ronin].poster == "https://img.test/ronin.jpg"
    assert first[ronin].year == 1998
    assert second.keys() == first.keys()
    assert sorted(calls) == ["Heat", "Missing Movie", "Ronin"]


def test_resolve_batch_keeps_same_title_releases_apart() -> None:
    handler, _ = _search_handler(
        {
            "Dune": [
                {"id": "tt0087182", "name": "Dune", "type": "movie", "releaseInfo": "1984"},
                {"id": "tt1160419", "name": "Dune", "type": "movie", "releaseInfo": "2021"},
            ],
        }
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = MetadataAddonClient(http_client, "https://cinemeta.test")
    items = [Recommendation(title="Dune", year=2021), Recommendation(title="Dune", year=1984)]

    matches = asyncio.run(client.resolve_batch(items, content_type="movie"))

    assert matches[dedup_key("Dune", 2021)].id == "tt1160419"
    assert matches[dedup_key("Dune", 1984)].id == "tt0087182"


def test_resolve_batch_raises_when_addon_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = MetadataAddonClient(http_client, "https://cinemeta.test")
    items = [Recommendation(title="Heat", year=1995)]

    with pytest.raises(MetadataUnavailableError):
        asyncio.run(client.resolve_batch(items, content_type="movie"))


def test_lookup_swallows_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = MetadataAddonClient(http_client, "https://cinemeta.test")

    assert asyncio.run(client.lookup("Heat", content_type="movie", year=1995)) is None
