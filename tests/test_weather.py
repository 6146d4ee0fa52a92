from __future__ import annotations

import asyncio

import httpx

from app.models import UserConfig
from app.services.rpdb import enhance_posters, rpdb_poster_url
from app.services.weather import WeatherClient, describe_weather_code


def _config(**overrides: object) -> UserConfig:
    values: dict[str, object] = {
        "geminiApiKey": "g-key",
        "timezone": "Europe/Oslo",
        "enableWeatherContext": True,
        "weatherLocation": {"name": "Oslo", "latitude": 59.91, "longitude": 10.75},
    }
    values.update(overrides)
    return UserConfig.model_validate(values)


def test_weather_codes_map_to_conditions() -> None:
    assert describe_weather_code(0) == ("clear", "clear skies")
    assert describe_weather_code(63)[0] == "rainy"
    assert describe_weather_code(75)[0] == "snowy"
    assert describe_weather_code(96)[0] == "stormy"
    assert describe_weather_code(42)[0] == "unknown"


def test_current_weather_reads_open_meteo_payload() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(
            200, json={"current": {"temperature_2m": -3.2, "weather_code": 71}}
        )

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://weather.test/v1"
    )

    snapshot = asyncio.run(WeatherClient(http_client).current_weather(_config()))

    assert snapshot is not None
    assert snapshot.condition == "snowy"
    assert snapshot.describe() == "snowy, -3°C"
    assert seen["latitude"] == "59.91"
    assert seen["timezone"] == "Europe/Oslo"


def test_current_weather_tolerates_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://weather.test/v1"
    )
    client = WeatherClient(http_client)

    assert asyncio.run(client.current_weather(_config())) is None
    assert asyncio.run(client.current_weather(_config(weatherLocation=None))) is None


def test_rpdb_only_handles_imdb_ids() -> None:
    assert rpdb_poster_url("tt0113277", "key") == (
        "https://api.ratingposterdb.com/key/imdb/poster-default/tt0113277.jpg"
    )
    assert rpdb_poster_url("kitsu:1", "key") is None

    metas = [
        {"id": "tt0113277", "poster": "https://img.test/heat.jpg"},
        {"id": "kitsu:1", "poster": "https://img.test/anime.jpg"},
    ]
    enhanced = enhance_posters(metas, "key", base_url="https://rpdb.test/")

    assert enhanced[0]["poster"] == "https://rpdb.test/key/imdb/poster-default/tt0113277.jpg"
    assert enhanced[1]["poster"] == "https://img.test/anime.jpg"
    assert metas[0]["poster"] == "https://img.test/heat.jpg"
