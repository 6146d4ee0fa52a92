"""Current-weather lookups via the Open-Meteo forecast API."""

from __future__ import annotations

import logging

import httpx

from ..models import UserConfig
from ..signals import WeatherSnapshot

logger = logging.getLogger(__name__)

# WMO weather interpretation codes grouped into coarse conditions.
_WEATHER_CODES: tuple[tuple[range, str, str], ...] = (
    (range(0, 1), "clear", "clear skies"),
    (range(1, 4), "cloudy", "partly cloudy"),
    (range(45, 49), "foggy", "foggy"),
    (range(51, 68), "rainy", "rainy"),
    (range(71, 78), "snowy", "snowy"),
    (range(80, 83), "rainy", "rain showers"),
    (range(85, 87), "snowy", "snow showers"),
    (range(95, 100), "stormy", "thunderstorms"),
)


def describe_weather_code(code: int) -> tuple[str, str]:
    for codes, condition, description in _WEATHER_CODES:
        if code in codes:
            return condition, description
    return "unknown", "unsettled weather"


class WeatherClient:
    """Fetch the current weather for a user's configured location."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._client = http_client

    async def current_weather(self, config: UserConfig) -> WeatherSnapshot | None:
        location = config.weather_location
        if location is None:
            return None

        params = {
            "latitude": location.latitude,
            "longitude": location.longitude,
            "current": "temperature_2m,weather_code",
            "timezone": config.timezone,
        }
        try:
            response = await self._client.get("/forecast", params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Weather lookup failed for %s: %s", location.name, exc)
            return None

        current = response.json().get("current") or {}
        code = current.get("weather_code")
        if not isinstance(code, int):
            return None
        condition, description = describe_weather_code(code)
        temperature = current.get("temperature_2m")
        return WeatherSnapshot(
            condition=condition,
            temperature=float(temperature) if isinstance(temperature, (int, float)) else None,
            description=description,
        )
