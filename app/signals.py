"""Context signals derived from the user's local time, season and weather."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Literal, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import UserConfig

logger = logging.getLogger(__name__)

TimeOfDay = Literal["morning", "afternoon", "evening", "latenight"]
DayType = Literal["weekday", "weekend"]
Season = Literal["spring", "summer", "fall", "winter"]

SOUTHERN_HEMISPHERE_COUNTRIES = frozenset(
    {"AU", "NZ", "ZA", "AR", "CL", "BR", "PE", "BO", "PY", "UY"}
)
HOLIDAY_WINDOW_DAYS = 7

HOLIDAYS: dict[str, dict[tuple[int, int], str]] = {
    "US": {
        (1, 1): "New Year's Day",
        (2, 14): "Valentine's Day",
        (3, 17): "St. Patrick's Day",
        (5, 5): "Cinco de Mayo",
        (7, 4): "Independence Day",
        (10, 31): "Halloween",
        (11, 11): "Veterans Day",
        (12, 24): "Christmas Eve",
        (12, 25): "Christmas Day",
        (12, 31): "New Year's Eve",
    },
    "GB": {
        (1, 1): "New Year's Day",
        (2, 14): "Valentine's Day",
        (3, 17): "St. Patrick's Day",
        (10, 31): "Halloween",
        (11, 5): "Guy Fawkes Night",
        (12, 24): "Christmas Eve",
        (12, 25): "Christmas Day",
        (12, 26): "Boxing Day",
        (12, 31): "New Year's Eve",
    },
    "DEFAULT": {
        (1, 1): "New Year's Day",
        (2, 14): "Valentine's Day",
        (10, 31): "Halloween",
        (12, 24): "Christmas Eve",
        (12, 25): "Christmas Day",
        (12, 31): "New Year's Eve",
    },
}


@dataclass(frozen=True, slots=True)
class WeatherSnapshot:
    condition: str
    temperature: float | None = None
    description: str | None = None

    def describe(self) -> str:
        label = self.description or self.condition
        if self.temperature is None:
            return label
        return f"{label}, {round(self.temperature)}°C"


class WeatherProvider(Protocol):
    async def current_weather(self, config: UserConfig) -> WeatherSnapshot | None: ...


@dataclass(frozen=True, slots=True)
class ContextSignals:
    """Immutable snapshot of the situation a catalog is generated for."""

    local_time: datetime
    time_of_day: TimeOfDay
    day_of_week: str
    day_type: DayType
    season: Season
    timezone: str
    country: str
    holiday: str | None = None
    weather: WeatherSnapshot | None = None


def time_of_day(hour: int) -> TimeOfDay:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "latenight"


def day_type(moment: datetime) -> DayType:
    return "weekend" if moment.weekday() >= 5 else "weekday"


def season_for(month: int, country: str) -> Season:
    if country.upper() in SOUTHERN_HEMISPHERE_COUNTRIES:
        month = (month + 5) % 12 + 1
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


def nearby_holiday(
    day: date, country: str, window_days: int = HOLIDAY_WINDOW_DAYS
) -> str | None:
    """Return the closest holiday within ``window_days`` of ``day``."""

    holidays = HOLIDAYS.get(country.upper(), HOLIDAYS["DEFAULT"])
    for distance in range(window_days + 1):
        for offset in (distance, -distance) if distance else (0,):
            candidate = day + timedelta(days=offset)
            name = holidays.get((candidate.month, candidate.day))
            if name:
                return name
    return None


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s; falling back to UTC", name)
        return ZoneInfo("UTC")


def generate_context_signals(
    config: UserConfig,
    *,
    now: datetime | None = None,
    weather: WeatherSnapshot | None = None,
) -> ContextSignals:
    """Derive context signals for ``config`` at ``now`` (defaults to the current time)."""

    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(_zone(config.timezone))
    return ContextSignals(
        local_time=local,
        time_of_day=time_of_day(local.hour),
        day_of_week=local.strftime("%A"),
        day_type=day_type(local),
        season=season_for(local.month, config.country),
        timezone=config.timezone,
        country=config.country,
        holiday=nearby_holiday(local.date(), config.country),
        weather=weather,
    )


async def collect_context_signals(
    config: UserConfig,
    weather_provider: WeatherProvider | None = None,
    *,
    now: datetime | None = None,
) -> ContextSignals:
    """Like :func:`generate_context_signals` but fetches weather when enabled.

    Weather is optional context; lookup failures are logged and ignored.
    """

    weather: WeatherSnapshot | None = None
    if config.enable_weather_context and weather_provider is not None:
        try:
            weather = await weather_provider.current_weather(config)
        except Exception as exc:
            logger.warning("Failed to fetch weather context: %s", exc)
    return generate_context_signals(config, now=now, weather=weather)


def temporal_bucket(signals: ContextSignals) -> str:
    """Coarse context key folded into cache keys."""

    return f"{signals.time_of_day}_{signals.day_type}_{signals.season}"


_TIME_DESCRIPTIONS: dict[str, str] = {
    "morning": "this morning",
    "afternoon": "this afternoon",
    "evening": "this evening",
    "latenight": "late at night",
}


def describe_context(signals: ContextSignals) -> str:
    """Render the signals as a short phrase for prompts."""

    parts = [_TIME_DESCRIPTIONS[signals.time_of_day]]
    if signals.day_type == "weekend":
        parts.append(f"on a {signals.day_of_week}")
    if signals.season in ("winter", "summer"):
        parts.append(f"in {signals.season}")
    if signals.weather is not None:
        parts.append(f"({signals.weather.describe()})")
    if signals.holiday:
        parts.append(f"around {signals.holiday}")
    return " ".join(parts)
