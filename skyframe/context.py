"""Derive the photo search context from the calendar, the clock and the weather."""

from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Context, PrecipitationKind, TimeOfDay, WeatherSnapshot

OVERCAST_THRESHOLD = 70
GOLDEN_HOUR = timedelta(hours=1)

OVERCAST_TERM = "overcast"
HOLIDAY_TERM = "aesthetic"

MOOD_TERMS = {
    TimeOfDay.DAWN: "sunrise soft light",
    TimeOfDay.DUSK: "sunset warm light",
    TimeOfDay.NIGHT: "night dark",
}

PRECIPITATION_TERMS = {
    PrecipitationKind.SNOW: "snow winter",
    PrecipitationKind.RAIN: "rain",
}

# Appended to the provider query only; never part of the cache key.
VARIETY_THEMES = (
    "architecture", "cityscape", "travel", "nature", "landscape",
    "mountains", "ocean", "beach", "forest", "desert", "lake",
    "urban", "street", "minimalist", "aerial", "abstract",
    "coffee shop", "library", "garden", "pathway", "bridge",
    "skyline", "countryside", "village", "alley", "rooftop",
)
VARIETY_MOODS = (
    "cinematic", "atmospheric", "serene", "peaceful", "vibrant",
    "moody", "dramatic", "ethereal", "dreamy", "cozy",
    "mystical", "tranquil", "nostalgic", "romantic", "calm",
)


def holiday_for(day: date) -> Optional[str]:
    """Return the holiday whose fixed calendar window contains ``day``.

    Easter uses a fixed 20 March - 20 April window rather than the computed
    date, so it can be active in years where Easter falls outside it.
    """

    month, dom = day.month, day.day
    if month == 12 and dom <= 26:
        return "christmas"
    if (month == 12 and dom >= 27) or (month == 1 and dom <= 5):
        return "new year"
    if month == 10 and dom >= 25:
        return "halloween"
    if (month == 3 and dom >= 20) or (month == 4 and dom <= 20):
        return "easter"
    return None


def season_for(day: date) -> str:
    """Northern hemisphere meteorological season."""

    month = day.month
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "autumn"
    return "winter"


def _align(instant: datetime, reference: datetime) -> datetime:
    if instant.tzinfo is None and reference.tzinfo is not None:
        return instant.replace(tzinfo=reference.tzinfo)
    if instant.tzinfo is not None and reference.tzinfo is None:
        return instant.replace(tzinfo=None)
    return instant


def _hour_band(hour: int) -> TimeOfDay:
    if 5 <= hour < 8:
        return TimeOfDay.DAWN
    if 8 <= hour < 17:
        return TimeOfDay.DAY
    if 17 <= hour < 20:
        return TimeOfDay.DUSK
    return TimeOfDay.NIGHT


def time_of_day(now: datetime, weather: Optional[WeatherSnapshot] = None) -> TimeOfDay:
    """Classify ``now`` using the golden-hour windows around sunrise and sunset.

    Both window bounds are inclusive. Without sun times the local hour of
    ``now`` is mapped onto fixed bands instead.
    """

    if weather is None or weather.sunrise is None or weather.sunset is None:
        return _hour_band(now.hour)

    sunrise, sunset = weather.sunrise, weather.sunset
    instant = _align(now, sunrise)

    if sunrise - GOLDEN_HOUR <= instant <= sunrise + GOLDEN_HOUR:
        return TimeOfDay.DAWN
    if sunset - GOLDEN_HOUR <= instant <= sunset + GOLDEN_HOUR:
        return TimeOfDay.DUSK
    if sunrise + GOLDEN_HOUR < instant < sunset - GOLDEN_HOUR:
        return TimeOfDay.DAY
    return TimeOfDay.NIGHT


def localize(now: datetime, weather: Optional[WeatherSnapshot]) -> datetime:
    """Express ``now`` in the weather location's timezone when one is known."""

    if weather is None or not weather.timezone or now.tzinfo is None:
        return now
    try:
        return now.astimezone(ZoneInfo(weather.timezone))
    except (ZoneInfoNotFoundError, ValueError):
        return now


def build_context(weather: Optional[WeatherSnapshot], now: datetime) -> Context:
    local_now = localize(now, weather)
    today = local_now.date()

    precipitation = PrecipitationKind.NONE
    is_overcast = False
    if weather is not None:
        if weather.snow_mm > 0:
            precipitation = PrecipitationKind.SNOW
        elif weather.rain_mm > 0:
            precipitation = PrecipitationKind.RAIN
        is_overcast = weather.cloud_cover is not None and weather.cloud_cover >= OVERCAST_THRESHOLD

    return Context(
        season=season_for(today),
        holiday=holiday_for(today),
        time_of_day=time_of_day(local_now, weather),
        is_overcast=is_overcast,
        has_precipitation=precipitation is not PrecipitationKind.NONE,
        precipitation_kind=precipitation,
    )


def query_for(context: Context) -> str:
    """Join the context terms in their fixed order.

    Order: holiday or season, overcast, precipitation, time-of-day mood. The
    result doubles as the cache key, so the order must stay stable.
    """

    terms: List[str] = []
    if context.holiday:
        terms.append(f"{context.holiday} {HOLIDAY_TERM}")
    else:
        terms.append(context.season)
    if context.is_overcast:
        terms.append(OVERCAST_TERM)
    if context.has_precipitation:
        terms.append(PRECIPITATION_TERMS[context.precipitation_kind])
    mood = MOOD_TERMS.get(context.time_of_day)
    if mood:
        terms.append(mood)
    return " ".join(terms)


def build_query(weather: Optional[WeatherSnapshot], now: datetime) -> Tuple[str, Context]:
    context = build_context(weather, now)
    return query_for(context), context


def decorate_query(query: str, rng: Optional[random.Random] = None) -> str:
    """Append a random theme and mood for provider-side variety."""

    rng = rng or random.Random()
    return f"{query} {rng.choice(VARIETY_THEMES)} {rng.choice(VARIETY_MOODS)}"
