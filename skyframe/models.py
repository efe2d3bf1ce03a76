"""Domain types shared by the context builder, cache and scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TimeOfDay(str, Enum):
    DAWN = "dawn"
    DAY = "day"
    DUSK = "dusk"
    NIGHT = "night"


class PrecipitationKind(str, Enum):
    NONE = "none"
    RAIN = "rain"
    SNOW = "snow"


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float
    city: Optional[str] = None
    country: Optional[str] = None

    @property
    def label(self) -> str:
        """City name when known, otherwise rounded coordinates."""

        if self.city:
            return self.city
        return f"{self.latitude:.2f}°, {self.longitude:.2f}°"


@dataclass(frozen=True)
class WeatherSnapshot:
    """Current conditions plus today's sun times.

    Replaced wholesale on every successful weather refresh; never mutated.
    Every field is optional so an empty snapshot is still a valid input to the
    context builder.
    """

    temperature: Optional[float] = None
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None
    cloud_cover: Optional[float] = None
    rain_mm: float = 0.0
    snow_mm: float = 0.0
    sunrise: Optional[datetime] = None
    sunset: Optional[datetime] = None
    timezone: Optional[str] = None

    def sun_fields(self) -> tuple:
        return (self.sunrise, self.sunset, self.timezone)


@dataclass(frozen=True)
class PhotoRecord:
    url: str
    author: str
    author_url: str
    download_location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": self.url,
            "author": self.author,
            "authorUrl": self.author_url,
        }
        if self.download_location is not None:
            payload["downloadLocation"] = self.download_location
        return payload


@dataclass(frozen=True)
class CacheEntry:
    """A photo together with the query it was fetched for.

    ``timestamp`` is milliseconds since the epoch. The same shape is used for
    the staging slot filled by background prefetch.
    """

    photo: PhotoRecord
    query: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "photo": self.photo.to_dict(),
            "query": self.query,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Context:
    season: str
    holiday: Optional[str]
    time_of_day: TimeOfDay
    is_overcast: bool
    has_precipitation: bool
    precipitation_kind: PrecipitationKind = PrecipitationKind.NONE


@dataclass(frozen=True)
class ClockReading:
    time: str
    day_of_week: str
    date: str
