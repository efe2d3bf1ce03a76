"""Location lookup and Open-Meteo current conditions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from ..models import Location, WeatherSnapshot
from .base import LocationError, WeatherError

IP_API_URL = "http://ip-api.com/json/"
OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"
CURRENT_FIELDS = "temperature_2m,relative_humidity_2m,rain,snowfall,cloudcover,wind_speed_10m"
DAILY_FIELDS = "sunrise,sunset"


class FixedLocationService:
    """Location pinned in configuration."""

    def __init__(self, location: Location) -> None:
        self.location = location

    async def get_location(self) -> Location:
        return self.location


class IpLocationService:
    """Approximate location from the public IP address."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    async def get_location(self) -> Location:
        return await asyncio.to_thread(self._get_location)

    def _get_location(self) -> Location:
        try:
            response = self.session.get(IP_API_URL, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise LocationError(f"Failed to fetch location: {exc}") from exc
        except ValueError as exc:
            raise LocationError("Failed to parse location data: invalid JSON") from exc

        if isinstance(data, dict) and data.get("status") == "fail":
            raise LocationError(f"Location lookup rejected: {data.get('message', 'unknown reason')}")
        try:
            return Location(
                latitude=float(data["lat"]),
                longitude=float(data["lon"]),
                city=data.get("city"),
                country=data.get("country"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LocationError(f"Failed to parse location data: {exc}") from exc


class OpenMeteoWeatherService:
    """Current conditions plus today's sunrise and sunset from Open-Meteo."""

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    async def get_weather(self, latitude: float, longitude: float) -> WeatherSnapshot:
        return await asyncio.to_thread(self._get_weather, latitude, longitude)

    def _get_weather(self, latitude: float, longitude: float) -> WeatherSnapshot:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": CURRENT_FIELDS,
            "daily": DAILY_FIELDS,
            "timezone": "auto",
        }
        try:
            response = self.session.get(OPEN_METEO_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise WeatherError(f"Failed to fetch weather: {exc}") from exc
        except ValueError as exc:
            raise WeatherError("Failed to parse weather data: invalid JSON") from exc
        return parse_weather(data)


def _zone_for(data: Dict[str, Any]) -> tzinfo:
    name = data.get("timezone")
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    offset = data.get("utc_offset_seconds") or 0
    return timezone(timedelta(seconds=int(offset)))


def _local_instant(value: Optional[str], zone: tzinfo) -> Optional[datetime]:
    if not value:
        return None
    instant = datetime.fromisoformat(value)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=zone)
    return instant


def _number(values: Dict[str, Any], key: str) -> Optional[float]:
    value = values.get(key)
    return float(value) if value is not None else None


def parse_weather(data: Any) -> WeatherSnapshot:
    """Build a snapshot from an Open-Meteo forecast response.

    Sunrise and sunset arrive as local wall times and are anchored to the
    response's timezone.
    """

    if not isinstance(data, dict) or not isinstance(data.get("current"), dict):
        raise WeatherError("Failed to parse weather data: missing 'current' block")

    current = data["current"]
    daily = data.get("daily") or {}
    zone = _zone_for(data)

    try:
        sunrise_values = daily.get("sunrise") or [None]
        sunset_values = daily.get("sunset") or [None]
        return WeatherSnapshot(
            temperature=_number(current, "temperature_2m"),
            humidity=_number(current, "relative_humidity_2m"),
            wind_speed=_number(current, "wind_speed_10m"),
            cloud_cover=_number(current, "cloudcover"),
            rain_mm=_number(current, "rain") or 0.0,
            snow_mm=_number(current, "snowfall") or 0.0,
            sunrise=_local_instant(sunrise_values[0], zone),
            sunset=_local_instant(sunset_values[0], zone),
            timezone=data.get("timezone"),
        )
    except (TypeError, ValueError) as exc:
        raise WeatherError(f"Failed to parse weather data: {exc}") from exc
