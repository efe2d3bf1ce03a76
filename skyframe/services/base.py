"""Contracts for the external collaborators consumed by the scheduler."""

from __future__ import annotations

from typing import Protocol

from ..models import Location, PhotoRecord, WeatherSnapshot


class ServiceError(RuntimeError):
    """Raised when an external collaborator fails to produce a result."""


class LocationError(ServiceError):
    """Raised when the device location cannot be determined."""


class WeatherError(ServiceError):
    """Raised when current weather cannot be retrieved or parsed."""


class PhotoProviderError(ServiceError):
    """Raised when no photo could be obtained for a query."""


class LocationService(Protocol):
    async def get_location(self) -> Location:
        ...


class WeatherService(Protocol):
    async def get_weather(self, latitude: float, longitude: float) -> WeatherSnapshot:
        ...


class PhotoProvider(Protocol):
    async def fetch_photo(self, width: int, height: int, query: str) -> PhotoRecord:
        ...

    async def trigger_download(self, download_location: str) -> None:
        """Acknowledge a displayed photo as the provider's usage policy requires."""
