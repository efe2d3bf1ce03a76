"""External collaborators: location, weather, photos and host metrics."""

from .base import (
    LocationError,
    LocationService,
    PhotoProvider,
    PhotoProviderError,
    ServiceError,
    WeatherError,
    WeatherService,
)
from .unsplash import UnsplashPhotoProvider
from .weather import FixedLocationService, IpLocationService, OpenMeteoWeatherService

__all__ = [
    "FixedLocationService",
    "IpLocationService",
    "LocationError",
    "LocationService",
    "OpenMeteoWeatherService",
    "PhotoProvider",
    "PhotoProviderError",
    "ServiceError",
    "UnsplashPhotoProvider",
    "WeatherError",
    "WeatherService",
]
