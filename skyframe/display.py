"""Display sinks receive what should be on screen; rendering lives elsewhere."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from rich.console import Console

from .models import ClockReading, Location, PhotoRecord, WeatherSnapshot
from .state import write_json_atomic


class DisplaySink(Protocol):
    def show_photo(self, photo: PhotoRecord, timestamp: int, query: str) -> None:
        ...

    def set_overlay(self, active: bool) -> None:
        ...

    def update_status(
        self,
        clock: ClockReading,
        cpu_temperature: Optional[float],
        location: Optional[Location],
        weather: Optional[WeatherSnapshot],
    ) -> None:
        ...


class ConsoleDisplaySink:
    """Print photo changes and the overlay state to the terminal."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def show_photo(self, photo: PhotoRecord, timestamp: int, query: str) -> None:
        self.console.print(f"[bold]Background:[/bold] {photo.url}")
        self.console.print(
            f"Photo by [link={photo.author_url}]{photo.author}[/link] on Unsplash  [dim]({query})[/dim]"
        )

    def set_overlay(self, active: bool) -> None:
        label = "[blue]night overlay on[/blue]" if active else "[yellow]night overlay off[/yellow]"
        self.console.print(label)

    def update_status(
        self,
        clock: ClockReading,
        cpu_temperature: Optional[float],
        location: Optional[Location],
        weather: Optional[WeatherSnapshot],
    ) -> None:
        # Status widgets are only rendered from the JSON document.
        return None


class JsonDisplaySink:
    """Maintain a JSON "now showing" document for an external renderer."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self.document: Dict[str, Any] = {"photo": None, "overlay": False, "status": None}

    def _write(self) -> None:
        write_json_atomic(self.path, self.document)

    def show_photo(self, photo: PhotoRecord, timestamp: int, query: str) -> None:
        self.document["photo"] = {**photo.to_dict(), "query": query, "timestamp": timestamp}
        self._write()

    def set_overlay(self, active: bool) -> None:
        self.document["overlay"] = active
        self._write()

    def update_status(
        self,
        clock: ClockReading,
        cpu_temperature: Optional[float],
        location: Optional[Location],
        weather: Optional[WeatherSnapshot],
    ) -> None:
        status: Dict[str, Any] = {
            "time": clock.time,
            "dayOfWeek": clock.day_of_week,
            "date": clock.date,
            # Hosts without a thermal sensor hide the CPU widget.
            "cpuTemperature": round(cpu_temperature) if cpu_temperature is not None else None,
            "location": location.label if location else None,
        }
        if weather is not None:
            status["weather"] = {
                "temperature": weather.temperature,
                "humidity": weather.humidity,
                "windSpeed": weather.wind_speed,
                "cloudCover": weather.cloud_cover,
                "rainMm": weather.rain_mm,
                "snowMm": weather.snow_mm,
                "sunrise": weather.sunrise.isoformat() if weather.sunrise else None,
                "sunset": weather.sunset.isoformat() if weather.sunset else None,
            }
        self.document["status"] = status
        self._write()
