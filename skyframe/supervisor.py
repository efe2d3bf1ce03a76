"""Supervisor runtime: wires configuration, collaborators and timers together."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from .config import ConfigPaths, GlobalConfig
from .display import ConsoleDisplaySink, DisplaySink, JsonDisplaySink
from .logging import quiet_loggers
from .models import Location
from .scheduler import PhotoScheduler
from .services import FixedLocationService, IpLocationService, OpenMeteoWeatherService, UnsplashPhotoProvider
from .services.base import LocationService
from .services.system import get_cpu_temperature, get_current_time
from .state import JsonFileCacheStore, cache_path_for
from .timers import Clock, SchedulerTimers, SystemClock, TimerCallback, TimerRegistry

STATUS_TIMER = "status"
STATUS_INTERVAL_MS = 10_000
DISPLAY_FILE = "now_showing.json"


@dataclass
class Supervisor:
    """Supervisor process responsible for the photo scheduler's lifetime."""

    config: GlobalConfig
    paths: ConfigPaths
    logger: structlog.stdlib.BoundLogger
    _timezone: ZoneInfo = field(init=False, repr=False)
    _timezone_source: str = field(init=False, repr=False)
    _stop_event: Optional[asyncio.Event] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._timezone, self._timezone_source = self._resolve_timezone(self.config.runtime.timezone)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(self) -> None:
        """Start the event loop and block until interrupted."""

        try:
            asyncio.run(self._serve())
        except KeyboardInterrupt:  # pragma: no cover - manual shutdown
            self.logger.info("supervisor.stop", reason="keyboard_interrupt")

    def build_scheduler(self, timers: TimerRegistry, clock: Optional[Clock] = None) -> PhotoScheduler:
        """Assemble a scheduler from configuration."""

        unsplash = self.config.unsplash
        display = self.config.display
        cache_path = cache_path_for(self.config)

        return PhotoScheduler(
            store=JsonFileCacheStore(cache_path, logger=self.logger.bind(component="cache")),
            provider=UnsplashPhotoProvider(unsplash.resolved_access_key, timeout=unsplash.timeout_seconds),
            sink=self._build_sink(),
            location_service=self._build_location_service(),
            weather_service=OpenMeteoWeatherService(),
            clock=clock or SystemClock(),
            timers=timers,
            width=display.width,
            height=display.height,
            local_zone=self._timezone,
            fetch_timeout=unsplash.timeout_seconds,
            variety=unsplash.variety,
            logger=self.logger.bind(component="scheduler"),
        )

    def shutdown(self) -> None:
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _resolve_timezone(tz_name: str) -> tuple[ZoneInfo, str]:
        try:
            tz = ZoneInfo(tz_name)
            label = tz.key if hasattr(tz, "key") else str(tz)
            return tz, label
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC"), "UTC"

    def _build_sink(self) -> DisplaySink:
        display = self.config.display
        if display.sink == "json":
            output = display.output_file or self.config.runtime.storage_dir / DISPLAY_FILE
            return JsonDisplaySink(output)
        return ConsoleDisplaySink()

    def _build_location_service(self) -> LocationService:
        settings = self.config.location
        if settings.is_fixed:
            return FixedLocationService(
                Location(latitude=settings.latitude, longitude=settings.longitude, city=settings.city)
            )
        return IpLocationService()

    async def _serve(self) -> None:
        quiet_loggers(self.config.runtime.quiet_loggers)
        self.logger.info(
            "supervisor.start",
            timezone=self._timezone_source,
            cache=str(cache_path_for(self.config)),
            sink=self.config.display.sink,
        )
        if self._timezone_source != self.config.runtime.timezone:
            self.logger.warning(
                "supervisor.timezone_fallback",
                configured=self.config.runtime.timezone,
                using=self._timezone_source,
            )
        if not self.config.unsplash.resolved_access_key:
            self.logger.warning(
                "supervisor.no_access_key",
                message="Photo fetches will fail until an Unsplash access key is configured.",
            )

        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        timers = SchedulerTimers(logger=self.logger.bind(component="timers"))
        scheduler = self.build_scheduler(timers)

        async def update_status() -> None:
            scheduler.sink.update_status(
                get_current_time(scheduler.local_now()),
                get_cpu_temperature(),
                scheduler.state.location,
                scheduler.state.weather,
            )

        timers.start()
        scheduler.start()
        timers.schedule(STATUS_TIMER, STATUS_INTERVAL_MS, update_status)

        try:
            await self._run_startup_steps([(STATUS_TIMER, update_status), ("bootstrap", scheduler.bootstrap)])
            self.logger.info("supervisor.running", timers=timers.names())
            await self._stop_event.wait()
        finally:
            scheduler.stop()
            timers.shutdown()
            self.logger.info("supervisor.shutdown")

    async def _run_startup_steps(self, steps: Sequence[Tuple[str, TimerCallback]]) -> None:
        """Run each step once; a failing step is logged and the rest still run."""

        for step, action in steps:
            try:
                await action()
            except Exception as exc:
                self.logger.exception("supervisor.startup_step_failed", step=step, error=str(exc))

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:  # pragma: no cover - platforms without loop signal support
                signal.signal(sig, lambda signum, frame: self._signal_handler(signum))

    def _signal_handler(self, signum) -> None:  # pragma: no cover - OS signal handling
        self.logger.info("supervisor.signal", signal=int(signum))
        self.shutdown()
