"""Photo refresh scheduling: revalidation, prefetch, forced refresh and the night overlay.

All state lives in one ``SchedulerState`` owned by a ``PhotoScheduler``. Ticks
run cooperatively on one event loop, so the cache slot and the staging slot
each have a single writer at a time without locking. A prefetch that is still
in flight when a refresh consumes the staging slot is discarded when it lands.
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Deque, Optional, Tuple

import structlog

from .context import build_query, decorate_query, localize, time_of_day
from .display import DisplaySink
from .models import CacheEntry, Context, Location, PhotoRecord, TimeOfDay, WeatherSnapshot
from .services.base import LocationService, PhotoProvider, PhotoProviderError, WeatherService
from .state import CACHE_TTL_MS, CacheStore, cache_age_ms, is_cache_valid
from .timers import Clock, TimerRegistry

REVALIDATE_INTERVAL_MS = 300_000
PREFETCH_LEAD_MS = 1_740_000
FORCED_REFRESH_INTERVAL_MS = 1_800_000
WEATHER_INTERVAL_MS = 900_000
PREFETCH_POLL_MS = 60_000
OVERLAY_INTERVAL_MS = 60_000

DEFAULT_FETCH_TIMEOUT = 10.0

# Registration order doubles as firing order for timers due at the same
# instant: a forced refresh consumes the staging slot before revalidation runs.
WEATHER_TIMER = "weather"
FORCED_REFRESH_TIMER = "forced_refresh"
REVALIDATE_TIMER = "revalidate"
PREFETCH_TIMER = "prefetch"
OVERLAY_TIMER = "overlay"
TIMER_NAMES = (WEATHER_TIMER, FORCED_REFRESH_TIMER, REVALIDATE_TIMER, PREFETCH_TIMER, OVERLAY_TIMER)


class Phase(str, Enum):
    IDLE = "idle"
    AWAITING_WEATHER = "awaiting_weather"
    SERVING = "serving"
    FETCHING = "fetching"
    PREFETCHING = "prefetching"


@dataclass
class SchedulerState:
    phase: Phase = Phase.IDLE
    location: Optional[Location] = None
    weather: Optional[WeatherSnapshot] = None
    displayed: Optional[CacheEntry] = None
    staging: Optional[CacheEntry] = None
    overlay_active: Optional[bool] = None
    fetch_in_flight: bool = False
    prefetch_in_flight: bool = False
    # Bumped whenever the staging slot is consumed; stale prefetches compare against it.
    prefetch_generation: int = 0
    # Timestamp of the cache entry the last prefetch was started for.
    prefetched_for: Optional[int] = None
    transitions: Deque[Tuple[Phase, Phase]] = field(default_factory=lambda: deque(maxlen=100))


class PhotoScheduler:
    """Decide when to serve, prefetch or fetch the background photo."""

    def __init__(
        self,
        store: CacheStore,
        provider: PhotoProvider,
        sink: DisplaySink,
        location_service: LocationService,
        weather_service: WeatherService,
        clock: Clock,
        timers: TimerRegistry,
        *,
        width: int = 1920,
        height: int = 1080,
        local_zone: tzinfo = timezone.utc,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        variety: bool = False,
        rng: Optional[random.Random] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        state: Optional[SchedulerState] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.sink = sink
        self.location_service = location_service
        self.weather_service = weather_service
        self.clock = clock
        self.timers = timers
        self.width = width
        self.height = height
        self.local_zone = local_zone
        self.fetch_timeout = fetch_timeout
        self.variety = variety
        self.rng = rng or random.Random()
        self.logger = logger or structlog.get_logger("skyframe.scheduler")
        self.state = state or SchedulerState()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Register every recurring timer."""

        self.timers.schedule(WEATHER_TIMER, WEATHER_INTERVAL_MS, self.refresh_weather)
        self.timers.schedule(FORCED_REFRESH_TIMER, FORCED_REFRESH_INTERVAL_MS, self.forced_refresh)
        self.timers.schedule(REVALIDATE_TIMER, REVALIDATE_INTERVAL_MS, self.revalidate)
        self.timers.schedule(PREFETCH_TIMER, PREFETCH_POLL_MS, self.prefetch)
        self.timers.schedule(OVERLAY_TIMER, OVERLAY_INTERVAL_MS, self.update_overlay)
        self.logger.info("scheduler.started", timers=list(TIMER_NAMES))

    async def bootstrap(self) -> None:
        """Show whatever is cached, then load weather, which drives the first fetch."""

        entry = self.store.get()
        if entry is not None:
            self.logger.info("scheduler.startup_cache", query=entry.query, age_ms=self._age(entry))
            await self._display(entry, fresh=False)
            self._set_phase(Phase.SERVING)
        await self.update_overlay()
        await self.refresh_weather()

    def stop(self) -> None:
        for name in TIMER_NAMES:
            self.timers.cancel(name)
        self._set_phase(Phase.IDLE)
        self.logger.info("scheduler.stopped")

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------
    def local_now(self) -> datetime:
        return self.clock.now().astimezone(self.local_zone)

    def current_query(self) -> Tuple[str, Context]:
        return build_query(self.state.weather, self.local_now())

    def cache_is_valid(self) -> bool:
        """Validity of the stored entry against the current context.

        Without a weather snapshot the current query is unknown, so nothing
        can be confirmed valid.
        """

        if self.state.weather is None:
            return False
        query, _ = self.current_query()
        return is_cache_valid(self.store.get(), self.clock.now_ms(), query)

    # ------------------------------------------------------------------
    # Weather
    # ------------------------------------------------------------------
    async def refresh_weather(self) -> None:
        if self.state.location is None:
            try:
                self.state.location = await self.location_service.get_location()
            except Exception as exc:
                self.logger.warning("weather.location_failed", error=str(exc))
                if self.state.weather is None:
                    self._await_weather()
                return
            self.logger.info("weather.location", location=self.state.location.label)

        location = self.state.location
        try:
            snapshot = await self.weather_service.get_weather(location.latitude, location.longitude)
        except Exception as exc:
            self.logger.warning(
                "weather.fetch_failed",
                error=str(exc),
                keeping_previous=self.state.weather is not None,
            )
            return
        await self.on_weather_updated(snapshot)

    async def on_weather_updated(self, snapshot: WeatherSnapshot) -> None:
        """Swap in a new snapshot and revalidate at once if the context moved."""

        previous = self.state.weather
        previous_query = self.current_query()[0] if previous is not None else None
        self.state.weather = snapshot
        query, context = self.current_query()

        changed = (
            previous is None
            or previous.sun_fields() != snapshot.sun_fields()
            or previous_query != query
        )
        self.logger.info(
            "weather.updated",
            query=query,
            time_of_day=context.time_of_day.value,
            cloud_cover=snapshot.cloud_cover,
            context_changed=changed,
        )
        if changed:
            await self.revalidate()

    # ------------------------------------------------------------------
    # Photo ticks
    # ------------------------------------------------------------------
    async def revalidate(self) -> None:
        """Poll tick: keep serving a valid entry, otherwise refresh."""

        if self.state.weather is None:
            self._await_weather()
            return
        if self.cache_is_valid():
            await self._serve(self.store.get())
            return
        await self.refresh(force=False)

    async def forced_refresh(self) -> None:
        await self.refresh(force=True)

    async def refresh(self, force: bool = False) -> None:
        """Serve, promote or fetch a photo.

        A non-forced refresh serves a valid cached entry as is. Otherwise a
        staged prefetch for the current query is promoted without a network
        call, and failing that a live fetch runs. When the live fetch fails the
        last cached entry stays on screen, however old it is.
        """

        state = self.state
        if state.weather is None:
            self._await_weather()
            return

        if not force and self.cache_is_valid():
            await self._serve(self.store.get())
            return

        if state.fetch_in_flight:
            self.logger.info("scheduler.fetch_already_running", force=force)
            return

        query, _ = self.current_query()
        staged = self._take_staging()
        if staged is not None:
            if staged.query == query:
                entry = self._persist(replace(staged, timestamp=self.clock.now_ms()))
                self.logger.info("scheduler.staging_promoted", query=entry.query, force=force)
                self._set_phase(Phase.SERVING)
                await self._display(entry, fresh=True)
                return
            self.logger.info("scheduler.staging_discarded", staged_query=staged.query, query=query)

        state.fetch_in_flight = True
        self._set_phase(Phase.FETCHING)
        self.logger.info("scheduler.fetch_start", query=query, force=force, width=self.width, height=self.height)
        try:
            photo = await self._fetch(query)
        except Exception as exc:
            state.fetch_in_flight = False
            self._fall_back(exc)
            fallback = self.store.get()
            if fallback is not None and state.displayed != fallback:
                await self._display(fallback, fresh=False)
            return
        state.fetch_in_flight = False

        entry = self._persist(CacheEntry(photo=photo, query=query, timestamp=self.clock.now_ms()))
        self.logger.info("scheduler.fetch_completed", query=query, author=photo.author)
        self._set_phase(Phase.SERVING)
        await self._display(entry, fresh=True)

    async def prefetch(self) -> None:
        """Stage the next photo once per cache lifetime, shortly before expiry."""

        state = self.state
        if state.weather is None or state.staging is not None:
            return
        if state.prefetch_in_flight or state.fetch_in_flight:
            return

        entry = self.store.get()
        if entry is None:
            return
        age = self._age(entry)
        if not PREFETCH_LEAD_MS <= age < CACHE_TTL_MS:
            return
        if state.prefetched_for == entry.timestamp:
            return

        query, _ = self.current_query()
        generation = state.prefetch_generation
        state.prefetched_for = entry.timestamp
        state.prefetch_in_flight = True
        resume_phase = state.phase
        self._set_phase(Phase.PREFETCHING)
        self.logger.info("scheduler.prefetch_start", query=query, age_ms=age)
        try:
            photo = await self._fetch(query)
        except Exception as exc:
            self.logger.warning("scheduler.prefetch_failed", query=query, error=str(exc))
            return
        else:
            if generation != state.prefetch_generation:
                self.logger.info("scheduler.prefetch_discarded", query=query, reason="superseded")
                return
            state.staging = CacheEntry(photo=photo, query=query, timestamp=self.clock.now_ms())
            self.logger.info("scheduler.prefetch_staged", query=query)
        finally:
            state.prefetch_in_flight = False
            if state.phase is Phase.PREFETCHING:
                self._set_phase(resume_phase)

    async def update_overlay(self) -> None:
        """Darken the display at night; never touches the photo cache."""

        tod = time_of_day(localize(self.local_now(), self.state.weather), self.state.weather)
        active = tod is TimeOfDay.NIGHT
        if active == self.state.overlay_active:
            return
        try:
            self.sink.set_overlay(active)
        except OSError as exc:
            self.logger.warning("overlay.write_failed", active=active, error=str(exc))
            return
        self.state.overlay_active = active
        self.logger.info("overlay.changed", active=active, time_of_day=tod.value)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _age(self, entry: CacheEntry) -> int:
        return cache_age_ms(entry, self.clock.now_ms())

    def _set_phase(self, phase: Phase) -> None:
        previous = self.state.phase
        if previous is phase:
            return
        self.state.phase = phase
        self.state.transitions.append((previous, phase))
        self.logger.debug("scheduler.phase", previous=previous.value, phase=phase.value)

    def _await_weather(self) -> None:
        if self.state.phase is not Phase.AWAITING_WEATHER:
            self.logger.info("scheduler.awaiting_weather")
        self._set_phase(Phase.AWAITING_WEATHER)

    def _take_staging(self) -> Optional[CacheEntry]:
        staged = self.state.staging
        self.state.staging = None
        self.state.prefetch_generation += 1
        return staged

    def _fall_back(self, exc: Exception) -> None:
        fallback = self.store.get()
        if fallback is None:
            self.logger.warning("scheduler.fetch_failed", error=str(exc), fallback=None)
            self._set_phase(Phase.IDLE)
            return
        self.logger.warning(
            "scheduler.fetch_failed",
            error=str(exc),
            fallback="stale_cache",
            age_ms=self._age(fallback),
        )
        self._set_phase(Phase.SERVING)

    async def _serve(self, entry: Optional[CacheEntry]) -> None:
        self._set_phase(Phase.SERVING)
        if entry is not None and self.state.displayed != entry:
            self.logger.info("scheduler.serving_cache", query=entry.query, age_ms=self._age(entry))
            await self._display(entry, fresh=False)

    async def _fetch(self, query: str) -> PhotoRecord:
        provider_query = decorate_query(query, self.rng) if self.variety else query
        try:
            return await asyncio.wait_for(
                self.provider.fetch_photo(self.width, self.height, provider_query),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise PhotoProviderError(f"Photo provider timed out after {self.fetch_timeout}s") from exc

    def _persist(self, entry: CacheEntry) -> CacheEntry:
        # The fetched entry is still served when it cannot be persisted.
        try:
            return self.store.put(entry)
        except OSError as exc:
            self.logger.warning("cache.write_failed", query=entry.query, error=str(exc))
            return entry

    async def _display(self, entry: CacheEntry, *, fresh: bool) -> None:
        try:
            self.sink.show_photo(entry.photo, entry.timestamp, entry.query)
        except OSError as exc:
            self.logger.warning("display.write_failed", query=entry.query, error=str(exc))
            return
        self.state.displayed = entry
        if not fresh or not entry.photo.download_location:
            return
        try:
            await self.provider.trigger_download(entry.photo.download_location)
        except Exception as exc:
            self.logger.warning("scheduler.download_ping_failed", error=str(exc))
