import asyncio
import random
from datetime import datetime, timezone

from skyframe.models import CacheEntry, Location, PhotoRecord, WeatherSnapshot
from skyframe.scheduler import (
    FORCED_REFRESH_INTERVAL_MS,
    PREFETCH_LEAD_MS,
    REVALIDATE_INTERVAL_MS,
    TIMER_NAMES,
    WEATHER_INTERVAL_MS,
    Phase,
    PhotoScheduler,
    SchedulerState,
)
from skyframe.services.base import LocationError, PhotoProviderError, WeatherError
from skyframe.display import JsonDisplaySink
from skyframe.state import JsonFileCacheStore, MemoryCacheStore
from skyframe.timers import ManualClock, ManualTimers

UTC = timezone.utc
MINUTE = 60 * 1000
NOON_MS = int(datetime(2025, 7, 10, 12, 0, tzinfo=UTC).timestamp() * 1000)

SUMMER_DAY = WeatherSnapshot(
    temperature=24.0,
    cloud_cover=10,
    sunrise=datetime(2025, 7, 10, 4, 0, tzinfo=UTC),
    sunset=datetime(2025, 7, 10, 20, 0, tzinfo=UTC),
    timezone="UTC",
)


def _photo(n: int) -> PhotoRecord:
    return PhotoRecord(
        url=f"https://images.example/{n}",
        author=f"Photographer {n}",
        author_url=f"https://unsplash.com/@p{n}",
        download_location=f"https://api.example/dl/{n}",
    )


class FakeProvider:
    def __init__(self, fail: bool = False, ping_fails: bool = False) -> None:
        self.fail = fail
        self.ping_fails = ping_fails
        self.calls = []
        self.pings = []

    async def fetch_photo(self, width, height, query):
        self.calls.append(query)
        if self.fail:
            raise PhotoProviderError("provider down")
        return _photo(len(self.calls))

    async def trigger_download(self, download_location):
        if self.ping_fails:
            raise PhotoProviderError("ping refused")
        self.pings.append(download_location)


class GatedProvider(FakeProvider):
    """First call blocks until ``gate`` is set; later calls answer at once."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def fetch_photo(self, width, height, query):
        self.calls.append(query)
        number = len(self.calls)
        if number == 1:
            await self.gate.wait()
        return _photo(number)


class SlowProvider(FakeProvider):
    async def fetch_photo(self, width, height, query):
        self.calls.append(query)
        await asyncio.sleep(5)
        return _photo(len(self.calls))


class RecordingSink:
    def __init__(self) -> None:
        self.shown = []
        self.overlays = []

    def show_photo(self, photo, timestamp, query):
        self.shown.append((photo, timestamp, query))

    def set_overlay(self, active):
        self.overlays.append(active)

    def update_status(self, clock, cpu_temperature, location, weather):
        return None


class FakeLocation:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    async def get_location(self):
        if self.fail:
            raise LocationError("no network")
        return Location(latitude=52.52, longitude=13.40, city="Berlin")


class FakeWeather:
    def __init__(self, snapshot=SUMMER_DAY, fail: bool = False) -> None:
        self.snapshot = snapshot
        self.fail = fail
        self.calls = 0

    async def get_weather(self, latitude, longitude):
        self.calls += 1
        if self.fail:
            raise WeatherError("weather down")
        return self.snapshot


def _make_scheduler(
    *,
    start_ms: int = NOON_MS,
    store=None,
    provider=None,
    weather=None,
    location=None,
    state=None,
    **kwargs,
):
    clock = ManualClock(start_ms)
    timers = ManualTimers(clock)
    sink = RecordingSink()
    scheduler = PhotoScheduler(
        store=store if store is not None else MemoryCacheStore(),
        provider=provider or FakeProvider(),
        sink=sink,
        location_service=location or FakeLocation(),
        weather_service=weather or FakeWeather(),
        clock=clock,
        timers=timers,
        state=state,
        **kwargs,
    )
    return scheduler, timers, sink


def _entry(photo_number: int, query: str, timestamp: int) -> CacheEntry:
    return CacheEntry(photo=_photo(photo_number), query=query, timestamp=timestamp)


def _phases_entered(scheduler, phase):
    return [transition for transition in scheduler.state.transitions if transition[1] is phase]


def test_interval_constants():
    assert REVALIDATE_INTERVAL_MS == 300_000
    assert PREFETCH_LEAD_MS == 1_740_000
    assert FORCED_REFRESH_INTERVAL_MS == 1_800_000
    assert WEATHER_INTERVAL_MS == 900_000


def test_bootstrap_fetches_once_weather_arrives():
    provider = FakeProvider()
    scheduler, _, sink = _make_scheduler(provider=provider)

    asyncio.run(scheduler.bootstrap())

    assert provider.calls == ["summer"]
    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.store.get().timestamp == NOON_MS
    assert sink.shown[-1][0] == _photo(1)
    assert provider.pings == ["https://api.example/dl/1"]


def test_prefetch_fires_once_and_is_promoted_at_forced_refresh():
    provider = FakeProvider()
    scheduler, timers, sink = _make_scheduler(provider=provider)

    async def scenario():
        scheduler.start()
        await scheduler.bootstrap()
        await timers.advance(35 * MINUTE)

    asyncio.run(scenario())

    assert len(_phases_entered(scheduler, Phase.PREFETCHING)) == 1
    # One live fetch at startup, one prefetch; promotion itself is network-free.
    assert provider.calls == ["summer", "summer"]
    entry = scheduler.store.get()
    assert entry.photo == _photo(2)
    assert entry.timestamp == NOON_MS + 30 * MINUTE
    assert scheduler.state.staging is None
    assert scheduler.state.phase is Phase.SERVING
    assert [shown[0] for shown in sink.shown] == [_photo(1), _photo(2)]


def test_prefetch_window_bounds():
    provider = FakeProvider()
    store = MemoryCacheStore(_entry(1, "summer", NOON_MS - (PREFETCH_LEAD_MS - 1)))
    scheduler, _, _ = _make_scheduler(provider=provider, store=store, state=SchedulerState(weather=SUMMER_DAY))

    asyncio.run(scheduler.prefetch())
    assert provider.calls == []

    store.clear()
    store.put(_entry(1, "summer", NOON_MS - 30 * MINUTE))
    asyncio.run(scheduler.prefetch())
    assert provider.calls == []

    store.clear()
    store.put(_entry(1, "summer", NOON_MS - PREFETCH_LEAD_MS))
    asyncio.run(scheduler.prefetch())
    assert provider.calls == ["summer"]
    assert scheduler.state.staging.photo == _photo(1)

    # Staging slot occupied: no second prefetch for the same lifetime.
    asyncio.run(scheduler.prefetch())
    assert provider.calls == ["summer"]


def test_failed_prefetch_is_not_retried_in_the_same_lifetime():
    provider = FakeProvider(fail=True)
    store = MemoryCacheStore(_entry(1, "summer", NOON_MS - PREFETCH_LEAD_MS))
    scheduler, _, sink = _make_scheduler(provider=provider, store=store, state=SchedulerState(weather=SUMMER_DAY))

    async def scenario():
        await scheduler.prefetch()
        await scheduler.prefetch()

    asyncio.run(scenario())

    assert provider.calls == ["summer"]
    assert scheduler.state.staging is None
    assert sink.shown == []


def test_forced_refresh_with_failing_provider_serves_stale_entry():
    stale = _entry(1, "summer", NOON_MS - 45 * MINUTE)
    provider = FakeProvider(fail=True)
    scheduler, _, sink = _make_scheduler(
        provider=provider,
        store=MemoryCacheStore(stale),
        state=SchedulerState(weather=SUMMER_DAY),
    )

    asyncio.run(scheduler.refresh(force=True))

    assert provider.calls == ["summer"]
    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.state.displayed == stale
    assert sink.shown[-1][0] == stale.photo
    assert scheduler.store.get() == stale


def test_failure_without_cache_idles_and_retries_next_tick():
    provider = FakeProvider(fail=True)
    scheduler, _, sink = _make_scheduler(provider=provider, state=SchedulerState(weather=SUMMER_DAY))

    asyncio.run(scheduler.revalidate())

    assert scheduler.state.phase is Phase.IDLE
    assert sink.shown == []

    provider.fail = False
    asyncio.run(scheduler.revalidate())

    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.store.get().photo == _photo(2)


def test_provider_timeout_counts_as_failure():
    stale = _entry(1, "summer", NOON_MS - 45 * MINUTE)
    scheduler, _, sink = _make_scheduler(
        provider=SlowProvider(),
        store=MemoryCacheStore(stale),
        state=SchedulerState(weather=SUMMER_DAY),
        fetch_timeout=0.01,
    )

    asyncio.run(scheduler.refresh(force=True))

    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.state.fetch_in_flight is False
    assert scheduler.store.get() == stale
    assert sink.shown[-1][0] == stale.photo


def test_no_fetch_before_weather():
    provider = FakeProvider()
    scheduler, _, _ = _make_scheduler(provider=provider)

    async def scenario():
        await scheduler.revalidate()
        await scheduler.refresh(force=True)
        await scheduler.prefetch()

    asyncio.run(scenario())

    assert provider.calls == []
    assert scheduler.state.phase is Phase.AWAITING_WEATHER


def test_location_failure_keeps_stale_photo_and_awaits_weather():
    stale = _entry(3, "summer", NOON_MS - 2 * 60 * MINUTE)
    provider = FakeProvider()
    scheduler, _, sink = _make_scheduler(
        provider=provider,
        store=MemoryCacheStore(stale),
        location=FakeLocation(fail=True),
    )

    asyncio.run(scheduler.bootstrap())

    assert provider.calls == []
    assert sink.shown[0][0] == stale.photo
    assert provider.pings == []
    assert scheduler.state.phase is Phase.AWAITING_WEATHER


def test_weather_failure_keeps_previous_snapshot():
    weather = FakeWeather()
    scheduler, _, _ = _make_scheduler(weather=weather)

    async def scenario():
        await scheduler.refresh_weather()
        weather.fail = True
        await scheduler.refresh_weather()

    asyncio.run(scenario())

    assert weather.calls == 2
    assert scheduler.state.weather == SUMMER_DAY


def test_late_prefetch_is_discarded_after_forced_refresh():
    provider = GatedProvider()
    store = MemoryCacheStore(_entry(9, "summer", NOON_MS - PREFETCH_LEAD_MS))
    scheduler, _, sink = _make_scheduler(provider=provider, store=store, state=SchedulerState(weather=SUMMER_DAY))

    async def scenario():
        prefetch = asyncio.create_task(scheduler.prefetch())
        while not provider.calls:
            await asyncio.sleep(0)
        assert scheduler.state.phase is Phase.PREFETCHING

        # A second prefetch tick while one is in flight does nothing.
        await scheduler.prefetch()
        assert len(provider.calls) == 1

        await scheduler.refresh(force=True)
        provider.gate.set()
        await prefetch

    asyncio.run(scenario())

    assert provider.calls == ["summer", "summer"]
    assert store.get().photo == _photo(2)
    assert scheduler.state.staging is None
    assert scheduler.state.phase is Phase.SERVING
    assert [shown[0] for shown in sink.shown] == [_photo(2)]


def test_staging_for_outdated_context_is_replaced_by_live_fetch():
    provider = FakeProvider()
    store = MemoryCacheStore(_entry(1, "summer", NOON_MS - 31 * MINUTE))
    state = SchedulerState(weather=SUMMER_DAY, staging=_entry(7, "summer night dark", NOON_MS - MINUTE))
    scheduler, _, _ = _make_scheduler(provider=provider, store=store, state=state)

    asyncio.run(scheduler.refresh(force=True))

    assert provider.calls == ["summer"]
    assert store.get().timestamp == NOON_MS
    assert store.get().query == "summer"
    assert scheduler.state.staging is None


def test_sunrise_correction_revalidates_immediately():
    early_ms = int(datetime(2025, 7, 10, 5, 0, tzinfo=UTC).timestamp() * 1000)
    late_sunrise = WeatherSnapshot(
        cloud_cover=0,
        sunrise=datetime(2025, 7, 10, 7, 0, tzinfo=UTC),
        sunset=datetime(2025, 7, 10, 20, 0, tzinfo=UTC),
    )
    corrected = WeatherSnapshot(
        cloud_cover=0,
        sunrise=datetime(2025, 7, 10, 5, 30, tzinfo=UTC),
        sunset=datetime(2025, 7, 10, 20, 0, tzinfo=UTC),
    )
    provider = FakeProvider()
    scheduler, _, _ = _make_scheduler(start_ms=early_ms, provider=provider)

    async def scenario():
        await scheduler.on_weather_updated(late_sunrise)
        await scheduler.on_weather_updated(corrected)

    asyncio.run(scenario())

    assert provider.calls == ["summer night dark", "summer sunrise soft light"]
    assert scheduler.store.get().query == "summer sunrise soft light"


def test_unchanged_weather_does_not_refetch():
    provider = FakeProvider()
    scheduler, _, _ = _make_scheduler(provider=provider)

    async def scenario():
        await scheduler.on_weather_updated(SUMMER_DAY)
        await scheduler.on_weather_updated(SUMMER_DAY)

    asyncio.run(scenario())

    assert provider.calls == ["summer"]


def test_valid_cache_is_served_without_fetch():
    cached = _entry(4, "summer", NOON_MS - 10 * MINUTE)
    provider = FakeProvider()
    scheduler, _, sink = _make_scheduler(
        provider=provider,
        store=MemoryCacheStore(cached),
        state=SchedulerState(weather=SUMMER_DAY),
    )

    async def scenario():
        await scheduler.revalidate()
        await scheduler.refresh(force=False)

    asyncio.run(scenario())

    assert provider.calls == []
    assert scheduler.cache_is_valid() is scheduler.cache_is_valid() is True
    assert [shown[0] for shown in sink.shown] == [cached.photo]
    assert provider.pings == []


def test_download_ping_failure_does_not_block_display():
    provider = FakeProvider(ping_fails=True)
    scheduler, _, sink = _make_scheduler(provider=provider, state=SchedulerState(weather=SUMMER_DAY))

    asyncio.run(scheduler.refresh(force=True))

    assert sink.shown[-1][0] == _photo(1)
    assert scheduler.state.phase is Phase.SERVING


def test_variety_terms_reach_provider_but_not_cache_key():
    provider = FakeProvider()
    scheduler, _, _ = _make_scheduler(
        provider=provider,
        state=SchedulerState(weather=SUMMER_DAY),
        variety=True,
        rng=random.Random(3),
    )

    asyncio.run(scheduler.refresh(force=True))

    assert provider.calls[0].startswith("summer ")
    assert provider.calls[0] != "summer"
    assert scheduler.store.get().query == "summer"


def test_overlay_tracks_night_without_touching_cache():
    late_ms = int(datetime(2025, 7, 10, 23, 0, tzinfo=UTC).timestamp() * 1000)
    provider = FakeProvider()
    store = MemoryCacheStore()
    scheduler, timers, sink = _make_scheduler(
        start_ms=late_ms,
        provider=provider,
        store=store,
        state=SchedulerState(weather=SUMMER_DAY),
    )

    async def scenario():
        await scheduler.update_overlay()
        await scheduler.update_overlay()
        # Night ends with the golden hour before the next sunrise.
        scheduler.state.weather = WeatherSnapshot(
            sunrise=datetime(2025, 7, 10, 23, 30, tzinfo=UTC),
            sunset=datetime(2025, 7, 11, 12, 0, tzinfo=UTC),
        )
        await scheduler.update_overlay()

    asyncio.run(scenario())

    assert sink.overlays == [True, False]
    assert provider.calls == []
    assert store.get() is None


def test_stop_cancels_every_timer():
    scheduler, timers, _ = _make_scheduler()

    scheduler.start()
    assert timers.names() == list(TIMER_NAMES)

    scheduler.stop()
    assert timers.names() == []
    assert scheduler.state.phase is Phase.IDLE


def _blocked_path(tmp_path, name):
    # A regular file where the parent directory should be makes every write fail.
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    return blocker / name


def test_unwritable_cache_still_serves_fetched_photo(tmp_path):
    provider = FakeProvider()
    store = JsonFileCacheStore(_blocked_path(tmp_path, "photo_cache.json"))
    scheduler, timers, sink = _make_scheduler(provider=provider, store=store)

    async def scenario():
        scheduler.start()
        await scheduler.bootstrap()
        await timers.advance(REVALIDATE_INTERVAL_MS)

    asyncio.run(scenario())

    assert provider.calls == ["summer"]
    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.state.fetch_in_flight is False
    assert [shown[0] for shown in sink.shown] == [_photo(1)]
    assert store.get().photo == _photo(1)


def test_promotion_survives_unwritable_cache(tmp_path):
    provider = FakeProvider()
    store = JsonFileCacheStore(_blocked_path(tmp_path, "photo_cache.json"))
    state = SchedulerState(weather=SUMMER_DAY, staging=_entry(5, "summer", NOON_MS - MINUTE))
    scheduler, _, sink = _make_scheduler(provider=provider, store=store, state=state)

    asyncio.run(scheduler.refresh(force=True))

    assert provider.calls == []
    assert scheduler.state.phase is Phase.SERVING
    assert sink.shown[-1][0] == _photo(5)
    assert sink.shown[-1][1] == NOON_MS


def test_unwritable_display_does_not_stall_scheduler(tmp_path):
    provider = FakeProvider()
    scheduler, _, _ = _make_scheduler(provider=provider)
    scheduler.sink = JsonDisplaySink(_blocked_path(tmp_path, "now_showing.json"))

    asyncio.run(scheduler.bootstrap())

    assert provider.calls == ["summer"]
    assert scheduler.state.phase is Phase.SERVING
    assert scheduler.store.get().photo == _photo(1)
    assert scheduler.state.displayed is None
    assert scheduler.state.overlay_active is None
    assert provider.pings == []

    # Once the display recovers the cached photo is shown without a refetch.
    recovered = RecordingSink()
    scheduler.sink = recovered
    asyncio.run(scheduler.revalidate())

    assert provider.calls == ["summer"]
    assert [shown[0] for shown in recovered.shown] == [_photo(1)]
    assert scheduler.state.displayed == scheduler.store.get()
