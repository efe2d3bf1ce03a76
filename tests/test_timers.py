import asyncio
from datetime import datetime, timezone

import pytest

from skyframe.timers import ManualClock, ManualTimers, SchedulerTimers


def test_manual_clock_moves_forward_only():
    clock = ManualClock(1_000)
    clock.advance(500)

    assert clock.now_ms() == 1_500
    assert clock.now() == datetime.fromtimestamp(1.5, tz=timezone.utc)
    with pytest.raises(ValueError):
        clock.set_ms(10)


def test_manual_timers_fire_in_due_then_registration_order():
    clock = ManualClock(0)
    timers = ManualTimers(clock)
    fired = []

    def _recorder(name):
        async def _callback():
            fired.append((name, clock.now_ms()))

        return _callback

    timers.schedule("slow", 300, _recorder("slow"))
    timers.schedule("fast", 100, _recorder("fast"))
    timers.schedule("also_slow", 300, _recorder("also_slow"))

    asyncio.run(timers.advance(300))

    assert fired == [
        ("fast", 100),
        ("fast", 200),
        ("slow", 300),
        ("fast", 300),
        ("also_slow", 300),
    ]
    assert clock.now_ms() == 300


def test_cancelled_timers_stop_firing():
    clock = ManualClock(0)
    timers = ManualTimers(clock)
    fired = []

    async def _tick():
        fired.append(clock.now_ms())
        if len(fired) == 2:
            timers.cancel("tick")

    timers.schedule("tick", 10, _tick)
    asyncio.run(timers.advance(100))

    assert fired == [10, 20]
    assert timers.names() == []
    assert timers.cancel("tick") is False


def test_failing_callback_does_not_stop_dispatch():
    clock = ManualClock(0)
    timers = ManualTimers(clock)
    fired = []

    async def _broken():
        raise RuntimeError("boom")

    async def _healthy():
        fired.append(clock.now_ms())

    timers.schedule("broken", 10, _broken)
    timers.schedule("healthy", 10, _healthy)
    asyncio.run(timers.advance(30))

    assert fired == [10, 20, 30]


def test_manual_timers_reject_non_positive_period():
    timers = ManualTimers(ManualClock(0))

    async def _noop():
        return None

    with pytest.raises(ValueError):
        timers.schedule("bad", 0, _noop)


def test_scheduler_timers_register_and_cancel_jobs():
    timers = SchedulerTimers()

    async def _noop():
        return None

    timers.schedule("revalidate", 300_000, _noop)
    timers.schedule("overlay", 60_000, _noop)

    assert sorted(timers.names()) == ["overlay", "revalidate"]
    assert timers.cancel("overlay") is True
    assert timers.cancel("overlay") is False
    timers.cancel_all()
    assert timers.names() == []
    assert timers.running is False
