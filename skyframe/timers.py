"""Named, cancellable recurring timers with a single dispatch point.

``SchedulerTimers`` runs timers on APScheduler's asyncio scheduler for the
real process. ``ManualTimers`` drives the same callbacks from a virtual clock
so tests can step through hours of schedule deterministically.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

TimerCallback = Callable[[], Awaitable[None]]


class Clock(Protocol):
    def now_ms(self) -> int:
        ...

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = start_ms

    def now_ms(self) -> int:
        return self._now_ms

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now_ms / 1000, tz=timezone.utc)

    def set_ms(self, value: int) -> None:
        if value < self._now_ms:
            raise ValueError("ManualClock cannot move backwards")
        self._now_ms = value

    def advance(self, delta_ms: int) -> None:
        self.set_ms(self._now_ms + delta_ms)


class TimerRegistry(Protocol):
    def schedule(self, name: str, period_ms: int, callback: TimerCallback) -> None:
        ...

    def cancel(self, name: str) -> bool:
        ...

    def cancel_all(self) -> None:
        ...

    def names(self) -> List[str]:
        ...


async def _dispatch(logger: structlog.stdlib.BoundLogger, name: str, callback: TimerCallback) -> None:
    try:
        await callback()
    except Exception as exc:
        logger.exception("timer.callback_failed", timer=name, error=str(exc))


@dataclass
class _ManualTimer:
    name: str
    period_ms: int
    callback: TimerCallback
    due_ms: int
    seq: int


class ManualTimers:
    """Virtual-time timer registry.

    Timers due at the same instant fire in registration order, and each
    callback is awaited to completion before the next one runs.
    """

    def __init__(self, clock: ManualClock, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
        self.clock = clock
        self.logger = logger or structlog.get_logger("skyframe.timers")
        self._timers: Dict[str, _ManualTimer] = {}
        self._seq = 0

    def schedule(self, name: str, period_ms: int, callback: TimerCallback) -> None:
        if period_ms <= 0:
            raise ValueError(f"Timer period must be positive: {name}")
        self._seq += 1
        self._timers[name] = _ManualTimer(
            name=name,
            period_ms=period_ms,
            callback=callback,
            due_ms=self.clock.now_ms() + period_ms,
            seq=self._seq,
        )

    def cancel(self, name: str) -> bool:
        return self._timers.pop(name, None) is not None

    def cancel_all(self) -> None:
        self._timers.clear()

    def names(self) -> List[str]:
        return list(self._timers)

    def next_due(self, name: str) -> Optional[int]:
        timer = self._timers.get(name)
        return timer.due_ms if timer else None

    async def advance(self, delta_ms: int) -> None:
        """Move the clock forward, firing every timer that falls due on the way."""

        target = self.clock.now_ms() + delta_ms
        while True:
            due = [timer for timer in self._timers.values() if timer.due_ms <= target]
            if not due:
                break
            timer = min(due, key=lambda item: (item.due_ms, item.seq))
            self.clock.set_ms(timer.due_ms)
            timer.due_ms += timer.period_ms
            await _dispatch(self.logger, timer.name, timer.callback)
        self.clock.set_ms(target)


class SchedulerTimers:
    """Timer registry backed by APScheduler's ``AsyncIOScheduler``."""

    def __init__(
        self,
        scheduler: Optional[AsyncIOScheduler] = None,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self.logger = logger or structlog.get_logger("skyframe.timers")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start dispatching; must be called from inside the running event loop."""

        if not self._scheduler.running:
            self._scheduler.start()

    def schedule(self, name: str, period_ms: int, callback: TimerCallback) -> None:
        if period_ms <= 0:
            raise ValueError(f"Timer period must be positive: {name}")
        trigger = IntervalTrigger(seconds=period_ms / 1000, timezone=timezone.utc)
        self._scheduler.add_job(
            _dispatch,
            trigger=trigger,
            id=name,
            name=name,
            args=[self.logger, name, callback],
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self.logger.debug("timer.scheduled", timer=name, period_ms=period_ms)

    def cancel(self, name: str) -> bool:
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            return False
        return True

    def cancel_all(self) -> None:
        self._scheduler.remove_all_jobs()

    def names(self) -> List[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def shutdown(self) -> None:
        self.cancel_all()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
