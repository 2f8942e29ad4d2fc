"""
Timers and the shared clock.

All deferred work (eviction, retry waits, clock ticks) goes through a
scheduler so that the cache can run on the asyncio event loop in production
and on virtual time in tests.
"""

import asyncio
import itertools
import time
from typing import Any, Callable, Dict, Optional, Protocol

from query_cache.observable import Observable
from shared.logging import get_logger


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock and timer source used by every cache component."""

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop and the wall clock."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), callback, *args)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class ClockSubscription:
    """Opaque registration returned by ``SharedClock.subscribe``."""

    __slots__ = ("id",)

    def __init__(self, subscription_id: int):
        self.id = subscription_id

    def __repr__(self) -> str:
        return f"ClockSubscription({self.id})"


class SharedClock:
    """One ticking ``now`` observable shared by every time-sensitive handle.

    The timer only runs while at least one subscription is registered.
    """

    def __init__(self, scheduler: Scheduler, interval: float = 1.0):
        self.scheduler = scheduler
        self.interval = interval
        self.now: Observable[float] = Observable(scheduler.time())
        self.logger = get_logger("query_cache.clock")

        self._subscriptions: Dict[int, ClockSubscription] = {}
        self._ids = itertools.count(1)
        self._timer: Optional[TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> ClockSubscription:
        subscription = ClockSubscription(next(self._ids))
        self._subscriptions[subscription.id] = subscription
        self._update_timer()
        return subscription

    def unsubscribe(self, subscription: ClockSubscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            self._update_timer()

    def stop(self) -> None:
        """Drop every subscription and stop ticking."""
        self._subscriptions.clear()
        self._update_timer()

    def _update_timer(self) -> None:
        if self._subscriptions and self._timer is None:
            self.now.set(self.scheduler.time())
            self._timer = self.scheduler.call_later(self.interval, self._tick)
            self.logger.debug("Shared clock started", interval=self.interval)
        elif not self._subscriptions and self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.logger.debug("Shared clock stopped")

    def _tick(self) -> None:
        self.now.set(self.scheduler.time())
        self._timer = self.scheduler.call_later(self.interval, self._tick)
