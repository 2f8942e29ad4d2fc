"""
Subscriber bookkeeping and deferred eviction.
"""

import math
from typing import TYPE_CHECKING, Any, Dict, Optional

from query_cache.keys import canonicalize
from query_cache.scheduling import Scheduler, TimerHandle
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from query_cache.store.cache_store import CacheStore
    from shared.metrics import QueryCacheMetrics


class SubscriptionManager:
    """Tracks subscriber counts and owns every eviction timer.

    At most one timer is pending per key; scheduling again replaces the
    previous timer and restarts the wait.
    """

    def __init__(self, store: "CacheStore", scheduler: Scheduler,
                 metrics: Optional["QueryCacheMetrics"] = None):
        self.store = store
        self.scheduler = scheduler
        self.metrics = metrics
        self.logger = get_logger("query_cache.eviction")
        self._timers: Dict[str, TimerHandle] = {}

    def update_subscribers(self, key: Any, count: int, ttl: float) -> None:
        """Set the subscriber count for ``key`` and schedule or cancel eviction.

        Missing entries are ignored; callers may race with eviction.
        """
        canonical = canonicalize(key)
        entry = self.store.get(canonical)
        if entry is None:
            return

        self.store.set(canonical, entry.replace(subscribers=max(0, count)))

        if count <= 0:
            self.schedule(canonical, ttl)
        else:
            self.cancel(canonical)

    def schedule(self, key: str, ttl: float) -> None:
        self.cancel(key)

        if math.isinf(ttl):
            self.logger.debug("Eviction skipped for infinite cache time", query_key=key)
            return

        self.logger.debug("Eviction scheduled", query_key=key, ttl=ttl)
        self._timers[key] = self.scheduler.call_later(ttl, self._evict, key)

    def cancel(self, key: str) -> bool:
        """Cancel a pending eviction. Returns True if one was pending."""
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def is_scheduled(self, key: Any) -> bool:
        return canonicalize(key) in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def _evict(self, key: str) -> None:
        self._timers.pop(key, None)
        self.logger.debug("Evicting entry", query_key=key)
        self.store.remove(key)
        if self.metrics:
            self.metrics.increment_counter("evictions_total")
