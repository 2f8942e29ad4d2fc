"""
Authoritative mapping from canonical key to cache entry.
"""

from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from query_cache.keys import canonicalize, filter_group
from query_cache.models import CacheEntry, QueryEvent, QueryEventType, QueryStatus
from query_cache.scheduling import Scheduler
from query_cache.store.bus import NotificationBus, QueryListener
from query_cache.store.eviction import SubscriptionManager
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import QueryCacheMetrics


class CacheStore:
    """Cache entries keyed by canonical key.

    Every mutation replaces the whole entry and publishes an event on the bus.
    Operations on missing keys are silent no-ops.
    """

    def __init__(self, scheduler: Scheduler, metrics: Optional["QueryCacheMetrics"] = None):
        self.scheduler = scheduler
        self.metrics = metrics
        self.logger = get_logger("query_cache.store")
        self.bus = NotificationBus()
        self.subscriptions = SubscriptionManager(self, scheduler, metrics=metrics)
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: Any) -> Optional[CacheEntry]:
        return self._entries.get(canonicalize(key))

    def set(self, key: Any, entry: CacheEntry) -> None:
        """Replace the entry for ``key`` wholesale."""
        canonical = canonicalize(key)
        is_new = canonical not in self._entries
        self._entries[canonical] = entry

        if is_new:
            self._record_size()
        self.bus.publish(QueryEvent(
            QueryEventType.ADDED if is_new else QueryEventType.UPDATED,
            canonical,
            entry
        ))

    def remove(self, key: Any) -> None:
        canonical = canonicalize(key)
        self.subscriptions.cancel(canonical)

        if self._entries.pop(canonical, None) is None:
            return

        self._record_size()
        self.bus.publish(QueryEvent(QueryEventType.REMOVED, canonical))

    def update(self, key: Any, updater: Callable[[Any], Any]) -> None:
        """Apply ``updater`` to the current data and stamp the entry as fresh."""
        canonical = canonicalize(key)
        entry = self._entries.get(canonical)
        if entry is None:
            return

        new_data = updater(entry.data)
        self.set(canonical, entry.replace(
            data=new_data,
            status=QueryStatus.SUCCESS if new_data is not None else QueryStatus.PENDING,
            updated_at=self.scheduler.time()
        ))

    def invalidate(self, key: Any) -> None:
        """Mark the entry stale without dropping its data."""
        canonical = canonicalize(key)
        entry = self._entries.get(canonical)
        if entry is None:
            return

        self.set(canonical, entry.replace(updated_at=0.0))

    def invalidate_group(self, prefix: Any) -> List[str]:
        """Invalidate every entry in the group rooted at ``prefix``."""
        keys = self.find_all(prefix)
        for key in keys:
            self.invalidate(key)
        return keys

    def clear(self) -> None:
        """Cancel every eviction timer and remove every entry."""
        self.subscriptions.cancel_all()

        keys = list(self._entries)
        self._entries.clear()
        self._record_size()

        for key in keys:
            self.bus.publish(QueryEvent(QueryEventType.REMOVED, key))

        self.logger.debug("Cache cleared", removed=len(keys))

    def subscribe(self, listener: QueryListener) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def update_subscribers(self, key: Any, count: int, ttl: float) -> None:
        self.subscriptions.update_subscribers(key, count, ttl)

    def keys(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> Dict[str, CacheEntry]:
        """Snapshot of every canonical key and its entry."""
        return dict(self._entries)

    def find_all(self, prefix: Any) -> List[str]:
        """Canonical keys in the group rooted at ``prefix``."""
        return filter_group(list(self._entries), prefix)

    def __contains__(self, key: Any) -> bool:
        return canonicalize(key) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _record_size(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("entries", len(self._entries))
