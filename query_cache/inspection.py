"""
Store inspection helpers.

Read-only views over the cache for tooling: how many queries are fetching,
and snapshots of every entry.
"""

from typing import Any, Callable, List, Optional, Tuple

from query_cache.models import CacheEntry, FetchStatus, QueryEvent
from query_cache.observable import Observable
from query_cache.store.cache_store import CacheStore


def count_fetching(store: CacheStore, key: Any = None) -> int:
    """Entries with ``fetch_status == fetching``, optionally within the group rooted at ``key``."""
    entries = store.entries()
    if not entries:
        return 0

    if key is None:
        return sum(1 for entry in entries.values() if entry.fetch_status == FetchStatus.FETCHING)

    return sum(
        1 for k in store.find_all(key)
        if entries[k].fetch_status == FetchStatus.FETCHING
    )


def snapshot(store: CacheStore) -> List[Tuple[str, CacheEntry]]:
    """Every ``(canonical key, entry)`` pair, sorted by key."""
    return sorted(store.entries().items())


class FetchingCounter(Observable[int]):
    """Observable count of fetching entries, kept current from store events."""

    def __init__(self, store: CacheStore, key: Any = None):
        self._store = store
        self._filter = key
        super().__init__(count_fetching(store, key))
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_event)

    def set_filter(self, key: Any = None) -> None:
        """Count a different key group (``None`` counts everything)."""
        self._filter = key
        Observable.set(self, count_fetching(self._store, key))

    def _on_event(self, event: QueryEvent) -> None:
        Observable.set(self, count_fetching(self._store, self._filter))

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
