"""
Cache store package.

The store is the only owner of cache entries. The bus fans out change
events; the subscription manager owns eviction timers.
"""

from query_cache.store.bus import NotificationBus, QueryListener
from query_cache.store.cache_store import CacheStore
from query_cache.store.eviction import SubscriptionManager

__all__ = ["CacheStore", "NotificationBus", "QueryListener", "SubscriptionManager"]
