"""
Client-side query cache.

Given a key and an async fetcher, a ``QueryClient`` hands out
``QueryHandle`` objects that share one cached, de-duplicated,
auto-expiring result per canonical key.

Structure:
- keys: canonical key strings and group membership.
- observable: Observable / Computed values and event hooks.
- scheduling: event-loop timers, the manual test scheduler contract and the shared clock.
- store: cache store, notification bus, subscription and eviction manager.
- fetching: query handles, in-flight registry and fetch execution.
- mutations: single write operations with lifecycle callbacks.
- inspection: is-fetching counters and entry snapshots.
- client: the service object wiring everything together.
"""

from query_cache.client import (
    MutationCallbacks,
    QueryCallbacks,
    QueryClient,
    QueryClientConfig,
    create_client,
)
from query_cache.fetching.handle import QueryHandle
from query_cache.fetching.options import INFINITE, QueryOptions
from query_cache.keys import canonicalize, is_group_member
from query_cache.models import CacheEntry, FetchStatus, QueryEvent, QueryEventType, QueryStatus
from query_cache.mutations import Mutation, MutationStatus

__all__ = [
    "CacheEntry",
    "FetchStatus",
    "INFINITE",
    "Mutation",
    "MutationCallbacks",
    "MutationStatus",
    "QueryCallbacks",
    "QueryClient",
    "QueryClientConfig",
    "QueryEvent",
    "QueryEventType",
    "QueryHandle",
    "QueryOptions",
    "QueryStatus",
    "canonicalize",
    "create_client",
    "is_group_member",
]
