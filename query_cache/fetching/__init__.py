"""
Fetch orchestration package.

Provides query handles, the in-flight request registry used for
de-duplication, and cancellation signals handed to fetchers.
"""

from query_cache.fetching.handle import Fetcher, QueryHandle
from query_cache.fetching.options import INFINITE, QueryOptions
from query_cache.fetching.registry import CancellationSignal, InflightRegistry, InflightRequest

__all__ = [
    "CancellationSignal",
    "Fetcher",
    "INFINITE",
    "InflightRegistry",
    "InflightRequest",
    "QueryHandle",
    "QueryOptions",
]
