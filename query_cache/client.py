"""
Query client: the service object owning the cache.

A client owns the store, the in-flight registry, the scheduler, the shared
clock and the metrics collector. Create one per application (or per test),
hand it to consumers, and call ``shutdown()`` when done.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from query_cache.fetching.handle import Fetcher, QueryHandle
from query_cache.fetching.options import QueryOptions
from query_cache.fetching.registry import InflightRegistry, InflightRequest
from query_cache.inspection import count_fetching
from query_cache.models import CacheEntry, FetchStatus, QueryStatus
from query_cache.mutations import Mutation
from query_cache.observable import safe_call
from query_cache.scheduling import LoopScheduler, Scheduler, SharedClock
from query_cache.store.cache_store import CacheStore
from shared.config import QueryCacheSettings, get_settings
from shared.errors import ClientClosedError
from shared.logging import configure_logging, get_logger
from shared.metrics import QueryCacheMetrics

_MISSING = object()


@dataclass
class QueryCallbacks:
    """Global callbacks fired for every query, with the canonical key."""
    on_success: Optional[Callable[[Any, str], None]] = None
    on_error: Optional[Callable[[BaseException, str], None]] = None
    on_settled: Optional[Callable[[Any, Optional[BaseException], str], None]] = None


@dataclass
class MutationCallbacks:
    """Global callbacks fired for every mutation, with its variables."""
    on_success: Optional[Callable[[Any, Any], Any]] = None
    on_error: Optional[Callable[[BaseException, Any], Any]] = None
    on_settled: Optional[Callable[[Any, Optional[BaseException], Any], Any]] = None


@dataclass
class QueryClientConfig:
    queries: QueryCallbacks = field(default_factory=QueryCallbacks)
    mutations: MutationCallbacks = field(default_factory=MutationCallbacks)


class QueryClient:
    """Cache service shared by every consumer."""

    def __init__(self,
                 config: Optional[QueryClientConfig] = None,
                 *,
                 settings: Optional[QueryCacheSettings] = None,
                 scheduler: Optional[Scheduler] = None,
                 metrics: Optional[QueryCacheMetrics] = None):
        self.config = config or QueryClientConfig()
        self.settings = settings or get_settings()
        self.scheduler = scheduler or LoopScheduler()
        self.logger = get_logger("query_cache.client")

        if metrics is None and self.settings.metrics_enabled:
            metrics = QueryCacheMetrics()
        self.metrics = metrics

        self.store = CacheStore(self.scheduler, metrics=self.metrics)
        self.registry = InflightRegistry()
        self.clock = SharedClock(self.scheduler, interval=self.settings.clock_interval)

        self._handles: Dict[int, QueryHandle] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def default_options(self, **overrides: Any) -> QueryOptions:
        return QueryOptions.from_settings(self.settings, **overrides)

    def execute(self, key: Any, fetcher: Fetcher, options: Optional[QueryOptions] = None,
                **overrides: Any) -> QueryHandle:
        """Start observing ``key``; fetches right away when the cache is missing or stale.

        Must be called while an asyncio event loop is running; raises
        ``RuntimeError`` otherwise, before touching the cache.
        """
        self._ensure_open()
        asyncio.get_running_loop()
        if options is None:
            options = self.default_options(**overrides)
        else:
            options = options.merge(**overrides)

        handle = QueryHandle(self, key, fetcher, options)
        self._handles[handle.id] = handle
        return handle

    def mutation(self, mutation_fn: Callable[[Any], Any], **callbacks: Any) -> Mutation:
        self._ensure_open()
        return Mutation(self, mutation_fn, **callbacks)

    def is_fetching(self, key: Any = None) -> int:
        """Number of entries currently fetching, optionally within a key group."""
        return count_fetching(self.store, key)

    def invalidate_queries(self, prefix: Any) -> int:
        """Mark every entry in a key group stale and refetch the observed ones."""
        keys = set(self.store.invalidate_group(prefix))
        for handle in list(self._handles.values()):
            if handle.key in keys and handle.enabled:
                handle._fetch(force=True)
        return len(keys)

    def get_query_data(self, key: Any) -> Any:
        entry = self.store.get(key)
        return entry.data if entry is not None else None

    def handles(self):
        return list(self._handles.values())

    def shutdown(self) -> None:
        """Close every handle, cancel in-flight requests and timers, drop all entries."""
        if self._closed:
            return
        self._closed = True

        for handle in list(self._handles.values()):
            handle.close()
        self.registry.cancel_all()
        self.store.clear()
        self.store.bus.clear()
        self.clock.stop()
        self.logger.info("Query client shut down")

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # -- called by handles -------------------------------------------------------

    def _settle(self, request: InflightRequest, result: Any = _MISSING,
                error: Optional[BaseException] = None) -> None:
        """Write a finished request into the store and fire every callback."""
        key = request.key
        current = self.registry.get(key)
        fetch_status = FetchStatus.FETCHING if current not in (None, request) else FetchStatus.IDLE
        self.registry.discard(request)
        self._record_inflight()
        holders = list(request.holders.values())
        for holder in holders:
            holder._request_finished(request)
        entry = self.store.get(key)
        callbacks = self.config.queries

        if error is None:
            cache_time = holders[0].options.cache_time if holders else self.settings.default_cache_time
            base = entry if entry is not None else CacheEntry(cache_time=cache_time)
            self.store.set(key, base.replace(
                data=result,
                error=None,
                status=QueryStatus.SUCCESS,
                fetch_status=fetch_status,
                updated_at=self.scheduler.time()
            ))
            if entry is None:
                # Removed while fetching: nobody is subscribed any more.
                self.store.update_subscribers(key, 0, base.cache_time)

            selected = [holder._deliver_success(result) for holder in holders]
            safe_call(callbacks.on_success, selected[0] if selected else result, key, name="queries.on_success")
            self._record("fetches_total", outcome="success")
        else:
            if entry is not None:
                self.store.set(key, entry.replace(
                    status=QueryStatus.ERROR,
                    fetch_status=fetch_status,
                    error=error
                ))
            self.logger.error("Query fetch failed", query_key=key, error=str(error))

            for holder in holders:
                holder._deliver_error(error)
            safe_call(callbacks.on_error, error, key, name="queries.on_error")
            self._record("fetches_total", outcome="error")

        for holder in holders:
            holder._deliver_settled()

        latest = self.store.get(key)
        data = holders[0].data.get() if holders else (latest.data if latest else None)
        safe_call(callbacks.on_settled, data, latest.error if latest else error, key, name="queries.on_settled")

    def _abandon(self, request: InflightRequest) -> None:
        """Clean up after a cancelled request. Safe to call more than once."""
        self.registry.discard(request)
        self._record_inflight()

        if self.registry.get(request.key) is not None:
            return
        entry = self.store.get(request.key)
        if entry is not None and entry.fetch_status == FetchStatus.FETCHING:
            self.store.set(request.key, entry.replace(fetch_status=FetchStatus.IDLE))
            self._record("fetches_total", outcome="cancelled")

    def _forget(self, handle: QueryHandle) -> None:
        self._handles.pop(handle.id, None)

    def _record(self, metric: str, **labels: Any) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, **labels)

    def _record_inflight(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("inflight_requests", len(self.registry))

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError()


def create_client(config: Optional[QueryClientConfig] = None, *,
                  settings: Optional[QueryCacheSettings] = None,
                  scheduler: Optional[Scheduler] = None,
                  metrics: Optional[QueryCacheMetrics] = None,
                  configure_logs: bool = True) -> QueryClient:
    """Create a client, configure structured logging and, when
    ``metrics_port`` is set, serve its metrics over HTTP.
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging("query_cache", settings.log_level, settings.log_format)
    client = QueryClient(config, settings=settings, scheduler=scheduler, metrics=metrics)
    if settings.metrics_port and client.metrics:
        client.metrics.start_metrics_server(settings.metrics_port)
    return client
