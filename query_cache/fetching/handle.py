"""
Query handles: one consumer's view of a cached key.

A handle subscribes to its key in the store, decides when to fetch,
shares in-flight requests with every other handle on the same key and
re-derives its exposed data whenever the cached entry changes.
"""

import asyncio
import itertools
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from query_cache.fetching.options import QueryOptions
from query_cache.fetching.registry import CancellationSignal, InflightRequest
from query_cache.keys import canonicalize, resolve_key
from query_cache.models import CacheEntry, FetchStatus, QueryEvent, QueryStatus
from query_cache.observable import Computed, EventHook, Observable, safe_call
from shared.errors import ClientClosedError
from shared.logging import get_logger, reset_query_key, set_query_key
from shared.retry import RetryConfig, retry_call

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from query_cache.client import QueryClient

Fetcher = Callable[[CancellationSignal, Any], Awaitable[Any]]

_handle_ids = itertools.count(1)


class QueryHandle:
    """A consumer of one query key.

    Exposes ``data``, ``error``, ``status``, ``fetch_status``, ``is_loading``,
    ``is_fetching``, ``is_error``, ``is_success`` and ``is_stale`` as
    observables. Created by ``QueryClient.execute``; call ``close()`` (or use
    the handle as a context manager) when the consumer goes away.
    """

    def __init__(self, client: "QueryClient", key: Any, fetcher: Fetcher, options: QueryOptions):
        self.id = next(_handle_ids)
        self.options = options
        self.logger = get_logger("query_cache.handle")

        self._client = client
        self._store = client.store
        self._registry = client.registry
        self._scheduler = client.scheduler
        self._fetcher = fetcher

        self._raw_key = resolve_key(key)
        self._key = canonicalize(self._raw_key)
        self._enabled = bool(options.enabled)
        self._request: Optional[InflightRequest] = None
        self._closed = False
        self._writing = False

        self._success_event: EventHook = EventHook("success")
        self._error_event: EventHook = EventHook("error")
        self._settled_event: EventHook = EventHook("settled")

        self._entry: Observable[Optional[CacheEntry]] = Observable(self._store.get(self._key))
        self.data: Observable[Any] = Observable(self._initial_data())

        self.status = Computed(self._compute_status, self._entry)
        self.fetch_status = Computed(self._compute_fetch_status, self._entry)
        self.error = Computed(lambda: self._entry.get().error if self._entry.get() else None, self._entry)
        self.is_loading = Computed(
            lambda: self.data.get() is None and self.status.get() == QueryStatus.PENDING,
            self.data, self.status
        )
        self.is_error = Computed(lambda: self.status.get() == QueryStatus.ERROR, self.status)
        self.is_success = Computed(lambda: self.status.get() == QueryStatus.SUCCESS, self.status)
        self.is_fetching = Computed(lambda: self.fetch_status.get() == FetchStatus.FETCHING, self.fetch_status)

        # Only a finite, non-zero stale time can flip with time alone.
        self._clock_subscription = None
        stale_sources = [self._entry]
        if options.time_sensitive:
            self._clock_subscription = client.clock.subscribe()
            stale_sources.append(client.clock.now)
        self.is_stale = Computed(lambda: self._is_stale(self._entry.get()), *stale_sources)
        self._computed = [
            self.status, self.fetch_status, self.error, self.is_loading,
            self.is_error, self.is_success, self.is_fetching, self.is_stale,
        ]

        self._last_seen = self._snapshot(self._entry.get())
        self._unsubscribe_store = self._store.subscribe(self._on_store_event)

        self._attach(self._key)
        self._on_inputs_changed(previous_key=None)

    # -- properties ---------------------------------------------------------

    @property
    def key(self) -> str:
        """Canonical key currently observed."""
        return self._key

    @property
    def raw_key(self) -> Any:
        return self._raw_key

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def entry(self) -> Optional[CacheEntry]:
        return self._entry.get()

    # -- public operations ---------------------------------------------------

    async def refetch(self, force: bool = False) -> Any:
        """Fetch unless fresh (or always with ``force``); returns the exposed data.

        Raises the fetcher's final error once retries are exhausted. If the
        request is cancelled because this handle moved to another key or was
        closed, returns the data exposed at that point instead.
        """
        request = self._fetch(force=force)
        if request is None:
            return self.data.get()

        try:
            await asyncio.shield(request.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not request.task.cancelled() or (current is not None and current.cancelling()):
                raise
            # This handle's request was abandoned by a key change or close.
            return self.data.get()
        if request.error is not None:
            raise request.error
        return self.data.get()

    def invalidate(self) -> None:
        """Mark the entry stale and fetch again right away."""
        self._ensure_open()
        self._store.invalidate(self._key)
        self._fetch(force=True)

    def set_data(self, updater: Any) -> None:
        """Replace the cached data with a value or ``updater(previous)``.

        The local value changes immediately; other handles on the key pick
        the change up from the store.
        """
        self._ensure_open()
        entry = self._store.get(self._key)
        previous = entry.data if entry is not None else None
        new_data = updater(previous) if callable(updater) else updater

        if new_data is not None:
            self.data.set(self._select(new_data))
            safe_call(self.options.on_synced, self.data.get(), name="on_synced")
        else:
            self.data.set(None)

        self._writing = True
        try:
            self._store.update(self._key, lambda _: new_data)
        finally:
            self._writing = False

    async def wait(self) -> None:
        """Wait for this handle's in-flight request, if any, to settle."""
        request = self._request
        if request is not None and request.task is not None and not request.task.done():
            await asyncio.shield(request.task)

    def set_key(self, key: Any) -> None:
        """Switch the handle to another key."""
        self._ensure_open()
        raw_key = resolve_key(key)
        canonical = canonicalize(raw_key)
        if canonical == self._key:
            self._raw_key = raw_key
            return

        previous = self._key
        self._release_request()
        self._detach(previous)

        self._raw_key = raw_key
        self._key = canonical
        self._attach(canonical)
        self._entry.set(self._store.get(canonical))
        self._sync(self._entry.get())

        self.logger.debug("Query key changed", previous_key=previous, query_key=canonical)
        self._on_inputs_changed(previous_key=previous)

    def set_enabled(self, enabled: bool) -> None:
        self._ensure_open()
        enabled = bool(enabled)
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if enabled:
            self._on_inputs_changed(previous_key=None)

    def on_success(self, callback: Callable[[Any], None]) -> Callable[[], None]:
        return self._success_event.on(callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> Callable[[], None]:
        return self._error_event.on(callback)

    def on_settled(self, callback: Callable[[Any, Optional[BaseException]], None]) -> Callable[[], None]:
        return self._settled_event.on(callback)

    def close(self) -> None:
        """Tear down: drop the subscription and release the in-flight request."""
        if self._closed:
            return
        self._closed = True

        self._detach(self._key)
        self._release_request()
        self._unsubscribe_store()

        if self._clock_subscription is not None:
            self._client.clock.unsubscribe(self._clock_subscription)
            self._clock_subscription = None

        for computed in self._computed:
            computed.dispose()
        self._success_event.clear()
        self._error_event.clear()
        self._settled_event.clear()
        self._client._forget(self)

    def __enter__(self) -> "QueryHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"QueryHandle(id={self.id}, key={self._key!r}, status={self.status.get().value})"

    # -- fetch decision --------------------------------------------------------

    def _on_inputs_changed(self, previous_key: Optional[str]) -> None:
        """Run the mount / key-change fetch decision."""
        if not self._enabled:
            return

        key_changed = previous_key is not None and previous_key != self._key
        if key_changed and not self.options.refetch_on_key_change:
            return

        entry = self._store.get(self._key)
        should_fetch = (
            entry is None
            or (entry.updated_at == 0 and entry.status == QueryStatus.PENDING)
            or self._is_stale(entry)
        )

        if should_fetch:
            if key_changed and not self.options.keep_previous_data:
                # Stale data of the new key stays visible only through cache sync.
                visible = entry.data if entry is not None and self.options.enable_auto_sync_cache else None
                self.data.set(self._select(visible) if visible is not None else None)
            self._fetch()
        elif entry.data is not None:
            self.data.set(self._select(entry.data))

    def _fetch(self, force: bool = False) -> Optional[InflightRequest]:
        self._ensure_open()
        key = self._key

        if not self._enabled and not force:
            return None

        loop = asyncio.get_running_loop()
        entry = self._store.get(key)
        shared = self._registry.get(key)
        if shared is not None and not shared.done and not shared.signal.cancelled:
            if entry is None or not entry.is_fetching:
                # The entry was removed or rewritten while the request kept running.
                self._mark_fetching(key, entry)
            if self._request is not shared:
                self._release_request()
                shared.hold(self)
                self._request = shared
                self.logger.debug("Joined in-flight request", query_key=key, holders=len(shared.holders))
                self._record("dedup_joins_total")
            return shared

        if not force and not self._is_stale(entry):
            self._record("cache_hits_total")
            return None

        self._release_request()

        request = InflightRequest(key, self._raw_key, CancellationSignal())
        request.hold(self)
        self._request = request

        self._mark_fetching(key, entry)

        request.task = loop.create_task(self._run(request))
        request.task.add_done_callback(lambda task: self._client._abandon(request) if task.cancelled() else None)
        self._registry.register(request)
        self._client._record_inflight()
        return request

    def _mark_fetching(self, key: str, entry: Optional[CacheEntry]) -> None:
        if entry is None:
            self._store.set(key, CacheEntry(
                status=QueryStatus.PENDING,
                fetch_status=FetchStatus.FETCHING,
                cache_time=self.options.cache_time,
                subscribers=1
            ))
        else:
            self._store.set(key, entry.replace(fetch_status=FetchStatus.FETCHING))

    def _is_stale(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or entry.data is None:
            return True
        stale_time = self.options.stale_time
        if stale_time == 0:
            return True
        if stale_time == float("inf"):
            return False
        return self._scheduler.time() - entry.updated_at >= stale_time

    # -- fetch execution --------------------------------------------------------

    async def _run(self, request: InflightRequest) -> None:
        token = set_query_key(request.key)
        try:
            try:
                result = await retry_call(
                    lambda: self._fetcher(request.signal, request.raw_key),
                    RetryConfig.fixed(self.options.retry, self.options.retry_delay),
                    sleep=self._scheduler.sleep,
                    name="fetch",
                    on_retry=lambda attempt, exc: self._record("fetch_retries_total")
                )
            except asyncio.CancelledError:
                self.logger.debug("Fetch cancelled", query_key=request.key, reason=request.signal.reason)
                self._client._abandon(request)
                raise
            except Exception as exc:
                request.error = exc
                self._client._settle(request, error=exc)
            else:
                self._client._settle(request, result=result)
        finally:
            reset_query_key(token)

    def _deliver_success(self, result: Any) -> Any:
        """Expose a fetched result to this handle and fire its success callbacks."""
        selected = self._select(result)
        self.data.set(selected)
        safe_call(self.options.on_success, selected, name="on_success")
        self._success_event.trigger(selected)
        return selected

    def _deliver_error(self, error: BaseException) -> None:
        safe_call(self.options.on_error, error, name="on_error")
        self._error_event.trigger(error)

    def _deliver_settled(self) -> None:
        data, error = self.data.get(), self.error.get()
        safe_call(self.options.on_settled, data, error, name="on_settled")
        self._settled_event.trigger(data, error)

    def _request_finished(self, request: InflightRequest) -> None:
        if self._request is request:
            self._request = None

    def _release_request(self) -> None:
        request, self._request = self._request, None
        if request is not None and request.release(self.id):
            self.logger.debug("Released last hold on request; cancelled", query_key=request.key)
            self._client._abandon(request)

    # -- store synchronisation -----------------------------------------------------

    def _on_store_event(self, event: QueryEvent) -> None:
        if event.key != self._key:
            return
        self._entry.set(event.entry)
        self._sync(event.entry)

    def _sync(self, entry: Optional[CacheEntry]) -> None:
        seen = self._snapshot(entry)
        previous, self._last_seen = self._last_seen, seen

        if self._writing or not self.options.enable_auto_sync_cache:
            return
        if seen[0] is previous[0] and seen[1] == previous[1]:
            return

        if entry is not None and entry.data is not None:
            self.data.set(self._select(entry.data))
            safe_call(self.options.on_synced, self.data.get(), name="on_synced")
        elif not self.options.keep_previous_data:
            self.data.set(None)

    @staticmethod
    def _snapshot(entry: Optional[CacheEntry]):
        if entry is None:
            return (None, None)
        return (entry.data, entry.updated_at)

    # -- subscriber lifecycle ----------------------------------------------------

    def _attach(self, key: str) -> None:
        entry = self._store.get(key)
        if entry is None:
            seeded = self.options.initial_data is not None
            self._store.set(key, CacheEntry(
                data=self.options.initial_data,
                status=QueryStatus.SUCCESS if seeded else QueryStatus.PENDING,
                fetch_status=FetchStatus.IDLE,
                updated_at=self._scheduler.time() if seeded else 0.0,
                cache_time=self.options.cache_time,
                subscribers=1
            ))
        else:
            self._store.update_subscribers(key, entry.subscribers + 1, self.options.cache_time)

    def _detach(self, key: str) -> None:
        entry = self._store.get(key)
        if entry is not None:
            self._store.update_subscribers(key, max(0, entry.subscribers - 1), self.options.cache_time)

    # -- helpers -----------------------------------------------------------------

    def _initial_data(self) -> Any:
        entry = self._entry.get()
        if entry is not None and entry.data is not None:
            return self._select(entry.data)
        if self.options.initial_data is not None:
            return self._select(self.options.initial_data)
        return None

    def _select(self, raw: Any) -> Any:
        select = self.options.select
        return select(raw) if select is not None else raw

    def _compute_status(self) -> QueryStatus:
        entry = self._entry.get()
        return entry.status if entry is not None else QueryStatus.PENDING

    def _compute_fetch_status(self) -> FetchStatus:
        entry = self._entry.get()
        return entry.fetch_status if entry is not None else FetchStatus.IDLE

    def _record(self, metric: str) -> None:
        if self._client.metrics:
            self._client.metrics.increment_counter(metric)

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError("Query handle is closed", details={"query_key": self._key})
