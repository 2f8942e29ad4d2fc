"""
Unit tests for the query client: global callbacks, key-group operations,
inspection and shutdown.
"""

import asyncio

import pytest
import pytest_asyncio
from unittest.mock import MagicMock, patch

from query_cache.client import QueryCallbacks, QueryClient, QueryClientConfig, create_client
from query_cache.fetching.options import INFINITE
from query_cache.inspection import FetchingCounter, snapshot
from query_cache.models import FetchStatus, QueryStatus
from shared.errors import ClientClosedError
from shared.test_helpers import ManualScheduler, StubFetcher, create_test_settings, flush


class TestGlobalCallbacks:
    """Test cases for client-wide query callbacks."""

    @pytest.fixture
    def callbacks(self):
        return QueryCallbacks(on_success=MagicMock(), on_error=MagicMock(), on_settled=MagicMock())

    @pytest_asyncio.fixture
    async def configured_client(self, callbacks):
        """Client with global query callbacks."""
        client = QueryClient(
            QueryClientConfig(queries=callbacks),
            settings=create_test_settings(),
            scheduler=ManualScheduler()
        )
        yield client
        client.shutdown()
        await flush()

    @pytest.mark.asyncio
    async def test_success_receives_canonical_key(self, configured_client, callbacks):
        configured_client.execute(["todos", {"done": True}], StubFetcher("raw"), select=str.upper)
        await flush()

        callbacks.on_success.assert_called_once_with("RAW", 'todos,{"done":true}')
        callbacks.on_settled.assert_called_once_with("RAW", None, 'todos,{"done":true}')
        callbacks.on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_receives_canonical_key(self, configured_client, callbacks):
        error = RuntimeError("down")
        configured_client.execute("todos", StubFetcher(error))
        await flush()

        callbacks.on_error.assert_called_once_with(error, "todos")
        callbacks.on_settled.assert_called_once_with(None, error, "todos")
        callbacks.on_success.assert_not_called()

    @pytest.mark.asyncio
    async def test_shared_request_fires_global_callbacks_once(self, configured_client, callbacks):
        """Test de-duplicated consumers trigger global callbacks once per fetch."""
        gate = asyncio.Event()
        fetcher = StubFetcher("value", gate=gate)
        configured_client.execute("todos", fetcher)
        configured_client.execute("todos", fetcher)
        gate.set()
        await flush()

        callbacks.on_success.assert_called_once_with("value", "todos")

    @pytest.mark.asyncio
    async def test_failing_global_callback_is_isolated(self, configured_client, callbacks):
        callbacks.on_success.side_effect = RuntimeError("callback")
        handle = configured_client.execute("todos", StubFetcher("value"))
        await flush()

        assert handle.data.get() == "value"
        callbacks.on_settled.assert_called_once()


class TestKeyGroups:
    """Test cases for prefix-based operations."""

    @pytest.mark.asyncio
    async def test_is_fetching_counts(self, client):
        """Test fetching counts overall and per key group."""
        gate = asyncio.Event()
        fetcher = StubFetcher("value", gate=gate)
        client.execute(["todos", 1], fetcher)
        client.execute(["todos", 2], fetcher)
        client.execute(["todo", 1], fetcher)

        assert client.is_fetching() == 3
        assert client.is_fetching(["todos"]) == 2
        assert client.is_fetching("todos") == 2
        assert client.is_fetching(["todos", 1]) == 1
        assert client.is_fetching("users") == 0

        gate.set()
        await flush()
        assert client.is_fetching() == 0

    @pytest.mark.asyncio
    async def test_invalidate_queries_refetches_group(self, client):
        """Test invalidating a group refetches observed members only."""
        todos = StubFetcher("t1", "t2")
        todo = StubFetcher("x")
        client.execute(["todos", 1], todos, stale_time=INFINITE)
        client.execute(["todos", 1], todos, stale_time=INFINITE)
        client.execute("todo", todo, stale_time=INFINITE)
        await flush()

        count = client.invalidate_queries("todos")
        await flush()

        assert count == 1
        assert todos.call_count == 2
        assert todo.call_count == 1
        assert client.get_query_data(["todos", 1]) == "t2"
        assert client.store.get("todo").updated_at > 0

    @pytest.mark.asyncio
    async def test_get_query_data_missing(self, client):
        assert client.get_query_data("missing") is None


class TestInspection:
    """Test cases for store inspection helpers."""

    @pytest.mark.asyncio
    async def test_fetching_counter_tracks_store(self, client):
        gate = asyncio.Event()
        counter = FetchingCounter(client.store, "todos")
        changes = MagicMock()
        counter.on_change(changes)

        client.execute(["todos", 1], StubFetcher("a", gate=gate))
        client.execute("users", StubFetcher("b", gate=gate))
        assert counter.get() == 1

        counter.set_filter(None)
        assert counter.get() == 2

        gate.set()
        await flush()
        assert counter.get() == 0
        assert changes.call_count >= 2
        counter.close()

    @pytest.mark.asyncio
    async def test_snapshot_sorted(self, client):
        client.execute("b", StubFetcher(2))
        client.execute("a", StubFetcher(1))
        await flush()

        keys = [key for key, _ in snapshot(client.store)]
        assert keys == ["a", "b"]
        assert all(entry.status == QueryStatus.SUCCESS for _, entry in snapshot(client.store))


class TestLifecycle:
    """Test cases for client construction and shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_tears_everything_down(self, client):
        gate = asyncio.Event()
        fetcher = StubFetcher("value", gate=gate)
        handle = client.execute("todos", fetcher, cache_time=10)
        client.execute("timed", StubFetcher(1), stale_time=5)
        await flush()

        client.shutdown()
        await flush()

        assert client.closed
        assert handle.closed
        assert len(client.store) == 0
        assert len(client.registry) == 0
        assert client.scheduler.pending == 0
        assert not client.clock.running
        assert fetcher.calls[0][0].cancelled is True

        with pytest.raises(ClientClosedError):
            client.execute("todos", fetcher)
        with pytest.raises(ClientClosedError):
            client.mutation(MagicMock())

        client.shutdown()

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with QueryClient(settings=create_test_settings(), scheduler=ManualScheduler()) as client:
            handle = client.execute("todos", StubFetcher("value"))
            await flush()
            assert handle.data.get() == "value"

        assert client.closed

    @pytest.mark.asyncio
    async def test_metrics_disabled(self):
        client = QueryClient(settings=create_test_settings(metrics_enabled=False), scheduler=ManualScheduler())
        handle = client.execute("todos", StubFetcher("value"))
        await flush()

        assert client.metrics is None
        assert handle.data.get() == "value"
        client.shutdown()

    @pytest.mark.asyncio
    async def test_fetch_outcome_metrics(self, client):
        client.execute("ok", StubFetcher(1))
        client.execute("bad", StubFetcher(RuntimeError("x")))
        await flush()

        assert client.metrics.sample("fetches_total", outcome="success") == 1.0
        assert client.metrics.sample("fetches_total", outcome="error") == 1.0
        assert client.metrics.sample("entries") == 2.0
        assert client.metrics.sample("inflight_requests") == 0.0

    @pytest.mark.asyncio
    async def test_removed_while_fetching(self, client):
        """Test a result for a removed entry is stored and left to evict."""
        gate = asyncio.Event()
        handle = client.execute("todos", StubFetcher("value", gate=gate), cache_time=1.0)
        await flush()

        client.store.remove("todos")
        gate.set()
        await flush()

        entry = client.store.get("todos")
        assert entry.data == "value"
        assert entry.fetch_status == FetchStatus.IDLE
        assert entry.subscribers == 0
        assert handle.data.get() == "value"

        client.scheduler.advance(1.0)
        assert "todos" not in client.store

    @pytest.mark.asyncio
    async def test_new_handle_joins_request_of_removed_entry(self, client):
        """Test a handle created after removal joins the request still running."""
        gate = asyncio.Event()
        fetcher = StubFetcher("value", gate=gate)
        first = client.execute("todos", fetcher)
        await flush()

        client.store.remove("todos")
        second = client.execute("todos", fetcher)

        assert second.is_fetching.get() is True
        assert client.store.get("todos").fetch_status == FetchStatus.FETCHING
        assert len(client.registry) == 1

        gate.set()
        await flush()

        assert fetcher.call_count == 1
        assert first.data.get() == "value"
        assert second.data.get() == "value"
        entry = client.store.get("todos")
        assert entry.fetch_status == FetchStatus.IDLE
        assert entry.subscribers == 1

    def test_execute_without_running_loop(self):
        """Test execute fails before creating an entry or a request."""
        client = QueryClient(settings=create_test_settings(), scheduler=ManualScheduler())

        with pytest.raises(RuntimeError):
            client.execute("todos", StubFetcher(1))

        assert len(client.store) == 0
        assert len(client.registry) == 0
        assert client.handles() == []
        client.shutdown()

    @pytest.mark.asyncio
    async def test_create_client_serves_metrics_on_port(self):
        settings = create_test_settings(metrics_port=9464)
        with patch("shared.metrics.start_http_server") as start_http_server:
            client = create_client(settings=settings, scheduler=ManualScheduler(), configure_logs=False)

        start_http_server.assert_called_once_with(9464, registry=client.metrics.registry)
        client.shutdown()

    @pytest.mark.asyncio
    async def test_create_client_without_port_serves_nothing(self):
        with patch("shared.metrics.start_http_server") as start_http_server:
            client = create_client(settings=create_test_settings(), scheduler=ManualScheduler(),
                                   configure_logs=False)

        start_http_server.assert_not_called()
        client.shutdown()

    @pytest.mark.asyncio
    async def test_create_client_uses_settings(self):
        settings = create_test_settings(default_stale_time=30.0, default_retry=2)
        client = create_client(settings=settings, scheduler=ManualScheduler())

        options = client.default_options()
        assert options.stale_time == 30.0
        assert options.retry == 2
        assert client.default_options(retry=0).retry == 0
        client.shutdown()
