"""
Mutations: single write operations with lifecycle callbacks.

A mutation is not cached or de-duplicated. It moves through
``idle -> pending -> success | error`` and fires per-call, per-mutation and
global callbacks in that order.
"""

import asyncio
import inspect
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Set

from query_cache.observable import Computed, Observable
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from query_cache.client import QueryClient


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Mutation:
    """State machine around one ``mutation_fn(variables)`` coroutine."""

    def __init__(self, client: "QueryClient", mutation_fn: Callable[[Any], Awaitable[Any]],
                 on_success: Optional[Callable[[Any, Any], Any]] = None,
                 on_error: Optional[Callable[[BaseException, Any], Any]] = None,
                 on_settled: Optional[Callable[[Any, Optional[BaseException], Any], Any]] = None):
        self._client = client
        self._mutation_fn = mutation_fn
        self._on_success = on_success
        self._on_error = on_error
        self._on_settled = on_settled
        self.logger = get_logger("query_cache.mutation")
        self._tasks: Set["asyncio.Task[Any]"] = set()

        self.status: Observable[MutationStatus] = Observable(MutationStatus.IDLE)
        self.data: Observable[Any] = Observable(None)
        self.error: Observable[Optional[BaseException]] = Observable(None)
        self.variables: Observable[Any] = Observable(None)
        self.submitted_at: Observable[float] = Observable(0.0)
        self.failure_count: Observable[int] = Observable(0)

        self.is_idle = Computed(lambda: self.status.get() == MutationStatus.IDLE, self.status)
        self.is_pending = Computed(lambda: self.status.get() == MutationStatus.PENDING, self.status)
        self.is_success = Computed(lambda: self.status.get() == MutationStatus.SUCCESS, self.status)
        self.is_error = Computed(lambda: self.status.get() == MutationStatus.ERROR, self.status)

    async def mutate_async(self, variables: Any = None, *,
                           on_success: Optional[Callable[[Any, Any], Any]] = None,
                           on_error: Optional[Callable[[BaseException, Any], Any]] = None,
                           on_settled: Optional[Callable[[Any, Optional[BaseException], Any], Any]] = None) -> Any:
        """Run the mutation and return its result; failures are re-raised."""
        global_callbacks = self._client.config.mutations

        self.status.set(MutationStatus.PENDING)
        self.error.set(None)
        self.variables.set(variables)
        self.submitted_at.set(self._client.scheduler.time())

        try:
            result = await self._mutation_fn(variables)

            self.data.set(result)
            self.status.set(MutationStatus.SUCCESS)
            self.failure_count.set(0)
            self._record("success")

            await _invoke(on_success, result, variables)
            await _invoke(self._on_success, result, variables)
            await _invoke(global_callbacks.on_success, result, variables)
            return result
        except Exception as exc:
            self.error.set(exc)
            self.status.set(MutationStatus.ERROR)
            self.failure_count.set(self.failure_count.get() + 1)
            self._record("error")
            self.logger.warning("Mutation failed", error=str(exc))

            await _invoke(on_error, exc, variables)
            await _invoke(self._on_error, exc, variables)
            await _invoke(global_callbacks.on_error, exc, variables)
            raise
        finally:
            await _invoke(on_settled, self.data.get(), self.error.get(), variables)
            await _invoke(self._on_settled, self.data.get(), self.error.get(), variables)
            await _invoke(global_callbacks.on_settled, self.data.get(), self.error.get(), variables)

    def mutate(self, variables: Any = None, **callbacks: Any) -> "asyncio.Task[Any]":
        """Fire-and-forget ``mutate_async``; failures are logged, not raised."""
        task = asyncio.get_running_loop().create_task(self.mutate_async(variables, **callbacks))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def reset(self) -> None:
        self.status.set(MutationStatus.IDLE)
        self.data.set(None)
        self.error.set(None)
        self.variables.set(None)
        self.submitted_at.set(0.0)
        self.failure_count.set(0)

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.debug("Background mutation settled with error", error=str(exc))

    def _record(self, outcome: str) -> None:
        if self._client.metrics:
            self._client.metrics.increment_counter("mutations_total", outcome=outcome)
