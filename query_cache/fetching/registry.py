"""
In-flight request registry and cancellation signals.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from shared.logging import get_logger


class CancellationSignal:
    """Cooperative cancellation token handed to fetchers."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(self.reason)


class InflightRequest:
    """A fetch shared by every handle that started or joined it.

    Holders are kept in join order. The request is cancelled only once its
    last holder releases it.
    """

    def __init__(self, key: str, raw_key: Any, signal: CancellationSignal):
        self.key = key
        self.raw_key = raw_key
        self.signal = signal
        self.task: Optional["asyncio.Task[Any]"] = None
        self.error: Optional[BaseException] = None
        self.holders: Dict[int, Any] = {}

    def hold(self, holder: Any) -> None:
        self.holders[holder.id] = holder

    def release(self, holder_id: int) -> bool:
        """Drop a holder. Returns True if that cancelled the request."""
        self.holders.pop(holder_id, None)
        if self.holders or self.done:
            return False
        self.cancel("released by last holder")
        return True

    def cancel(self, reason: str = "cancelled") -> None:
        self.signal.cancel(reason)
        if self.task is not None and not self.task.done():
            self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class InflightRegistry:
    """Canonical key to the single in-flight request for that key."""

    def __init__(self):
        self.logger = get_logger("query_cache.registry")
        self._requests: Dict[str, InflightRequest] = {}

    def get(self, key: str) -> Optional[InflightRequest]:
        return self._requests.get(key)

    def register(self, request: InflightRequest) -> None:
        self._requests[request.key] = request

    def discard(self, request: InflightRequest) -> None:
        """Remove ``request`` if it is still the registered one for its key."""
        if self._requests.get(request.key) is request:
            del self._requests[request.key]

    def cancel_all(self) -> None:
        requests = list(self._requests.values())
        self._requests.clear()
        for request in requests:
            request.cancel("client shutdown")
        if requests:
            self.logger.info("Cancelled in-flight requests", count=len(requests))

    def keys(self) -> List[str]:
        return list(self._requests)

    def __contains__(self, key: str) -> bool:
        return key in self._requests

    def __len__(self) -> int:
        return len(self._requests)
