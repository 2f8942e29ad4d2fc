"""
Observable values and event hooks.

Handles expose their state as observables so that any UI binding can
subscribe to changes without a reactive framework underneath.
"""

import itertools
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from shared.logging import get_logger

T = TypeVar("T")

ChangeListener = Callable[[Any, Any], None]

logger = get_logger("query_cache.observable")


def _same(old: Any, new: Any) -> bool:
    if old is new:
        return True
    try:
        return bool(old == new) and type(old) is type(new)
    except Exception:
        # Values without a usable truth value (arrays, frames) compare by identity.
        return False


class Observable(Generic[T]):
    """A value with change notification."""

    def __init__(self, value: T):
        self._value = value
        self._listeners: Dict[int, ChangeListener] = {}
        self._ids = itertools.count()

    @property
    def value(self) -> T:
        return self._value

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> bool:
        """Store ``value``; listeners run only when it differs from the current one."""
        old = self._value
        if _same(old, value):
            return False
        self._value = value
        self._notify(value, old)
        return True

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener(new, old)``. Returns an unsubscribe callable."""
        listener_id = next(self._ids)
        self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def _notify(self, new: Any, old: Any) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(new, old)
            except Exception:
                logger.exception("Observable listener failed")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._value!r})"


class Computed(Observable[T]):
    """Read-only observable recomputed whenever one of its sources changes."""

    def __init__(self, compute: Callable[[], T], *sources: Observable):
        self._compute = compute
        super().__init__(compute())
        self._unsubscribers = [source.on_change(self._recompute) for source in sources]

    def _recompute(self, *_: Any) -> None:
        Observable.set(self, self._compute())

    def refresh(self) -> None:
        """Recompute outside of a source change (for time-based values)."""
        self._recompute()

    def set(self, value: T) -> bool:
        raise AttributeError("Computed observables are read-only")

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


class EventHook(Generic[T]):
    """Set of callbacks fired together; ``on`` returns an unsubscribe callable."""

    def __init__(self, name: str = "event"):
        self.name = name
        self._callbacks: Dict[int, Callable[..., Any]] = {}
        self._ids = itertools.count()

    def on(self, callback: Callable[..., Any]) -> Callable[[], None]:
        callback_id = next(self._ids)
        self._callbacks[callback_id] = callback

        def unsubscribe() -> None:
            self._callbacks.pop(callback_id, None)

        return unsubscribe

    def trigger(self, *args: Any) -> None:
        for callback in list(self._callbacks.values()):
            try:
                callback(*args)
            except Exception:
                logger.exception("Event callback failed", hook=self.name)

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)


def safe_call(callback: Optional[Callable[..., Any]], *args: Any, name: str = "callback") -> None:
    """Invoke an optional user callback, logging instead of raising."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("User callback failed", callback=name)
