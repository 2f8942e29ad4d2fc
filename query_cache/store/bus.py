"""
Notification bus for store change events.
"""

import itertools
from typing import Callable, Dict

from query_cache.models import QueryEvent
from shared.logging import get_logger

QueryListener = Callable[[QueryEvent], None]


class NotificationBus:
    """Fans out ``added`` / ``updated`` / ``removed`` events to listeners."""

    def __init__(self):
        self.logger = get_logger("query_cache.bus")
        self._listeners: Dict[int, QueryListener] = {}
        self._ids = itertools.count()

    def subscribe(self, listener: QueryListener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe callable."""
        listener_id = next(self._ids)
        self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def publish(self, event: QueryEvent) -> None:
        # Listeners may unsubscribe themselves (or others) while being notified.
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                self.logger.exception(
                    "Query listener failed",
                    event_type=event.type.value,
                    query_key=event.key
                )

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
