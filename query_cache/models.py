"""
Cache entry and event models.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from shared.errors import ValidationError

DEFAULT_CACHE_TIME = 300.0


class QueryStatus(str, Enum):
    """Lifecycle of the cached value."""
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FetchStatus(str, Enum):
    """Lifecycle of the in-flight operation, independent of ``QueryStatus``."""
    FETCHING = "fetching"
    PAUSED = "paused"
    IDLE = "idle"


class QueryEventType(str, Enum):
    """Store change notifications."""
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True)
class CacheEntry:
    """Cached record for one canonical key.

    Entries are immutable; every change goes through ``replace`` and is
    written back to the store as a whole.
    """
    data: Any = None
    error: Optional[BaseException] = None
    status: QueryStatus = QueryStatus.PENDING
    fetch_status: FetchStatus = FetchStatus.IDLE
    updated_at: float = 0.0
    cache_time: float = DEFAULT_CACHE_TIME
    subscribers: int = 0

    def __post_init__(self):
        if self.subscribers < 0:
            raise ValidationError(
                "Subscriber count cannot be negative",
                details={"subscribers": self.subscribers}
            )

    @property
    def has_data(self) -> bool:
        return self.data is not None

    @property
    def is_fetching(self) -> bool:
        return self.fetch_status == FetchStatus.FETCHING

    def replace(self, **changes: Any) -> "CacheEntry":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class QueryEvent:
    """A change to one store entry. ``entry`` is ``None`` for removals."""
    type: QueryEventType
    key: str
    entry: Optional[CacheEntry] = None
