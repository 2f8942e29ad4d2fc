"""
Per-query options.
"""

import dataclasses
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

from shared.config import QueryCacheSettings
from shared.errors import ValidationError

INFINITE = math.inf


@dataclass
class QueryOptions:
    """Options recognized by ``QueryClient.execute``.

    Durations are seconds; ``INFINITE`` disables staleness or eviction.
    """
    enabled: bool = True
    initial_data: Any = None
    stale_time: float = 0.0
    cache_time: float = 300.0
    retry: int = 3
    retry_delay: float = 1.0
    select: Optional[Callable[[Any], Any]] = None
    refetch_on_key_change: bool = True
    keep_previous_data: bool = False
    enable_auto_sync_cache: bool = True

    on_success: Optional[Callable[[Any], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None
    on_settled: Optional[Callable[[Any, Optional[BaseException]], None]] = None
    on_synced: Optional[Callable[[Any], None]] = None

    def __post_init__(self):
        if self.retry < 0:
            raise ValidationError("retry must be >= 0", details={"retry": self.retry})
        for name in ("stale_time", "cache_time", "retry_delay"):
            value = getattr(self, name)
            if value < 0 or math.isnan(value):
                raise ValidationError(f"{name} must be >= 0", details={name: value})

    @classmethod
    def from_settings(cls, settings: QueryCacheSettings, **overrides: Any) -> "QueryOptions":
        defaults = {
            "stale_time": settings.default_stale_time,
            "cache_time": settings.default_cache_time,
            "retry": settings.default_retry,
            "retry_delay": settings.default_retry_delay,
        }
        defaults.update(overrides)
        return cls(**defaults)

    def merge(self, **overrides: Any) -> "QueryOptions":
        return dataclasses.replace(self, **overrides) if overrides else self

    @property
    def time_sensitive(self) -> bool:
        """True when staleness can change with the passage of time alone."""
        return 0 < self.stale_time < INFINITE
