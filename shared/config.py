"""
Shared configuration management for the query cache.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueryCacheSettings(BaseSettings):
    """Defaults applied to every query unless overridden per call.

    Durations are seconds. ``float("inf")`` is accepted for
    ``default_stale_time`` and ``default_cache_time``.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUERY_CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_format: str = Field(default="json", pattern="^(json|console)$")

    # Query defaults
    default_stale_time: float = Field(default=0.0, ge=0)
    default_cache_time: float = Field(default=300.0, ge=0)
    default_retry: int = Field(default=3, ge=0)
    default_retry_delay: float = Field(default=1.0, ge=0)

    # Shared clock driving time-based staleness
    clock_interval: float = Field(default=1.0, gt=0)

    # Observability
    metrics_enabled: bool = Field(default=True)
    metrics_port: Optional[int] = Field(default=None, ge=1, le=65535)


@lru_cache(maxsize=1)
def get_settings() -> QueryCacheSettings:
    """Get process settings, read once from the environment."""
    return QueryCacheSettings()
