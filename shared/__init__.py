"""
Shared utilities for the query cache.

This package aggregates common building blocks consumed by the cache engine:

- config: Cache defaults via pydantic-settings
- logging: Structured logging with query-key correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry configuration and execution

Engine logic lives in ``query_cache``. Do not import from ``query_cache``
into shared/.
"""
