"""
Shared logging configuration for the query cache.

Every component logs through ``get_logger("query_cache.<component>")``.
While a fetch runs, the canonical key it serves is bound to a context
variable and stamped onto each event as ``query_key``.
"""

import logging
import sys
import time
from contextvars import ContextVar, Token
from typing import Any, Dict, List, Optional

import structlog

# Canonical key of the fetch running in the current task
query_key_var: ContextVar[Optional[str]] = ContextVar('query_key', default=None)


def configure_logging(service_name: str = "query_cache", log_level: str = "info",
                      log_format: str = "json") -> None:
    """Configure structlog on top of stdlib logging.

    ``log_format`` is ``"json"`` for machine-readable output or
    ``"console"`` for local development.
    """
    level = getattr(logging, log_level.upper())
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=_shared_processors() + [renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def _shared_processors() -> List[Any]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_component,
        add_query_context,
        add_monotonic_time,
    ]


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the component (last segment of the logger name)."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["component"] = logger_name.rsplit(".", 1)[1]
    return event_dict


def add_query_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the active query key unless the event names one itself."""
    query_key = query_key_var.get()
    if query_key is not None:
        event_dict.setdefault("query_key", query_key)
    return event_dict


def add_monotonic_time(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add a monotonic clock reading for ordering events within a process."""
    event_dict["monotonic"] = time.monotonic()
    return event_dict


def set_query_key(query_key: Optional[str]) -> Token:
    """Bind a query key to the current context. Returns a reset token."""
    return query_key_var.set(query_key)


def reset_query_key(token: Token) -> None:
    query_key_var.reset(token)


def clear_context() -> None:
    query_key_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
