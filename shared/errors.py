"""
Shared error handling for the query cache.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    query_key: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class QueryCacheException(Exception):
    """Base exception for the query cache."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, query_key: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            query_key=query_key,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(QueryCacheException):
    """Invalid options or entry values."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class KeyCanonicalizationError(QueryCacheException):
    """Query key cannot be turned into a canonical string."""

    def __init__(self, message: str = "Query key cannot be canonicalized", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_CANONICALIZATION_ERROR", message, details)


class ClientClosedError(QueryCacheException):
    """Operation attempted on a client that has been shut down."""

    def __init__(self, message: str = "Query client has been shut down", details: Optional[Dict[str, Any]] = None):
        super().__init__("CLIENT_CLOSED", message, details)
