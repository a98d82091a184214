"""
Package-level exception hierarchy for the query governor.

All exceptions inherit from GovernorError, enabling:
- Catching all governor errors with a single except clause
- Rich context fields for debugging (timeout_ms, config_key, fingerprint, etc.)
- Structured serialization via to_dict() for JSON error responses

Only three kinds ever reach callers of ``QueryGovernor.execute``: timeouts,
connection failures and backend errors. Analysis and cache failures are
recovered inside the governor and logged.

Hierarchy:
    GovernorError
    ├── QueryTimeoutError        – Deadline exceeded (also a TimeoutError)
    ├── GovernorConnectionError  – Connection-level failure (also a ConnectionError)
    │   ├── PoolExhaustedError   – No connection freed up while queued
    │   └── BackendUnavailableError – Opening a connection failed
    ├── BackendError             – Backend rejected a statement
    ├── AnalysisError            – EXPLAIN output missing or unparseable
    ├── CacheError               – Cache store read/write failed
    └── ConfigurationError       – Invalid governor configuration
"""

from __future__ import annotations

from typing import Any


class GovernorError(Exception):
    """
    Base exception for all governor errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON error responses."""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
        }


# ── Fatal (caller-visible) errors ────────────────────────────────────────


class QueryTimeoutError(GovernorError, TimeoutError):
    """
    The query did not finish within its deadline.

    The backend operation is abandoned, not cancelled: it may still be
    running server-side until the statement timeout fires.

    Attributes:
        timeout_ms: The deadline that was exceeded.
        query: The (truncated) query text.
    """

    def __init__(self, timeout_ms: float, query: str | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.query = query[:200] if query else None
        super().__init__(f"Query timeout after {timeout_ms:g}ms")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["timeout_ms"] = self.timeout_ms
        return result


class GovernorConnectionError(GovernorError, ConnectionError):
    """Connection-level failure: pool exhausted or backend unreachable."""
    pass


class PoolExhaustedError(GovernorConnectionError):
    """
    No pooled connection became available in time.

    Attributes:
        max_size: Configured pool size.
        waited_ms: How long the caller queued before giving up.
    """

    def __init__(self, max_size: int, waited_ms: float) -> None:
        self.max_size = max_size
        self.waited_ms = waited_ms
        super().__init__(
            f"Connection pool exhausted (max={max_size}) after waiting {waited_ms:g}ms"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["max_size"] = self.max_size
        result["waited_ms"] = self.waited_ms
        return result


class BackendUnavailableError(GovernorConnectionError):
    """Opening a new backend connection failed."""

    def __init__(self, original_error: Exception) -> None:
        self.original_error = original_error
        super().__init__(
            f"Backend unreachable: {original_error.__class__.__name__}: {original_error}"
        )


class BackendError(GovernorError):
    """
    A statement was rejected by the backend.

    Driver exceptions are passed through to callers unchanged; this class is
    raised only by backends that have no native exception type of their own.

    Attributes:
        sqlstate: Five-character SQLSTATE code, when the backend supplies one.
    """

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        self.sqlstate = sqlstate
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["sqlstate"] = self.sqlstate
        return result


# ── Recoverable (absorbed) errors ────────────────────────────────────────


class AnalysisError(GovernorError):
    """
    Failed to obtain or parse a diagnostic execution plan.

    Attributes:
        query: The (truncated) query whose plan was requested.
    """

    def __init__(self, message: str, query: str | None = None) -> None:
        self.query = query[:200] if query else None
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["query"] = self.query
        return result


class CacheError(GovernorError):
    """
    The cache store failed to read or write an entry.

    Attributes:
        operation: "get" or "set".
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        return result


class ConfigurationError(GovernorError):
    """
    Invalid governor configuration.

    Attributes:
        config_key: The configuration key that caused the error (if known).
    """

    def __init__(self, message: str, config_key: str | None = None) -> None:
        self.config_key = config_key
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["config_key"] = self.config_key
        return result
