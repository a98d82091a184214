"""
Tests for the exception hierarchy and its serialisation.
"""

from __future__ import annotations

import pytest

from querygovernor.exceptions import (
    AnalysisError,
    BackendError,
    BackendUnavailableError,
    CacheError,
    ConfigurationError,
    GovernorConnectionError,
    GovernorError,
    PoolExhaustedError,
    QueryTimeoutError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "error,builtin",
        [
            (QueryTimeoutError(50), TimeoutError),
            (PoolExhaustedError(20, 2000.0), ConnectionError),
            (BackendUnavailableError(OSError("refused")), ConnectionError),
        ],
    )
    def test_builtin_compatibility(self, error: GovernorError, builtin: type) -> None:
        assert isinstance(error, GovernorError)
        assert isinstance(error, builtin)

    def test_connection_errors_share_a_base(self) -> None:
        assert issubclass(PoolExhaustedError, GovernorConnectionError)
        assert issubclass(BackendUnavailableError, GovernorConnectionError)


class TestToDict:
    def test_timeout(self) -> None:
        error = QueryTimeoutError(50, query="SELECT pg_sleep(1)")
        data = error.to_dict()
        assert data["error_type"] == "QueryTimeoutError"
        assert "50" in data["message"]
        assert data["timeout_ms"] == 50

    def test_backend_error_carries_sqlstate(self) -> None:
        data = BackendError("duplicate key", sqlstate="23505").to_dict()
        assert data["sqlstate"] == "23505"
        assert data["message"] == "duplicate key"

    def test_recoverable_errors(self) -> None:
        assert AnalysisError("bad plan", query="SELECT 1").to_dict()["query"] == "SELECT 1"
        assert CacheError("down", operation="get").to_dict()["operation"] == "get"
        assert ConfigurationError("bad", config_key="dsn").to_dict()["config_key"] == "dsn"
