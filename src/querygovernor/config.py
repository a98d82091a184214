"""
Configuration system for the query governor.

Implements 12-factor config principles:
- Environment variables as primary config source
- Optional config file for local development
- Per-environment threshold profiles
- One explicit model enumerating every recognised option

Usage:
    from querygovernor.config import get_config, GovernorConfig

    # Load from environment (default)
    config = get_config()

    # Or construct explicitly
    config = GovernorConfig(slow_query_threshold_ms=250, pool_max_size=5)
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from querygovernor.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Environment profiles with different default behaviors."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        """Parse environment from string, defaulting to development."""
        try:
            return cls(value.lower())
        except ValueError:
            return cls.DEVELOPMENT


# Slow-query thresholds used when QUERYGOV_SLOW_QUERY_THRESHOLD_MS is unset.
ENVIRONMENT_SLOW_THRESHOLDS_MS: dict[Environment, float] = {
    Environment.DEVELOPMENT: 100.0,
    Environment.STAGING: 500.0,
    Environment.PRODUCTION: 1000.0,
}


class GovernorConfig(BaseModel):
    """
    Query governor configuration.

    Every option the governor recognises is listed here with its default.
    Instances are immutable; derive variants with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Current environment (development/staging/production)",
    )

    # Backend / pool
    dsn: str | None = Field(
        default=None,
        description="Backend connection string (postgresql://...)",
    )
    pool_max_size: int = Field(
        default=20,
        description="Maximum number of pooled backend connections",
    )
    pool_acquire_timeout_ms: float = Field(
        default=2000.0,
        description="How long a caller may queue for a pooled connection",
    )
    statement_timeout_ms: float = Field(
        default=30000.0,
        description="Hard server-side statement timeout installed on each connection",
    )
    query_timeout_ms: float = Field(
        default=25000.0,
        description="Default client-side deadline per query; must be below statement_timeout_ms",
    )

    # Slow-query detection
    slow_query_threshold_ms: float = Field(
        default=1000.0,
        description="Latency above which a query counts as slow",
    )
    analyze_threshold_ms: float = Field(
        default=5000.0,
        description="Latency above which a slow query gets a deep EXPLAIN analysis",
    )
    signature_max_length: int = Field(
        default=200,
        description="Truncation length for normalised query signatures",
    )
    latency_sample_size: int = Field(
        default=1000,
        description="Number of recent latencies kept for percentile reporting",
    )

    # Result cache
    cache_enabled: bool = Field(
        default=True,
        description="Enable caching of read query results",
    )
    cache_ttl_seconds: float = Field(
        default=300.0,
        description="Default TTL for cached results",
    )
    cache_max_entries: int = Field(
        default=1000,
        description="Maximum number of entries in the in-memory result cache",
    )

    # Plan analysis / index advice
    plan_dialect: str = Field(
        default="postgresql",
        description="Dialect of the EXPLAIN output parser",
    )
    seq_scan_warning_rows: int = Field(
        default=1000,
        description="Row estimate at which a sequential scan is flagged",
    )
    auto_index_suggestions: bool = Field(
        default=True,
        description="Generate index suggestions after deep analysis",
    )
    dedupe_suggestions: bool = Field(
        default=False,
        description="Skip suggestions identical to one already logged",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "GovernorConfig":
        if self.query_timeout_ms >= self.statement_timeout_ms:
            raise ConfigurationError(
                f"query_timeout_ms ({self.query_timeout_ms:g}) must be below "
                f"statement_timeout_ms ({self.statement_timeout_ms:g})",
                config_key="query_timeout_ms",
            )
        if self.analyze_threshold_ms <= self.slow_query_threshold_ms:
            raise ConfigurationError(
                f"analyze_threshold_ms ({self.analyze_threshold_ms:g}) must be above "
                f"slow_query_threshold_ms ({self.slow_query_threshold_ms:g})",
                config_key="analyze_threshold_ms",
            )
        for key in (
            "pool_max_size",
            "pool_acquire_timeout_ms",
            "query_timeout_ms",
            "cache_max_entries",
            "signature_max_length",
            "latency_sample_size",
        ):
            if getattr(self, key) <= 0:
                raise ConfigurationError(f"{key} must be positive", config_key=key)
        return self

    def redacted(self) -> dict[str, Any]:
        """Dump for logging, with credentials stripped from the DSN."""
        data = self.model_dump(mode="json")
        if self.dsn and "@" in self.dsn:
            scheme, _, rest = self.dsn.partition("://")
            data["dsn"] = f"{scheme}://***@{rest.split('@', 1)[1]}"
        return data


def _parse_env_bool(value: str | None, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_int(value: str | None, default: int) -> int:
    """Parse integer from environment variable."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Could not parse integer setting %r, using %s", value, default)
        return default


def _parse_env_float(value: str | None, default: float) -> float:
    """Parse float from environment variable."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Could not parse numeric setting %r, using %s", value, default)
        return default


def load_config_from_env() -> GovernorConfig:
    """
    Load configuration from environment variables.

    Every setting is read from ``QUERYGOV_<FIELD_NAME>``, e.g.:
    - QUERYGOV_ENVIRONMENT=production
    - QUERYGOV_DSN=postgresql://app@db/app
    - QUERYGOV_SLOW_QUERY_THRESHOLD_MS=250
    - QUERYGOV_CACHE_ENABLED=false

    When QUERYGOV_SLOW_QUERY_THRESHOLD_MS is unset the environment profile
    decides the slow-query threshold.
    """
    env = os.environ.get
    environment = Environment.from_string(env("QUERYGOV_ENVIRONMENT", "development"))
    defaults = GovernorConfig.model_fields

    def default_of(name: str) -> Any:
        return defaults[name].default

    config_kwargs: dict[str, Any] = {
        "environment": environment,
        "dsn": env("QUERYGOV_DSN") or env("DATABASE_URL"),
        "pool_max_size": _parse_env_int(
            env("QUERYGOV_POOL_MAX_SIZE"), default_of("pool_max_size")
        ),
        "pool_acquire_timeout_ms": _parse_env_float(
            env("QUERYGOV_POOL_ACQUIRE_TIMEOUT_MS"), default_of("pool_acquire_timeout_ms")
        ),
        "statement_timeout_ms": _parse_env_float(
            env("QUERYGOV_STATEMENT_TIMEOUT_MS"), default_of("statement_timeout_ms")
        ),
        "query_timeout_ms": _parse_env_float(
            env("QUERYGOV_QUERY_TIMEOUT_MS"), default_of("query_timeout_ms")
        ),
        "slow_query_threshold_ms": _parse_env_float(
            env("QUERYGOV_SLOW_QUERY_THRESHOLD_MS"),
            ENVIRONMENT_SLOW_THRESHOLDS_MS[environment],
        ),
        "analyze_threshold_ms": _parse_env_float(
            env("QUERYGOV_ANALYZE_THRESHOLD_MS"), default_of("analyze_threshold_ms")
        ),
        "signature_max_length": _parse_env_int(
            env("QUERYGOV_SIGNATURE_MAX_LENGTH"), default_of("signature_max_length")
        ),
        "latency_sample_size": _parse_env_int(
            env("QUERYGOV_LATENCY_SAMPLE_SIZE"), default_of("latency_sample_size")
        ),
        "cache_enabled": _parse_env_bool(
            env("QUERYGOV_CACHE_ENABLED"), default_of("cache_enabled")
        ),
        "cache_ttl_seconds": _parse_env_float(
            env("QUERYGOV_CACHE_TTL_SECONDS"), default_of("cache_ttl_seconds")
        ),
        "cache_max_entries": _parse_env_int(
            env("QUERYGOV_CACHE_MAX_ENTRIES"), default_of("cache_max_entries")
        ),
        "plan_dialect": env("QUERYGOV_PLAN_DIALECT", default_of("plan_dialect")),
        "seq_scan_warning_rows": _parse_env_int(
            env("QUERYGOV_SEQ_SCAN_WARNING_ROWS"), default_of("seq_scan_warning_rows")
        ),
        "auto_index_suggestions": _parse_env_bool(
            env("QUERYGOV_AUTO_INDEX_SUGGESTIONS"), default_of("auto_index_suggestions")
        ),
        "dedupe_suggestions": _parse_env_bool(
            env("QUERYGOV_DEDUPE_SUGGESTIONS"), default_of("dedupe_suggestions")
        ),
    }

    return GovernorConfig(**config_kwargs)


def load_config_from_file(path: Path) -> GovernorConfig:
    """
    Load configuration from a JSON or YAML file.

    Falls back to environment variables when the file is missing or
    unreadable. Invalid values inside a readable file raise ConfigurationError.
    """
    if not path.exists():
        logger.warning("Config file not found: %s, using environment", path)
        return load_config_from_env()

    try:
        with open(path) as f:
            if path.suffix in (".yaml", ".yml"):
                try:
                    import yaml
                except ImportError:
                    logger.warning("PyYAML not installed, cannot load YAML config")
                    return load_config_from_env()
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Failed to load config from %s: %s", path, e)
        return load_config_from_env()

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return GovernorConfig(**data)


@lru_cache(maxsize=1)
def get_config() -> GovernorConfig:
    """
    Get the process configuration instance.

    Loads from:
    1. QUERYGOV_CONFIG_FILE environment variable (if set)
    2. Environment variables (default)

    Result is cached for the lifetime of the process.
    """
    config_file = os.environ.get("QUERYGOV_CONFIG_FILE")

    if config_file:
        return load_config_from_file(Path(config_file))

    return load_config_from_env()


def reset_config() -> None:
    """Reset the cached configuration (mainly for testing)."""
    get_config.cache_clear()
