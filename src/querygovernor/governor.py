"""
QueryGovernor - the public facade.

Sits between application code and the SQL backend:

    caller -> cache lookup --hit--> return
                 |
                miss
                 v
    gateway.execute (pool + deadline) -> recorder.record
                 |                          |
                 |                   slow? log warning
                 |                          |
                 |            above analyze threshold? detached task:
                 |            PlanAnalyzer -> IndexAdvisor -> SuggestionLog
                 v
    cache store (read statements only) -> return

Usage:
    async with QueryGovernor.create(GovernorConfig(dsn="postgresql://...")) as governor:
        rows = await governor.execute("SELECT * FROM orders WHERE customer_id = $1", [42])
        print(governor.snapshot())
        for suggestion in governor.pending_suggestions():
            print(suggestion.ddl_text)

Every instance owns its cache, signature map, suggestion log and pool.
Nothing is shared between instances.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Sequence

from querygovernor.advisor import IndexAdvisor, SuggestionLog
from querygovernor.cache import MISS, CacheStore, InMemoryCacheStore, ResultCache, fingerprint
from querygovernor.config import GovernorConfig, get_config
from querygovernor.db.connection import PoolFactory, Row, asyncpg_pool_factory, sqlstate_of
from querygovernor.db.gateway import ConnectionGateway
from querygovernor.exceptions import AnalysisError, CacheError, ConfigurationError
from querygovernor.models import (
    ApplyStatus,
    DatabaseStats,
    ExecuteOptions,
    HealthReport,
    IndexApplyResult,
    IndexSuggestion,
    PoolSnapshot,
    StatsSnapshot,
)
from querygovernor.plan.analyzer import PlanAnalyzer
from querygovernor.plan.parser import PlanParser, get_plan_parser
from querygovernor.recorder import PerformanceRecorder, get_query_type, is_read_query
from querygovernor.stats import RequestCounters, StatsAggregator

logger = logging.getLogger(__name__)

DUPLICATE_OBJECT_SQLSTATE = "42P07"

HEALTH_SUGGESTION_LIMIT = 10

_CATALOG_QUERIES: dict[str, str] = {
    "size": "SELECT pg_database_size(current_database()) AS size",
    "table_count": (
        "SELECT COUNT(*) AS count FROM information_schema.tables "
        "WHERE table_schema = 'public'"
    ),
    "index_count": "SELECT COUNT(*) AS count FROM pg_indexes WHERE schemaname = 'public'",
    "table_sizes": (
        "SELECT schemaname, tablename, "
        "pg_size_pretty(pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename))) AS size, "
        "pg_total_relation_size(quote_ident(schemaname) || '.' || quote_ident(tablename)) AS size_bytes "
        "FROM pg_tables WHERE schemaname = 'public' ORDER BY size_bytes DESC"
    ),
    "index_usage": (
        "SELECT schemaname, relname AS tablename, indexrelname AS indexname, "
        "idx_scan, idx_tup_read, idx_tup_fetch "
        "FROM pg_stat_user_indexes ORDER BY idx_scan DESC"
    ),
}


class QueryGovernor:
    """
    Caching, latency tracking and index advice around a SQL backend.

    Construct directly with an explicit pool factory (a coroutine taking
    the maximum pool size and returning a DriverPool), or leave it out to
    build an asyncpg pool from ``config.dsn``.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        pool_factory: PoolFactory | None = None,
        cache_store: CacheStore | None = None,
        plan_parser: PlanParser | None = None,
    ) -> None:
        self.config = config or get_config()

        if pool_factory is None:
            if not self.config.dsn:
                raise ConfigurationError(
                    "No pool factory given and no DSN configured", config_key="dsn"
                )
            pool_factory = asyncpg_pool_factory(
                self.config.dsn,
                statement_timeout_ms=self.config.statement_timeout_ms,
            )

        self.gateway = ConnectionGateway(
            pool_factory,
            max_size=self.config.pool_max_size,
            acquire_timeout_ms=self.config.pool_acquire_timeout_ms,
            query_timeout_ms=self.config.query_timeout_ms,
            statement_timeout_ms=self.config.statement_timeout_ms,
        )
        self.cache = ResultCache(
            cache_store
            if cache_store is not None
            else InMemoryCacheStore(max_entries=self.config.cache_max_entries),
            default_ttl=self.config.cache_ttl_seconds,
        )
        self.recorder = PerformanceRecorder(
            slow_query_threshold_ms=self.config.slow_query_threshold_ms,
            signature_max_length=self.config.signature_max_length,
            sample_size=self.config.latency_sample_size,
        )
        self.analyzer = PlanAnalyzer(
            self.gateway.fetch,
            plan_parser
            or get_plan_parser(
                self.config.plan_dialect,
                seq_scan_warning_rows=self.config.seq_scan_warning_rows,
            ),
        )
        self.advisor = IndexAdvisor()
        self.suggestions = SuggestionLog(dedupe=self.config.dedupe_suggestions)
        self.counters = RequestCounters()
        self.stats = StatsAggregator(
            self.recorder,
            self.counters,
            self.suggestions,
            pool_snapshot=self.gateway.pool_snapshot,
            pending_analyses=lambda: len(self._analyses),
        )

        self._analyses: set[asyncio.Task[None]] = set()
        self._closed = False
        self.gateway.add_listener(self._on_query_complete)

    @classmethod
    def create(cls, config: GovernorConfig | None = None, **kwargs: Any) -> "QueryGovernor":
        """Build a governor; usable as ``async with QueryGovernor.create(...)``."""
        governor = cls(config, **kwargs)
        logger.info("Query governor created: %s", governor.config.redacted())
        return governor

    async def __aenter__(self) -> "QueryGovernor":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        query: str,
        params: Sequence[Any] | None = None,
        options: ExecuteOptions | None = None,
        *,
        timeout_ms: float | None = None,
        skip_cache: bool | None = None,
        cache_ttl_seconds: float | None = None,
    ) -> list[Row]:
        """
        Execute a query, serving read statements from the cache when possible.

        Keyword shortcuts override the corresponding ``options`` fields.

        Raises:
            QueryTimeoutError: The client-side deadline fired.
            GovernorConnectionError: No connection could be obtained.
            Exception: Backend errors, unchanged.
        """
        opts = _merge_options(options, timeout_ms, skip_cache, cache_ttl_seconds)
        bound = list(params) if params is not None else []
        self.counters.total_queries += 1

        key: str | None = None
        if self.config.cache_enabled and not opts.skip_cache and is_read_query(query):
            key = fingerprint(query, bound)
            try:
                cached = await self.cache.get(key)
            except CacheError as e:
                logger.warning("Cache lookup failed, executing uncached: %s", e)
                key = None
            else:
                if cached is not MISS:
                    self.counters.cache_hits += 1
                    logger.debug("Cache hit for %s", key[:12])
                    return cached
                self.counters.cache_misses += 1

        rows = await self.gateway.execute(query, bound, opts.timeout_ms)

        if key is not None:
            try:
                await self.cache.set(key, rows, opts.cache_ttl_seconds)
            except CacheError as e:
                logger.warning("Cache store failed, result not cached: %s", e)

        return rows

    def _on_query_complete(
        self,
        query: str,
        params: Sequence[Any],
        elapsed_ms: float,
        error: BaseException | None,
    ) -> None:
        slow = self.recorder.record(query, elapsed_ms)
        if not slow:
            return

        logger.warning(
            "Slow %s query: %.1fms (threshold %gms): %s",
            get_query_type(query),
            elapsed_ms,
            self.config.slow_query_threshold_ms,
            self.recorder.signature_for(query),
        )

        if error is None and elapsed_ms > self.config.analyze_threshold_ms and not self._closed:
            task = asyncio.ensure_future(self._analyze_slow_query(query, list(params)))
            self._analyses.add(task)
            task.add_done_callback(self._analyses.discard)

    async def _analyze_slow_query(self, query: str, params: list[Any]) -> None:
        signature = self.recorder.signature_for(query)
        try:
            analysis = await self.analyzer.analyze(query, params)
            for warning in analysis.warnings:
                logger.warning("Plan warning for %s: %s", signature, warning)

            if not self.config.auto_index_suggestions:
                return

            added = self.suggestions.extend(
                self.advisor.suggest(query, analysis, signature=signature)
            )
            logger.info(
                "Deep analysis of %s: cost=%.2f, %d new suggestion(s)",
                signature,
                analysis.total_cost,
                len(added),
            )
        except AnalysisError as e:
            logger.warning("Plan analysis failed for %s: %s", signature, e)
        except Exception:
            logger.exception("Unexpected error analysing %s", signature)

    async def drain(self) -> None:
        """Wait for every outstanding deep analysis to finish."""
        while self._analyses:
            await asyncio.gather(*list(self._analyses), return_exceptions=True)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def invalidate_cache(self, query: str, params: Sequence[Any] | None = None) -> None:
        """Drop the cached result for one (query, params) pair."""
        await self.cache.invalidate(fingerprint(query, list(params or [])))

    async def clear_cache(self) -> None:
        await self.cache.clear()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def snapshot(self) -> StatsSnapshot:
        return self.stats.snapshot()

    def pool_snapshot(self) -> PoolSnapshot:
        return self.gateway.pool_snapshot()

    def pending_suggestions(self, limit: int | None = 10) -> list[IndexSuggestion]:
        """The newest ``limit`` suggestions, most recent last."""
        return self.suggestions.pending(limit)

    async def health_check(self) -> HealthReport:
        """
        Probe the backend and cache and compare average latency to the
        slow threshold. Healthy only when all three checks pass.
        """
        checks = {"database": False, "cache": False, "performance": False}

        try:
            await self.gateway.fetch("SELECT 1")
            checks["database"] = True
        except Exception as e:
            logger.error("Health check: database unreachable: %s", e)

        checks["cache"] = await self.cache.ping()

        stats = self.snapshot()
        checks["performance"] = stats.avg_query_time < self.config.slow_query_threshold_ms

        report = HealthReport(
            status="healthy" if all(checks.values()) else "unhealthy",
            checks=checks,
            stats=stats,
            suggestions=self.pending_suggestions(HEALTH_SUGGESTION_LIMIT),
        )
        if not report.is_healthy:
            logger.warning(
                "Health check failed: %s", ", ".join(name for name, ok in checks.items() if not ok)
            )
        return report

    async def collect_database_stats(self) -> DatabaseStats:
        """Catalog statistics; each query failing independently yields a default."""
        results: dict[str, list[Row]] = {}
        for name, query in _CATALOG_QUERIES.items():
            try:
                results[name] = await self.gateway.fetch(query)
            except Exception as e:
                logger.error("Failed to collect %s stats: %s", name, e)
                results[name] = []

        return DatabaseStats(
            size_bytes=_first_int(results["size"], "size"),
            table_count=_first_int(results["table_count"], "count"),
            index_count=_first_int(results["index_count"], "count"),
            table_sizes=results["table_sizes"],
            index_usage=results["index_usage"],
        )

    # ------------------------------------------------------------------
    # Index application
    # ------------------------------------------------------------------

    async def apply_recommended_indexes(
        self,
        suggestions: Iterable[IndexSuggestion] | None = None,
    ) -> list[IndexApplyResult]:
        """
        Issue the DDL of each suggestion, one statement at a time.

        Defaults to every logged suggestion. Composite suggestions carry
        advice rather than a statement and are reported as failed without
        touching the backend.
        """
        targets = list(suggestions) if suggestions is not None else self.suggestions.pending(None)
        results: list[IndexApplyResult] = []

        for suggestion in targets:
            ddl = suggestion.ddl_text
            if not suggestion.is_executable:
                results.append(
                    IndexApplyResult(
                        ddl=ddl,
                        status=ApplyStatus.FAILED,
                        error=(
                            f"Composite index on {suggestion.table} has no executable DDL; "
                            "manual investigation required"
                        ),
                    )
                )
                continue

            try:
                await self.gateway.run_ddl(ddl)
            except Exception as e:
                if sqlstate_of(e) == DUPLICATE_OBJECT_SQLSTATE or "already exists" in str(e):
                    logger.info("Index already exists: %s", suggestion.index_name)
                    results.append(IndexApplyResult(ddl=ddl, status=ApplyStatus.EXISTS))
                else:
                    logger.error("Failed to create index %s: %s", suggestion.index_name, e)
                    results.append(
                        IndexApplyResult(ddl=ddl, status=ApplyStatus.FAILED, error=str(e))
                    )
                continue

            logger.info("Created index %s", suggestion.index_name)
            results.append(IndexApplyResult(ddl=ddl, status=ApplyStatus.CREATED))

        return results

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Drain pending analyses, then close the pool. Idempotent."""
        if self._closed:
            return
        await self.drain()
        self._closed = True
        await self.gateway.close()
        logger.info("Query governor closed")


def _merge_options(
    options: ExecuteOptions | None,
    timeout_ms: float | None,
    skip_cache: bool | None,
    cache_ttl_seconds: float | None,
) -> ExecuteOptions:
    base = options or ExecuteOptions()
    overrides: dict[str, Any] = {}
    if timeout_ms is not None:
        overrides["timeout_ms"] = timeout_ms
    if skip_cache is not None:
        overrides["skip_cache"] = skip_cache
    if cache_ttl_seconds is not None:
        overrides["cache_ttl_seconds"] = cache_ttl_seconds
    return base.model_copy(update=overrides) if overrides else base


def _first_int(rows: list[Row], column: str) -> int:
    if not rows:
        return 0
    try:
        return int(rows[0].get(column) or 0)
    except (TypeError, ValueError):
        return 0
