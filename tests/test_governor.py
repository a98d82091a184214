"""
End-to-end tests for QueryGovernor against the scripted backend.

Test categories:
- Caching: hits, parameter isolation, expiry, bypass, degradation
- Recording: slow-query counting, timeouts
- Deep analysis: suggestions from a slow query's plan
- Operations: applying indexes, health check, catalog statistics
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import SEQ_SCAN_PLAN
from querygovernor.config import GovernorConfig
from querygovernor.exceptions import BackendError, ConfigurationError, QueryTimeoutError
from querygovernor.governor import _CATALOG_QUERIES, QueryGovernor
from querygovernor.models import (
    ApplyStatus,
    ExecuteOptions,
    IndexPriority,
    IndexSuggestion,
    SuggestionKind,
)

ORDERS_QUERY = "SELECT * FROM orders WHERE customer_id = $1"


class BrokenStore:
    async def get(self, key):
        raise ConnectionError("cache store unreachable")

    async def set(self, key, entry):
        raise ConnectionError("cache store unreachable")

    async def delete(self, key):
        raise ConnectionError("cache store unreachable")

    async def clear(self):
        raise ConnectionError("cache store unreachable")

    async def ping(self):
        raise ConnectionError("cache store unreachable")


def suggestion(table: str, column: str | None) -> IndexSuggestion:
    if column is None:
        return IndexSuggestion(
            kind=SuggestionKind.COMPOSITE,
            table=table,
            ddl_text=f"-- Consider creating a composite index on frequently queried columns of {table}",
            reason="manual investigation needed",
            priority=IndexPriority.CRITICAL,
            estimated_benefit="Eliminates full table scans",
        )
    return IndexSuggestion(
        kind=SuggestionKind.SINGLE_COLUMN,
        table=table,
        column=column,
        ddl_text=f"CREATE INDEX CONCURRENTLY {table}_{column}_idx ON {table} ({column});",
        reason="test",
        priority=IndexPriority.HIGH,
        estimated_benefit="70-90% latency reduction",
    )


class TestCaching:
    """Test read-through caching in execute."""

    def test_second_identical_call_is_a_hit(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.rows[ORDERS_QUERY] = [{"id": 7, "customer_id": 42}]

        async def scenario():
            first = await governor.execute(ORDERS_QUERY, [42])
            second = await governor.execute(ORDERS_QUERY, [42])
            return first, second

        first, second = asyncio.run(scenario())

        assert first == second == [{"id": 7, "customer_id": 42}]
        assert backend.query_calls(ORDERS_QUERY) == 1
        snapshot = governor.snapshot()
        assert snapshot.total_queries == 2
        assert snapshot.cache_hits == 1
        assert snapshot.cache_misses == 1
        assert snapshot.cache_hit_rate == 50.0

    def test_different_params_never_share_a_result(self, backend, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            await governor.execute(ORDERS_QUERY, [1])
            await governor.execute(ORDERS_QUERY, [2])

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 2
        assert governor.snapshot().cache_hits == 0

    def test_expired_entry_executes_again(self, backend, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42], cache_ttl_seconds=0.05)
            await asyncio.sleep(0.1)
            await governor.execute(ORDERS_QUERY, [42])

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 2
        assert governor.snapshot().cache_misses == 2

    def test_skip_cache(self, backend, make_governor) -> None:
        governor = make_governor()
        options = ExecuteOptions(skip_cache=True)

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42], options)
            await governor.execute(ORDERS_QUERY, [42], options)

        asyncio.run(scenario())
        snapshot = governor.snapshot()
        assert backend.query_calls(ORDERS_QUERY) == 2
        assert snapshot.total_queries == 2
        assert snapshot.cache_hits == snapshot.cache_misses == 0

    def test_keyword_overrides_options(self, backend, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.execute(ORDERS_QUERY, [42], ExecuteOptions(skip_cache=True), skip_cache=False)

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 1

    def test_writes_are_not_cached(self, backend, make_governor) -> None:
        governor = make_governor()
        update = "UPDATE orders SET status = $1 WHERE id = $2"

        async def scenario():
            await governor.execute(update, ["paid", 1])
            await governor.execute(update, ["paid", 1])

        asyncio.run(scenario())
        assert backend.query_calls(update) == 2

    def test_cache_disabled(self, backend, make_governor, fast_config) -> None:
        governor = make_governor(fast_config.model_copy(update={"cache_enabled": False}))

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.execute(ORDERS_QUERY, [42])

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 2

    def test_invalidate_cache(self, backend, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.invalidate_cache(ORDERS_QUERY, [42])
            await governor.execute(ORDERS_QUERY, [42])

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 2

    def test_failed_store_degrades_to_direct_execution(self, backend, make_governor, caplog) -> None:
        governor = make_governor(cache_store=BrokenStore())
        backend.rows[ORDERS_QUERY] = [{"id": 1}]

        async def scenario():
            return [await governor.execute(ORDERS_QUERY, [42]) for _ in range(2)]

        with caplog.at_level(logging.WARNING, logger="querygovernor.governor"):
            results = asyncio.run(scenario())

        assert results == [[{"id": 1}], [{"id": 1}]]
        assert backend.query_calls(ORDERS_QUERY) == 2
        assert "Cache lookup failed" in caplog.text

    def test_backend_errors_are_not_cached(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.errors[ORDERS_QUERY] = RuntimeError("deadlock detected")

        async def scenario():
            with pytest.raises(RuntimeError):
                await governor.execute(ORDERS_QUERY, [42])
            del backend.errors[ORDERS_QUERY]
            return await governor.execute(ORDERS_QUERY, [42])

        assert asyncio.run(scenario()) == [{"id": 1}]
        assert backend.query_calls(ORDERS_QUERY) == 2


class TestRecording:
    """Test latency accounting through the governor."""

    def test_slow_queries_counted_and_logged(self, backend, make_governor, caplog) -> None:
        governor = make_governor()
        slow = "SELECT * FROM events WHERE kind = $1"
        backend.delays[slow] = 0.025

        async def scenario():
            await governor.execute("SELECT 1")
            await governor.execute(slow, ["click"], skip_cache=True)

        with caplog.at_level(logging.WARNING, logger="querygovernor.governor"):
            asyncio.run(scenario())

        snapshot = governor.snapshot()
        assert snapshot.slow_queries == 1
        assert snapshot.signature_count == 2
        assert snapshot.slow_query_signature_count == 1
        assert "Slow SELECT query" in caplog.text

    def test_cache_hits_not_recorded_as_executions(self, backend, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            for _ in range(3):
                await governor.execute(ORDERS_QUERY, [42])

        asyncio.run(scenario())
        stats = governor.recorder.get(ORDERS_QUERY)
        assert stats.count == 1
        assert governor.snapshot().total_queries == 3

    def test_timeout_raises_and_is_recorded(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.delays[ORDERS_QUERY] = 0.2

        async def scenario():
            with pytest.raises(QueryTimeoutError) as exc_info:
                await governor.execute(ORDERS_QUERY, [42], timeout_ms=50)
            await governor.close()
            return exc_info.value

        error = asyncio.run(scenario())

        assert "50" in str(error)
        snapshot = governor.snapshot()
        assert snapshot.total_queries == 1
        assert snapshot.slow_queries == 1
        assert 40 <= snapshot.avg_query_time < 190
        # Timed-out queries are never explained
        assert not any(q.startswith("EXPLAIN") for q, _ in backend.calls)


class TestDeepAnalysis:
    """Test the slow-query analysis path."""

    def test_missing_index_produces_one_suggestion(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.delays[ORDERS_QUERY] = 0.06
        backend.plans[ORDERS_QUERY] = SEQ_SCAN_PLAN

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.drain()

        asyncio.run(scenario())

        suggestions = governor.pending_suggestions()
        assert len(suggestions) == 1
        assert suggestions[0].table == "orders"
        assert suggestions[0].column == "customer_id"
        assert suggestions[0].priority == IndexPriority.HIGH
        assert suggestions[0].signature == "SELECT * FROM orders WHERE customer_id = $N"
        assert (f"EXPLAIN (ANALYZE, BUFFERS) {ORDERS_QUERY}", (42,)) in backend.calls
        assert governor.snapshot().suggestion_count == 1

    def test_only_above_analyze_threshold(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.delays[ORDERS_QUERY] = 0.025
        backend.plans[ORDERS_QUERY] = SEQ_SCAN_PLAN

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.drain()

        asyncio.run(scenario())
        assert governor.snapshot().slow_queries == 1
        assert governor.pending_suggestions() == []

    def test_analysis_failure_never_fails_the_query(self, backend, make_governor, caplog) -> None:
        governor = make_governor()
        backend.delays[ORDERS_QUERY] = 0.06
        backend.rows[ORDERS_QUERY] = [{"id": 3}]
        # No plan scripted: EXPLAIN returns nothing

        async def scenario():
            rows = await governor.execute(ORDERS_QUERY, [42])
            await governor.drain()
            return rows

        with caplog.at_level(logging.WARNING, logger="querygovernor.governor"):
            rows = asyncio.run(scenario())

        assert rows == [{"id": 3}]
        assert governor.pending_suggestions() == []
        assert "Plan analysis failed" in caplog.text

    def test_suggestions_disabled(self, backend, make_governor, fast_config) -> None:
        governor = make_governor(fast_config.model_copy(update={"auto_index_suggestions": False}))
        backend.delays[ORDERS_QUERY] = 0.06
        backend.plans[ORDERS_QUERY] = SEQ_SCAN_PLAN

        async def scenario():
            await governor.execute(ORDERS_QUERY, [42])
            await governor.drain()

        asyncio.run(scenario())
        assert governor.pending_suggestions() == []

    def test_repeated_slow_queries_dedupe_when_enabled(self, backend, make_governor, fast_config) -> None:
        governor = make_governor(fast_config.model_copy(update={"dedupe_suggestions": True}))
        backend.delays[ORDERS_QUERY] = 0.06
        backend.plans[ORDERS_QUERY] = SEQ_SCAN_PLAN

        async def scenario():
            await governor.execute(ORDERS_QUERY, [1])
            await governor.execute(ORDERS_QUERY, [2])
            await governor.drain()

        asyncio.run(scenario())
        assert len(governor.pending_suggestions()) == 1


class TestApplyIndexes:
    def test_statuses(self, backend, make_governor) -> None:
        governor = make_governor()
        created = suggestion("orders", "customer_id")
        exists = suggestion("orders", "status")
        broken = suggestion("orders", "total")
        composite = suggestion("orders", None)

        backend.ddl_errors[exists.ddl_text] = BackendError(
            'relation "orders_status_idx" already exists', "42P07"
        )
        backend.ddl_errors[broken.ddl_text] = BackendError("permission denied", "42501")
        governor.suggestions.extend([created, exists, broken, composite])

        results = asyncio.run(governor.apply_recommended_indexes())

        assert [r.status for r in results] == [
            ApplyStatus.CREATED,
            ApplyStatus.EXISTS,
            ApplyStatus.FAILED,
            ApplyStatus.FAILED,
        ]
        assert results[2].error == "permission denied"
        assert "manual investigation" in results[3].error
        assert backend.ddl == [created.ddl_text, exists.ddl_text, broken.ddl_text]

    def test_message_match_without_sqlstate(self, backend, make_governor) -> None:
        governor = make_governor()
        target = suggestion("users", "email")
        backend.ddl_errors[target.ddl_text] = RuntimeError("index users_email_idx already exists")

        results = asyncio.run(governor.apply_recommended_indexes([target]))
        assert results[0].status == ApplyStatus.EXISTS
        assert results[0].ddl == target.ddl_text


class TestHealthAndStats:
    def test_healthy(self, backend, make_governor) -> None:
        governor = make_governor()
        report = asyncio.run(governor.health_check())

        assert report.is_healthy
        assert report.checks == {"database": True, "cache": True, "performance": True}
        assert report.suggestions == []

    def test_unhealthy_when_database_down(self, backend, make_governor, caplog) -> None:
        governor = make_governor()
        backend.errors["SELECT 1"] = OSError("server closed the connection")

        with caplog.at_level(logging.WARNING, logger="querygovernor.governor"):
            report = asyncio.run(governor.health_check())
        assert report.status == "unhealthy"
        assert not report.is_healthy
        assert "Health check failed: database" in caplog.text
        assert report.checks["database"] is False
        assert report.checks["cache"] is True

    def test_unhealthy_when_cache_down(self, backend, make_governor) -> None:
        governor = make_governor(cache_store=BrokenStore())
        report = asyncio.run(governor.health_check())
        assert report.checks["cache"] is False
        assert not report.is_healthy

    def test_health_reports_last_ten_suggestions(self, backend, make_governor) -> None:
        governor = make_governor()
        governor.suggestions.extend(suggestion("orders", f"c{i}") for i in range(12))

        report = asyncio.run(governor.health_check())
        assert [s.column for s in report.suggestions] == [f"c{i}" for i in range(2, 12)]

    def test_collect_database_stats(self, backend, make_governor) -> None:
        governor = make_governor()
        backend.rows[_CATALOG_QUERIES["size"]] = [{"size": 81920}]
        backend.rows[_CATALOG_QUERIES["table_count"]] = [{"count": 4}]
        backend.rows[_CATALOG_QUERIES["index_count"]] = [{"count": 9}]
        backend.rows[_CATALOG_QUERIES["table_sizes"]] = [
            {"schemaname": "public", "tablename": "orders", "size": "64 kB", "size_bytes": 65536}
        ]
        backend.errors[_CATALOG_QUERIES["index_usage"]] = RuntimeError("permission denied")

        stats = asyncio.run(governor.collect_database_stats())

        assert stats.size_bytes == 81920
        assert stats.table_count == 4
        assert stats.index_count == 9
        assert stats.table_sizes[0]["tablename"] == "orders"
        assert stats.index_usage == []


class TestLifecycle:
    def test_async_context_manager_closes_pool(self, backend, fast_config) -> None:
        async def scenario():
            async with QueryGovernor.create(fast_config, pool_factory=backend.create_pool) as governor:
                await governor.execute("SELECT 1")
            return governor

        governor = asyncio.run(scenario())
        assert governor.gateway.pool.closed
        assert backend.connections[0].closed

    def test_close_is_idempotent(self, make_governor) -> None:
        governor = make_governor()

        async def scenario():
            await governor.close()
            await governor.close()

        asyncio.run(scenario())

    def test_requires_pool_factory_or_dsn(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            QueryGovernor(GovernorConfig())
        assert exc_info.value.config_key == "dsn"

    def test_instances_share_nothing(self, backend, make_governor) -> None:
        first = make_governor()
        second = make_governor()

        async def scenario():
            await first.execute(ORDERS_QUERY, [42])
            await second.execute(ORDERS_QUERY, [42])

        asyncio.run(scenario())
        assert backend.query_calls(ORDERS_QUERY) == 2
        assert first.snapshot().cache_hits == second.snapshot().cache_hits == 0
