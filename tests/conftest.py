"""
Shared fixtures: a scripted in-process backend.

FakeBackend stands in for the database. Its create_pool() builds a FakePool
with the same surface as asyncpg.Pool; each connection answers queries from
scripted tables:
- rows:   exact query text -> rows returned
- delays: exact query text -> seconds to sleep before answering
- errors: exact query text -> exception raised
- plans:  explained query text -> text EXPLAIN output
- ddl_errors: DDL statement -> exception raised
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from querygovernor.config import GovernorConfig, reset_config
from querygovernor.governor import QueryGovernor


SEQ_SCAN_PLAN = """\
Seq Scan on orders  (cost=0.00..1693.00 rows=48 width=97) (actual time=0.019..11.237 rows=52 loops=1)
  Filter: (customer_id = 42)
  Rows Removed by Filter: 49948
Planning Time: 0.080 ms
Execution Time: 11.263 ms"""

INDEX_SCAN_PLAN = """\
Index Scan using orders_customer_id_idx on orders  (cost=0.29..8.31 rows=1 width=97) (actual time=0.010..0.011 rows=1 loops=1)
  Index Cond: (customer_id = 42)
Planning Time: 0.070 ms
Execution Time: 0.030 ms"""


class FakeConnection:
    def __init__(self, backend: "FakeBackend", number: int) -> None:
        self.backend = backend
        self.number = number
        self.closed = False

    async def fetch(self, query: str, *params: Any) -> list[dict[str, Any]]:
        self.backend.calls.append((query, params))

        if query.startswith("EXPLAIN"):
            return self._explain(query)

        delay = self.backend.delays.get(query, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if query in self.backend.errors:
            raise self.backend.errors[query]
        return [dict(row) for row in self.backend.rows.get(query, self.backend.default_rows)]

    def _explain(self, statement: str) -> list[dict[str, Any]]:
        for prefix in ("EXPLAIN (ANALYZE, BUFFERS) ", "EXPLAIN "):
            if statement.startswith(prefix):
                inner = statement[len(prefix):]
                break
        if inner in self.backend.errors:
            raise self.backend.errors[inner]
        plan = self.backend.plans.get(inner, "")
        return [{"QUERY PLAN": line} for line in plan.splitlines()]

    async def execute(self, statement: str) -> str:
        self.backend.ddl.append(statement)
        if statement in self.backend.ddl_errors:
            raise self.backend.ddl_errors[statement]
        return "CREATE INDEX"

    async def close(self) -> None:
        self.closed = True


class FakePool:
    """Driver pool double: lazy connections, bounded by a semaphore."""

    def __init__(self, backend: "FakeBackend", max_size: int) -> None:
        self.backend = backend
        self.max_size = max_size
        self.connections: list[FakeConnection] = []
        self.idle: list[FakeConnection] = []
        self.slots = asyncio.Semaphore(max_size)

    async def acquire(self, *, timeout: float | None = None) -> FakeConnection:
        await asyncio.wait_for(self.slots.acquire(), timeout)
        if self.idle:
            return self.idle.pop()
        try:
            conn = await self.backend.connect()
        except BaseException:
            self.slots.release()
            raise
        self.connections.append(conn)
        return conn

    async def release(self, conn: FakeConnection) -> None:
        self.idle.append(conn)
        self.slots.release()

    def get_size(self) -> int:
        return len(self.connections)

    def get_idle_size(self) -> int:
        return len(self.idle)

    def get_max_size(self) -> int:
        return self.max_size

    async def close(self) -> None:
        for conn in self.connections:
            await conn.close()
        self.connections.clear()
        self.idle.clear()


class FakeBackend:
    def __init__(self) -> None:
        self.default_rows: list[dict[str, Any]] = [{"id": 1}]
        self.rows: dict[str, list[dict[str, Any]]] = {}
        self.delays: dict[str, float] = {}
        self.errors: dict[str, Exception] = {}
        self.plans: dict[str, str] = {}
        self.ddl_errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.ddl: list[str] = []
        self.connections: list[FakeConnection] = []
        self.connect_error: Exception | None = None
        self.pools: list[FakePool] = []

    async def connect(self) -> FakeConnection:
        if self.connect_error is not None:
            raise self.connect_error
        conn = FakeConnection(self, len(self.connections))
        self.connections.append(conn)
        return conn

    async def create_pool(self, max_size: int) -> FakePool:
        pool = FakePool(self, max_size)
        self.pools.append(pool)
        return pool

    def query_calls(self, query: str) -> int:
        """How many times a query text reached the backend."""
        return sum(1 for q, _ in self.calls if q == query)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fast_config() -> GovernorConfig:
    """Thresholds low enough for tests to cross with short sleeps."""
    return GovernorConfig(
        slow_query_threshold_ms=20,
        analyze_threshold_ms=40,
        pool_max_size=4,
        pool_acquire_timeout_ms=200,
    )


@pytest.fixture
def make_governor(backend: FakeBackend, fast_config: GovernorConfig):
    """Factory for governors wired to the fake backend."""

    def factory(config: GovernorConfig | None = None, **kwargs: Any) -> QueryGovernor:
        return QueryGovernor(config or fast_config, pool_factory=backend.create_pool, **kwargs)

    return factory


@pytest.fixture(autouse=True)
def _clean_config(monkeypatch: pytest.MonkeyPatch):
    """Keep QUERYGOV_* settings from the outer environment out of tests."""
    import os

    for name in list(os.environ):
        if name.startswith("QUERYGOV_") or name == "DATABASE_URL":
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()
