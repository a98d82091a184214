"""
Connection Gateway - deadline-bounded query execution over the pool.

Responsibilities:
- execute(query, params, timeout_ms): run a query against a pooled
  connection, raced against a client-side deadline
- report every execution's wall-clock time to the registered listener,
  whether it succeeded, timed out or failed in the backend
- fetch()/run_ddl(): unrecorded, undeadlined access for diagnostics
  (EXPLAIN, health checks, catalog statistics, index creation)

Timeout semantics: the backend call runs as its own task. When the deadline
fires first the caller gets QueryTimeoutError and the task is abandoned, not
cancelled. Its connection goes back to the pool once the backend finishes
(or the server-side statement_timeout stops it). Per-call deadlines are
clamped to stay DEADLINE_MARGIN_MS below that server-side timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Sequence

from querygovernor.db.connection import Connection, PoolFactory, Row, format_params
from querygovernor.db.pool import ConnectionPool
from querygovernor.exceptions import ConfigurationError, QueryTimeoutError
from querygovernor.models import PoolSnapshot

logger = logging.getLogger(__name__)

# Client deadlines stay at least this far below the server statement_timeout
DEADLINE_MARGIN_MS = 100.0

# listener(query, params, elapsed_ms, error)
QueryListener = Callable[[str, Sequence[Any], float, "BaseException | None"], None]


class ConnectionGateway:
    """
    Owns the connection pool and executes queries under a deadline.

    Example:
        gateway = ConnectionGateway(pool_factory, max_size=10, query_timeout_ms=25000)
        gateway.add_listener(lambda q, p, ms, err: print(q, ms))
        rows = await gateway.execute("SELECT 1", [])
    """

    def __init__(
        self,
        pool_factory: PoolFactory,
        max_size: int = 20,
        acquire_timeout_ms: float = 2000.0,
        query_timeout_ms: float = 25000.0,
        statement_timeout_ms: float = 30000.0,
    ) -> None:
        if query_timeout_ms >= statement_timeout_ms:
            raise ConfigurationError(
                "query_timeout_ms must be below statement_timeout_ms",
                config_key="query_timeout_ms",
            )
        self.pool = ConnectionPool(
            pool_factory,
            max_size=max_size,
            acquire_timeout_ms=acquire_timeout_ms,
        )
        self.query_timeout_ms = query_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms
        self._listeners: list[QueryListener] = []
        self._abandoned: set[asyncio.Task[list[Row]]] = set()

    def add_listener(self, listener: QueryListener) -> None:
        """Register a callback invoked after every recorded execution."""
        self._listeners.append(listener)

    def pool_snapshot(self) -> PoolSnapshot:
        return self.pool.snapshot()

    @property
    def abandoned_count(self) -> int:
        """Timed-out backend calls still running."""
        return len(self._abandoned)

    @property
    def max_timeout_ms(self) -> float:
        """Largest per-call deadline accepted."""
        return max(self.query_timeout_ms, self.statement_timeout_ms - DEADLINE_MARGIN_MS)

    def effective_timeout_ms(self, timeout_ms: float | None) -> float:
        """Requested deadline, defaulted and clamped below the statement timeout."""
        if timeout_ms is None or timeout_ms <= 0:
            return self.query_timeout_ms
        return min(timeout_ms, self.max_timeout_ms)

    async def execute(
        self,
        query: str,
        params: Sequence[Any] = (),
        timeout_ms: float | None = None,
    ) -> list[Row]:
        """
        Execute a query under a deadline and report its latency.

        Raises:
            QueryTimeoutError: The deadline fired before the backend answered.
            PoolExhaustedError / BackendUnavailableError: No connection.
            Exception: Backend errors, passed through unchanged.
        """
        bound_ms = self.effective_timeout_ms(timeout_ms)
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            return await self._run_with_deadline(query, params, bound_ms)
        except BaseException as e:
            error = e
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            if error is not None and not isinstance(error, asyncio.CancelledError):
                logger.error(
                    "Query execution failed after %.1fms: %s (query=%r, %s)",
                    elapsed_ms,
                    error,
                    query[:200],
                    format_params(params),
                )
            self._notify(query, params, elapsed_ms, error)

    async def _run_with_deadline(
        self,
        query: str,
        params: Sequence[Any],
        bound_ms: float,
    ) -> list[Row]:
        conn = await self.pool.acquire()
        task = asyncio.ensure_future(self._fetch_and_release(conn, query, params))
        task.add_done_callback(self._on_backend_done)

        try:
            done, _ = await asyncio.wait({task}, timeout=bound_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()

        self._abandoned.add(task)
        logger.warning(
            "Query exceeded %gms deadline; backend call abandoned (query=%r)",
            bound_ms,
            query[:100],
        )
        raise QueryTimeoutError(bound_ms, query)

    async def _fetch_and_release(
        self,
        conn: Connection,
        query: str,
        params: Sequence[Any],
    ) -> list[Row]:
        try:
            return await conn.fetch(query, *params)
        finally:
            await self.pool.release(conn)

    def _on_backend_done(self, task: asyncio.Task[list[Row]]) -> None:
        if task not in self._abandoned:
            return
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned query finished with error: %s", task.exception())

    def _notify(
        self,
        query: str,
        params: Sequence[Any],
        elapsed_ms: float,
        error: BaseException | None,
    ) -> None:
        for listener in self._listeners:
            try:
                listener(query, params, elapsed_ms, error)
            except Exception:
                logger.exception("Query listener failed")

    async def fetch(self, query: str, params: Sequence[Any] = ()) -> list[Row]:
        """Run a query without deadline or latency reporting."""
        conn = await self.pool.acquire()
        try:
            return await conn.fetch(query, *params)
        finally:
            await self.pool.release(conn)

    async def run_ddl(self, statement: str) -> str:
        """Issue a DDL statement; errors propagate unchanged."""
        conn = await self.pool.acquire()
        try:
            return await conn.execute(statement)
        finally:
            await self.pool.release(conn)

    async def close(self) -> None:
        """Abandon in-flight timed-out calls and close the pool."""
        abandoned = list(self._abandoned)
        for task in abandoned:
            task.cancel()
        if abandoned:
            await asyncio.gather(*abandoned, return_exceptions=True)
        await self.pool.close()
