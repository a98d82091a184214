"""
Backend connections and driver pools for the governor.

A connection is anything satisfying the ``Connection`` protocol: positional
parameter query execution returning row dicts, and DDL execution.
Connections are handed out by a driver pool (``DriverPool``), which a
``PoolFactory`` builds on first use with the configured maximum size.

The bundled implementation wraps asyncpg's pool. Alternative backends
(other drivers, test doubles) only need to provide a pool factory.

Usage:
    from querygovernor.db import asyncpg_pool_factory

    factory = asyncpg_pool_factory("postgresql://app@localhost/app", statement_timeout_ms=30000)
    pool = await factory(20)
    conn = await pool.acquire(timeout=2.0)
    try:
        rows = await conn.fetch("SELECT * FROM orders WHERE id = $1", 42)
    finally:
        await pool.release(conn)
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol, Sequence

logger = logging.getLogger(__name__)

# Try to import asyncpg (optional dependency)
_ASYNCPG_AVAILABLE = False
try:
    import asyncpg
    _ASYNCPG_AVAILABLE = True
except ImportError:
    asyncpg = None  # type: ignore[assignment]


Row = dict[str, Any]


class Connection(Protocol):
    """
    Protocol for a single pooled backend connection.

    Implementations must raise the driver's own exceptions for statement
    failures; the gateway passes them through to callers unchanged.
    """

    async def fetch(self, query: str, *params: Any) -> list[Row]:
        """Run a parameterized query and return its rows as dicts."""
        ...

    async def execute(self, statement: str) -> str:
        """Run a statement (DDL, SET, ...) and return its status tag."""
        ...


class DriverPool(Protocol):
    """
    Protocol for a driver-level connection pool.

    Mirrors the subset of ``asyncpg.Pool`` the governor relies on. The pool
    owns admission: callers beyond ``get_max_size()`` wait in its queue
    until a connection is released or ``timeout`` seconds pass, at which
    point ``acquire`` raises ``asyncio.TimeoutError``.
    """

    async def acquire(self, *, timeout: float | None = None) -> Connection: ...

    async def release(self, conn: Connection) -> None: ...

    def get_size(self) -> int: ...

    def get_idle_size(self) -> int: ...

    def get_max_size(self) -> int: ...

    async def close(self) -> None: ...


PoolFactory = Callable[[int], Awaitable[DriverPool]]


class AsyncpgConnection:
    """Connection implementation backed by a pooled asyncpg connection."""

    def __init__(self, conn: Any) -> None:
        self.raw = conn

    async def fetch(self, query: str, *params: Any) -> list[Row]:
        records = await self.raw.fetch(query, *params)
        return [dict(record) for record in records]

    async def execute(self, statement: str) -> str:
        return await self.raw.execute(statement)


class AsyncpgPool:
    """DriverPool over ``asyncpg.Pool`` that hands out row-dict connections."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def acquire(self, *, timeout: float | None = None) -> AsyncpgConnection:
        return AsyncpgConnection(await self._pool.acquire(timeout=timeout))

    async def release(self, conn: AsyncpgConnection) -> None:
        await self._pool.release(conn.raw)

    def get_size(self) -> int:
        return self._pool.get_size()

    def get_idle_size(self) -> int:
        return self._pool.get_idle_size()

    def get_max_size(self) -> int:
        return self._pool.get_max_size()

    async def close(self) -> None:
        await self._pool.close()


def asyncpg_pool_factory(
    dsn: str,
    statement_timeout_ms: float = 30000.0,
    connect_timeout_seconds: float = 10.0,
) -> PoolFactory:
    """
    Build a factory that opens an asyncpg pool.

    Every pooled connection gets ``statement_timeout`` installed server-side
    so that abandoned (timed-out) queries are eventually stopped by the
    backend.
    """
    if not _ASYNCPG_AVAILABLE:
        raise RuntimeError("asyncpg is not installed. Install with: pip install asyncpg")

    server_settings = {"statement_timeout": str(int(statement_timeout_ms))}

    async def create(max_size: int) -> DriverPool:
        pool = await asyncpg.create_pool(
            dsn,
            min_size=1,
            max_size=max_size,
            timeout=connect_timeout_seconds,
            server_settings=server_settings,
        )
        logger.debug("Opened asyncpg pool (max_size=%d)", max_size)
        return AsyncpgPool(pool)

    return create


def is_driver_available() -> bool:
    """Check if the asyncpg driver is installed."""
    return _ASYNCPG_AVAILABLE


def sqlstate_of(error: BaseException) -> str | None:
    """Best-effort SQLSTATE extraction from a driver exception."""
    for attr in ("sqlstate", "pgcode", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, str) and len(value) == 5:
            return value
    return None


def format_params(params: Sequence[Any]) -> str:
    """Short, log-safe description of bound parameters."""
    return f"<{len(params)} params>"
