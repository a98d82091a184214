"""
Bounded connection pool.

Admission control for the governor is delegated to the driver's pool
(``asyncpg.create_pool`` in production): at most ``max_size`` connections
exist at once and callers beyond that wait in the driver's queue. This
module opens that pool lazily, bounds every wait by ``acquire_timeout_ms``
and translates driver failures into the governor's error taxonomy.

Occupancy is observable at any time through ``snapshot()``:
- total:   connections currently open (idle + checked out)
- idle:    open connections not checked out
- waiting: callers blocked in acquire
- max:     configured ceiling
"""

from __future__ import annotations

import asyncio
import logging
import time

from querygovernor.db.connection import Connection, DriverPool, PoolFactory
from querygovernor.exceptions import (
    BackendUnavailableError,
    GovernorConnectionError,
    PoolExhaustedError,
)
from querygovernor.models import PoolSnapshot

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Lazily-opened driver pool with bounded acquire waits.

    The driver pool is built by ``factory(max_size)`` on the first acquire,
    so constructing a governor never touches the network.
    """

    def __init__(
        self,
        factory: PoolFactory,
        max_size: int = 20,
        acquire_timeout_ms: float = 2000.0,
    ) -> None:
        self._factory = factory
        self.max_size = max_size
        self.acquire_timeout_ms = acquire_timeout_ms
        self._pool: DriverPool | None = None
        self._opening = asyncio.Lock()
        self._waiting = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> PoolSnapshot:
        """Current pool occupancy."""
        if self._pool is None:
            return PoolSnapshot(total=0, idle=0, waiting=self._waiting, max=self.max_size)
        return PoolSnapshot(
            total=self._pool.get_size(),
            idle=self._pool.get_idle_size(),
            waiting=self._waiting,
            max=self._pool.get_max_size(),
        )

    async def _driver_pool(self) -> DriverPool:
        if self._pool is None:
            async with self._opening:
                if self._pool is None:
                    try:
                        self._pool = await self._factory(self.max_size)
                    except Exception as e:
                        logger.error("Failed to open connection pool: %s", e)
                        raise BackendUnavailableError(e) from e
        return self._pool

    async def acquire(self) -> Connection:
        """
        Check out a connection, waiting for one if the pool is at capacity.

        Raises:
            PoolExhaustedError: No connection freed up within the acquire timeout.
            BackendUnavailableError: Opening the pool or a connection failed.
            GovernorConnectionError: The pool is closed.
        """
        if self._closed:
            raise GovernorConnectionError("Connection pool is closed")

        pool = await self._driver_pool()
        start = time.perf_counter()
        self._waiting += 1
        try:
            return await pool.acquire(timeout=self.acquire_timeout_ms / 1000)
        except asyncio.TimeoutError:
            waited_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "Pool exhausted: waited %.0fms for a connection (max=%d)",
                waited_ms,
                self.max_size,
            )
            raise PoolExhaustedError(self.max_size, round(waited_ms, 1)) from None
        except Exception as e:
            logger.error("Failed to open backend connection: %s", e)
            raise BackendUnavailableError(e) from e
        finally:
            self._waiting -= 1

    async def release(self, conn: Connection) -> None:
        """Return a connection to the driver pool."""
        if self._pool is None:
            return
        try:
            await self._pool.release(conn)
        except Exception as e:
            logger.warning("Error releasing connection: %s", e)

    async def close(self) -> None:
        """Close the driver pool. Later acquires fail."""
        self._closed = True
        if self._pool is not None:
            await self._pool.close()
