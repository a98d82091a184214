"""
Database access layer.

- connection: Connection/DriverPool protocols and the asyncpg-backed pool factory
- pool: lazily opened driver pool with bounded acquire waits and occupancy snapshots
- gateway: deadline-bounded execution with latency reporting
"""

from querygovernor.db.connection import (
    AsyncpgConnection,
    AsyncpgPool,
    Connection,
    DriverPool,
    PoolFactory,
    asyncpg_pool_factory,
    is_driver_available,
)
from querygovernor.db.gateway import ConnectionGateway
from querygovernor.db.pool import ConnectionPool

__all__ = [
    "AsyncpgConnection",
    "AsyncpgPool",
    "Connection",
    "ConnectionGateway",
    "ConnectionPool",
    "DriverPool",
    "PoolFactory",
    "asyncpg_pool_factory",
    "is_driver_available",
]
