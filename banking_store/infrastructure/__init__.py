"""
Infrastructure package for the banking stage results store.

Centralizes database connectivity (pool, one-off sync/async connections) and
schema migrations. Keep this layer focused on I/O and resource management,
decoupled from ingest and query logic.
"""

from banking_store.infrastructure.db_factory import (
    PoolManager,
    build_dsn,
    get_async_connection,
    get_pool,
    get_sync_connection,
)
from banking_store.infrastructure.migrations import MIGRATIONS, apply_migrations, current_version

__all__ = [
    "MIGRATIONS",
    "PoolManager",
    "apply_migrations",
    "build_dsn",
    "current_version",
    "get_async_connection",
    "get_pool",
    "get_sync_connection",
]
