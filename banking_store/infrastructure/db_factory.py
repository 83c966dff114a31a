"""
Database connection factory utilities for the banking stage results store.

Provides centralized management of the psycopg connection pool shared by the
ingest writer and the read API, plus one-off sync (psycopg) and async (asyncpg)
connections. The PoolManager singleton ensures the pool is closed on exit.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import atexit
import re
import threading
from contextlib import contextmanager
from typing import Generator, Optional
from urllib.parse import urlencode

import asyncpg
import psycopg
from psycopg import Connection, sql
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from banking_store.config import Settings, get_settings
from banking_store.utils.logging import get_logger

log = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# libpq and asyncpg both read these from the DSN query string
_TLS_PARAMS = ("sslmode", "sslrootcert", "sslcert", "sslkey", "sslpassword")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings, with TLS options as query parameters."""
    settings = settings or get_settings()
    dsn = (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )
    tls = {
        name: getattr(settings, f"db_{name}")
        for name in _TLS_PARAMS
        if getattr(settings, f"db_{name}") is not None
    }
    return f"{dsn}?{urlencode(tls)}" if tls else dsn


def qualified_table(schema: str, table: str) -> str:
    """Return `"schema"."table"` after checking both are plain identifiers."""
    for part in (schema, table):
        if not _IDENTIFIER.match(part):
            raise ValueError(f"Invalid SQL identifier: {part!r}")
    return f'"{schema}"."{table}"'


def apply_statement_timeout(cur: psycopg.Cursor, timeout_ms: int) -> None:
    """Set a session statement timeout; 0 leaves the server default."""
    if timeout_ms > 0:
        cur.execute(sql.SQL("SET statement_timeout = {}").format(sql.Literal(timeout_ms)))


def _configure_connection(conn: Connection) -> None:
    """Pool `configure` hook: applied once per new physical connection."""
    timeout_ms = get_settings().db_statement_timeout_ms
    with conn.cursor() as cur:
        apply_statement_timeout(cur, timeout_ms)
    conn.commit()


class PoolManager:
    """
    Thread-safe singleton for managing the shared connection pool.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool: Optional[ConnectionPool] = None
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_pool(self, min_size: Optional[int] = None, max_size: Optional[int] = None) -> ConnectionPool:
        """
        Get or create the connection pool.

        Parameters
        ----------
        min_size : int, optional
            Minimum number of idle connections to keep (default from settings).
        max_size : int, optional
            Maximum total connections in the pool (default from settings).

        Returns
        -------
        ConnectionPool
            The managed pool instance.
        """
        with self._lock:
            if self._pool is None:
                settings = get_settings()
                self._pool = ConnectionPool(
                    conninfo=build_dsn(settings),
                    min_size=min_size or settings.db_pool_min_size,
                    max_size=max_size or settings.db_pool_max_size,
                    configure=_configure_connection,
                    open=True,
                )
                log.info(
                    "Connection pool opened",
                    extra={"host": settings.db_host, "db": settings.db_name},
                )
            return self._pool

    @contextmanager
    def connection(self) -> Generator[Connection, None, None]:
        """
        Context manager for obtaining a connection from the pool.

        The pool commits on clean exit and rolls back when the block raises.
        """
        pool = self.get_pool()
        with pool.connection() as conn:
            yield conn

    def close_all(self) -> None:
        """
        Close the managed pool and release resources.

        This is called automatically on exit via atexit hook.
        """
        with self._lock:
            if self._pool is not None:
                try:
                    self._pool.close()
                except psycopg.Error:
                    log.warning("Error while closing connection pool", exc_info=True)
                finally:
                    self._pool = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)
def get_sync_connection(dsn: Optional[str] = None, autocommit: bool = False) -> Connection:
    """
    Acquire a dedicated synchronous connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    Used for migrations and maintenance, which need their own session.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(dsn or build_dsn(), autocommit=autocommit)


def get_pool() -> ConnectionPool:
    """Get or create the shared connection pool via PoolManager."""
    return PoolManager().get_pool()


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((OSError, ConnectionError)),
    reraise=True,
)
async def get_async_connection(dsn: Optional[str] = None) -> asyncpg.Connection:
    """
    Acquire an asyncpg connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection errors.
    """
    return await asyncpg.connect(dsn or build_dsn())


__all__ = [
    "TRANSIENT_ERRORS",
    "PoolManager",
    "apply_statement_timeout",
    "build_dsn",
    "get_async_connection",
    "get_pool",
    "get_sync_connection",
    "qualified_table",
]
