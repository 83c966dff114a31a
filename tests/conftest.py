"""
Pytest configuration for the banking stage results store.

Provides fixtures for:
- Settings override pointing at a dedicated test schema
- Database connection and pool management
- A migrated schema that is emptied around each integration test
"""

from __future__ import annotations

import os
from typing import Generator

import psycopg
import pytest
from psycopg import sql
from psycopg_pool import ConnectionPool

from banking_store.config import Settings
from banking_store.infrastructure.migrations import apply_migrations

TEST_SCHEMA = "banking_stage_results_test"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "banking_stage"),
        db_schema=TEST_SCHEMA,
        ingest_retry_attempts=2,
        ingest_retry_max_wait_seconds=0,
        query_batch_size=3,
        maintenance_lock_timeout_ms=2_000,
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return (
        f"postgresql://{test_settings.db_user}:{test_settings.db_password}"
        f"@{test_settings.db_host}:{test_settings.db_port}/{test_settings.db_name}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped autocommit connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def migrated_schema(db_connection: psycopg.Connection) -> Generator[str, None, None]:
    """
    Create the test schema from scratch and drop it at the end of the session.
    """
    drop = sql.SQL("DROP SCHEMA IF EXISTS {} CASCADE").format(sql.Identifier(TEST_SCHEMA))
    with db_connection.cursor() as cur:
        cur.execute(drop)
    apply_migrations(conn=db_connection, schema=TEST_SCHEMA)
    yield TEST_SCHEMA
    with db_connection.cursor() as cur:
        cur.execute(drop)


@pytest.fixture(scope="session")
def db_pool(test_dsn: str, migrated_schema: str) -> Generator[ConnectionPool, None, None]:
    """
    Connection pool shared by writers and readers under test.
    """
    del migrated_schema
    pool = ConnectionPool(conninfo=test_dsn, min_size=1, max_size=8, open=True)
    try:
        yield pool
    finally:
        pool.close()


@pytest.fixture(scope="function")
def clean_tables(db_connection: psycopg.Connection, migrated_schema: str) -> Generator[None, None, None]:
    """
    Empty both tables before and after each test function.
    """
    truncate = sql.SQL("TRUNCATE TABLE {}.{}, {}.{}").format(
        sql.Identifier(migrated_schema),
        sql.Identifier("transaction_infos"),
        sql.Identifier(migrated_schema),
        sql.Identifier("blocks"),
    )
    with db_connection.cursor() as cur:
        cur.execute(truncate)
    yield
    with db_connection.cursor() as cur:
        cur.execute(truncate)
