"""Schema versioning for the banking stage results store.

Migrations are an ordered list of numbered steps. `apply_migrations` records
each applied version in `<schema>.schema_version` and only runs steps newer
than the recorded one, so re-running it against an up-to-date database is a
no-op. All statements use `{schema}` as a placeholder for the configured
schema identifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import psycopg
from psycopg import sql

from banking_store.config import get_settings
from banking_store.errors import SchemaError
from banking_store.infrastructure.db_factory import get_sync_connection
from banking_store.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="transaction_infos and blocks tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS {schema}.transaction_infos (
                signature CHAR(88) NOT NULL,
                first_notification_slot BIGINT NOT NULL,
                errors TEXT,
                is_executed BOOL,
                is_confirmed BOOL,
                cu_requested BIGINT,
                prioritization_fees BIGINT,
                utc_timestamp TIMESTAMP WITH TIME ZONE NOT NULL,
                accounts_used TEXT,
                processed_slot BIGINT,
                supp_infos TEXT,
                PRIMARY KEY (signature, first_notification_slot)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS {schema}.blocks (
                slot BIGINT PRIMARY KEY,
                block_hash CHAR(44),
                leader_identity CHAR(44),
                successful_transactions BIGINT,
                banking_stage_errors BIGINT,
                processed_transactions BIGINT,
                total_cu_used BIGINT,
                total_cu_requested BIGINT,
                heavily_writelocked_accounts TEXT,
                heavily_readlocked_accounts TEXT,
                supp_infos TEXT
            )
            """,
        ),
    ),
    Migration(
        version=2,
        description="time, slot and error-block indexes",
        statements=(
            "CREATE INDEX IF NOT EXISTS idx_blocks_slot ON {schema}.blocks (slot)",
            """
            CREATE INDEX IF NOT EXISTS idx_blocks_slot_errors ON {schema}.blocks (slot)
            WHERE banking_stage_errors > 0
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_transaction_infos_timestamp
            ON {schema}.transaction_infos (utc_timestamp)
            """,
        ),
    ),
)


def _check_ordering(migrations: Sequence[Migration]) -> None:
    versions = [m.version for m in migrations]
    if versions != list(range(1, len(versions) + 1)):
        raise SchemaError(f"Migration versions must be contiguous from 1, got {versions}")


def _bootstrap(cur: psycopg.Cursor, schema: str) -> None:
    ident = sql.Identifier(schema)
    cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(ident))
    cur.execute(
        sql.SQL(
            """
            CREATE TABLE IF NOT EXISTS {}.schema_version (
                version BIGINT PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT now()
            )
            """
        ).format(ident)
    )


def _read_version(cur: psycopg.Cursor, schema: str) -> int:
    cur.execute(
        sql.SQL("SELECT COALESCE(MAX(version), 0) FROM {}.schema_version").format(
            sql.Identifier(schema)
        )
    )
    row = cur.fetchone()
    return int(row[0]) if row else 0


def current_version(conn: psycopg.Connection, schema: Optional[str] = None) -> int:
    """Return the highest applied migration version, 0 for a fresh database."""
    schema = schema or get_settings().db_schema
    with conn.cursor() as cur:
        cur.execute("SELECT to_regclass(%s)", (f"{schema}.schema_version",))
        row = cur.fetchone()
        if row is None or row[0] is None:
            return 0
        return _read_version(cur, schema)


def apply_migrations(
    conn: Optional[psycopg.Connection] = None,
    schema: Optional[str] = None,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> list[int]:
    """
    Apply pending migrations in one transaction and return the versions applied.

    A transaction-scoped advisory lock keyed on the schema name serialises
    concurrent migrators.

    Raises
    ------
    SchemaError
        If the migration list is malformed or a statement fails.
    """
    _check_ordering(migrations)
    schema = schema or get_settings().db_schema
    own_conn = conn is None
    conn = conn or get_sync_connection()
    applied: list[int] = []
    ident = sql.Identifier(schema)
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (schema,))
                _bootstrap(cur, schema)
                version = _read_version(cur, schema)
                for migration in migrations:
                    if migration.version <= version:
                        continue
                    log.info(
                        f"Applying migration v{migration.version}: {migration.description}",
                        extra={"schema": schema, "version": migration.version},
                    )
                    for statement in migration.statements:
                        cur.execute(sql.SQL(statement).format(schema=ident))
                    cur.execute(
                        sql.SQL(
                            "INSERT INTO {}.schema_version (version, description) VALUES (%s, %s)"
                        ).format(ident),
                        (migration.version, migration.description),
                    )
                    applied.append(migration.version)
    except psycopg.Error as exc:
        log.error("Schema migration failed", extra={"schema": schema, "error": str(exc)})
        raise SchemaError(f"Failed to apply schema migrations: {exc}") from exc
    finally:
        if own_conn:
            conn.close()

    if applied:
        log.info("Schema migrated", extra={"schema": schema, "applied": applied})
    else:
        log.info("Schema is up to date", extra={"schema": schema})
    return applied


__all__ = ["MIGRATIONS", "Migration", "apply_migrations", "current_version"]
