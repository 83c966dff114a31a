"""
Physical clustering maintenance.

Rewrites each table in the order of its primary access-pattern index
(`CLUSTER ... USING`) and refreshes planner statistics, so range scans over
recent time windows or slot ranges read contiguous pages. Every table is its
own autocommitted step bounded by `lock_timeout`: a table whose lock cannot
be taken quickly is skipped instead of stalling ingestion, and simply re-running
the pass picks it up. CLUSTER is atomic per table, so an aborted pass leaves
each table either fully rewritten or untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import psycopg
from psycopg import sql

from banking_store.config import Settings, get_settings
from banking_store.errors import ValidationError
from banking_store.infrastructure.db_factory import build_dsn, get_sync_connection
from banking_store.utils.logging import get_logger
from banking_store.utils.profiler import profile_block

log = get_logger(__name__)

CLUSTER_TARGETS: dict[str, str] = {
    "transaction_infos": "idx_transaction_infos_timestamp",
    "blocks": "idx_blocks_slot",
}


@dataclass
class MaintenanceReport:
    clustered: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    timings: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.skipped


def _cluster_table(cur: psycopg.Cursor, schema: str, table: str, index: str) -> None:
    target = sql.SQL("{}.{}").format(sql.Identifier(schema), sql.Identifier(table))
    cur.execute(sql.SQL("CLUSTER {} USING {}").format(target, sql.Identifier(index)))
    cur.execute(sql.SQL("ANALYZE {}").format(target))


def run_cluster_pass(
    tables: Optional[Iterable[str]] = None,
    conn: Optional[psycopg.Connection] = None,
    settings: Optional[Settings] = None,
) -> MaintenanceReport:
    """
    Cluster the given tables (default: all) by their access-pattern index.

    Parameters
    ----------
    tables : iterable[str], optional
        Subset of `CLUSTER_TARGETS` keys.
    conn : psycopg.Connection, optional
        An autocommit connection to run on; a dedicated one is opened otherwise.
    settings : Settings, optional
        Overrides the cached settings (schema, lock timeout).

    Returns
    -------
    MaintenanceReport
        Which tables were clustered, which were skipped and why, and timings.
    """
    settings = settings or get_settings()
    names = list(tables) if tables is not None else list(CLUSTER_TARGETS)
    unknown = [name for name in names if name not in CLUSTER_TARGETS]
    if unknown:
        raise ValidationError(
            f"Unknown tables {unknown}. Available: {', '.join(CLUSTER_TARGETS)}", field="tables"
        )

    report = MaintenanceReport()
    own_conn = conn is None
    conn = conn or get_sync_connection(build_dsn(settings), autocommit=True)
    try:
        with conn.cursor() as cur:
            cur.execute(
                sql.SQL("SET lock_timeout = {}").format(
                    sql.Literal(settings.maintenance_lock_timeout_ms)
                )
            )
            # CLUSTER may legitimately run longer than the ingest statement timeout
            cur.execute("SET statement_timeout = 0")
            for table in names:
                index = CLUSTER_TARGETS[table]
                log.info(f"[CLUSTER START] {table}", extra={"table": table, "index": index})
                with profile_block(f"cluster:{table}") as stats:
                    try:
                        _cluster_table(cur, settings.db_schema, table, index)
                    except psycopg.errors.LockNotAvailable as exc:
                        report.skipped[table] = "lock not available"
                        log.warning(
                            f"[CLUSTER SKIPPED] {table}",
                            extra={"table": table, "error": str(exc)},
                        )
                        continue
                    except psycopg.errors.QueryCanceled as exc:
                        report.skipped[table] = "cancelled"
                        log.warning(
                            f"[CLUSTER SKIPPED] {table}",
                            extra={"table": table, "error": str(exc)},
                        )
                        continue
                report.clustered.append(table)
                report.timings[table] = stats.as_dict()
                log.info(
                    f"[CLUSTER DONE] {table}",
                    extra={"table": table, "seconds": round(stats.duration_seconds, 3)},
                )
    finally:
        if own_conn:
            conn.close()
    return report


__all__ = ["CLUSTER_TARGETS", "MaintenanceReport", "run_cluster_pass"]
