"""
Event ingest writer.

Persists transaction and block observations with field-level merge semantics:
each observation is one `INSERT ... ON CONFLICT DO UPDATE` whose update clause
keeps the stored value for every column the observation leaves NULL. PostgreSQL
serialises conflicting upserts on the same key through the row lock, while
upserts on different keys proceed independently, so re-delivered and
out-of-order events converge without a read-modify-write loop.

`utc_timestamp` is first-write-wins. An observation that carries a different
timestamp for an existing key is a conflict; the configured policy decides
whether it is logged and ignored (default) or raised as ConflictError, in which
case the whole write is rolled back.

Transient connection failures are retried with exponential backoff via tenacity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from banking_store.config import Settings, get_settings
from banking_store.domain.models import (
    BLOCK_COLUMNS,
    BLOCK_MERGE_FIELDS,
    TRANSACTION_COLUMNS,
    TRANSACTION_MERGE_FIELDS,
    BlockObservation,
    TransactionObservation,
    parse_model,
)
from banking_store.errors import ConflictError
from banking_store.infrastructure.db_factory import TRANSIENT_ERRORS, get_pool, qualified_table
from banking_store.utils.logging import get_logger

log = get_logger(__name__)

ConflictPolicy = Literal["ignore", "raise"]


@dataclass(frozen=True)
class WriteResult:
    """Outcome of one upsert."""

    key: tuple[Any, ...]
    inserted: bool
    conflicts: tuple[str, ...] = ()


def _merge_assignments(fields: Sequence[str], alias: str) -> str:
    return ",\n    ".join(f"{name} = COALESCE(EXCLUDED.{name}, {alias}.{name})" for name in fields)


def build_transaction_upsert(schema: str) -> str:
    """
    Upsert for one transaction observation.

    `utc_timestamp` is not part of the update clause.
    `RETURNING (xmax = 0)` is true only for freshly inserted rows.
    """
    columns = ", ".join(TRANSACTION_COLUMNS)
    placeholders = ", ".join(["%s"] * len(TRANSACTION_COLUMNS))
    return (
        f"INSERT INTO {qualified_table(schema, 'transaction_infos')} AS t ({columns})\n"
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT (signature, first_notification_slot) DO UPDATE SET\n"
        f"    {_merge_assignments(TRANSACTION_MERGE_FIELDS, 't')}\n"
        f"RETURNING (t.xmax = 0) AS inserted, t.utc_timestamp"
    )


def build_block_upsert(schema: str) -> str:
    """Upsert for one block observation keyed by slot."""
    columns = ", ".join(BLOCK_COLUMNS)
    placeholders = ", ".join(["%s"] * len(BLOCK_COLUMNS))
    return (
        f"INSERT INTO {qualified_table(schema, 'blocks')} AS b ({columns})\n"
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT (slot) DO UPDATE SET\n"
        f"    {_merge_assignments(BLOCK_MERGE_FIELDS, 'b')}\n"
        f"RETURNING (b.xmax = 0) AS inserted"
    )


class IngestWriter:
    """
    Writes observations into the store.

    Parameters
    ----------
    pool : ConnectionPool, optional
        Connection pool to write through. Defaults to the shared pool.
    settings : Settings, optional
        Overrides the cached settings (schema, retry and conflict policy).
    conflict_policy : {"ignore", "raise"}, optional
        Overrides `settings.ingest_conflict_policy`.
    """

    def __init__(
        self,
        pool: Optional[ConnectionPool] = None,
        settings: Optional[Settings] = None,
        conflict_policy: Optional[ConflictPolicy] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._pool = pool
        self.conflict_policy: ConflictPolicy = conflict_policy or self.settings.ingest_conflict_policy
        self._tx_sql = build_transaction_upsert(self.settings.db_schema)
        self._block_sql = build_block_upsert(self.settings.db_schema)

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = get_pool()
        return self._pool

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.settings.ingest_retry_attempts),
            wait=wait_exponential(multiplier=0.2, max=self.settings.ingest_retry_max_wait_seconds),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        )

    # ------------------------------------------------------------------ transactions

    def record_transaction_observation(
        self,
        signature: str,
        first_notification_slot: int,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> WriteResult:
        """
        Insert or merge one transaction observation.

        Raises
        ------
        ValidationError
            If the signature is malformed, a slot or counter is negative, or
            `fields` names an unknown column.
        ConflictError
            If `utc_timestamp` differs from the stored one and the policy is "raise".
        """
        observation = parse_model(
            TransactionObservation,
            {
                **(fields or {}),
                "signature": signature,
                "first_notification_slot": first_notification_slot,
            },
        )
        return self.record_transactions([observation])[0]

    def record_transaction_observations(
        self, observations: Iterable[Mapping[str, Any]]
    ) -> list[WriteResult]:
        """Validate raw observation mappings and upsert them in one transaction."""
        parsed = [parse_model(TransactionObservation, item) for item in observations]
        return self.record_transactions(parsed)

    def record_transactions(self, observations: Sequence[TransactionObservation]) -> list[WriteResult]:
        if not observations:
            return []
        return self._retrying()(self._upsert_transactions, observations)

    def _upsert_transactions(self, observations: Sequence[TransactionObservation]) -> list[WriteResult]:
        now = datetime.now(timezone.utc)
        params = [
            tuple(
                (obs.utc_timestamp or now) if name == "utc_timestamp" else getattr(obs, name)
                for name in TRANSACTION_COLUMNS
            )
            for obs in observations
        ]
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                rows = _execute_returning(cur, self._tx_sql, params)
                results = [self._check_transaction(obs, row) for obs, row in zip(observations, rows)]
        log.debug(
            "Transaction observations written",
            extra={"count": len(results), "inserted": sum(r.inserted for r in results)},
        )
        return results

    def _check_transaction(self, obs: TransactionObservation, row: Mapping[str, Any]) -> WriteResult:
        stored = row["utc_timestamp"]
        conflicts: tuple[str, ...] = ()
        if obs.utc_timestamp is not None and stored != obs.utc_timestamp:
            if self.conflict_policy == "raise":
                raise ConflictError(obs.key, "utc_timestamp", stored, obs.utc_timestamp)
            log.warning(
                "Ignoring conflicting utc_timestamp",
                extra={
                    "signature": obs.signature,
                    "slot": obs.first_notification_slot,
                    "stored": stored.isoformat(),
                    "incoming": obs.utc_timestamp.isoformat(),
                },
            )
            conflicts = ("utc_timestamp",)
        return WriteResult(key=obs.key, inserted=bool(row["inserted"]), conflicts=conflicts)

    # ------------------------------------------------------------------ blocks

    def record_block_observation(
        self, slot: int, fields: Optional[Mapping[str, Any]] = None
    ) -> WriteResult:
        """
        Insert or merge statistics for one slot.

        Raises
        ------
        ValidationError
            If the slot or a counter is negative or a hash is malformed.
        """
        observation = parse_model(BlockObservation, {**(fields or {}), "slot": slot})
        return self.record_blocks([observation])[0]

    def record_block_observations(self, observations: Iterable[Mapping[str, Any]]) -> list[WriteResult]:
        parsed = [parse_model(BlockObservation, item) for item in observations]
        return self.record_blocks(parsed)

    def record_blocks(self, observations: Sequence[BlockObservation]) -> list[WriteResult]:
        if not observations:
            return []
        return self._retrying()(self._upsert_blocks, observations)

    def _upsert_blocks(self, observations: Sequence[BlockObservation]) -> list[WriteResult]:
        params = [tuple(getattr(obs, name) for name in BLOCK_COLUMNS) for obs in observations]
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                rows = _execute_returning(cur, self._block_sql, params)
        results = [
            WriteResult(key=obs.key, inserted=bool(row["inserted"]))
            for obs, row in zip(observations, rows)
        ]
        log.debug("Block observations written", extra={"count": len(results)})
        return results


def _execute_returning(cur: Any, query: str, params: Sequence[tuple[Any, ...]]) -> list[Mapping[str, Any]]:
    """
    Run `query` once per parameter tuple and collect each RETURNING row.

    Statements run one per row (pipelined by psycopg) rather than as a single
    multi-row INSERT, so a batch may carry the same key twice.
    """
    if len(params) == 1:
        cur.execute(query, params[0])
        return [cur.fetchone()]
    cur.executemany(query, params, returning=True)
    rows = []
    while True:
        rows.append(cur.fetchone())
        if not cur.nextset():
            break
    return rows


__all__ = [
    "ConflictPolicy",
    "IngestWriter",
    "WriteResult",
    "build_block_upsert",
    "build_transaction_upsert",
]
