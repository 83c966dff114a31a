"""
Read API over the analytical store.

Point lookups go through the primary keys. Range reads return `RecordStream`
objects: lazy, finite sequences that fetch in batches through a server-side
cursor and re-run their query each time they are iterated. Range reads never
fail on empty results; only the `require_*` lookups raise NotFoundError.

Storage errors from reads are surfaced unchanged; retry policy is left to the
caller.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from banking_store.config import Settings, get_settings
from banking_store.domain.models import (
    BLOCK_COLUMNS,
    TRANSACTION_COLUMNS,
    BlockRecord,
    BlockSummary,
    SlotRange,
    TransactionObservation,
    TransactionRecord,
    TransactionWithBlock,
    parse_model,
)
from banking_store.errors import NotFoundError, ValidationError
from banking_store.infrastructure.db_factory import get_pool, qualified_table
from banking_store.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

_stream_ids = itertools.count(1)


class RecordStream(Generic[T]):
    """
    A restartable, lazily fetched query result.

    Every iteration opens a fresh named (server-side) cursor on a pooled
    connection and yields converted rows `batch_size` at a time. Abandoning an
    iteration early closes the cursor and returns the connection.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        query: str,
        params: tuple[Any, ...],
        convert: Callable[[dict[str, Any]], T],
        batch_size: int,
    ) -> None:
        self._pool = pool
        self.query = query
        self.params = params
        self._convert = convert
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[T]:
        with self._pool.connection() as conn:
            with conn.cursor(name=f"record_stream_{next(_stream_ids)}", row_factory=dict_row) as cur:
                cur.itersize = self.batch_size
                cur.execute(self.query, self.params)
                while True:
                    batch = cur.fetchmany(self.batch_size)
                    if not batch:
                        break
                    for row in batch:
                        yield self._convert(row)

    def to_list(self) -> list[T]:
        return list(self)


def _as_slot_range(value: SlotRange | tuple[int, int]) -> SlotRange:
    if isinstance(value, SlotRange):
        return value
    start, end = value
    return parse_model(SlotRange, {"start": start, "end": end})


def _as_utc(value: datetime, name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{name} must be a datetime", field=name)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AnalyticalStore:
    """
    Query operations for dashboards and alerting.

    Parameters
    ----------
    pool : ConnectionPool, optional
        Pool to read through. Defaults to the shared pool.
    settings : Settings, optional
        Overrides the cached settings (schema, batch size).
    """

    def __init__(self, pool: Optional[ConnectionPool] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self._pool = pool
        self.batch_size = self.settings.query_batch_size
        self._tx_table = qualified_table(self.settings.db_schema, "transaction_infos")
        self._block_table = qualified_table(self.settings.db_schema, "blocks")
        self._tx_columns = ", ".join(TRANSACTION_COLUMNS)
        self._block_columns = ", ".join(BLOCK_COLUMNS)

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = get_pool()
        return self._pool

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> Optional[dict[str, Any]]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                return cur.fetchone()

    # ------------------------------------------------------------------ blocks

    def get_block(self, slot: int) -> Optional[BlockRecord]:
        """Point lookup by slot; None when the slot was never observed."""
        if slot < 0:
            raise ValidationError(f"slot must be non-negative, got {slot}", field="slot")
        row = self._fetch_one(
            f"SELECT {self._block_columns} FROM {self._block_table} WHERE slot = %s", (slot,)
        )
        return BlockRecord.from_row(row) if row else None

    def require_block(self, slot: int) -> BlockRecord:
        block = self.get_block(slot)
        if block is None:
            raise NotFoundError("BlockRecord", (slot,))
        return block

    def list_blocks_with_errors(self, slot_range: SlotRange | tuple[int, int]) -> RecordStream[BlockRecord]:
        """
        Blocks in the inclusive slot range with `banking_stage_errors > 0`,
        ordered by slot. The predicate matches `idx_blocks_slot_errors`, so the
        planner can use the partial index.
        """
        rng = _as_slot_range(slot_range)
        query = (
            f"SELECT {self._block_columns} FROM {self._block_table} "
            f"WHERE banking_stage_errors > 0 AND slot BETWEEN %s AND %s "
            f"ORDER BY slot"
        )
        return RecordStream(self.pool, query, (rng.start, rng.end), BlockRecord.from_row, self.batch_size)

    def find_cu_invariant_violations(
        self, slot_range: SlotRange | tuple[int, int]
    ) -> RecordStream[BlockRecord]:
        """Blocks whose `total_cu_used` exceeds `total_cu_requested`."""
        rng = _as_slot_range(slot_range)
        query = (
            f"SELECT {self._block_columns} FROM {self._block_table} "
            f"WHERE slot BETWEEN %s AND %s AND total_cu_used > total_cu_requested "
            f"ORDER BY slot"
        )
        return RecordStream(self.pool, query, (rng.start, rng.end), BlockRecord.from_row, self.batch_size)

    def summarize_blocks(self, slot_range: SlotRange | tuple[int, int]) -> BlockSummary:
        """Aggregate block statistics over the inclusive slot range."""
        rng = _as_slot_range(slot_range)
        row = self._fetch_one(
            f"""
            SELECT
                COUNT(*) AS blocks,
                COUNT(*) FILTER (WHERE banking_stage_errors > 0) AS blocks_with_errors,
                COALESCE(SUM(banking_stage_errors), 0) AS banking_stage_errors,
                COALESCE(SUM(successful_transactions), 0) AS successful_transactions,
                COALESCE(SUM(processed_transactions), 0) AS processed_transactions,
                COALESCE(SUM(total_cu_used), 0) AS total_cu_used,
                COALESCE(SUM(total_cu_requested), 0) AS total_cu_requested
            FROM {self._block_table}
            WHERE slot BETWEEN %s AND %s
            """,
            (rng.start, rng.end),
        )
        return BlockSummary(slot_range=rng, **{key: int(value) for key, value in (row or {}).items()})

    # ------------------------------------------------------------------ transactions

    def get_transaction(self, signature: str, first_notification_slot: int) -> Optional[TransactionRecord]:
        """Point lookup by (signature, first_notification_slot)."""
        key = parse_model(
            TransactionObservation,
            {"signature": signature, "first_notification_slot": first_notification_slot},
        )
        row = self._fetch_one(
            f"SELECT {self._tx_columns} FROM {self._tx_table} "
            f"WHERE signature = %s AND first_notification_slot = %s",
            key.key,
        )
        return TransactionRecord.from_row(row) if row else None

    def require_transaction(self, signature: str, first_notification_slot: int) -> TransactionRecord:
        record = self.get_transaction(signature, first_notification_slot)
        if record is None:
            raise NotFoundError("TransactionRecord", (signature, first_notification_slot))
        return record

    def get_transaction_with_block(
        self, signature: str, first_notification_slot: int
    ) -> Optional[TransactionWithBlock]:
        """
        Resolve a transaction's block: the processed slot when known, else the
        first notification slot. The block is None when not observed yet.
        """
        record = self.get_transaction(signature, first_notification_slot)
        if record is None:
            return None
        slot = record.processed_slot if record.processed_slot is not None else record.first_notification_slot
        return TransactionWithBlock(transaction=record, block=self.get_block(slot))

    def list_transactions_by_time_range(
        self, start: datetime, end: datetime
    ) -> RecordStream[TransactionRecord]:
        """
        Transactions with `utc_timestamp` in `[start, end]` ordered by time.

        Naive datetimes are read as UTC.
        """
        start = _as_utc(start, "start")
        end = _as_utc(end, "end")
        if start > end:
            raise ValidationError(f"time range start {start} is after end {end}", field="start")
        query = (
            f"SELECT {self._tx_columns} FROM {self._tx_table} "
            f"WHERE utc_timestamp BETWEEN %s AND %s "
            f"ORDER BY utc_timestamp, signature, first_notification_slot"
        )
        return RecordStream(self.pool, query, (start, end), TransactionRecord.from_row, self.batch_size)


__all__ = ["AnalyticalStore", "RecordStream"]
