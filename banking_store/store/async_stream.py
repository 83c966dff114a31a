"""
Async streaming reads for consumers running on an event loop.

Uses asyncpg directly with cursor-based iteration so large time windows stream
in batches instead of being materialised. Each call to the generator opens its
own connection and transaction, so the stream is restartable by calling the
function again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from banking_store.config import Settings, get_settings
from banking_store.domain.models import TRANSACTION_COLUMNS, TransactionRecord
from banking_store.errors import ValidationError
from banking_store.infrastructure.db_factory import get_async_connection, qualified_table


async def stream_transactions_by_time_range(
    start: datetime,
    end: datetime,
    dsn: Optional[str] = None,
    batch_size: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> AsyncIterator[TransactionRecord]:
    """
    Yield transactions with `utc_timestamp` in `[start, end]` ordered by time.
    """
    settings = settings or get_settings()
    batch_size = batch_size or settings.query_batch_size
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if start > end:
        raise ValidationError(f"time range start {start} is after end {end}", field="start")

    query = (
        f"SELECT {', '.join(TRANSACTION_COLUMNS)} "
        f"FROM {qualified_table(settings.db_schema, 'transaction_infos')} "
        f"WHERE utc_timestamp BETWEEN $1 AND $2 "
        f"ORDER BY utc_timestamp, signature, first_notification_slot"
    )
    conn = await get_async_connection(dsn)
    try:
        async with conn.transaction():
            cursor = await conn.cursor(query, start, end)
            while True:
                batch = await cursor.fetch(batch_size)
                if not batch:
                    break
                for row in batch:
                    yield TransactionRecord.from_row(dict(row))
    finally:
        await conn.close()


__all__ = ["stream_transactions_by_time_range"]
