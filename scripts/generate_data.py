"""
Synthetic data generator for the banking stage results store.

Produces deterministic pseudo-random block statistics and transaction
observations (including re-delivered and partial confirmation events) and
loads them through the ingest writer, so the merge path is exercised exactly
as live traffic would exercise it.
"""

from __future__ import annotations

import random
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import typer
from psycopg_pool import ConnectionPool

from banking_store.config import get_settings
from banking_store.domain.models import BASE58_ALPHABET
from banking_store.infrastructure.migrations import apply_migrations
from banking_store.ingest.writer import IngestWriter
from banking_store.utils.logging import configure_logging

app = typer.Typer(help="Generate synthetic banking stage observations and load them.")

SLOT_DURATION = timedelta(milliseconds=400)
ERROR_KINDS = ["AccountInUse", "WouldExceedMaxBlockCostLimit", "BlockhashNotFound", "InsufficientFundsForFee"]


def _base58(rng: random.Random, length: int) -> str:
    return "".join(rng.choice(BASE58_ALPHABET) for _ in range(length))


def _generate_observations(
    slots: int,
    txs_per_slot: int,
    seed: int,
    start_slot: int = 250_000_000,
    start_time: datetime | None = None,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """
    Return `(blocks, transactions)` as raw observation mappings.

    Every transaction gets a first observation with its timestamp; about a
    third get a second, partial observation carrying only outcome fields.
    """
    rng = random.Random(seed)
    start_time = start_time or datetime(2024, 1, 1, tzinfo=timezone.utc)
    leaders = [_base58(rng, 44) for _ in range(4)]
    blocks: list[dict[str, Any]] = []
    transactions: list[dict[str, Any]] = []

    for offset in range(slots):
        slot = start_slot + offset
        slot_time = start_time + offset * SLOT_DURATION
        errors = 0
        for index in range(txs_per_slot):
            signature = _base58(rng, 88)
            failed = rng.random() < 0.2
            first = {
                "signature": signature,
                "first_notification_slot": slot,
                "utc_timestamp": slot_time + timedelta(microseconds=index),
                "cu_requested": rng.randint(1_000, 1_400_000),
                "prioritization_fees": rng.randint(0, 50_000),
                "accounts_used": [
                    {"key": _base58(rng, 44), "writable": rng.random() < 0.5} for _ in range(3)
                ],
            }
            if failed:
                errors += 1
                first["errors"] = [{"error": rng.choice(ERROR_KINDS), "slot": slot, "count": 1}]
            transactions.append(first)
            if rng.random() < 0.33:
                transactions.append(
                    {
                        "signature": signature,
                        "first_notification_slot": slot,
                        "is_executed": not failed,
                        "is_confirmed": not failed,
                        "processed_slot": slot + rng.randint(0, 3),
                    }
                )

        processed = txs_per_slot - errors
        cu_requested = rng.randint(10_000_000, 48_000_000)
        blocks.append(
            {
                "slot": slot,
                "block_hash": _base58(rng, 44),
                "leader_identity": leaders[(offset // 4) % len(leaders)],
                "processed_transactions": processed,
                "successful_transactions": rng.randint(0, processed),
                "banking_stage_errors": errors,
                "total_cu_requested": cu_requested,
                "total_cu_used": rng.randint(0, cu_requested),
            }
        )

    return blocks, transactions


@app.command()
def main(
    slots: int = typer.Option(100, "--slots", "-n", help="Number of consecutive slots."),
    txs_per_slot: int = typer.Option(20, "--txs-per-slot", "-t", help="Transactions per slot."),
    seed: int = typer.Option(42, "--seed", help="Deterministic RNG seed."),
    start_slot: int = typer.Option(250_000_000, "--start-slot", help="First slot number."),
    batch_size: int = typer.Option(500, "--batch-size", "-b", help="Observations per write batch."),
    dsn: str | None = typer.Option(None, "--dsn", help="Optional DSN override for Postgres."),
) -> None:
    """
    Generate synthetic observations and load them through the ingest writer.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    start = time.perf_counter()
    blocks, transactions = _generate_observations(slots, txs_per_slot, seed, start_slot)
    typer.echo(f"Generated {len(blocks):,} blocks and {len(transactions):,} transaction observations")

    pool = ConnectionPool(conninfo=dsn, open=True) if dsn else None
    try:
        if pool is not None:
            with pool.connection() as conn:
                apply_migrations(conn=conn)
        else:
            apply_migrations()
        writer = IngestWriter(pool=pool)
        for i in range(0, len(transactions), batch_size):
            writer.record_transaction_observations(transactions[i : i + batch_size])
        for i in range(0, len(blocks), batch_size):
            writer.record_block_observations(blocks[i : i + batch_size])
    finally:
        if pool is not None:
            pool.close()

    duration = time.perf_counter() - start
    total = len(blocks) + len(transactions)
    typer.echo(f"Loaded {total:,} observations in {duration:.2f}s ({total / duration:,.0f} obs/s)")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
