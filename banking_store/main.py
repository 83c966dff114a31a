from __future__ import annotations

import sys
from datetime import datetime
from typing import List, Optional

import typer

from banking_store.config import get_settings
from banking_store.errors import StoreError, ValidationError
from banking_store.infrastructure.db_factory import PoolManager
from banking_store.infrastructure.migrations import apply_migrations
from banking_store.reporter import print_blocks, print_maintenance, print_summary, print_transactions
from banking_store.store.maintenance import run_cluster_pass
from banking_store.store.queries import AnalyticalStore
from banking_store.utils.logging import configure_logging

app = typer.Typer(help="Banking stage results store CLI.")


@app.callback()
def _setup() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} "
        f"schema={settings.db_schema} | pool=({settings.db_pool_min_size},{settings.db_pool_max_size}) "
        f"conflict_policy={settings.ingest_conflict_policy} batch={settings.query_batch_size}"
    )


@app.command()
def migrate() -> None:
    """
    Create or upgrade the schema, tables and indexes.
    """
    applied = apply_migrations()
    if applied:
        typer.echo(f"Applied migrations: {', '.join(f'v{v}' for v in applied)}")
    else:
        typer.echo("Schema is up to date.")


@app.command()
def cluster(
    table: Optional[List[str]] = typer.Option(
        None,
        "--table",
        "-t",
        help="Table to cluster (transaction_infos, blocks). Repeatable; default all.",
    ),
) -> None:
    """
    Physically reorder tables by their access-pattern index. Safe to re-run.
    """
    try:
        report = run_cluster_pass(tables=table or None)
    except ValidationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    print_maintenance(report)
    if not report.complete:
        raise typer.Exit(code=2)


@app.command()
def block(slot: int = typer.Argument(..., help="Slot to look up.")) -> None:
    """
    Show one block as JSON.
    """
    record = AnalyticalStore().get_block(slot)
    if record is None:
        typer.echo(f"Block {slot} not observed.", err=True)
        raise typer.Exit(code=1)
    typer.echo(record.model_dump_json(indent=2))


@app.command()
def tx(
    signature: str = typer.Argument(..., help="Transaction signature."),
    slot: int = typer.Argument(..., help="First notification slot."),
    with_block: bool = typer.Option(False, "--with-block", help="Resolve the processed block too."),
) -> None:
    """
    Show one transaction as JSON.
    """
    store = AnalyticalStore()
    if with_block:
        record = store.get_transaction_with_block(signature, slot)
    else:
        record = store.get_transaction(signature, slot)
    if record is None:
        typer.echo(f"Transaction {signature} at slot {slot} not observed.", err=True)
        raise typer.Exit(code=1)
    typer.echo(record.model_dump_json(indent=2))


@app.command("error-blocks")
def error_blocks(
    start: int = typer.Option(..., "--from", help="First slot (inclusive)."),
    end: int = typer.Option(..., "--to", help="Last slot (inclusive)."),
) -> None:
    """
    List blocks with banking stage errors in a slot range.
    """
    stream = AnalyticalStore().list_blocks_with_errors((start, end))
    print_blocks(stream, title=f"Blocks with banking stage errors {start}..{end}")


@app.command()
def txs(
    start: datetime = typer.Option(..., "--start", help="Start time (inclusive, UTC if naive)."),
    end: datetime = typer.Option(..., "--end", help="End time (inclusive, UTC if naive)."),
) -> None:
    """
    List transactions first observed in a time range.
    """
    stream = AnalyticalStore().list_transactions_by_time_range(start, end)
    print_transactions(stream, title=f"Transactions {start.isoformat()} .. {end.isoformat()}")


@app.command()
def summary(
    start: int = typer.Option(..., "--from", help="First slot (inclusive)."),
    end: int = typer.Option(..., "--to", help="Last slot (inclusive)."),
) -> None:
    """
    Aggregate block statistics over a slot range.
    """
    print_summary(AnalyticalStore().summarize_blocks((start, end)))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
    except StoreError as exc:
        typer.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    finally:
        PoolManager().close_all()


if __name__ == "__main__":
    main()
