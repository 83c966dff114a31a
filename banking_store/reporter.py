from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from banking_store.domain.models import BlockRecord, BlockSummary, TransactionRecord
from banking_store.store.maintenance import MaintenanceReport


def _fmt_int(value: Optional[int]) -> str:
    return "-" if value is None else f"{value:,}"


def _fmt_bool(value: Optional[bool]) -> str:
    if value is None:
        return "[dim]unknown[/dim]"
    return "[green]yes[/green]" if value else "[red]no[/red]"


def print_blocks(blocks: Iterable[BlockRecord], title: str = "Blocks", console: Optional[Console] = None) -> int:
    """
    Render blocks as a rich table and return how many rows were printed.

    Blocks whose used CU exceed the requested CU are highlighted.
    """
    console = console or Console()
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Slot", style="cyan", no_wrap=True)
    table.add_column("Leader", style="blue")
    table.add_column("Successful", justify="right", style="green")
    table.add_column("Processed", justify="right", style="magenta")
    table.add_column("Banking Errors", justify="right", style="red")
    table.add_column("CU Used", justify="right", style="yellow")
    table.add_column("CU Requested", justify="right", style="yellow")

    count = 0
    for block in blocks:
        style = "bold red" if block.cu_within_budget is False else None
        table.add_row(
            str(block.slot),
            (block.leader_identity or "-")[:12],
            _fmt_int(block.successful_transactions),
            _fmt_int(block.processed_transactions),
            _fmt_int(block.banking_stage_errors),
            _fmt_int(block.total_cu_used),
            _fmt_int(block.total_cu_requested),
            style=style,
        )
        count += 1

    if count == 0:
        console.print("[yellow]No blocks in range.[/yellow]")
    else:
        console.print(table)
    return count


def print_transactions(
    transactions: Iterable[TransactionRecord],
    title: str = "Transactions",
    console: Optional[Console] = None,
) -> int:
    """Render transactions as a rich table and return how many rows were printed."""
    console = console or Console()
    table = Table(title=title, box=box.ROUNDED, caption="Ordered by first observation time")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Signature", style="blue")
    table.add_column("First Slot", justify="right")
    table.add_column("Processed Slot", justify="right")
    table.add_column("Executed", justify="center")
    table.add_column("Confirmed", justify="center")
    table.add_column("CU Requested", justify="right", style="yellow")
    table.add_column("Errors", style="red")

    count = 0
    for tx in transactions:
        table.add_row(
            tx.utc_timestamp.strftime("%Y-%m-%d %H:%M:%S.%f"),
            f"{tx.signature[:16]}…",
            str(tx.first_notification_slot),
            _fmt_int(tx.processed_slot),
            _fmt_bool(tx.is_executed),
            _fmt_bool(tx.is_confirmed),
            _fmt_int(tx.cu_requested),
            "yes" if tx.errors else "",
        )
        count += 1

    if count == 0:
        console.print("[yellow]No transactions in range.[/yellow]")
    else:
        console.print(table)
    return count


def print_summary(summary: BlockSummary, console: Optional[Console] = None) -> None:
    console = console or Console()
    rng = summary.slot_range
    table = Table(title=f"Slots {rng.start}..{rng.end}", box=box.ROUNDED, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="bold")
    for name, value in summary.model_dump(exclude={"slot_range"}).items():
        table.add_row(name.replace("_", " "), f"{value:,}")
    if summary.total_cu_requested:
        usage = summary.total_cu_used / summary.total_cu_requested * 100
        table.add_row("cu usage", f"{usage:.1f}%")
    console.print(table)


def print_maintenance(report: MaintenanceReport, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Cluster Pass", box=box.ROUNDED)
    table.add_column("Table", style="cyan")
    table.add_column("Status")
    table.add_column("Duration (s)", justify="right", style="green")
    for name in report.clustered:
        table.add_row(name, "[green]clustered[/green]", f"{report.timings[name]['duration_seconds']:.2f}")
    for name, reason in report.skipped.items():
        table.add_row(name, f"[yellow]skipped: {reason}[/yellow]", "-")
    console.print(table)
