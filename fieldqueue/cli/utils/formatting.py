"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.table import Table

console = Console()

OUTCOME_STYLES = {
    "completed": "green",
    "duplicate": "cyan",
    "skipped": "yellow",
    "failed": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_result_table(result: dict[str, Any]) -> Table:
    """Create a formatted table for a processed job"""
    table = Table(title="Job Result", box=box.ROUNDED, show_header=False)

    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    outcome = result.get("outcome", "")
    style = OUTCOME_STYLES.get(outcome, "white")
    table.add_row("Outcome", f"[{style}]{outcome}[/{style}]")

    for key in ("reason", "disposition", "row_id", "job_id", "error"):
        value = result.get(key)
        table.add_row(
            key.replace("_", " ").title(), "—" if value is None else str(value)
        )

    return table


def create_stats_table(depth: dict[str, int], handlers: list[str]) -> Table:
    """Create formatted table for queue statistics"""
    table = Table(title="Job Queue", box=box.ROUNDED)

    table.add_column("Pending", justify="center", style="yellow")
    table.add_column("Locked", justify="center", style="magenta")
    table.add_column("Handlers", justify="left", style="green")

    table.add_row(
        str(depth.get("pending", 0)),
        str(depth.get("locked", 0)),
        ", ".join(handlers) if handlers else "—",
    )
    return table
