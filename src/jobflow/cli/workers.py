"""Worker registry CLI commands."""

from __future__ import annotations

import asyncio
import json
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from jobflow.admin import QueueAdmin

app = typer.Typer(help="Worker registry commands")
console = Console()


def _admin() -> QueueAdmin:
    from jobflow.main import get_app_context

    ctx = get_app_context()
    return QueueAdmin(ctx.config, ctx.session_factory)


@app.command(name="list")
def list_workers(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List registered workers with liveness and counters."""
    admin = _admin()

    try:
        details = asyncio.run(admin.list_worker_details())
    except Exception as e:
        console.print(f"[red]Error listing workers:[/red] {e}")
        raise typer.Exit(code=1)

    workers = details["workers"]
    if format == "json":
        output = {
            "workers": [w.model_dump(mode="json") for w in workers],
            "summary": details["summary"],
        }
        console.print(json.dumps(output, indent=2))
        return

    if not workers:
        console.print("[yellow]No workers registered[/yellow]")
        return

    table = Table(title="Workers")
    table.add_column("Worker", style="cyan")
    table.add_column("Host", style="dim")
    table.add_column("Status")
    table.add_column("Alive")
    table.add_column("Last beat", justify="right")
    table.add_column("Processed", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Memory", justify="right")
    table.add_column("Current task", style="dim")

    for w in workers:
        alive = "[green]yes[/green]" if w.is_alive else "[red]no[/red]"
        memory = "-"
        if w.memory_snapshot:
            memory = f"{w.memory_snapshot.get('percent_used', 0):.0f}%"
        current = "-"
        if w.current_task:
            current = f"{w.current_task.get('task_type')} {str(w.current_task.get('task_id'))[:8]}"
        table.add_row(
            w.worker_id,
            w.host,
            w.status.value,
            alive,
            f"{w.seconds_since_heartbeat:.0f}s ago",
            str(w.processed_count),
            str(w.failed_count),
            memory,
            current,
        )

    console.print(table)
    summary = details["summary"]
    console.print(
        f"[dim]{summary['alive']} alive, {summary['dead']} dead, "
        f"{summary['processed']} processed, {summary['failed']} failed[/dim]"
    )


@app.command()
def cleanup() -> None:
    """Delete stopped worker records past retention."""
    admin = _admin()

    try:
        count = asyncio.run(admin.cleanup_workers())
    except Exception as e:
        console.print(f"[red]Error cleaning up workers:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Removed {count} stopped workers[/green]")
