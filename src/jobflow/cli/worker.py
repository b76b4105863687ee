"""Worker process CLI commands."""

from __future__ import annotations

import asyncio
from typing import Annotated, Optional

import typer
from rich.console import Console

app = typer.Typer(help="Embedding worker commands")
console = Console()


@app.command()
def run(
    worker_id: Annotated[
        Optional[str],
        typer.Option("--worker-id", "-w", help="Registry id (default: <host>:<pid>)"),
    ] = None,
) -> None:
    """Run an embedding worker until SIGTERM or SIGINT.

    The worker registers itself, recovers stale tasks, then claims and
    processes queue tasks one at a time. Exits non-zero if startup fails.
    """
    from jobflow.main import get_app_context
    from jobflow.worker.process import Worker

    ctx = get_app_context()

    console.print("[bold cyan]Starting Jobflow worker[/bold cyan]")
    console.print(f"[dim]Model:[/dim] {ctx.config.provider.model}")
    console.print(f"[dim]Poll interval:[/dim] {ctx.config.worker.poll_interval_seconds}s")
    console.print()

    exit_code = asyncio.run(Worker(ctx.config, worker_id=worker_id).run())
    if exit_code:
        console.print("[red]Worker failed to start; see logs for details[/red]")
    raise typer.Exit(code=exit_code)
