"""Queue administration CLI commands.

This module provides CLI commands for inspecting the embedding task queue,
enqueueing entities, retrying terminal failures and housekeeping.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobflow.admin import QueueAdmin
from jobflow.database.models.task import EntityType, TaskStatus, TaskType
from jobflow.database.queries.entity import EntityNotFound
from jobflow.database.queries.queue import TaskNotFound

app = typer.Typer(help="Task queue commands")
console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
}


def _admin() -> QueueAdmin:
    from jobflow.main import get_app_context

    ctx = get_app_context()
    return QueueAdmin(ctx.config, ctx.session_factory)


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} UUID:[/red] {value}")
        raise typer.Exit(code=1)


def _parse_entity_type(value: str) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        console.print(f"[red]Invalid entity type:[/red] {value}. Valid values: job, candidate")
        raise typer.Exit(code=1)


@app.command()
def stats(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show queue counts, health and embedding coverage."""
    admin = _admin()

    async def _stats():
        overview = await admin.queue_overview()
        coverage = await admin.embedding_coverage()
        return overview, coverage

    try:
        overview, coverage = asyncio.run(_stats())
    except Exception as e:
        console.print(f"[red]Error reading queue stats:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        console.print(json.dumps({**overview, "coverage": coverage}, indent=2))
        return

    health_color = "green" if overview["health"] == "healthy" else "yellow"
    lines = [
        f"[bold]Health:[/bold] [{health_color}]{overview['health']}[/{health_color}]",
        f"[bold]Live workers:[/bold] {overview['alive_workers']}",
        f"[bold]Total tasks:[/bold] {overview['total']}",
        f"[bold]Terminal failures:[/bold] {overview['terminal_failures']}",
    ]
    for issue in overview["issues"]:
        lines.append(f"[yellow]! {issue}[/yellow]")
    console.print(Panel("\n".join(lines), title="Queue", border_style=health_color))

    table = Table(title="Tasks by type")
    table.add_column("Task type", style="bold")
    for status in TaskStatus:
        table.add_column(status.value, justify="right", style=STATUS_COLORS[status.value])
    for task_type, counts in overview["by_task_type"].items():
        table.add_row(task_type, *(str(counts[status.value]) for status in TaskStatus))
    console.print(table)

    coverage_table = Table(title="Embedding coverage")
    coverage_table.add_column("Entity", style="bold")
    coverage_table.add_column("Total", justify="right")
    coverage_table.add_column("Completed", justify="right", style="green")
    coverage_table.add_column("Pending", justify="right", style="yellow")
    coverage_table.add_column("Failed", justify="right", style="red")
    coverage_table.add_column("Coverage", justify="right")
    for entity_type, counts in coverage.items():
        coverage_table.add_row(
            entity_type,
            str(counts["total"]),
            str(counts["completed"]),
            str(counts["pending"] + counts["processing"]),
            str(counts["failed"]),
            f"{counts['coverage_percent']}%",
        )
    console.print(coverage_table)


@app.command(name="list")
def list_items(
    status: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status (pending, processing, completed, failed)"),
    ] = None,
    task_type: Annotated[
        Optional[str],
        typer.Option("--type", "-t", help="Filter by task type"),
    ] = None,
    entity_id: Annotated[
        Optional[str],
        typer.Option("--entity", "-e", help="Filter by entity UUID"),
    ] = None,
    page: Annotated[int, typer.Option("--page", help="Page number")] = 1,
    limit: Annotated[int, typer.Option("--limit", "-l", help="Items per page")] = 50,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """List queue items, newest first."""
    admin = _admin()

    status_filter = None
    if status is not None:
        try:
            status_filter = TaskStatus(status)
        except ValueError:
            console.print(
                f"[red]Invalid status:[/red] {status}. "
                f"Valid values: {', '.join(s.value for s in TaskStatus)}"
            )
            raise typer.Exit(code=1)

    type_filter = None
    if task_type is not None:
        try:
            type_filter = TaskType(task_type)
        except ValueError:
            console.print(
                f"[red]Invalid task type:[/red] {task_type}. "
                f"Valid values: {', '.join(t.value for t in TaskType)}"
            )
            raise typer.Exit(code=1)

    entity_uuid = _parse_uuid(entity_id, "entity") if entity_id else None

    try:
        listing = asyncio.run(
            admin.list_queue_items(
                status=status_filter,
                task_type=type_filter,
                entity_id=entity_uuid,
                page=page,
                limit=limit,
            )
        )
    except Exception as e:
        console.print(f"[red]Error listing queue items:[/red] {e}")
        raise typer.Exit(code=1)

    items = listing["items"]
    if format == "json":
        output = {
            "items": [
                {
                    "id": str(t.id),
                    "entity_id": str(t.entity_id),
                    "entity_type": t.entity_type.value,
                    "task_type": t.task_type.value,
                    "status": t.status.value,
                    "priority": t.priority,
                    "attempts": t.attempts,
                    "max_attempts": t.max_attempts,
                    "next_retry_at": t.next_retry_at.isoformat() if t.next_retry_at else None,
                    "processing_owner": t.processing_owner,
                    "error": t.error,
                    "created_at": t.created_at.isoformat(),
                }
                for t in items
            ],
            "total": listing["total"],
            "page": listing["page"],
            "pages": listing["pages"],
        }
        console.print(json.dumps(output, indent=2))
        return

    if not items:
        console.print("[yellow]No queue items found[/yellow]")
        return

    table = Table(title=f"Queue items (page {listing['page']} of {listing['pages']})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Entity", style="bold")
    table.add_column("Type", style="blue")
    table.add_column("Status")
    table.add_column("Priority", justify="right", style="dim")
    table.add_column("Attempts", justify="right")
    table.add_column("Owner", style="dim")
    table.add_column("Error", style="red", overflow="fold")

    for t in items:
        color = STATUS_COLORS.get(t.status.value, "white")
        table.add_row(
            str(t.id)[:8] + "...",
            f"{t.entity_type.value}:{str(t.entity_id)[:8]}",
            t.task_type.value,
            f"[{color}]{t.status.value}[/{color}]",
            str(t.priority),
            f"{t.attempts}/{t.max_attempts}",
            t.processing_owner or "-",
            (t.error or "")[:80],
        )

    console.print(table)
    console.print(f"[dim]{listing['total']} items total[/dim]")


@app.command()
def enqueue(
    entity_type: Annotated[str, typer.Argument(help="Entity type (job or candidate)")],
    entity_id: Annotated[str, typer.Argument(help="Entity UUID")],
    priority: Annotated[
        int,
        typer.Option("--priority", "-p", help="Task priority (lower = sooner)"),
    ] = 1,
) -> None:
    """Queue embedding generation for one job or candidate."""
    admin = _admin()
    parsed_type = _parse_entity_type(entity_type)
    entity_uuid = _parse_uuid(entity_id, "entity")

    try:
        result = asyncio.run(admin.enqueue_entity(parsed_type, entity_uuid, priority=priority))
    except EntityNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error enqueueing entity:[/red] {e}")
        raise typer.Exit(code=1)

    if result["created"]:
        console.print(f"[green]Queued task[/green] {result['task_id']}")
    else:
        console.print(f"[yellow]Already queued as task[/yellow] {result['task_id']}")


@app.command(name="requeue-all")
def requeue_all(
    entity_type: Annotated[
        Optional[str],
        typer.Option("--entity-type", "-e", help="Only requeue jobs or candidates"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Queue embedding generation for every active entity."""
    admin = _admin()
    parsed_type = _parse_entity_type(entity_type) if entity_type else None

    if not yes:
        typer.confirm("Re-embed every active entity?", abort=True)

    try:
        result = asyncio.run(admin.requeue_all_entities(parsed_type))
    except Exception as e:
        console.print(f"[red]Error requeueing entities:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Queued {result['queued']} entities[/green] "
        f"[dim]({result['already_queued']} already queued)[/dim]"
    )


@app.command(name="retry-failed")
def retry_failed() -> None:
    """Give every terminally failed task a fresh set of attempts."""
    admin = _admin()

    try:
        result = asyncio.run(admin.retry_failed_tasks())
    except Exception as e:
        console.print(f"[red]Error retrying failed tasks:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Retried {result['retried']} tasks[/green] "
        f"[dim]({result['skipped']} skipped, already active)[/dim]"
    )


@app.command()
def recover(
    threshold: Annotated[
        Optional[int],
        typer.Option("--threshold", "-t", help="Seconds before a processing task is stale"),
    ] = None,
) -> None:
    """Return stale processing tasks to pending."""
    admin = _admin()

    try:
        count = asyncio.run(admin.recover_stale(threshold))
    except Exception as e:
        console.print(f"[red]Error recovering stale tasks:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Recovered {count} stale tasks[/green]")


@app.command()
def purge(
    days: Annotated[
        Optional[int],
        typer.Option("--days", "-d", help="Delete finished tasks older than this many days"),
    ] = None,
) -> None:
    """Delete completed and terminally failed tasks past retention."""
    admin = _admin()

    try:
        count = asyncio.run(admin.purge_old_queue_items(days))
    except Exception as e:
        console.print(f"[red]Error purging queue:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Purged {count} tasks[/green]")


@app.command()
def delete(
    task_id: Annotated[str, typer.Argument(help="Task UUID")],
) -> None:
    """Delete one queue item."""
    admin = _admin()
    task_uuid = _parse_uuid(task_id, "task")

    try:
        asyncio.run(admin.delete_queue_item(task_uuid))
    except TaskNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error deleting task:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Deleted task[/green] {task_uuid}")
