"""Candidate match CLI commands."""

from __future__ import annotations

import asyncio
import json
from typing import Annotated
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from jobflow.database.models.match import ContactMethod
from jobflow.database.queries.match import MatchNotFound, get_top_matches, record_contact

app = typer.Typer(help="Candidate match commands")
console = Console()


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]Invalid {label} UUID:[/red] {value}")
        raise typer.Exit(code=1)


@app.command()
def top(
    job_id: Annotated[str, typer.Argument(help="Job UUID")],
    limit: Annotated[int, typer.Option("--limit", "-l", help="Number of matches")] = 15,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show the best live candidate matches for a job."""
    from jobflow.main import get_app_context

    ctx = get_app_context()
    job_uuid = _parse_uuid(job_id, "job")

    async def _top():
        async with ctx.session_factory() as session:
            return await get_top_matches(session, job_uuid, limit=limit)

    try:
        matches = asyncio.run(_top())
    except Exception as e:
        console.print(f"[red]Error reading matches:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        output = [
            {
                "candidate_id": str(m.candidate_id),
                "score": m.score,
                "semantic_score": m.semantic_score,
                "breakdown": m.breakdown,
                "contacted": m.contacted,
                "contact_method": m.contact_method.value if m.contact_method else None,
                "expires_at": m.expires_at.isoformat(),
            }
            for m in matches
        ]
        console.print(json.dumps(output, indent=2))
        return

    if not matches:
        console.print("[yellow]No live matches for this job[/yellow]")
        return

    table = Table(title=f"Top matches for job {job_uuid}")
    table.add_column("Candidate", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right", style="bold")
    table.add_column("Semantic", justify="right", style="dim")
    table.add_column("Contacted")
    table.add_column("Breakdown", style="dim", overflow="fold")

    for m in matches:
        contacted = (
            f"[green]{m.contact_method.value if m.contact_method else 'yes'}[/green]"
            if m.contacted
            else "-"
        )
        breakdown = ", ".join(f"{key} {value}" for key, value in (m.breakdown or {}).items())
        table.add_row(
            str(m.candidate_id),
            f"{m.score:.1f}",
            f"{m.semantic_score:.3f}" if m.semantic_score is not None else "-",
            contacted,
            breakdown,
        )

    console.print(table)


@app.command()
def contact(
    job_id: Annotated[str, typer.Argument(help="Job UUID")],
    candidate_id: Annotated[str, typer.Argument(help="Candidate UUID")],
    method: Annotated[
        str,
        typer.Option("--method", "-m", help="Contact method (email, phone, whatsapp)"),
    ] = "email",
) -> None:
    """Record that a candidate was contacted about a job."""
    from jobflow.main import get_app_context

    ctx = get_app_context()
    job_uuid = _parse_uuid(job_id, "job")
    candidate_uuid = _parse_uuid(candidate_id, "candidate")

    try:
        contact_method = ContactMethod(method)
    except ValueError:
        console.print(
            f"[red]Invalid contact method:[/red] {method}. "
            f"Valid values: {', '.join(m.value for m in ContactMethod)}"
        )
        raise typer.Exit(code=1)

    async def _contact():
        async with ctx.session_factory() as session:
            return await record_contact(session, job_uuid, candidate_uuid, contact_method)

    try:
        asyncio.run(_contact())
    except MatchNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error recording contact:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Recorded {contact_method.value} contact[/green]")
