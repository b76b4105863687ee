"""Main CLI entry point for Jobflow.

This module provides the main Typer application with sub-commands for the
embedding worker, queue administration, worker inspection and matches.

Usage:
    jobflow worker run
    jobflow queue stats
    jobflow queue enqueue job <job-id>
    jobflow workers list
    jobflow matches top <job-id>
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from jobflow.cli import matches as matches_cli
from jobflow.cli import queue as queue_cli
from jobflow.cli import worker as worker_cli
from jobflow.cli import workers as workers_cli
from jobflow.config import JobflowConfig, load_config
from jobflow.database.connection import get_engine, get_session_factory
from jobflow.logging import setup_logging

app = typer.Typer(
    name="jobflow",
    help="Jobflow: embedding generation and candidate matching pipeline",
    no_args_is_help=True,
)

# Add sub-apps
app.add_typer(worker_cli.app, name="worker", help="Run the embedding worker")
app.add_typer(queue_cli.app, name="queue", help="Inspect and manage the task queue")
app.add_typer(workers_cli.app, name="workers", help="Inspect the worker registry")
app.add_typer(matches_cli.app, name="matches", help="Browse candidate matches")

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Jobflow configuration
        engine: Async SQLAlchemy engine
        session_factory: Factory for creating database sessions
    """

    def __init__(self, config: JobflowConfig):
        self.config = config
        self.engine = get_engine(config.database)
        self.session_factory = get_session_factory(self.engine)


# Global context holder
_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: JobflowConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context."""
    # Load configuration
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging = config.logging.model_copy(update={"level": "DEBUG"})
    setup_logging(config.logging)

    # Initialize application context
    try:
        initialize_context(config)
    except Exception as e:
        console.print(f"[red]Error initializing application:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
