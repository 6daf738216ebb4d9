"""
Main CLI entry point for tagsync.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from tagsync import __version__
from tagsync.cli.index_commands import index_app
from tagsync.cli.tag_commands import tag_app
from tagsync.config.logging import configure_logging
from tagsync.config.settings import get_settings

console = Console()

app = typer.Typer(
    name="tagsync",
    help="Tag taxonomy with an asynchronous search indexing queue",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(tag_app, name="tags", help="Tag taxonomy curation")
app.add_typer(index_app, name="index", help="Search index queue operations")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(
        Panel(
            f"[bold blue]tagsync[/bold blue] v{__version__}",
            title="Version",
            border_style="blue",
        )
    )


@app.command()
def status() -> None:
    """Show the effective configuration."""
    s = get_settings()
    database = s.database_url.split("@")[-1]
    console.print(
        Panel(
            f"[bold]Database:[/bold] {database}\n"
            f"[bold]Search engine:[/bold] {s.search_url} "
            f"(prefix {s.search_index_prefix!r})\n"
            f"[bold]Tag delimiter:[/bold] {s.tag_delimiter!r}\n"
            f"[bold]Merge cascades parent edges:[/bold] {s.merge_cascade_parent_edges}\n"
            f"[bold]Dispatcher:[/bold] {s.dispatcher_workers} workers, "
            f"batch {s.dispatcher_batch_size}, lease {s.queue_visibility_timeout:.0f}s",
            title="Status",
            border_style="green",
        )
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-v", help="Show version and exit"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override TAGSYNC_LOG_LEVEL"
    ),
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", help="Also write logs to this file"
    ),
) -> None:
    """
    tagsync - tag taxonomy and search index synchronization.

    Curate canonical tags, synonyms and the type hierarchy, and keep the
    search index in step through a durable priority queue.
    """
    if version:
        console.print(f"tagsync v{__version__}")
        raise typer.Exit(code=0)

    configure_logging(level=log_level or get_settings().log_level, log_file=log_file)

    if ctx.invoked_subcommand is None:
        console.print("[yellow]Use 'tagsync --help' for available commands[/yellow]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
