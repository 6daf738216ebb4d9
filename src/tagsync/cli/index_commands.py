"""
Index CLI commands for tagsync.

Operator commands for the search index queue: depth/age metrics per
priority tier, manual enqueueing, full rebuilds of one entity type, and
running the dispatcher once or as a long-lived worker pool.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer
from rich.panel import Panel
from rich.table import Table

from tagsync.cli.helpers import (
    console,
    get_container,
    parse_entity_ref,
    parse_entity_type,
    parse_priority,
    run_async,
)
from tagsync.exceptions import GracefulShutdownException
from tagsync.models.enums import QueueEntryState
from tagsync.services.indexing.dispatcher import DispatchOutcome
from tagsync.services.indexing.shutdown_handler import get_shutdown_handler

logger = logging.getLogger(__name__)

index_app = typer.Typer(
    name="index",
    help="Search index queue operations",
    no_args_is_help=True,
)


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def _print_outcome(outcome: DispatchOutcome, title: str) -> None:
    style = "red" if outcome.unavailable else "green"
    lines = [
        f"[bold]Batches:[/bold] {outcome.batches}",
        f"[bold]Acked:[/bold] {outcome.acked}",
        f"[bold]Nacked:[/bold] {outcome.nacked}",
        f"[bold]Upserts:[/bold] {outcome.upserted}",
        f"[bold]Deletes:[/bold] {outcome.deleted} ({outcome.vanished} vanished)",
    ]
    if outcome.unavailable:
        lines.append("[red]Search engine unavailable; remaining work stays queued[/red]")
    console.print(Panel("\n".join(lines), title=title, border_style=style))


@index_app.command("stats")
def queue_stats() -> None:
    """Show pending/in-flight counts and oldest pending age per tier."""

    async def _run() -> None:
        stats = await get_container().index_queue.stats()
        table = Table(title="Index Queue")
        table.add_column("Priority", style="bold")
        table.add_column("Pending", justify="right")
        table.add_column("In flight", justify="right")
        table.add_column("Oldest pending", justify="right")
        for tier in stats:
            table.add_row(
                tier.priority.name.lower(),
                str(tier.pending),
                str(tier.in_flight),
                _format_age(tier.oldest_age_seconds) if tier.pending else "-",
            )
        console.print(table)

    run_async(_run, title="Stats Failed")


@index_app.command("list")
def list_entries(
    state: Optional[QueueEntryState] = typer.Option(None, "--state", help="pending or in_flight"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of entries"),
) -> None:
    """List queue entries in dispatch order."""

    async def _run() -> None:
        entries = await get_container().index_queue.entries(state=state, limit=limit)
        if not entries:
            console.print("[green]Index queue is empty[/green]")
            return
        table = Table(title="Index Queue Entries")
        table.add_column("Entity", style="bold")
        table.add_column("Priority")
        table.add_column("State")
        table.add_column("Enqueued")
        table.add_column("Attempts", justify="right")
        for entry in entries:
            state_text = entry.state.value
            if entry.available_at is not None and entry.state is QueueEntryState.PENDING:
                state_text = f"held until {entry.available_at:%H:%M:%S}"
            table.add_row(
                f"{entry.entity_type}:{entry.entity_id}",
                entry.priority.name.lower(),
                state_text,
                entry.enqueued_at.isoformat(timespec="seconds"),
                str(entry.attempts),
            )
        console.print(table)

    run_async(_run, title="List Failed")


@index_app.command("enqueue")
def enqueue(
    entity: str = typer.Argument(..., help="Entity as TYPE:ID, e.g. Work:42"),
    priority: str = typer.Option("default", "--priority", "-p", help="low, default or high"),
) -> None:
    """Queue one entity for reindexing."""
    entity_ref = parse_entity_ref(entity)
    level = parse_priority(priority)

    async def _run() -> None:
        await get_container().index_queue.enqueue(
            entity_ref.taggable_type.value, entity_ref.taggable_id, level
        )
        console.print(f"[green]Queued {entity_ref} at {level.name.lower()} priority[/green]")

    run_async(_run, title="Enqueue Failed")


@index_app.command("reindex-all")
def reindex_all(
    entity_type: str = typer.Argument(..., help="Entity type, e.g. Work"),
    priority: str = typer.Option("low", "--priority", "-p", help="low, default or high"),
) -> None:
    """Queue every live entity of a type for reindexing."""
    taggable_type = parse_entity_type(entity_type)
    level = parse_priority(priority)

    async def _run() -> None:
        service = get_container().create_reindex_service()
        result = await service.reindex_all(taggable_type.value, level)
        console.print(
            Panel(
                f"[bold]Entity type:[/bold] {result.entity_type}\n"
                f"[bold]Queued:[/bold] {result.enqueued}\n"
                f"[bold]Priority:[/bold] {result.priority.name.lower()}",
                title="[green]Reindex Queued[/green]",
                border_style="green",
            )
        )

    run_async(_run, title="Reindex Failed")


@index_app.command("dispatch")
def dispatch(
    max_batches: Optional[int] = typer.Option(
        None, "--max-batches", "-n", help="Stop after this many batches"
    ),
) -> None:
    """Drain the queue once, then exit."""

    async def _run() -> None:
        dispatcher = get_container().create_dispatcher(workers=1)
        handler = get_shutdown_handler()
        handler.install()
        try:
            outcome = await dispatcher.drain(
                max_batches=max_batches, between_batches=handler.check_shutdown
            )
        except GracefulShutdownException as e:
            console.print(
                f"[yellow]Interrupted by {e.signal_received}; "
                "the last batch was settled and the rest stays queued[/yellow]"
            )
            raise typer.Exit(code=130)
        finally:
            handler.uninstall()
        _print_outcome(outcome, "Dispatch")
        if outcome.unavailable:
            raise typer.Exit(code=1)

    run_async(_run, title="Dispatch Failed")


@index_app.command("run")
def run_dispatcher(
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w", help="Number of concurrent workers"
    ),
) -> None:
    """Run the dispatcher worker pool until SIGINT/SIGTERM."""

    async def _run() -> None:
        dispatcher = get_container().create_dispatcher(workers=workers)
        handler = get_shutdown_handler()
        stop = asyncio.Event()
        handler.install(stop_event=stop)
        console.print(
            f"[blue]Dispatching with {dispatcher.workers} workers "
            "(Ctrl+C to stop)[/blue]"
        )
        try:
            outcome = await dispatcher.run(stop)
            signal_name = handler.signal_received
        finally:
            handler.uninstall()
        _print_outcome(outcome, f"Dispatcher Stopped ({signal_name or 'stop requested'})")

    run_async(_run, title="Dispatcher Failed")
