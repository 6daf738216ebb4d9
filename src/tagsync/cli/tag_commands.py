"""
Tag CLI commands for tagsync.

Commands for curating the tag taxonomy: creating tags, merging synonyms into
canonical tags, editing the type hierarchy, and tagging entities. Every
mutation commits its index effects in the same transaction, so affected
entities are queued for reindexing automatically.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from tagsync.cli.helpers import (
    console,
    describe_tag,
    get_container,
    parse_entity_ref,
    parse_tag_type,
    resolve_tag_ref,
    run_async,
)
from tagsync.models.enums import TagOperationType, TagType
from tagsync.models.tag_operation_log import TagOperationLog
from tagsync.services.taggable import TaggableEntity, render_tag_string, tag_sort_key

logger = logging.getLogger(__name__)

tag_app = typer.Typer(
    name="tags",
    help="Tag taxonomy curation",
    no_args_is_help=True,
)


def _reason_callback(value: Optional[str]) -> Optional[str]:
    """Validate --reason text length (max 1000 characters)."""
    if value is not None and len(value) > 1000:
        raise typer.BadParameter(
            f"Reason text is too long ({len(value)} chars). "
            "Maximum is 1,000 characters."
        )
    return value


@tag_app.command("create")
def create_tag(
    name: str = typer.Argument(..., help="Tag name"),
    tag_type: str = typer.Option(
        ..., "--type", "-t", help="Fandom, Character, Relationship, Freeform, ArchiveWarning or Media"
    ),
) -> None:
    """Create a canonical tag, or show the existing tag with this name."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.create_index_transaction() as tx:
            tag = tx.apply(await graph.create_or_resolve_tag(tx.session, name, tag_type))
            description = describe_tag(tag)
            tag_id = tag.id
        console.print(
            Panel(
                f"{description}\n[bold]ID:[/bold] {tag_id}",
                title="[green]Tag[/green]",
                border_style="green",
            )
        )

    run_async(_run, title="Create Failed")


@tag_app.command("resolve")
def resolve_tag(
    ref: str = typer.Argument(..., help="Tag name or ID"),
) -> None:
    """Show the canonical tag a tag resolves to."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.session_factory() as session:
            tag = await resolve_tag_ref(graph, session, ref)
            canonical_id = await graph.resolve_canonical(session, tag.id)
            canonical = await graph.get_tag(session, canonical_id)
            console.print(
                f"{describe_tag(tag)} -> {describe_tag(canonical)} [dim]{canonical.id}[/dim]"
            )

    run_async(_run, title="Resolve Failed")


@tag_app.command("merge")
def merge_tags(
    source: str = typer.Argument(..., help="Name or ID of the tag to merge away"),
    into: str = typer.Option(..., "--into", help="Name or ID of the canonical target"),
    reason: Optional[str] = typer.Option(
        None,
        "--reason",
        help="Reason for the merge (max 1000 chars)",
        callback=_reason_callback,
    ),
) -> None:
    """Merge a canonical tag into another canonical tag of the same type."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.create_index_transaction() as tx:
            source_tag = await resolve_tag_ref(graph, tx.session, source)
            target_tag = await resolve_tag_ref(graph, tx.session, into)
            result = tx.apply(
                await graph.merge_tags(
                    tx.session, source_tag.id, target_tag.id, reason=reason
                )
            )
            source_name, target_name = source_tag.name, target_tag.name

        details = (
            f"[bold]Source:[/bold] {escape(source_name)}\n"
            f"[bold]Target:[/bold] {escape(target_name)}\n"
            f"[bold]Taggings rewritten:[/bold] {result.taggings_rewritten}\n"
            f"[bold]Synonyms re-pointed:[/bold] {result.synonyms_repointed}\n"
            f"[bold]Hierarchy edges moved:[/bold] {result.edges_moved}\n"
            f"[bold]Entities queued:[/bold] {len(tx.committed_effects)}\n"
            f"[bold]Operation ID:[/bold] {result.operation_id}"
        )
        console.print(
            Panel(details, title="[green]Merge Successful[/green]", border_style="green")
        )

    run_async(_run, title="Merge Failed")


@tag_app.command("parent")
def add_parent(
    child: str = typer.Argument(..., help="Name or ID of the child tag"),
    parent: str = typer.Argument(..., help="Name or ID of the parent tag"),
) -> None:
    """Add a type hierarchy edge (e.g. Character -> Fandom)."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.create_index_transaction() as tx:
            child_tag = await resolve_tag_ref(graph, tx.session, child)
            parent_tag = await resolve_tag_ref(graph, tx.session, parent)
            result = tx.apply(
                await graph.set_parent_type(tx.session, child_tag.id, parent_tag.id)
            )
            names = (child_tag.name, parent_tag.name)
        if result.changed:
            console.print(
                f"[green]Added[/green] {escape(names[0])} -> {escape(names[1])}"
            )
        else:
            console.print(
                f"[yellow]Edge already exists:[/yellow] {escape(names[0])} -> {escape(names[1])}"
            )

    run_async(_run, title="Parent Rejected")


@tag_app.command("unparent")
def remove_parent(
    child: str = typer.Argument(..., help="Name or ID of the child tag"),
    parent: str = typer.Argument(..., help="Name or ID of the parent tag"),
) -> None:
    """Remove a type hierarchy edge."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.create_index_transaction() as tx:
            child_tag = await resolve_tag_ref(graph, tx.session, child)
            parent_tag = await resolve_tag_ref(graph, tx.session, parent)
            result = tx.apply(
                await graph.remove_parent_type(tx.session, child_tag.id, parent_tag.id)
            )
        if result.changed:
            console.print("[green]Edge removed[/green]")
        else:
            console.print("[yellow]No such edge[/yellow]")

    run_async(_run, title="Unparent Failed")


@tag_app.command("attach")
def attach_tags(
    entity: str = typer.Argument(..., help="Entity as TYPE:ID, e.g. Work:42"),
    names: List[str] = typer.Argument(..., help="Tag names to attach"),
    scope: Optional[str] = typer.Option(
        None, "--scope", "-s", help="Restrict to one tag type (new names get this type)"
    ),
) -> None:
    """Attach tags to an entity, creating unknown names."""
    entity_ref = parse_entity_ref(entity)
    scope_type = parse_tag_type(scope)

    async def _run() -> None:
        c = get_container()
        taggable = c.create_taggable(entity_ref, scope_type)
        async with c.create_index_transaction() as tx:
            result = tx.apply(await taggable.attach_tags(tx.session, names))
            rendered = await taggable.tag_string(tx.session)
        console.print(
            Panel(
                f"[bold]Added:[/bold] {len(result.added)} "
                f"([bold]new tags:[/bold] {len(result.created)})\n"
                f"[bold]Tags:[/bold] {escape(rendered) or '[dim]none[/dim]'}",
                title=f"[green]{entity_ref}[/green]",
                border_style="green",
            )
        )

    run_async(_run, title="Attach Failed")


@tag_app.command("detach")
def detach_tag(
    entity: str = typer.Argument(..., help="Entity as TYPE:ID, e.g. Work:42"),
    tag: str = typer.Argument(..., help="Name or ID of the tag to remove"),
) -> None:
    """Remove one tag from an entity."""
    entity_ref = parse_entity_ref(entity)

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        async with c.create_index_transaction() as tx:
            tag_row = await resolve_tag_ref(graph, tx.session, tag)
            result = tx.apply(await graph.detach_tag(tx.session, entity_ref, tag_row.id))
        if result.changed:
            console.print(f"[green]Removed from {entity_ref}[/green]")
        else:
            console.print(f"[yellow]{entity_ref} did not carry that tag[/yellow]")

    run_async(_run, title="Detach Failed")


@tag_app.command("tag-string")
def tag_string(
    entity: str = typer.Argument(..., help="Entity as TYPE:ID, e.g. Work:42"),
    set_value: Optional[str] = typer.Option(
        None, "--set", help="Replace the tags with this delimited string"
    ),
    scope: Optional[str] = typer.Option(
        None, "--scope", "-s", help="Tag type of the field (default: all tags)"
    ),
) -> None:
    """Show, or replace with --set, an entity's tag string."""
    entity_ref = parse_entity_ref(entity)
    scope_type = parse_tag_type(scope)

    async def _run() -> None:
        c = get_container()
        taggable: TaggableEntity = c.create_taggable(entity_ref, scope_type)
        async with c.create_index_transaction() as tx:
            if set_value is not None:
                tx.apply(await taggable.set_tag_string(tx.session, set_value))
            rendered = await taggable.tag_string(tx.session)
        console.print(rendered)

    run_async(_run, title="Tag String Failed")


@tag_app.command("show")
def show_tag(
    ref: str = typer.Argument(..., help="Tag name or ID"),
) -> None:
    """Show a tag with its parents, ancestors and synonyms."""

    async def _run() -> None:
        c = get_container()
        graph = c.create_tag_graph_service()
        tag_repo = c.create_tag_repository()
        async with c.session_factory() as session:
            tag = await resolve_tag_ref(graph, session, ref)
            parents = await graph.parents(session, tag.id)
            ancestor_ids = await graph.ancestors(session, tag.id)
            ancestors = await tag_repo.get_many(session, ancestor_ids)
            canonical_id = await graph.resolve_canonical(session, tag.id)
            synonyms = await tag_repo.get_synonyms(session, canonical_id)

            table = Table(title=f"Tag: {escape(tag.name)}", show_header=False)
            table.add_column("Field", style="cyan")
            table.add_column("Value")
            table.add_row("ID", str(tag.id))
            table.add_row("Type", tag.tag_type)
            table.add_row("Canonical", "yes" if tag.canonical else f"no -> {tag.merged_into_id}")
            table.add_row("Parents", escape(render_tag_string(parents)) or "-")
            table.add_row(
                "Ancestors",
                escape(", ".join(t.name for t in sorted(ancestors.values(), key=tag_sort_key)))
                or "-",
            )
            table.add_row(
                "Synonyms", escape(", ".join(sorted(s.name for s in synonyms))) or "-"
            )
            console.print(table)

    run_async(_run, title="Show Failed")


@tag_app.command("list")
def list_tags(
    tag_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only this tag type"),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="Name prefix"),
    canonical_only: bool = typer.Option(
        False, "--canonical-only", help="Hide merged synonyms"
    ),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum number of tags"),
) -> None:
    """List tags ordered by name."""
    type_filter: Optional[TagType] = parse_tag_type(tag_type)

    async def _run() -> None:
        c = get_container()
        tag_repo = c.create_tag_repository()
        key = c.create_tag_graph_service().normalizer.normalize(prefix) if prefix else None
        async with c.session_factory() as session:
            tags = await tag_repo.list_tags(
                session,
                tag_type=type_filter,
                canonical_only=canonical_only,
                prefix=key,
                limit=limit,
            )
        if not tags:
            console.print("[yellow]No tags found[/yellow]")
            return
        table = Table(title="Tags")
        table.add_column("Name", style="bold")
        table.add_column("Type", style="cyan")
        table.add_column("Canonical")
        table.add_column("ID", style="dim")
        for tag in tags:
            table.add_row(
                escape(tag.name),
                tag.tag_type,
                "yes" if tag.canonical else "no",
                str(tag.id),
            )
        console.print(table)

    run_async(_run, title="List Failed")


def _describe_operation(entry: TagOperationLog) -> str:
    details = entry.details
    if entry.operation_type is TagOperationType.MERGE:
        return f"{details.get('source_name', '?')} -> {details.get('target_name', '?')}"
    if entry.operation_type in (TagOperationType.ADD_PARENT, TagOperationType.REMOVE_PARENT):
        return f"{details.get('child_name', '?')} < {details.get('parent_name', '?')}"
    return str(details.get("name", entry.target_tag_id or "-"))


@tag_app.command("history")
def operation_history(
    operation_type: Optional[TagOperationType] = typer.Option(
        None, "--type", "-t", help="Only this operation type"
    ),
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum number of entries"),
) -> None:
    """Show recent tag operations from the audit log, newest first."""

    async def _run() -> None:
        c = get_container()
        log_repo = c.create_tag_operation_log_repository()
        async with c.session_factory() as session:
            rows = await log_repo.get_recent(
                session, operation_type=operation_type, limit=limit
            )
            entries = [TagOperationLog.model_validate(row) for row in rows]
        if not entries:
            console.print("[yellow]No tag operations recorded[/yellow]")
            return
        table = Table(title="Tag Operations")
        table.add_column("When", style="dim")
        table.add_column("Operation", style="bold")
        table.add_column("Tags")
        table.add_column("Affected", justify="right")
        table.add_column("By")
        table.add_column("Reason")
        for entry in entries:
            table.add_row(
                entry.performed_at.strftime("%Y-%m-%d %H:%M"),
                entry.operation_type.value,
                escape(_describe_operation(entry)),
                str(entry.affected_count),
                escape(entry.performed_by),
                escape(entry.reason) if entry.reason else "-",
            )
        console.print(table)

    run_async(_run, title="History Failed")
