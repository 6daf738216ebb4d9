"""
Shared helpers for tagsync CLI commands.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from sqlalchemy.ext.asyncio import AsyncSession

from tagsync.container import Container, container
from tagsync.db.models import Tag as TagDB
from tagsync.exceptions import TagNotFoundError, TagSyncError
from tagsync.models.entity_ref import EntityRef
from tagsync.models.enums import QueuePriority, TaggableType, TagType
from tagsync.services.tag_graph import TagGraphService

logger = logging.getLogger(__name__)

console = Console()

T = TypeVar("T")


def get_container() -> Container:
    """Return the container commands run against."""
    return container


def run_async(func: Callable[[], Awaitable[T]], *, title: str = "Error") -> T:
    """
    Run an async command body.

    ``TagSyncError`` is shown as a red panel and turned into exit code 1.
    The engine is disposed afterwards.
    """

    async def _main() -> T:
        try:
            return await func()
        except TagSyncError as e:
            logger.warning("%s: %s", title, e)
            console.print(
                Panel(f"[red]{escape(e.message)}[/red]", title=title, border_style="red")
            )
            raise typer.Exit(code=1)
        finally:
            await get_container().aclose()

    return asyncio.run(_main())


def parse_entity_ref(value: str) -> EntityRef:
    """
    Parse ``Type:id`` (e.g. ``Work:42``) into an ``EntityRef``.

    Raises
    ------
    typer.BadParameter
        If the value is malformed or names an unknown type.
    """
    type_part, sep, id_part = value.partition(":")
    if not sep or not id_part.strip().isdigit() or int(id_part) < 1:
        raise typer.BadParameter(f"Expected TYPE:ID (e.g. Work:42), got {value!r}")
    return EntityRef(taggable_type=parse_entity_type(type_part), taggable_id=int(id_part))


def parse_entity_type(value: str) -> TaggableType:
    """Case-insensitive ``TaggableType`` lookup (``work``, ``external_work``)."""
    key = value.strip().replace("_", "").replace("-", "").casefold()
    for member in TaggableType:
        if member.value.casefold() == key:
            return member
    choices = ", ".join(t.value for t in TaggableType)
    raise typer.BadParameter(f"Unknown entity type {value!r} (choose from {choices})")


def parse_tag_type(value: Optional[str]) -> Optional[TagType]:
    """Typer callback converting an optional tag type option."""
    if value is None:
        return None
    try:
        return TagType.parse(value)
    except TagSyncError as e:
        raise typer.BadParameter(e.message) from e


def parse_priority(value: str) -> QueuePriority:
    """Typer callback accepting ``low``/``default``/``high`` or 0-2."""
    text = value.strip()
    if text.isdigit() and int(text) in {p.value for p in QueuePriority}:
        return QueuePriority(int(text))
    try:
        return QueuePriority[text.upper()]
    except KeyError:
        raise typer.BadParameter(
            f"Unknown priority {value!r} (choose from low, default, high)"
        ) from None


async def resolve_tag_ref(
    graph: TagGraphService, session: AsyncSession, ref: str
) -> TagDB:
    """Find a tag by UUID or by name."""
    try:
        tag_id = uuid.UUID(ref)
    except ValueError:
        tag = await graph.find_tag(session, ref)
        if tag is None:
            raise TagNotFoundError(ref)
        return tag
    return await graph.get_tag(session, tag_id)


def describe_tag(tag: TagDB) -> str:
    """One-line rich markup description of a tag."""
    status = "canonical" if tag.canonical else f"synonym of {tag.merged_into_id}"
    return (
        f"[bold]{escape(tag.name)}[/bold] [dim]({tag.tag_type}, {status})[/dim]"
    )
