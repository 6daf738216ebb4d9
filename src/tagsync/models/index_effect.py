"""
Index effects returned by tag graph mutations.

A mutation never writes to the index queue itself. It returns the effects it
implies and the caller's transaction boundary commits them together with the
data change.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Iterable, TypeVar

from .entity_ref import EntityRef
from .enums import QueuePriority

T = TypeVar("T")


@dataclass(frozen=True)
class IndexEffect:
    """One entity whose searchable representation changed."""

    entity: EntityRef
    priority: QueuePriority = QueuePriority.DEFAULT


@dataclass
class MutationResult(Generic[T]):
    """Value of a mutation plus the index effects it implies."""

    value: T
    effects: list[IndexEffect] = field(default_factory=list)


def collapse_effects(effects: Iterable[IndexEffect]) -> list[IndexEffect]:
    """
    Collapse duplicate effects per entity to the highest requested priority.

    First-seen order of entities is preserved.
    """
    collapsed: dict[EntityRef, QueuePriority] = {}
    for effect in effects:
        current = collapsed.get(effect.entity)
        if current is None or effect.priority > current:
            collapsed[effect.entity] = effect.priority
    return [IndexEffect(entity, priority) for entity, priority in collapsed.items()]
