"""
Access evaluator.

Decides per content unit whether a reader may see it. The first
FREE_PREVIEW_LIMIT units of every item are open; everything after
requires an active entitlement. Fails closed.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from readerpass.core.config import settings
from readerpass.models.subscription import Entitlement


class ContentSource(Protocol):
    """External content store. Units come back in reading order."""

    def get_content_units_for_item(self, item_id: str) -> Optional[List[Dict[str, Any]]]:
        """Return the item's units, or None when the item does not exist."""
        ...


@dataclass(frozen=True)
class GatedUnit:
    index: int
    unit_id: Optional[str]
    unlocked: bool
    data: Optional[Dict[str, Any]]


def can_access(index: int, entitlement: Optional[Entitlement], preview_limit: Optional[int] = None) -> bool:
    limit = settings.FREE_PREVIEW_LIMIT if preview_limit is None else preview_limit
    if index < 0:
        return False
    if index < limit:
        return True
    return bool(entitlement is not None and entitlement.active)


class InMemoryContentSource:
    """ContentSource backed by a dict; used for local runs and tests."""

    def __init__(self, items: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.items = dict(items or {})

    def get_content_units_for_item(self, item_id: str) -> Optional[List[Dict[str, Any]]]:
        units = self.items.get(item_id)
        return list(units) if units is not None else None


def gate_content_units(
    source: ContentSource,
    item_id: str,
    entitlement: Optional[Entitlement],
    preview_limit: Optional[int] = None,
) -> Optional[List[GatedUnit]]:
    """
    Annotate an item's units with their lock state.

    Locked units keep their position and id but carry no payload.
    Returns None when the source does not know the item.
    """
    units = source.get_content_units_for_item(item_id)
    if units is None:
        return None

    gated = []
    for index, unit in enumerate(units):
        unlocked = can_access(index, entitlement, preview_limit)
        unit_id = unit.get("id")
        gated.append(
            GatedUnit(
                index=index,
                unit_id=str(unit_id) if unit_id is not None else None,
                unlocked=unlocked,
                data=unit if unlocked else None,
            )
        )
    return gated
