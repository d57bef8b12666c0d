"""Line item diff between two estimate snapshots

Items are matched by a fallback key: the persisted id when present, otherwise
the description text. Description-keyed matching is best-effort; when two
items in one snapshot share a key the later one wins and a warning is logged.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
import logging

from src.models.estimate import EstimateVersion, LineItem

logger = logging.getLogger(__name__)

# Fields compared on matched items
COMPARED_FIELDS = ("quantity", "unit_price", "description", "title")

Snapshot = Union[EstimateVersion, Sequence[LineItem], None]


class DiffType(str, Enum):
    """Kind of difference for one item key"""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass
class FieldChange:
    """One changed field on a matched item"""
    field: str
    old_value: Any
    new_value: Any


@dataclass
class DiffEntry:
    """Difference for one item key"""
    item_key: str
    type: DiffType
    changes: List[FieldChange] = field(default_factory=list)
    item: Optional[LineItem] = None  # new item for added/modified, old item for removed


@dataclass
class VersionComparison:
    """Diff grouped by type, with the subtotal change between the snapshots"""
    added: List[DiffEntry]
    removed: List[DiffEntry]
    modified: List[DiffEntry]
    price_change: int

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.modified)


def item_key(item: LineItem) -> str:
    """Stable key for matching: persisted id, else description"""
    return item.id or item.description


def _items(snapshot: Snapshot) -> List[LineItem]:
    if snapshot is None:
        return []
    if isinstance(snapshot, EstimateVersion):
        return list(snapshot.line_items)
    return list(snapshot)


def _key_map(items: Iterable[LineItem], label: str) -> Dict[str, LineItem]:
    keyed: Dict[str, LineItem] = {}
    for item in items:
        key = item_key(item)
        if key in keyed:
            logger.warning(f"Duplicate item key {key!r} in {label} snapshot; keeping the last occurrence")
        keyed[key] = item
    return keyed


def diff(old: Snapshot, new: Snapshot) -> List[DiffEntry]:
    """
    Structural delta between two snapshots

    Args:
        old: Earlier version or item sequence (None treated as empty)
        new: Later version or item sequence (None treated as empty)

    Returns:
        Added and modified entries in the new snapshot's order, followed by
        removed entries in the old snapshot's order. Matched items with no
        field differences are omitted.
    """
    old_map = _key_map(_items(old), "old")
    new_map = _key_map(_items(new), "new")

    entries: List[DiffEntry] = []
    for key, new_item in new_map.items():
        old_item = old_map.get(key)
        if old_item is None:
            entries.append(DiffEntry(item_key=key, type=DiffType.ADDED, item=new_item))
            continue

        changes = [
            FieldChange(name, getattr(old_item, name), getattr(new_item, name))
            for name in COMPARED_FIELDS
            if getattr(old_item, name) != getattr(new_item, name)
        ]
        if changes:
            entries.append(DiffEntry(item_key=key, type=DiffType.MODIFIED, changes=changes, item=new_item))

    for key, old_item in old_map.items():
        if key not in new_map:
            entries.append(DiffEntry(item_key=key, type=DiffType.REMOVED, item=old_item))

    return entries


def cost_delta(old_items: Snapshot, new_items: Snapshot) -> int:
    """New subtotal minus old subtotal, recomputed from quantity x unit price"""
    old_subtotal = sum(item.expected_total for item in _items(old_items))
    new_subtotal = sum(item.expected_total for item in _items(new_items))
    return new_subtotal - old_subtotal


def compare_versions(old: Snapshot, new: Snapshot) -> VersionComparison:
    """Diff grouped into added/removed/modified lists"""
    entries = diff(old, new)
    return VersionComparison(
        added=[e for e in entries if e.type == DiffType.ADDED],
        removed=[e for e in entries if e.type == DiffType.REMOVED],
        modified=[e for e in entries if e.type == DiffType.MODIFIED],
        price_change=cost_delta(old, new),
    )


def apply_diff(old_items: Snapshot, entries: Iterable[DiffEntry]) -> List[LineItem]:
    """
    Rebuild the new item set from the old one and a diff

    Modified items get their changed fields applied and total_price
    recomputed. Surviving items keep the old snapshot's order; added items
    are appended.
    """
    result = _key_map(_items(old_items), "old")
    for entry in entries:
        if entry.type == DiffType.REMOVED:
            result.pop(entry.item_key, None)
        elif entry.type == DiffType.MODIFIED:
            current = result.get(entry.item_key)
            if current is None:
                logger.warning(f"Modified entry {entry.item_key!r} has no match in the old snapshot")
                continue
            updated = current.model_copy(update={c.field: c.new_value for c in entry.changes})
            result[entry.item_key] = updated.normalized()
        elif entry.type == DiffType.ADDED and entry.item is not None:
            result[entry.item_key] = entry.item
    return list(result.values())
