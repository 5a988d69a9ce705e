"""
Structural diff of normalized specs.

Walks two specs in lockstep: by key at mapping levels and by index at list
levels. Lists are never matched by content, so a reordered list shows up as
one change per shifted index.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Iterable, Tuple, Union

from .storage import ChangeDetectionResult

logger = logging.getLogger(__name__)

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"

VARIANT_PROPERTIES_KEY = "variantProperties"

PathPart = Union[str, int]


@dataclass
class PropertyChange:
    """A single leaf-level difference between two specs."""
    path: Tuple[PathPart, ...]
    previous_value: Any = None
    current_value: Any = None
    kind: str = MODIFIED


@dataclass
class VariantChange:
    """A change to one component variant property."""
    variant_property: str
    previous_value: Any = None
    current_value: Any = None
    variant_name: str = ""
    kind: str = MODIFIED


@dataclass
class ChangelogEntry:
    """Everything the changelog needs to describe one changed node."""
    file_key: str
    node_id: str
    node_name: str
    property_changes: List[PropertyChange] = field(default_factory=list)
    variant_changes: List[VariantChange] = field(default_factory=list)
    previous_image_path: Optional[str] = None
    current_image_path: Optional[str] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.property_changes or self.variant_changes)


def values_equal(a: Any, b: Any) -> bool:
    """Leaf equality where a boolean never equals a number."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def diff_specs(previous: Dict[str, Any], current: Dict[str, Any]) -> List[PropertyChange]:
    """
    Diff two normalized specs.

    Args:
        previous: The stored spec.
        current: The freshly normalized spec.

    Returns:
        Changes in walk order: mapping keys sorted, list indices ascending.
        When both sides hold a mapping (or both a list) the walk descends, so
        paths always point at the deepest differing position.
    """
    changes: List[PropertyChange] = []
    _diff_value(previous, current, (), changes)
    return changes


def _diff_value(previous: Any, current: Any, path: Tuple[PathPart, ...], changes: List[PropertyChange]) -> None:
    if isinstance(previous, dict) and isinstance(current, dict):
        for key in sorted(set(previous) | set(current)):
            child_path = path + (key,)
            if key not in current:
                changes.append(PropertyChange(child_path, previous[key], None, REMOVED))
            elif key not in previous:
                changes.append(PropertyChange(child_path, None, current[key], ADDED))
            else:
                _diff_value(previous[key], current[key], child_path, changes)
        return

    if isinstance(previous, list) and isinstance(current, list):
        for index in range(max(len(previous), len(current))):
            child_path = path + (index,)
            if index >= len(current):
                changes.append(PropertyChange(child_path, previous[index], None, REMOVED))
            elif index >= len(previous):
                changes.append(PropertyChange(child_path, None, current[index], ADDED))
            else:
                _diff_value(previous[index], current[index], child_path, changes)
        return

    if not values_equal(previous, current):
        changes.append(PropertyChange(path, previous, current, MODIFIED))


def collect_variants(spec: Any) -> Dict[str, Dict[str, Any]]:
    """
    Collect ``variantProperties`` from a spec and its descendants.

    Returns:
        Mapping of variant key (node id, else name) to a dict holding the
        variant ``name`` and its ``properties``, in tree order.
    """
    variants: Dict[str, Dict[str, Any]] = {}
    stack = [spec]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        properties = node.get(VARIANT_PROPERTIES_KEY)
        if isinstance(properties, dict):
            name = node.get("name") or node.get("id") or ""
            key = node.get("id") or name
            variants[key] = {"name": name, "properties": properties}
        children = node.get("children")
        if isinstance(children, list):
            stack.extend(reversed(children))
    return variants


def diff_variants(previous: Dict[str, Any], current: Dict[str, Any]) -> List[VariantChange]:
    """
    Diff component variant properties between two specs.

    Variants are matched by node id. A variant present on one side only
    reports every one of its properties as added or removed.
    """
    old_variants = collect_variants(previous)
    new_variants = collect_variants(current)
    changes: List[VariantChange] = []

    for key, new_variant in new_variants.items():
        old_variant = old_variants.get(key)
        old_props = old_variant["properties"] if old_variant else {}
        new_props = new_variant["properties"]
        for prop in sorted(set(old_props) | set(new_props)):
            if prop not in old_props:
                changes.append(VariantChange(prop, None, new_props[prop], new_variant["name"], ADDED))
            elif prop not in new_props:
                changes.append(VariantChange(prop, old_props[prop], None, new_variant["name"], REMOVED))
            elif not values_equal(old_props[prop], new_props[prop]):
                changes.append(
                    VariantChange(prop, old_props[prop], new_props[prop], new_variant["name"], MODIFIED)
                )

    for key, old_variant in old_variants.items():
        if key in new_variants:
            continue
        for prop in sorted(old_variant["properties"]):
            changes.append(
                VariantChange(prop, old_variant["properties"][prop], None, old_variant["name"], REMOVED)
            )

    return changes


def generate_changelog_entries(results: Iterable[ChangeDetectionResult]) -> List[ChangelogEntry]:
    """
    Build changelog entries for the changed nodes of a run.

    Results with ``has_changed=False`` (including first observations) never
    produce an entry, nor do results whose diff comes out empty.
    Changes under ``variantProperties`` are reported once, as variant
    changes.
    """
    entries = []
    for result in results:
        if not result.has_changed or result.previous is None:
            continue

        property_changes = diff_specs(result.previous.spec, result.current.spec)
        variant_changes = diff_variants(result.previous.spec, result.current.spec)
        if variant_changes:
            property_changes = [c for c in property_changes if VARIANT_PROPERTIES_KEY not in c.path]
        if not property_changes and not variant_changes:
            logger.debug(f"Hash changed but no diff for {result.current.node_id}")
            continue

        entries.append(ChangelogEntry(
            file_key=result.current.file_key,
            node_id=result.current.node_id,
            node_name=result.current.name or result.current.node_id,
            property_changes=property_changes,
            variant_changes=variant_changes,
        ))
    return entries
