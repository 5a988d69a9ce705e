"""
Figma node normalizer.

Strips volatile and non-visual properties (geometry, prototype metadata,
plugin data) from raw Figma API nodes and sorts keys, so that a spec only
changes when the design visually changes.
"""

import json
from typing import Optional, Dict, Any, Callable, FrozenSet

from .config import SentinelConfig
from .errors import ValidationError

# Volatile or positional data that never reaches a spec
DEFAULT_EXCLUDED_PROPERTIES: FrozenSet[str] = frozenset([
    # Geometry
    "absoluteBoundingBox",
    "absoluteRenderBounds",
    "relativeTransform",
    "size",
    "preserveRatio",
    "layoutAlign",
    "layoutGrow",
    "layoutPositioning",
    "minWidth",
    "maxWidth",
    "minHeight",
    "maxHeight",
    "primaryAxisAlignItems",
    "counterAxisAlignItems",
    "primaryAxisSizingMode",
    "counterAxisSizingMode",
    "clipsContent",
    "overflowDirection",
    # Stroke geometry caches
    "strokeWeight",
    "strokeAlign",
    "strokeCap",
    "strokeJoin",
    "strokeMiterAngle",
    "strokeDashes",
    "strokeGeometry",
    "fillGeometry",
    "isMask",
    "isMaskOutline",
    # Interaction and prototype metadata
    "transitionNodeID",
    "transitionDuration",
    "transitionEasing",
    "reactions",
    "flowStartingPoints",
    "prototypeStartNodeID",
    "prototypeDevice",
    "scrollBehavior",
    "exportSettings",
    "locked",
    # Plugin-private data
    "pluginData",
    "sharedPluginData",
])

# Visual properties kept even when an include list is configured
DEFAULT_PRESERVED_PROPERTIES: FrozenSet[str] = frozenset([
    "id",
    "name",
    "type",
    "fills",
    "strokes",
    "effects",
    "style",
    "layoutMode",
    "itemSpacing",
    "paddingLeft",
    "paddingRight",
    "paddingTop",
    "paddingBottom",
    "constraints",
    "children",
    "cornerRadius",
    "rectangleCornerRadii",
    "opacity",
    "blendMode",
    "visible",
    "componentProperties",
    "variantProperties",
    "characters",
])


def normalize_node(
    raw_node: Dict[str, Any],
    config: Optional[SentinelConfig] = None
) -> Dict[str, Any]:
    """
    Normalize a raw Figma node into a deterministic spec.

    Args:
        raw_node: Node tree as decoded from the Figma API.
        config: Supplies include/exclude overrides. Defaults apply when None.

    Returns:
        A new dict: excluded keys removed at every level, keys sorted,
        ``children`` order preserved. JSON null values are kept; absent
        keys stay absent.

    Raises:
        ValidationError: If raw_node is not a mapping, or a property is both
            included and excluded.
    """
    if not isinstance(raw_node, dict):
        raise ValidationError(f"Raw node must be a mapping, got {type(raw_node).__name__}")

    exclude = set(DEFAULT_EXCLUDED_PROPERTIES)
    include = None

    if config is not None:
        exclude.update(config.exclude_properties)
        if config.include_properties is not None:
            conflicts = sorted(set(config.include_properties) & set(config.exclude_properties))
            if conflicts:
                raise ValidationError(
                    f"Properties both included and excluded: {', '.join(conflicts)}"
                )
            include = set(config.include_properties) | DEFAULT_PRESERVED_PROPERTIES

    return _normalize_value(raw_node, frozenset(exclude), include)


def _normalize_value(value: Any, exclude: FrozenSet[str], include: Optional[set]) -> Any:
    """Recursively filter mappings and map lists element-wise."""
    if isinstance(value, dict):
        result = {}
        for key in sorted(value):
            if key in exclude:
                continue
            if include is not None and key not in include:
                continue
            # children is rendering order; lists are never reordered
            result[key] = _normalize_value(value[key], exclude, include)
        return result

    if isinstance(value, (list, tuple)):
        return [_normalize_value(item, exclude, include) for item in value]

    return value


def to_stable_json(spec: Any) -> str:
    """
    Serialize a structure to deterministic text.

    Keys are sorted again here, so arbitrary structures hash consistently
    whether or not they went through normalize_node. Two specs are identical
    iff their stable JSON is identical.

    Raises:
        ValidationError: If the structure holds non-JSON values.
    """
    try:
        return json.dumps(spec, sort_keys=True, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Spec is not JSON serializable: {e}", cause=e)


def create_normalizer(config: Optional[SentinelConfig] = None) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
    """Bind a config once and return a one-argument normalizer."""
    if config is not None:
        config.validate()

    def normalize(raw_node: Dict[str, Any]) -> Dict[str, Any]:
        return normalize_node(raw_node, config)

    return normalize
