"""
Changelog and PR body rendering.

Turns ChangelogEntry lists into the markdown written to
``DESIGN_CHANGELOG.md`` and into the body of the design-update pull request.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Sequence, Union

from .differ import ChangelogEntry, PropertyChange, VariantChange
from .images import ImageExportResult, get_relative_image_path, get_relative_previous_image_path
from .storage import SpecRecord, atomic_write_text

logger = logging.getLogger(__name__)

MAX_VALUE_LENGTH = 50
MAX_PR_CHANGES = 10
DEFAULT_CHANGELOG_FILE = "DESIGN_CHANGELOG.md"


@dataclass
class PRMetadata:
    """Extra context for the PR body."""
    changelog_path: str = DEFAULT_CHANGELOG_FILE
    removed: List[SpecRecord] = field(default_factory=list)
    run_url: Optional[str] = None


def _is_color(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    return all(
        isinstance(value.get(channel), (int, float)) and not isinstance(value.get(channel), bool)
        for channel in ("r", "g", "b")
    )


def format_color(color: Union[Dict[str, Any], str]) -> str:
    """
    Format a Figma colour (channels in 0..1) for display.

    Returns:
        ``#RRGGBB`` in upper case, or ``rgba(R, G, B, A)`` when alpha is
        below 1. Strings are returned unchanged.
    """
    if isinstance(color, str):
        return color

    r, g, b = (int(round(color[c] * 255)) for c in ("r", "g", "b"))
    alpha = color.get("a", 1)
    if isinstance(alpha, (int, float)) and alpha < 1:
        return f"rgba({r}, {g}, {b}, {round(alpha, 2):g})"
    return f"#{r:02X}{g:02X}{b:02X}"


def format_value(value: Any) -> str:
    """Render a spec value compactly for a changelog line."""
    if value is None:
        return "(none)"
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_color(value):
        return format_color(value)
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        if len(text) > MAX_VALUE_LENGTH:
            return text[:MAX_VALUE_LENGTH - 3] + "..."
        return text
    return str(value)


def format_property_path(path: Sequence[Union[str, int]]) -> str:
    """Join a change path: ``("fills", 0, "color")`` -> ``fills[0].color``."""
    text = ""
    for part in path:
        if isinstance(part, int):
            text += f"[{part}]"
        elif text:
            text += f".{part}"
        else:
            text = str(part)
    return text or "(root)"


def _property_line(change: PropertyChange, indent: str = "  ") -> str:
    return (
        f"{indent}- {format_property_path(change.path)}: "
        f"`{format_value(change.previous_value)}` → `{format_value(change.current_value)}`"
    )


def _variant_lines(changes: List[VariantChange]) -> List[str]:
    lines = []
    grouped: Dict[str, List[VariantChange]] = {}
    for change in changes:
        grouped.setdefault(change.variant_name, []).append(change)

    for variant_name, group in grouped.items():
        lines.append(f"  - **{variant_name or '(unnamed)'}**:")
        for change in group:
            lines.append(
                f"    - {change.variant_property}: "
                f"`{format_value(change.previous_value)}` → `{format_value(change.current_value)}`"
            )
    return lines


def format_change_lines(
    property_changes: Sequence[PropertyChange],
    variant_changes: Sequence[VariantChange] = ()
) -> List[str]:
    """Markdown bullet lines for property changes followed by variant changes."""
    lines = []
    if property_changes:
        lines.append("- Changes:")
        lines.extend(_property_line(change) for change in property_changes)
    if variant_changes:
        lines.append("- Variant Changes:")
        lines.extend(_variant_lines(list(variant_changes)))
    return lines


def _entry_lines(entry: ChangelogEntry, include_images: bool) -> List[str]:
    lines = [
        f"- File: `{entry.file_key}`",
        f"- Node: `{entry.node_id}`",
    ]
    lines.extend(format_change_lines(entry.property_changes, entry.variant_changes))

    if include_images:
        if entry.previous_image_path and entry.current_image_path:
            lines.extend([
                "",
                "| Before | After |",
                "|--------|-------|",
                f"| ![Before]({entry.previous_image_path}) | ![After]({entry.current_image_path}) |",
            ])
        elif entry.current_image_path:
            lines.extend(["", f"![{entry.node_name}]({entry.current_image_path})"])

    return lines


def generate_changelog_markdown(
    entries: Sequence[ChangelogEntry],
    include_images: bool = True,
    removed: Sequence[SpecRecord] = ()
) -> str:
    """
    Render the design changelog.

    Args:
        entries: Entries from generate_changelog_entries.
        include_images: Embed before/after renders where paths are attached.
        removed: Stored records of nodes that were pruned in this run.

    Returns:
        Markdown text, or an empty string when there is nothing to report.
    """
    if not entries and not removed:
        return ""

    lines = ["# Design Changelog", ""]
    for entry in entries:
        lines.append(f"## {entry.node_name}")
        lines.append("")
        lines.extend(_entry_lines(entry, include_images))
        lines.append("")

    if removed:
        lines.append("## ⚠️ Removed")
        lines.append("")
        for record in removed:
            lines.append(f"### {record.name or record.node_id}")
            lines.append("")
            lines.append(f"- File: `{record.file_key}`")
            lines.append(f"- Node: `{record.node_id}`")
            lines.append("- ⚠️ Node Removed - Figma node no longer exists")
            if include_images:
                lines.append("- 📷 *No image available - node was deleted*")
            lines.append("")

    return "\n".join(lines)


def _pr_entry_lines(entry: ChangelogEntry) -> List[str]:
    lines = [
        f"- File: `{entry.file_key}`",
        f"- Node: `{entry.node_id}`",
    ]
    if entry.property_changes:
        lines.append("- Changes:")
        lines.extend(_property_line(change) for change in entry.property_changes[:MAX_PR_CHANGES])
        hidden = len(entry.property_changes) - MAX_PR_CHANGES
        if hidden > 0:
            lines.append(f"  - ... and {hidden} more changes")
    if entry.variant_changes:
        lines.append("- Variant Changes:")
        lines.extend(_variant_lines(list(entry.variant_changes)))
    return lines


def generate_pr_body(entries: Sequence[ChangelogEntry], metadata: Optional[PRMetadata] = None) -> str:
    """
    Render the pull request body for a design update.

    The body carries a summary table and a collapsible block per changed
    node, listing at most MAX_PR_CHANGES property changes each. Removed
    nodes and a pointer to the changelog follow.
    """
    metadata = metadata or PRMetadata()

    lines = [
        "## 🎨 Design Changes Detected",
        "",
        "This PR was automatically created by **Figma Sentinel**.",
        "",
        "### Summary",
        "",
        "| Type | Count |",
        "|------|-------|",
        f"| 🔄 Changed | {len(entries)} |",
        f"| ⚠️ Removed | {len(metadata.removed)} |",
        "",
    ]

    if entries:
        lines.append("### 🔄 Modified Components")
        lines.append("")
        for entry in entries:
            lines.append("<details>")
            lines.append(f"<summary><b>{entry.node_name}</b> (<code>{entry.node_id}</code>)</summary>")
            lines.append("")
            lines.extend(_pr_entry_lines(entry))
            lines.append("")
            lines.append("</details>")
            lines.append("")

    if metadata.removed:
        lines.append("### ⚠️ Removed Components")
        lines.append("")
        for record in metadata.removed:
            lines.append(f"- **{record.name or record.node_id}** (`{record.node_id}`) in `{record.file_key}`")
        lines.append("")

    lines.append("---")
    lines.append("")
    lines.append(f"📋 See `{metadata.changelog_path}` for full details with before/after images.")
    if metadata.run_url:
        lines.append("")
        lines.append(f"🔗 [Workflow run]({metadata.run_url})")

    return "\n".join(lines)


def attach_image_paths(
    entries: Sequence[ChangelogEntry],
    export_result: ImageExportResult
) -> List[ChangelogEntry]:
    """
    Return entries with relative image paths set from an export result.

    Entries are matched by (file key, node id); unmatched entries are
    returned as they are. The input entries are not modified.
    """
    by_key = {(image.file_key, image.node_id): image for image in export_result.images}

    attached = []
    for entry in entries:
        image = by_key.get((entry.file_key, entry.node_id))
        if image is None:
            attached.append(entry)
            continue
        attached.append(replace(
            entry,
            current_image_path=get_relative_image_path(entry.file_key, entry.node_id),
            previous_image_path=(
                get_relative_previous_image_path(entry.file_key, entry.node_id)
                if image.previous_image_path else None
            ),
        ))
    return attached


def write_changelog(path: Union[str, Path], text: str) -> Path:
    """
    Atomically write rendered markdown.

    Raises:
        StorageError: If the file cannot be written.
    """
    path = atomic_write_text(path, text)
    logger.info(f"Wrote {path}")
    return path
