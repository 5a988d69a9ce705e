#!/usr/bin/env python3
"""
Figma Design Change Tracker

This module drives the change-detection pipeline: it normalizes fetched
Figma nodes, stores them in the spec store, diffs changed nodes against
their previous specs and writes the design changelog and PR body.

USAGE:
    python -m figma_sentinel.tracker --input nodes.json --file-key KEY   # Detect changes
    python -m figma_sentinel.tracker --input nodes.json --file-key KEY --dry-run
    python -m figma_sentinel.tracker --diff 1:2 --input nodes.json --file-key KEY
    python -m figma_sentinel.tracker --list                              # List stored specs
    python -m figma_sentinel.tracker --status                            # Show store status

NOTE: Fetching from the Figma REST API is not done here. ``--input`` takes a
saved response of ``GET /v1/files/:key/nodes``.
"""

import json
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Tuple

from .changelog import (
    PRMetadata,
    attach_image_paths,
    format_change_lines,
    generate_changelog_markdown,
    generate_pr_body,
    write_changelog,
)
from .config import SentinelConfig, DEFAULT_CONFIG, load_config
from .differ import ChangelogEntry, PropertyChange, VariantChange, diff_specs, diff_variants, generate_changelog_entries
from .errors import (
    ErrorAggregator,
    FigmaSentinelError,
    NotFoundError,
    ValidationError,
    error_from_response,
    generate_error_message,
)
from .events import EventChannel, log_events
from .images import ImageExportResult, cleanup_removed_images, collect_exported_images
from .normalizer import create_normalizer
from .status import print_status, show_status
from .storage import ChangeDetectionResult, SpecInput, SpecRecord, SpecStore, detect_changes

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class FetchedNode:
    """A raw node returned by the Figma API."""
    file_key: str
    node_id: str
    node: Dict[str, Any]


@dataclass
class FetchFailure:
    """A node the caller failed to fetch."""
    file_key: str
    node_id: str
    error: FigmaSentinelError


@dataclass
class SentinelResult:
    """Outcome of one pipeline run."""
    results: List[ChangeDetectionResult] = field(default_factory=list)
    entries: List[ChangelogEntry] = field(default_factory=list)
    removed: List[SpecRecord] = field(default_factory=list)
    changelog_markdown: str = ""
    pr_body: str = ""
    changelog_path: Optional[Path] = None
    pr_body_path: Optional[Path] = None
    error_summary: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    dry_run: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.entries or self.removed)

    @property
    def new_node_ids(self) -> List[str]:
        return [r.current.node_id for r in self.results if r.is_new]

    @property
    def unchanged_count(self) -> int:
        return sum(1 for r in self.results if not r.is_new and not r.has_changed)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "summary": {
                "processed": len(self.results),
                "new": len(self.new_node_ids),
                "changed": len(self.entries),
                "unchanged": self.unchanged_count,
                "removed": len(self.removed),
                "failed": self.error_summary.get("total_errors", 0),
            },
            "changed": [
                {"file_key": e.file_key, "node_id": e.node_id, "name": e.node_name,
                 "property_changes": len(e.property_changes),
                 "variant_changes": len(e.variant_changes)}
                for e in self.entries
            ],
            "new": self.new_node_ids,
            "removed": [{"file_key": r.file_key, "node_id": r.node_id, "name": r.name} for r in self.removed],
            "errors": self.error_summary,
            "changelog_path": str(self.changelog_path) if self.changelog_path else None,
            "pr_body_path": str(self.pr_body_path) if self.pr_body_path else None,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
        }

    def __str__(self) -> str:
        lines = [
            "",
            "=" * 60,
            "Figma Design Change Report" + (" (dry run)" if self.dry_run else ""),
            "=" * 60,
            "",
        ]

        lines.append(f"CHANGED NODES ({len(self.entries)}):")
        if self.entries:
            for entry in self.entries:
                lines.append(
                    f"  ~ {entry.node_id} \"{entry.node_name}\" "
                    f"({len(entry.property_changes)} property, {len(entry.variant_changes)} variant changes)"
                )
        else:
            lines.append("  (none)")
        lines.append("")

        lines.append(f"NEW NODES ({len(self.new_node_ids)}):")
        if self.new_node_ids:
            for node_id in self.new_node_ids:
                lines.append(f"  + {node_id}")
        else:
            lines.append("  (none)")
        lines.append("")

        lines.append(f"REMOVED NODES ({len(self.removed)}):")
        if self.removed:
            for record in self.removed:
                lines.append(f"  - {record.node_id} \"{record.name}\"")
        else:
            lines.append("  (none)")
        lines.append("")

        lines.append("-" * 60)
        lines.append(
            f"Summary: {len(self.entries)} changed, {len(self.new_node_ids)} new, "
            f"{self.unchanged_count} unchanged, {len(self.removed)} removed, "
            f"{self.error_summary.get('total_errors', 0)} failed"
        )
        if self.changelog_path:
            lines.append(f"Changelog: {self.changelog_path}")
        lines.append("=" * 60)

        return "\n".join(lines)


class DesignTracker:
    """
    Track design changes of Figma nodes.

    This class provides methods to:
    - Normalize fetched nodes and store them in the spec store
    - Detect and diff changed nodes
    - Write the design changelog and PR body
    - Prune nodes that are no longer tracked
    """

    def __init__(
        self,
        config: Optional[SentinelConfig] = None,
        store: Optional[SpecStore] = None,
        events: Optional[EventChannel] = None
    ):
        """
        Initialize the tracker.

        Args:
            config: Run configuration. Defaults to DEFAULT_CONFIG.
            store: Spec store. Defaults to one rooted at config.specs_dir.
            events: Event channel for errors and completion.
        """
        self.config = (config or DEFAULT_CONFIG).validate()
        self.store = store or SpecStore(self.config.specs_dir)
        self.events = events or EventChannel()
        self.aggregator = ErrorAggregator()
        self._normalize = create_normalizer(self.config)

    def process_node(self, fetched: FetchedNode, dry_run: bool = False) -> ChangeDetectionResult:
        """
        Normalize one node and compare it with its stored spec.

        Args:
            fetched: The raw node.
            dry_run: If True, nothing is written to the store.

        Returns:
            The change detection result.
        """
        spec = self._normalize(fetched.node)
        if not dry_run:
            return self.store.save_and_detect_changes(SpecInput(fetched.file_key, fetched.node_id, spec))

        previous = self.store.load_spec(fetched.file_key, fetched.node_id)
        current = self.store.build_record(fetched.file_key, fetched.node_id, spec)
        return detect_changes(previous, current)

    def diff_node(self, fetched: FetchedNode) -> Optional[Tuple[List[PropertyChange], List[VariantChange]]]:
        """
        Diff a fetched node against its stored spec without saving.

        Returns:
            (property changes, variant changes), or None if the node has
            never been stored.
        """
        previous = self.store.load_spec(fetched.file_key, fetched.node_id)
        if previous is None:
            return None
        spec = self._normalize(fetched.node)
        return diff_specs(previous.spec, spec), diff_variants(previous.spec, spec)

    def find_untracked(self, file_key: str, tracked_node_ids: Iterable[str]) -> List[SpecRecord]:
        """Stored records of a file whose node id is not in tracked_node_ids."""
        tracked = set(tracked_node_ids)
        return [r for r in self.store.load_all_specs(file_key) if r.node_id not in tracked]

    def prune(self, tracked: Dict[str, Iterable[str]], dry_run: bool = False) -> List[SpecRecord]:
        """
        Remove specs and images of nodes no longer tracked.

        Args:
            tracked: Mapping of file key to the node ids still tracked.
            dry_run: If True, report what would be removed without removing.

        Returns:
            The removed (or removable) records.
        """
        removed = []
        for file_key, node_ids in tracked.items():
            if dry_run:
                removed.extend(self.find_untracked(file_key, node_ids))
            else:
                removed.extend(self.store.prune(file_key, node_ids))

        if removed and not dry_run:
            cleanup_removed_images(self.config.images_dir, [(r.file_key, r.node_id) for r in removed])
        return removed

    def run(
        self,
        fetched: Iterable[FetchedNode],
        failures: Iterable[FetchFailure] = (),
        export_result: Optional[ImageExportResult] = None,
        dry_run: bool = False,
        prune: bool = False,
        run_url: Optional[str] = None
    ) -> SentinelResult:
        """
        Run the pipeline over a batch of fetched nodes.

        A node that fails is recorded and reported on the event channel;
        the remaining nodes are still processed.

        Args:
            fetched: Nodes returned by the API.
            failures: Nodes the caller could not fetch.
            export_result: Renders for the changed nodes. When None and image
                export is enabled, renders already on disk are used.
            dry_run: Detect changes without writing anything.
            prune: Remove stored specs of nodes absent from this batch.
            run_url: Link to the CI run, shown in the PR body.

        Returns:
            A SentinelResult describing the run.
        """
        started = time.monotonic()
        self.aggregator.reset()
        result = SentinelResult(dry_run=dry_run)
        tracked: Dict[str, set] = {}

        for failure in failures:
            tracked.setdefault(failure.file_key, set()).add(failure.node_id)
            self._record_failure(failure.error, failure.file_key, failure.node_id)

        for node in fetched:
            tracked.setdefault(node.file_key, set()).add(node.node_id)
            try:
                detection = self.process_node(node, dry_run=dry_run)
            except FigmaSentinelError as e:
                self._record_failure(e, node.file_key, node.node_id)
                continue

            self.aggregator.add_success()
            result.results.append(detection)
            if detection.is_new:
                logger.info(f"New node tracked: {node.file_key}/{node.node_id}")
            elif detection.has_changed:
                logger.info(f"Change detected: {node.file_key}/{node.node_id}")

        if prune:
            result.removed = self.prune(tracked, dry_run=dry_run)

        entries = generate_changelog_entries(result.results)
        if self.config.export_images:
            if export_result is None:
                export_result = collect_exported_images(
                    self.config.images_dir, [(e.file_key, e.node_id) for e in entries]
                )
            entries = attach_image_paths(entries, export_result)
        result.entries = entries

        result.changelog_markdown = generate_changelog_markdown(
            entries,
            include_images=self.config.export_images,
            removed=result.removed,
        )
        if result.has_changes:
            result.pr_body = generate_pr_body(entries, PRMetadata(
                changelog_path=self.config.changelog_file,
                removed=result.removed,
                run_url=run_url,
            ))

        if not dry_run:
            if result.changelog_markdown:
                result.changelog_path = write_changelog(self.config.changelog_path, result.changelog_markdown)
            if result.pr_body:
                result.pr_body_path = write_changelog(self.config.pr_body_path, result.pr_body)

        result.error_summary = self.aggregator.summary()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.events.emit_completed(
            success_count=self.aggregator.success_count,
            failure_count=self.aggregator.failure_count,
            duration_ms=result.duration_ms,
        )
        return result

    def _record_failure(self, error: FigmaSentinelError, file_key: str, node_id: str) -> None:
        self.aggregator.add_error(error, file_key=file_key, node_id=node_id)
        self.events.emit_error(error, file_key=file_key, node_id=node_id)


def load_nodes_response(path: Path, file_key: str) -> Tuple[List[FetchedNode], List[FetchFailure]]:
    """
    Read a saved ``GET /v1/files/:key/nodes`` response.

    Args:
        path: JSON file holding the response body.
        file_key: Figma file key the response belongs to.

    Returns:
        (fetched nodes, failures). A node the API returned as null becomes
        a NotFoundError failure.

    Raises:
        ValidationError: If the file is missing or not a nodes response.
        FigmaSentinelError: If the saved body is an API error response.
    """
    if not file_key:
        raise ValidationError("A file key is required to read a nodes response")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ValidationError(f"Input file not found: {path}")
    except ValueError as e:
        raise ValidationError(f"Invalid JSON in {path}: {e}", cause=e)

    if not isinstance(data, dict):
        raise ValidationError(f"Expected a JSON object in {path}")

    if "nodes" not in data and isinstance(data.get("status"), int):
        raise error_from_response(data["status"], data, file_key=file_key)

    nodes = data.get("nodes")
    if not isinstance(nodes, dict):
        raise ValidationError(f"No 'nodes' object in {path}")

    fetched, failures = [], []
    for node_id, entry in nodes.items():
        document = entry.get("document") if isinstance(entry, dict) else None
        if not isinstance(document, dict):
            failures.append(FetchFailure(
                file_key=file_key,
                node_id=node_id,
                error=NotFoundError(f"Node {node_id} not found", file_key=file_key, node_id=node_id),
            ))
            continue
        fetched.append(FetchedNode(file_key=file_key, node_id=node_id, node=document))

    logger.info(f"Loaded {len(fetched)} nodes from {path}")
    return fetched, failures


def print_specs(store: SpecStore, file_key: Optional[str] = None) -> None:
    """Print a formatted list of stored specs."""
    file_keys = [file_key] if file_key else store.list_file_keys()
    records = [r for key in file_keys for r in store.load_all_specs(key)]

    if not records:
        print(f"\nNo specs stored in {store.specs_dir}")
        return

    print(f"\n{'=' * 60}")
    print(f"Stored Figma Specs: {store.specs_dir}")
    print(f"{'=' * 60}")

    for record in records:
        print(f"  {record.file_key} | {record.node_id:>10} | {record.content_hash[:12]} | {record.name}")

    print(f"{'=' * 60}")
    print(f"Total: {len(records)} specs")


def print_diff(node_id: str, diff: Optional[Tuple[List[PropertyChange], List[VariantChange]]]) -> None:
    """Print the changes of a single node."""
    print(f"\n{'=' * 60}")
    print(f"Design Diff: {node_id}")
    print(f"{'=' * 60}")

    if diff is None:
        print("  No stored spec yet - this would be the first observation")
    elif not diff[0] and not diff[1]:
        print("  No changes")
    else:
        for line in format_change_lines(diff[0], diff[1]):
            print(f"  {line}")

    print(f"{'=' * 60}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI usage."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Figma Design Change Tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m figma_sentinel.tracker --input nodes.json --file-key abc123
  python -m figma_sentinel.tracker --input nodes.json --file-key abc123 --dry-run
  python -m figma_sentinel.tracker --input nodes.json --file-key abc123 --diff 1:2
  python -m figma_sentinel.tracker --list --file-key abc123
  python -m figma_sentinel.tracker --status
        """
    )
    parser.add_argument(
        "--input", "-i",
        type=Path,
        default=None,
        help="Saved Figma nodes response (GET /v1/files/:key/nodes)"
    )
    parser.add_argument(
        "--file-key", "-k",
        type=str,
        default=None,
        help="Figma file key of the input"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Config file or directory containing .figma-sentinelrc.json (default: current directory)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect changes without writing specs, changelog or PR body"
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Remove stored specs of nodes missing from the input"
    )
    parser.add_argument(
        "--run-url",
        type=str,
        default=None,
        help="CI run URL to link from the PR body"
    )
    parser.add_argument(
        "--diff",
        metavar="NODE_ID",
        type=str,
        default=None,
        help="Show the diff of one node against its stored spec"
    )
    parser.add_argument(
        "--list", "-l",
        action="store_true",
        help="List stored specs"
    )
    parser.add_argument(
        "--status", "-s",
        action="store_true",
        help="Show spec store status"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON"
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config or Path.cwd())
        tracker = DesignTracker(config)
    except FigmaSentinelError as e:
        print(f"Error: {generate_error_message(e)}")
        return 1
    log_events(tracker.events, logger)

    try:
        if args.status:
            status = show_status(tracker.store, args.file_key)
            if args.json:
                print(json.dumps(status, indent=2))
            else:
                print_status(status)

        elif args.list:
            if args.json:
                file_keys = [args.file_key] if args.file_key else tracker.store.list_file_keys()
                records = [r.to_dict() for key in file_keys for r in tracker.store.load_all_specs(key)]
                print(json.dumps(records, indent=2, ensure_ascii=False))
            else:
                print_specs(tracker.store, args.file_key)

        elif args.input:
            fetched, failures = load_nodes_response(args.input, args.file_key)

            if args.diff:
                matching = [n for n in fetched if n.node_id == args.diff]
                if not matching:
                    print(f"Error: node {args.diff} is not in {args.input}")
                    return 1
                diff = tracker.diff_node(matching[0])
                if args.json:
                    print(json.dumps({
                        "node_id": args.diff,
                        "is_new": diff is None,
                        "property_changes": [
                            {"path": list(c.path), "kind": c.kind,
                             "previous_value": c.previous_value, "current_value": c.current_value}
                            for c in (diff[0] if diff else [])
                        ],
                        "variant_changes": [
                            {"variant": c.variant_name, "property": c.variant_property, "kind": c.kind,
                             "previous_value": c.previous_value, "current_value": c.current_value}
                            for c in (diff[1] if diff else [])
                        ],
                    }, indent=2, ensure_ascii=False))
                else:
                    print_diff(args.diff, diff)
                return 0

            result = tracker.run(
                fetched,
                failures=failures,
                dry_run=args.dry_run,
                prune=args.prune,
                run_url=args.run_url,
            )
            if args.json:
                print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            else:
                print(result)
            if result.error_summary.get("total_errors") and not result.results:
                return 1

        else:
            # Default: show help
            print("\nFigma Design Change Tracker")
            print("=" * 40)
            print("\nUsage:")
            print("  python -m figma_sentinel.tracker --input FILE --file-key KEY   # Detect changes")
            print("  python -m figma_sentinel.tracker --list                        # List stored specs")
            print("  python -m figma_sentinel.tracker --status                      # Show store status")
            print("\nFor detailed help: python -m figma_sentinel.tracker --help")

    except FigmaSentinelError as e:
        print(f"Error: {generate_error_message(e, args.file_key)}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
