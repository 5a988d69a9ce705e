"""
Unit tests for figma_sentinel.tracker module.

Tests cover:
- Processing fetched nodes through the pipeline
- Changelog and PR body output
- Failure isolation, events and pruning
- Reading saved nodes responses
- The command-line interface
"""

import copy
import json
import pytest
import re
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.parse import unquote

from figma_sentinel.config import SentinelConfig
from figma_sentinel.errors import ErrorCode, NotFoundError, StorageError, ValidationError
from figma_sentinel.events import CompletedEvent, ErrorEvent, EventChannel
from figma_sentinel.images import ExportedImage, ImageExportResult, get_image_path, get_previous_image_path
from figma_sentinel.tracker import (
    DesignTracker,
    FetchedNode,
    FetchFailure,
    SentinelResult,
    load_nodes_response,
    main,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path):
    """Config rooted in a temporary spec store."""
    return SentinelConfig(specs_dir=tmp_path / ".design-specs")


@pytest.fixture
def tracker(config):
    """A tracker with a fresh event channel."""
    return DesignTracker(config)


@pytest.fixture
def button_node():
    """Raw Figma button node."""
    return {
        "id": "1:2",
        "name": "Button",
        "type": "COMPONENT",
        "opacity": 1,
        "absoluteBoundingBox": {"x": 10, "y": 20, "width": 100, "height": 40},
        "fills": [{"type": "SOLID", "color": {"r": 1, "g": 0, "b": 0, "a": 1}}],
    }


@pytest.fixture
def nodes_response(tmp_path, button_node):
    """A saved GET /v1/files/:key/nodes response."""
    path = tmp_path / "nodes.json"
    path.write_text(json.dumps({
        "name": "Design System",
        "nodes": {
            "1:2": {"document": button_node, "components": {}},
            "9:9": None,
        },
    }), encoding="utf-8")
    return path


def fetched(node, file_key="abc"):
    """Wrap a raw node as a FetchedNode."""
    return FetchedNode(file_key=file_key, node_id=node["id"], node=node)


# =============================================================================
# DesignTracker Tests
# =============================================================================

class TestDesignTracker:
    """Tests for DesignTracker.run and friends."""

    def test_first_run_tracks_without_changelog(self, tracker, config, button_node):
        """Test that the first observation stores the spec but reports no change."""
        result = tracker.run([fetched(button_node)])

        assert isinstance(result, SentinelResult)
        assert result.new_node_ids == ["1:2"]
        assert result.entries == []
        assert result.has_changes is False
        assert result.changelog_path is None
        assert not config.changelog_path.exists()
        assert tracker.store.load_spec("abc", "1:2") is not None

    def test_unchanged_second_run(self, tracker, button_node):
        """Test that an identical second run reports nothing."""
        tracker.run([fetched(button_node)])

        result = tracker.run([fetched(button_node)])

        assert result.entries == []
        assert result.unchanged_count == 1
        assert result.pr_body == ""

    def test_geometry_only_change_ignored(self, tracker, button_node):
        """Test that moving a node is not a design change."""
        tracker.run([fetched(button_node)])
        moved = copy.deepcopy(button_node)
        moved["absoluteBoundingBox"]["x"] = 500

        result = tracker.run([fetched(moved)])

        assert result.entries == []

    def test_change_writes_changelog_and_pr_body(self, tracker, config, button_node):
        """Test that a visual change produces both documents."""
        tracker.run([fetched(button_node)])
        changed = dict(button_node, opacity=0.5)

        result = tracker.run([fetched(changed)])

        assert len(result.entries) == 1
        assert result.entries[0].node_name == "Button"
        assert result.changelog_path == config.changelog_path
        assert result.pr_body_path == config.pr_body_path
        changelog = config.changelog_path.read_text(encoding="utf-8")
        assert "  - opacity: `1` → `0.5`" in changelog
        assert "| 🔄 Changed | 1 |" in config.pr_body_path.read_text(encoding="utf-8")

    def test_dry_run_writes_nothing(self, tracker, config, button_node):
        """Test that a dry run detects changes without persisting."""
        tracker.run([fetched(button_node)])
        changed = dict(button_node, opacity=0.5)

        result = tracker.run([fetched(changed)], dry_run=True)

        assert len(result.entries) == 1
        assert result.changelog_markdown
        assert not config.changelog_path.exists()
        assert tracker.store.load_spec("abc", "1:2").spec["opacity"] == 1

    def test_images_attached_from_disk(self, tracker, config, button_node):
        """Test that renders on disk are linked in the changelog."""
        tracker.run([fetched(button_node)])
        for path in (get_image_path(config.images_dir, "abc", "1:2"),
                     get_previous_image_path(config.images_dir, "abc", "1:2")):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"png")

        result = tracker.run([fetched(dict(button_node, opacity=0.5))])

        assert result.entries[0].current_image_path == "images/abc/1%253A2.png"
        assert "| Before | After |" in result.changelog_markdown

    def test_changelog_links_resolve_to_renders(self, tracker, config, button_node):
        """Test that URL-decoded image links point at the files on disk."""
        tracker.run([fetched(button_node)])
        for path in (get_image_path(config.images_dir, "abc", "1:2"),
                     get_previous_image_path(config.images_dir, "abc", "1:2")):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"png")

        result = tracker.run([fetched(dict(button_node, opacity=0.5))])

        links = re.findall(r"!\[[^\]]*\]\(([^)]+)\)", result.changelog_markdown)
        assert len(links) == 2
        for link in links:
            assert (config.specs_dir / unquote(link)).exists()

    def test_explicit_export_result(self, tracker, button_node, tmp_path):
        """Test that a caller-provided export result is used."""
        tracker.run([fetched(button_node)])
        export = ImageExportResult(images=[ExportedImage("abc", "1:2", tmp_path / "x.png")])

        result = tracker.run([fetched(dict(button_node, opacity=0.5))], export_result=export)

        assert result.entries[0].current_image_path == "images/abc/1%253A2.png"
        assert result.entries[0].previous_image_path is None

    def test_images_disabled(self, tmp_path, button_node):
        """Test that export_images=False leaves image paths empty."""
        tracker = DesignTracker(SentinelConfig(specs_dir=tmp_path / "s", export_images=False))
        tracker.run([fetched(button_node)])

        result = tracker.run([fetched(dict(button_node, opacity=0.5))])

        assert result.entries[0].current_image_path is None

    def test_failed_node_does_not_stop_run(self, config, button_node):
        """Test that one failing node is recorded and the rest proceed."""
        events = EventChannel()
        errors, completed = [], []
        events.on_error(errors.append)
        events.on_completed(completed.append)
        tracker = DesignTracker(config, events=events)
        other = dict(button_node, id="3:4", name="Other")

        original = tracker.store.save_and_detect_changes

        def flaky(spec_input):
            if spec_input.node_id == "1:2":
                raise StorageError("disk full")
            return original(spec_input)

        with patch.object(tracker.store, "save_and_detect_changes", side_effect=flaky):
            result = tracker.run([fetched(button_node), fetched(other)])

        assert [r.current.node_id for r in result.results] == ["3:4"]
        assert result.error_summary["by_error_type"] == {"STORAGE_ERROR": 1}
        assert isinstance(errors[0], ErrorEvent)
        assert errors[0].context.node_id == "1:2"
        assert isinstance(completed[0], CompletedEvent)
        assert (completed[0].success_count, completed[0].failure_count) == (1, 1)

    def test_fetch_failures_reported(self, tracker, button_node):
        """Test that caller-side fetch failures are aggregated."""
        failure = FetchFailure("abc", "9:9", NotFoundError("missing"))

        result = tracker.run([fetched(button_node)], failures=[failure])

        assert result.error_summary["total_errors"] == 1
        assert result.error_summary["by_file_key"] == {"abc": 1}

    def test_prune_removes_untracked(self, tracker, config, button_node):
        """Test that pruning removes specs and images of dropped nodes."""
        other = dict(button_node, id="3:4", name="Badge")
        tracker.run([fetched(button_node), fetched(other)])
        image = get_image_path(config.images_dir, "abc", "3:4")
        image.parent.mkdir(parents=True, exist_ok=True)
        image.write_bytes(b"png")

        result = tracker.run([fetched(button_node)], prune=True)

        assert [r.node_id for r in result.removed] == ["3:4"]
        assert tracker.store.load_spec("abc", "3:4") is None
        assert not image.exists()
        assert "**Badge**" in result.pr_body

    def test_prune_only_run_writes_changelog(self, tracker, config, button_node):
        """Test that a run whose only change is a removal still writes the changelog."""
        other = dict(button_node, id="3:4", name="Badge")
        tracker.run([fetched(button_node), fetched(other)])

        result = tracker.run([fetched(button_node)], prune=True)

        assert result.entries == []
        assert result.changelog_path == config.changelog_path
        changelog = config.changelog_path.read_text(encoding="utf-8")
        assert "## ⚠️ Removed" in changelog
        assert "### Badge" in changelog
        assert "- Node: `3:4`" in changelog
        assert f"`{config.changelog_file}`" in result.pr_body

    def test_prune_keeps_failed_fetches(self, tracker, button_node):
        """Test that a node that failed to fetch is not pruned."""
        other = dict(button_node, id="3:4")
        tracker.run([fetched(button_node), fetched(other)])

        result = tracker.run(
            [fetched(button_node)],
            failures=[FetchFailure("abc", "3:4", NotFoundError("timeout"))],
            prune=True,
        )

        assert result.removed == []
        assert tracker.store.load_spec("abc", "3:4") is not None

    def test_prune_dry_run(self, tracker, button_node):
        """Test that a dry-run prune only reports."""
        other = dict(button_node, id="3:4")
        tracker.run([fetched(button_node), fetched(other)])

        result = tracker.run([fetched(button_node)], prune=True, dry_run=True)

        assert [r.node_id for r in result.removed] == ["3:4"]
        assert tracker.store.load_spec("abc", "3:4") is not None

    def test_diff_node(self, tracker, button_node):
        """Test diffing a node against its stored spec without saving."""
        assert tracker.diff_node(fetched(button_node)) is None
        tracker.run([fetched(button_node)])

        property_changes, variant_changes = tracker.diff_node(fetched(dict(button_node, opacity=0.25)))

        assert [c.path for c in property_changes] == [("opacity",)]
        assert variant_changes == []
        assert tracker.store.load_spec("abc", "1:2").spec["opacity"] == 1

    def test_invalid_config_rejected(self, tmp_path):
        """Test that a conflicting config fails at construction."""
        config = SentinelConfig(specs_dir=tmp_path, include_properties=["x"], exclude_properties=["x"])

        with pytest.raises(ValidationError):
            DesignTracker(config)

    def test_result_report(self, tracker, button_node):
        """Test the printable report and JSON form."""
        tracker.run([fetched(button_node)])
        result = tracker.run([fetched(dict(button_node, opacity=0.5))])

        text = str(result)
        data = result.to_dict()

        assert "Figma Design Change Report" in text
        assert "CHANGED NODES (1):" in text
        assert data["summary"]["changed"] == 1
        assert data["changed"][0]["property_changes"] == 1
        json.dumps(data)


# =============================================================================
# load_nodes_response Tests
# =============================================================================

class TestLoadNodesResponse:
    """Tests for load_nodes_response."""

    def test_documents_and_missing_nodes(self, nodes_response):
        """Test that documents become FetchedNodes and nulls become failures."""
        nodes, failures = load_nodes_response(nodes_response, "abc")

        assert [(n.file_key, n.node_id, n.node["name"]) for n in nodes] == [("abc", "1:2", "Button")]
        assert len(failures) == 1
        assert failures[0].node_id == "9:9"
        assert failures[0].error.code == ErrorCode.NOT_FOUND

    def test_file_key_required(self, nodes_response):
        """Test that a file key must be given."""
        with pytest.raises(ValidationError):
            load_nodes_response(nodes_response, None)

    def test_missing_file(self, tmp_path):
        """Test that a missing input is a ValidationError."""
        with pytest.raises(ValidationError):
            load_nodes_response(tmp_path / "missing.json", "abc")

    def test_error_body(self, tmp_path):
        """Test that a saved API error is classified."""
        path = tmp_path / "error.json"
        path.write_text(json.dumps({"status": 404, "err": "Not found"}), encoding="utf-8")

        with pytest.raises(NotFoundError):
            load_nodes_response(path, "abc")

    def test_not_a_nodes_response(self, tmp_path):
        """Test that unrelated JSON is rejected."""
        path = tmp_path / "other.json"
        path.write_text(json.dumps({"document": {}}), encoding="utf-8")

        with pytest.raises(ValidationError):
            load_nodes_response(path, "abc")


# =============================================================================
# CLI Tests
# =============================================================================

class TestMain:
    """Tests for the command-line interface."""

    def test_run_and_report(self, tmp_path, nodes_response, capsys):
        """Test a detection run from a saved response."""
        code = main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc"])

        assert code == 0
        assert "Figma Design Change Report" in capsys.readouterr().out
        assert (tmp_path / ".design-specs" / "abc" / "1%3A2.json").exists()

    def test_json_output(self, tmp_path, nodes_response, capsys):
        """Test --json output of a run."""
        main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc", "--json"])

        data = json.loads(capsys.readouterr().out)
        assert data["new"] == ["1:2"]
        assert data["summary"]["failed"] == 1

    def test_dry_run(self, tmp_path, nodes_response):
        """Test that --dry-run leaves the store empty."""
        main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc", "--dry-run"])

        assert not (tmp_path / ".design-specs").exists()

    def test_diff(self, tmp_path, nodes_response, button_node, capsys):
        """Test --diff against a stored spec."""
        main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc"])
        data = json.loads(nodes_response.read_text(encoding="utf-8"))
        data["nodes"]["1:2"]["document"]["opacity"] = 0.5
        nodes_response.write_text(json.dumps(data), encoding="utf-8")
        capsys.readouterr()

        code = main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc",
                     "--diff", "1:2"])

        assert code == 0
        assert "opacity: `1` → `0.5`" in capsys.readouterr().out

    def test_diff_unknown_node(self, tmp_path, nodes_response, capsys):
        """Test --diff with a node missing from the input."""
        code = main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc",
                     "--diff", "7:7"])

        assert code == 1

    def test_list_and_status(self, tmp_path, nodes_response, capsys):
        """Test --list and --status after a run."""
        main(["--config", str(tmp_path), "--input", str(nodes_response), "--file-key", "abc"])
        capsys.readouterr()

        main(["--config", str(tmp_path), "--list", "--json"])
        records = json.loads(capsys.readouterr().out)
        main(["--config", str(tmp_path), "--status"])
        status_out = capsys.readouterr().out

        assert [r["nodeId"] for r in records] == ["1:2"]
        assert "abc: 1 node tracked" in status_out

    def test_missing_file_key(self, tmp_path, nodes_response, capsys):
        """Test that a run without --file-key fails cleanly."""
        code = main(["--config", str(tmp_path), "--input", str(nodes_response)])

        assert code == 1
        assert "Error:" in capsys.readouterr().out

    def test_bad_config(self, tmp_path, capsys):
        """Test that an invalid config file fails cleanly."""
        config_path = tmp_path / "bad.json"
        config_path.write_text(json.dumps({"nope": 1}), encoding="utf-8")

        code = main(["--config", str(config_path), "--status"])

        assert code == 1
        assert "Invalid request" in capsys.readouterr().out

    def test_no_arguments_shows_usage(self, tmp_path, capsys):
        """Test the default help output."""
        code = main(["--config", str(tmp_path)])

        assert code == 0
        assert "Usage:" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
