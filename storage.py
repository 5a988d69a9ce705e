"""
Spec storage and change detection.

One JSON record per tracked (file key, node id) pair, laid out as
``<specs_dir>/<file key>/<node id>.json``. A record stores the normalized
spec together with its content hash; change detection compares hashes only.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Union
from urllib.parse import quote

from .errors import StorageError
from .normalizer import to_stable_json

logger = logging.getLogger(__name__)

SPEC_SUFFIX = ".json"


@dataclass
class SpecRecord:
    """The persisted unit of the spec store."""
    node_id: str
    file_key: str
    content_hash: str
    spec: Dict[str, Any]
    stored_at: str

    @property
    def name(self) -> str:
        return self.spec.get("name", "") if isinstance(self.spec, dict) else ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "nodeId": self.node_id,
            "fileKey": self.file_key,
            "contentHash": self.content_hash,
            "storedAt": self.stored_at,
            "spec": self.spec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecRecord":
        """Create a record from a dictionary."""
        return cls(
            node_id=data["nodeId"],
            file_key=data["fileKey"],
            content_hash=data["contentHash"],
            spec=data["spec"],
            stored_at=data["storedAt"],
        )


@dataclass
class ChangeDetectionResult:
    """Outcome of comparing a freshly built record with the stored one."""
    has_changed: bool
    previous: Optional[SpecRecord]
    current: SpecRecord

    @property
    def is_new(self) -> bool:
        """True on the first observation of a node."""
        return self.previous is None


@dataclass
class SpecInput:
    """A normalized spec ready to be stored."""
    file_key: str
    node_id: str
    spec: Dict[str, Any]


def compute_content_hash(serialized: str) -> str:
    """SHA-256 hex digest of stable-serialized spec text."""
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _encode_part(value: str, label: str) -> str:
    """Percent-encode one key part so it is a single safe path segment."""
    if not isinstance(value, str) or not value:
        raise StorageError(f"Cannot build a storage key from an empty {label}")
    # Encoding '.' as well rules out '.', '..' and hidden files
    return quote(value, safe="").replace(".", "%2E")


def storage_key(file_key: str, node_id: str) -> str:
    """
    Derive the storage key for a (file key, node id) pair.

    The mapping is a pure function and injective: each part is
    percent-encoded, so distinct pairs never share a key and no part can
    contain a path separator, a control character or a relative segment.

    Returns:
        ``"<encoded file key>/<encoded node id>"``

    Raises:
        StorageError: If either part is empty.
    """
    return f"{_encode_part(file_key, 'file key')}/{_encode_part(node_id, 'node id')}"


def atomic_write_text(path: Union[str, Path], text: str) -> Path:
    """
    Write text so the target is either fully replaced or left untouched.

    The content goes to a temporary file in the target directory, which is
    then renamed over the target.

    Raises:
        StorageError: If the directory cannot be created or written.
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, str(path))
        tmp_name = None
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}", path=str(path), cause=e)
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
    return path


def detect_changes(previous: Optional[SpecRecord], current: SpecRecord) -> ChangeDetectionResult:
    """
    Compare two records by content hash only.

    A missing previous record is a first observation and reports no change.
    """
    has_changed = previous is not None and previous.content_hash != current.content_hash
    return ChangeDetectionResult(has_changed=has_changed, previous=previous, current=current)


class SpecStore:
    """
    File-backed store of normalized specs.

    This class provides methods to:
    - Build records with content hashes
    - Save, load, enumerate and remove records
    - Save a fresh spec and report whether it changed
    """

    def __init__(self, specs_dir: Union[str, Path]):
        """
        Initialize the store.

        Args:
            specs_dir: Root directory of the store. Created lazily on first save.
        """
        self.specs_dir = Path(specs_dir)

    def get_spec_path(self, file_key: str, node_id: str) -> Path:
        """Get the record file path for a (file key, node id) pair."""
        return self.specs_dir / f"{storage_key(file_key, node_id)}{SPEC_SUFFIX}"

    def build_record(
        self,
        file_key: str,
        node_id: str,
        spec: Dict[str, Any],
        stored_at: Optional[str] = None
    ) -> SpecRecord:
        """Hash a normalized spec and wrap it in a SpecRecord."""
        return SpecRecord(
            node_id=node_id,
            file_key=file_key,
            content_hash=compute_content_hash(to_stable_json(spec)),
            spec=spec,
            stored_at=stored_at or datetime.now(timezone.utc).isoformat(),
        )

    def save_spec(self, record: SpecRecord) -> Path:
        """
        Write or overwrite a record.

        Returns:
            Path to the saved record file.

        Raises:
            StorageError: If the key cannot be sanitized or the write fails.
        """
        filepath = self.get_spec_path(record.file_key, record.node_id)
        atomic_write_text(filepath, json.dumps(record.to_dict(), indent=2, sort_keys=True, ensure_ascii=False))
        logger.info(f"Saved spec {record.file_key}/{record.node_id} to {filepath}")
        return filepath

    def load_spec(self, file_key: str, node_id: str) -> Optional[SpecRecord]:
        """
        Load the stored record for a node.

        Returns:
            The record, or None if the node has never been stored.

        Raises:
            StorageError: If the record exists but cannot be read.
        """
        filepath = self.get_spec_path(file_key, node_id)
        if not filepath.exists():
            return None
        return self._read_record(filepath)

    def load_all_specs(self, file_key: str) -> List[SpecRecord]:
        """
        Load every record stored for a file.

        Records that cannot be read are logged and skipped.

        Returns:
            Records sorted by file name.
        """
        file_dir = self.specs_dir / _encode_part(file_key, "file key")
        if not file_dir.is_dir():
            return []

        records = []
        for filepath in sorted(file_dir.glob(f"*{SPEC_SUFFIX}")):
            try:
                records.append(self._read_record(filepath))
            except StorageError as e:
                logger.warning(f"Skipping unreadable spec: {e.message}")
        return records

    def list_file_keys(self) -> List[str]:
        """List the file keys that have at least one stored record."""
        if not self.specs_dir.is_dir():
            return []
        keys = set()
        for file_dir in self.specs_dir.iterdir():
            if not file_dir.is_dir():
                continue
            for record in self._iter_records(file_dir):
                keys.add(record.file_key)
                break
        return sorted(keys)

    def remove_spec(self, file_key: str, node_id: str) -> bool:
        """
        Delete a stored record. Removing an absent record is not an error.

        Returns:
            True if a record was deleted.
        """
        filepath = self.get_spec_path(file_key, node_id)
        try:
            filepath.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to remove {filepath}: {e}", path=str(filepath), cause=e)
        logger.info(f"Removed spec {file_key}/{node_id}")
        return True

    def prune(self, file_key: str, tracked_node_ids: Iterable[str]) -> List[SpecRecord]:
        """
        Remove records of nodes that are no longer tracked.

        Returns:
            The removed records.
        """
        tracked = set(tracked_node_ids)
        removed = []
        for record in self.load_all_specs(file_key):
            if record.node_id not in tracked:
                self.remove_spec(record.file_key, record.node_id)
                removed.append(record)
        return removed

    def save_and_detect_changes(self, spec_input: SpecInput) -> ChangeDetectionResult:
        """
        Persist the latest spec for a node and report whether it changed.

        The current record is always written, changed or not. When the hash
        is unchanged the previous ``stored_at`` is kept so the file contents
        stay identical.

        Raises:
            StorageError: If the previous record is unreadable or the write fails.
        """
        previous = self.load_spec(spec_input.file_key, spec_input.node_id)
        current = self.build_record(spec_input.file_key, spec_input.node_id, spec_input.spec)

        if previous is not None and previous.content_hash == current.content_hash:
            current.stored_at = previous.stored_at

        self.save_spec(current)
        return detect_changes(previous, current)

    def _read_record(self, filepath: Path) -> SpecRecord:
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return SpecRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Failed to read spec file {filepath}: {e}", path=str(filepath), cause=e)

    def _iter_records(self, file_dir: Path):
        for filepath in sorted(file_dir.glob(f"*{SPEC_SUFFIX}")):
            try:
                yield self._read_record(filepath)
            except StorageError as e:
                logger.warning(f"Skipping unreadable spec: {e.message}")
