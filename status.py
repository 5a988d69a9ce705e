"""
Spec store status summary, shown by ``--status``.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any

from .storage import SpecStore


def get_time_ago(timestamp_str: str, now: Optional[datetime] = None) -> str:
    """Convert an ISO-8601 timestamp to a human-readable 'time ago' format."""
    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (TypeError, ValueError):
        return "unknown"

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    diff = now - dt

    if diff.days > 0:
        return f"{diff.days} day{'s' if diff.days > 1 else ''} ago"

    hours = diff.seconds // 3600
    if diff.days == 0 and hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"

    minutes = diff.seconds // 60
    if diff.days == 0 and minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"

    return "just now"


def show_status(store: SpecStore, file_key: Optional[str] = None) -> Dict[str, Any]:
    """Collect store status and return status info."""
    file_keys = [file_key] if file_key else store.list_file_keys()

    status = {
        "specs_dir": str(store.specs_dir),
        "files": {},
        "total_specs": 0,
        "last_stored_at": None,
        "last_stored_ago": None,
    }

    for key in file_keys:
        records = store.load_all_specs(key)
        status["files"][key] = len(records)
        status["total_specs"] += len(records)
        for record in records:
            if status["last_stored_at"] is None or record.stored_at > status["last_stored_at"]:
                status["last_stored_at"] = record.stored_at

    if status["last_stored_at"]:
        status["last_stored_ago"] = get_time_ago(status["last_stored_at"])

    return status


def print_status(status: Dict[str, Any]) -> None:
    """Print the status collected by show_status."""
    print()
    print("=" * 60)
    print("Figma Sentinel Status")
    print("=" * 60)

    if status["total_specs"]:
        print(f"  Last update: {status['last_stored_at']} ({status['last_stored_ago']})")
        for key, count in sorted(status["files"].items()):
            print(f"  {key}: {count} node{'s' if count != 1 else ''} tracked")
    else:
        print("  No specs stored yet")

    print(f"  Total specs: {status['total_specs']}")
    print(f"  Storage: {status['specs_dir']}")
    print("=" * 60)
    print()
