"""Utility functions for convergence-harness."""

from datetime import datetime, timezone
from pathlib import Path
import os
import tempfile


def humanize_size(size: float) -> str:
    """Convert bytes to human-readable format."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024.:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def format_mode(mode: int) -> str:
    """Format permission bits the way ls -l shows them, e.g. 0644."""
    return f"{mode & 0o7777:04o}"


def format_mtime(mtime: float) -> str:
    """Format an epoch timestamp as UTC, second resolution."""
    if not mtime:
        return "-"
    return datetime.fromtimestamp(mtime, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def get_iso_timestamp() -> str:
    """Get current timestamp in ISO 8601 format for reports."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def atomic_write_text(path: Path, text: str) -> None:
    """Atomically write text to file with crash safety.

    Writes to a temp file in the same directory, fsyncs it, then renames it
    over the target so readers never observe a partially written report.

    Args:
        path: Target file path
        text: Text content to write
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.tmp-",
        suffix=""
    ) as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
        tmp = Path(f.name)

    try:
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
