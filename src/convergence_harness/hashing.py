"""Content fingerprints for snapshot entries.

Fingerprints are derived from file content only, so two files with identical
bytes hash identically regardless of their modification time. The comparator
relies on this to catch edits that deliberately leave mtime unchanged.
"""

from pathlib import Path
import hashlib
import os


def compute_file_digest(path: Path) -> str:
    """Fingerprint a regular file by its bytes.

    Returns:
        "sha256:<hex>"; mtime, mode and name play no part.
    """
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return f"sha256:{sha256.hexdigest()}"


def compute_link_digest(path: Path) -> str:
    """Fingerprint a symlink by its target, without following it."""
    target = os.readlink(path)
    return f"sha256:{hashlib.sha256(target.encode('utf-8')).hexdigest()}"


def short_digest(digest: str, length: int = 12) -> str:
    """Strip the algorithm prefix and shorten a digest for display."""
    if digest is None:
        return "-"
    return digest.split(":", 1)[-1][:length]


__all__ = [
    "compute_file_digest",
    "compute_link_digest",
    "short_digest",
]
