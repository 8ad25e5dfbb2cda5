"""Snapshot comparison and merge - stable module for expected-state logic."""

import logging
from typing import Dict, List

from .core import (
    ComparisonResult,
    EntryKind,
    FileEntry,
    Mismatch,
    MismatchKind,
    Snapshot,
)
from .errors import MergeConflictError, SnapshotMismatchError
from .hashing import short_digest
from .utils import format_mode, format_mtime

logger = logging.getLogger(__name__)

MERGE_POLICIES = ("error", "last-wins")


def compare_snapshots(
    actual: Snapshot,
    expected: Snapshot,
    check_permissions: bool = True,
) -> ComparisonResult:
    """
    Compare an actual folder snapshot against the expected one.

    Args:
        actual: Snapshot read from a replica's folder.
        expected: Snapshot the folder should have converged to.
        check_permissions: Compare permission bits of regular files.

    Returns:
        ComparisonResult with every discrepancy found.

    Note:
        Equality is decided on the content digest, never on mtime. An mtime
        difference on a file whose digest matches is recorded as tolerated;
        a file edited without touching its mtime still differs by digest.
    """
    mismatches: List[Mismatch] = []
    tolerated: List[Mismatch] = []

    for path in sorted(expected.paths - actual.paths):
        mismatches.append(Mismatch(path=path, kind=MismatchKind.MISSING))
    for path in sorted(actual.paths - expected.paths):
        mismatches.append(Mismatch(path=path, kind=MismatchKind.EXTRA))

    for path in sorted(actual.paths & expected.paths):
        a = actual.entries[path]
        e = expected.entries[path]

        if a.kind != e.kind:
            mismatches.append(Mismatch(
                path=path, kind=MismatchKind.KIND, actual=a.kind.value, expected=e.kind.value
            ))
            continue
        if a.kind == EntryKind.DIR:
            continue

        if a.size != e.size:
            mismatches.append(Mismatch(
                path=path, kind=MismatchKind.SIZE, actual=str(a.size), expected=str(e.size)
            ))
        if a.digest != e.digest:
            mismatches.append(Mismatch(
                path=path,
                kind=MismatchKind.CONTENT,
                actual=short_digest(a.digest),
                expected=short_digest(e.digest),
            ))
        if check_permissions and a.kind == EntryKind.FILE and a.mode != e.mode:
            mismatches.append(Mismatch(
                path=path,
                kind=MismatchKind.PERMISSIONS,
                actual=format_mode(a.mode),
                expected=format_mode(e.mode),
            ))
        if int(a.mtime) != int(e.mtime) and a.digest == e.digest:
            tolerated.append(Mismatch(
                path=path,
                kind=MismatchKind.MTIME,
                actual=format_mtime(a.mtime),
                expected=format_mtime(e.mtime),
            ))

    return ComparisonResult(
        mismatches=mismatches,
        tolerated=tolerated,
        actual_count=len(actual),
        expected_count=len(expected),
    )


def assert_snapshots_equal(
    actual: Snapshot,
    expected: Snapshot,
    label: str = "",
    check_permissions: bool = True,
) -> ComparisonResult:
    """Compare and raise SnapshotMismatchError on any discrepancy."""
    result = compare_snapshots(actual, expected, check_permissions=check_permissions)
    if not result.ok:
        raise SnapshotMismatchError(label or actual.root or "snapshot", result)
    if result.tolerated:
        logger.debug(
            "%s: %d file(s) differ only in mtime", label or actual.root, len(result.tolerated)
        )
    return result


def merge_snapshots(*snapshots: Snapshot, on_conflict: str = "error") -> Snapshot:
    """
    Compute the expected state of a folder first shared between replicas that
    were populated independently.

    The result is the union of all paths. Directories present in several
    inputs merge silently. A file path present in several inputs with
    different content is a collision.

    Args:
        snapshots: Per-replica snapshots, in replica order.
        on_conflict: "error" raises MergeConflictError on collisions;
            "last-wins" keeps the entry from the last snapshot holding it.

    Returns:
        Merged Snapshot (root is None; it does not describe a real directory).
    """
    if on_conflict not in MERGE_POLICIES:
        raise ValueError(f"on_conflict must be one of {MERGE_POLICIES}, got '{on_conflict}'")

    merged: Dict[str, FileEntry] = {}
    conflicts = []
    for snapshot in snapshots:
        for path, entry in snapshot.entries.items():
            previous = merged.get(path)
            if previous is not None and _collides(previous, entry):
                conflicts.append(path)
                if on_conflict == "last-wins":
                    logger.warning("Merge collision on %s, keeping %s", path, snapshot.root)
            merged[path] = entry

    if conflicts and on_conflict == "error":
        raise MergeConflictError(sorted(set(conflicts)))

    return Snapshot(entries=merged)


def _collides(a: FileEntry, b: FileEntry) -> bool:
    if a.kind != b.kind:
        return True
    if a.kind == EntryKind.DIR:
        return False
    return a.digest != b.digest or a.mode != b.mode
