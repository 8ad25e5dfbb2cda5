"""Directory snapshots with content digests."""

import logging
import os
import stat
from pathlib import Path
from typing import Dict, Optional, Union

from .core import EntryKind, FileEntry, Snapshot
from .errors import SnapshotError
from .hashing import compute_file_digest, compute_link_digest
from .ignore import IgnoreSpec

logger = logging.getLogger(__name__)


def scan_directory(root: Union[str, Path], ignore: Optional[IgnoreSpec] = None) -> Snapshot:
    """
    Walk a folder root and return its current contents.

    This is the expensive operation - computes SHA256 for every file. Nothing
    is cached between calls, so two scans of the same directory can be
    compared to detect ongoing writes.

    Args:
        root: Folder root to scan.
        ignore: Exclusion patterns; engine bookkeeping is skipped by default.

    Returns:
        Snapshot keyed by POSIX path relative to root.

    Raises:
        SnapshotError: If root or anything below it cannot be read.
    """
    root = Path(root)
    if ignore is None:
        ignore = IgnoreSpec()

    try:
        root_stat = root.stat()
    except OSError as e:
        raise SnapshotError(str(root), e.strerror or str(e)) from e
    if not stat.S_ISDIR(root_stat.st_mode):
        raise SnapshotError(str(root), "not a directory")

    entries: Dict[str, FileEntry] = {}
    stack = [(root, "")]
    while stack:
        current, prefix = stack.pop()
        try:
            with os.scandir(current) as it:
                children = list(it)
        except OSError as e:
            raise SnapshotError(str(current), e.strerror or str(e)) from e

        for child in children:
            relpath = f"{prefix}{child.name}"
            try:
                if child.is_dir(follow_symlinks=False):
                    if not ignore.should_traverse(relpath):
                        continue
                elif ignore.is_ignored(relpath):
                    continue
                st = child.stat(follow_symlinks=False)
                if stat.S_ISDIR(st.st_mode):
                    entries[relpath] = FileEntry(path=relpath, kind=EntryKind.DIR)
                    stack.append((Path(child.path), f"{relpath}/"))
                    continue
                if stat.S_ISLNK(st.st_mode):
                    entries[relpath] = FileEntry(
                        path=relpath,
                        kind=EntryKind.SYMLINK,
                        digest=compute_link_digest(Path(child.path)),
                        mtime=st.st_mtime,
                    )
                elif stat.S_ISREG(st.st_mode):
                    entries[relpath] = FileEntry(
                        path=relpath,
                        kind=EntryKind.FILE,
                        size=st.st_size,
                        mtime=st.st_mtime,
                        digest=compute_file_digest(Path(child.path)),
                        mode=stat.S_IMODE(st.st_mode),
                    )
                else:
                    logger.debug("Skipping special file %s", child.path)
            except OSError as e:
                raise SnapshotError(str(root), f"{relpath}: {e.strerror or e}") from e

    logger.debug("Scanned %s: %d entries", root, len(entries))
    return Snapshot(root=str(root), entries=entries)

