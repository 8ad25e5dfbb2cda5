"""Gitignore-style exclusion of engine bookkeeping inside folder roots."""

from pathlib import Path
from typing import Iterable, Optional

from pathspec import PathSpec
from pathspec.patterns import GitWildMatchPattern

from .constants import FOLDER_MARKER, VERSIONS_DIR


# Patterns never part of a folder's synchronized contents
DEFAULTS = [
    # Folder marker (file or directory depending on engine version)
    FOLDER_MARKER,
    f"{FOLDER_MARKER}/",

    # Archived versions kept by simple/staggered versioning
    f"{VERSIONS_DIR}/",

    # In-flight temporaries the engine renames into place
    ".syncthing.*.tmp",
    "~syncthing~*.tmp",
]


class IgnoreSpec:
    """Manages gitignore-style patterns for snapshot exclusion."""

    def __init__(self, extra: Iterable[str] = (), root: Optional[Path] = None):
        """Initialize ignore spec with default and custom patterns.

        Args:
            extra: Additional patterns to include
            root: Folder root; a `.harnessignore` file there adds patterns
        """
        patterns = list(DEFAULTS)

        if root is not None:
            ignore_file = root / ".harnessignore"
            if ignore_file.is_file():
                for line in ignore_file.read_text().splitlines():
                    line = line.strip()
                    if line and not line.startswith("#"):
                        patterns.append(line)

        patterns.extend(extra)
        self.patterns = patterns
        self.spec = PathSpec.from_lines(GitWildMatchPattern, patterns)

    def is_ignored(self, relpath: str) -> bool:
        """Check if a folder-relative POSIX path should be ignored."""
        return self.spec.match_file(relpath)

    def should_traverse(self, dirpath: str) -> bool:
        """Check if a directory should be descended into while scanning.

        Args:
            dirpath: Folder-relative directory path in POSIX format

        Returns:
            True if the directory should be traversed
        """
        if not dirpath.endswith("/"):
            dirpath = dirpath + "/"
        return not self.spec.match_file(dirpath)
