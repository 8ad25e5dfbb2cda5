"""Pseudo-random file trees and deterministic mutations.

All randomness comes from a `random.Random` passed in by the caller, and
timestamps are computed from an injected `now`, so a fixed seed reproduces
the same tree byte for byte. Expected state is never predicted from the
random choices; it is read back from disk after generation (see
scenario.py).
"""

import logging
import os
import random
import shutil
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .constants import (
    ALTER_NEW_FILES,
    ALTER_SIZE_EXP,
    MAX_AGE_SECONDS,
    MAX_SIZE_JITTER,
)
from .errors import GenerationError
from .ignore import IgnoreSpec

logger = logging.getLogger(__name__)

CHUNK_SIZE = 65536
DOTFILE_RATIO = 0.05
OVERWRITE_SIZE = 1024


class SeedSource:
    """Endless byte stream that cycles over the contents of a seed file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        try:
            self.data = self.path.read_bytes()
        except OSError as e:
            raise GenerationError(str(self.path.parent), f"cannot read seed source {self.path}: {e}") from e
        if not self.data:
            raise GenerationError(str(self.path.parent), f"seed source {self.path} is empty")

    def chunks(self, offset: int, length: int):
        """Yield `length` bytes starting at `offset`, wrapping around."""
        n = len(self.data)
        pos = offset % n
        while length > 0:
            take = min(length, n - pos, CHUNK_SIZE)
            yield self.data[pos:pos + take]
            length -= take
            pos = (pos + take) % n

    def read(self, offset: int, length: int) -> bytes:
        return b"".join(self.chunks(offset, length))


@dataclass
class AlterationReport:
    """What alter_files did to a tree, for logging and assertions."""

    directory: str
    deleted: List[str] = field(default_factory=list)
    overwritten: List[str] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)
    appended: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (len(self.deleted) + len(self.overwritten) + len(self.truncated)
                + len(self.appended) + len(self.added))

    def __str__(self) -> str:
        return (f"{self.directory}: {len(self.deleted)} deleted, {len(self.overwritten)} overwritten, "
                f"{len(self.truncated)} truncated, {len(self.appended)} appended, {len(self.added)} added")


def max_tree_size(count: int, size_exp: int) -> int:
    """Upper bound on the bytes generate_files writes."""
    largest = 1 << (size_exp - 1)
    return count * (largest + min(largest, MAX_SIZE_JITTER))


def random_name(rng: random.Random) -> str:
    return f"{rng.getrandbits(64):016x}"


def generate_files(
    directory: Union[str, Path],
    count: int,
    size_exp: int,
    seed_source: SeedSource,
    rng: Optional[random.Random] = None,
    now: Optional[float] = None,
) -> List[str]:
    """Create `count` files with random names, sizes, modes and mtimes.

    Files land at `<n[0]>/<n[0:2]>/<n>` below `directory`; about one in
    twenty names is a dotfile, and since a `.` path component collapses
    those land one level higher, at `<n[0:2]>/<n>`. Sizes are `2**k` plus up to 128 KiB of jitter
    with `k` drawn from `[0, size_exp)`.

    Args:
        directory: Folder root, created if missing.
        count: Number of files to create.
        size_exp: Exponent bounding file size.
        seed_source: Byte source for file content.
        rng: Random generator; a fresh unseeded one if omitted.
        now: Reference time for mtimes (defaults to the current time).

    Returns:
        Folder-relative POSIX paths of the created files.

    Raises:
        GenerationError: On any filesystem error.
    """
    if size_exp < 1:
        raise ValueError("size_exp must be at least 1")
    directory = Path(directory)
    rng = rng or random.Random()
    now = time.time() if now is None else now

    created = []
    try:
        directory.mkdir(parents=True, exist_ok=True)
        while len(created) < count:
            name = random_name(rng)
            if rng.random() < DOTFILE_RATIO:
                name = "." + name
            parent = directory / name[0] / name[0:2]
            target = parent / name
            if target.exists():
                continue
            parent.mkdir(parents=True, exist_ok=True)

            size = 1 << rng.randrange(size_exp)
            size += rng.randrange(min(size, MAX_SIZE_JITTER))
            offset = rng.randrange(len(seed_source.data))
            with target.open("wb") as f:
                for chunk in seed_source.chunks(offset, size):
                    f.write(chunk)

            os.chmod(target, rng.randrange(0o777) | 0o400)
            mtime = now - rng.randrange(MAX_AGE_SECONDS)
            os.utime(target, (mtime, mtime))
            created.append(target.relative_to(directory).as_posix())
    except OSError as e:
        raise GenerationError(str(directory), str(e)) from e

    logger.debug("Generated %d files in %s", len(created), directory)
    return created


def alter_files(
    directory: Union[str, Path],
    seed_source: SeedSource,
    rng: Optional[random.Random] = None,
    now: Optional[float] = None,
    new_files: int = ALTER_NEW_FILES,
    size_exp: int = ALTER_SIZE_EXP,
    ignore: Optional[IgnoreSpec] = None,
) -> AlterationReport:
    """Mutate a pseudo-random subset of an existing tree.

    Every entry below the top level has a one in ten chance of being
    deleted; every regular file additionally has a one in ten chance each of
    having a kilobyte overwritten at a random offset, being truncated to half
    its size, or being appended to. Afterwards `new_files` fresh files are
    generated. Entries are visited in sorted order so a seeded `rng` gives the
    same result every time.

    Raises:
        GenerationError: On any filesystem error.
    """
    directory = Path(directory)
    rng = rng or random.Random()
    ignore = ignore or IgnoreSpec()
    report = AlterationReport(directory=str(directory))

    try:
        _alter_tree(directory, directory, seed_source, rng, ignore, report)
    except OSError as e:
        raise GenerationError(str(directory), str(e)) from e

    report.added = generate_files(directory, new_files, size_exp, seed_source, rng=rng, now=now)
    logger.info("Altered %s", report)
    return report


def _alter_tree(root, current, seed_source, rng, ignore, report):
    for entry in sorted(current.iterdir(), key=lambda p: p.name):
        relpath = entry.relative_to(root).as_posix()
        is_dir = entry.is_dir() and not entry.is_symlink()
        if ignore.is_ignored(relpath + "/" if is_dir else relpath):
            continue

        r = rng.randrange(10)
        if r == 0 and "/" in relpath:
            if is_dir:
                shutil.rmtree(entry)
            else:
                entry.unlink()
            report.deleted.append(relpath)
            continue

        if is_dir:
            _alter_tree(root, entry, seed_source, rng, ignore, report)
            continue
        if not entry.is_file() or entry.is_symlink():
            continue

        if r in (1, 2, 3):
            _ensure_owner_writable(entry)
        size = entry.stat().st_size
        if r == 1:
            pos = rng.randrange(size) if size > OVERWRITE_SIZE else 0
            data = seed_source.read(rng.randrange(len(seed_source.data)), OVERWRITE_SIZE)
            with entry.open("r+b") as f:
                f.seek(pos)
                f.write(data)
            report.overwritten.append(relpath)
        elif r == 2:
            with entry.open("r+b") as f:
                f.truncate(size // 2)
            report.truncated.append(relpath)
        elif r == 3:
            data = seed_source.read(rng.randrange(len(seed_source.data)), rng.randrange(1, OVERWRITE_SIZE))
            with entry.open("ab") as f:
                f.write(data)
            report.appended.append(relpath)


def _ensure_owner_writable(path: Path) -> None:
    mode = stat.S_IMODE(path.stat().st_mode)
    if not mode & stat.S_IWUSR:
        os.chmod(path, mode | stat.S_IWUSR)


def write_marker_file(path: Union[str, Path], text: str) -> Path:
    """Create a small text file used for the append-without-mtime check."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        os.chmod(path, 0o644)
    except OSError as e:
        raise GenerationError(str(path.parent), str(e)) from e
    return path


def append_preserving_mtime(path: Union[str, Path], data: str) -> None:
    """Append to a file and reset its mtime to what it was before.

    Only the content digest can tell the file changed afterwards.
    """
    path = Path(path)
    try:
        before = path.stat()
        with path.open("a") as f:
            f.write(data)
        os.utime(path, ns=(before.st_atime_ns, before.st_mtime_ns))
    except OSError as e:
        raise GenerationError(str(path.parent), str(e)) from e
    logger.debug("Appended %d bytes to %s keeping mtime", len(data), path)
