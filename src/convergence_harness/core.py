"""Core data models for convergence-harness.

Snapshots describe a directory tree at one point in time. They are plain
data: reading a directory always produces a fresh Snapshot (see
snapshot.py), and expected state is derived from snapshots rather than
mutated in place.
"""

from enum import Enum
from typing import Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import VERSIONING_TYPES
from .utils import format_mode, humanize_size


# ============= Snapshot Model =============

class EntryKind(str, Enum):
    """Kind of filesystem entry."""

    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"


class FileEntry(BaseModel):
    """Metadata for a single path inside a folder.

    Directories carry no digest, zero size and zero mtime so that only their
    presence is compared.
    """

    path: str  # POSIX, relative to folder root
    kind: EntryKind = EntryKind.FILE
    size: int = 0
    mtime: float = 0.0
    digest: Optional[str] = None  # sha256:...
    mode: int = 0  # permission bits only

    def __str__(self) -> str:
        return f"{self.path} {self.kind.value} {format_mode(self.mode)} {self.size} {self.digest or '-'}"


class Snapshot(BaseModel):
    """A directory tree keyed by relative path."""

    root: Optional[str] = None
    entries: Dict[str, FileEntry] = Field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: str) -> bool:
        return path in self.entries

    def sorted_entries(self) -> Iterator[FileEntry]:
        for path in sorted(self.entries):
            yield self.entries[path]

    def get(self, path: str) -> Optional[FileEntry]:
        return self.entries.get(path)

    @property
    def paths(self) -> set:
        return set(self.entries)

    @property
    def files(self) -> Dict[str, FileEntry]:
        """Regular files only."""
        return {p: e for p, e in self.entries.items() if e.kind == EntryKind.FILE}

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries.values() if e.kind == EntryKind.FILE)

    def summary(self) -> str:
        files = len(self.files)
        dirs = sum(1 for e in self.entries.values() if e.kind == EntryKind.DIR)
        return f"{files} files, {dirs} dirs, {humanize_size(self.total_size)}"


# ============= Comparison =============

class MismatchKind(str, Enum):
    """Type of discrepancy between actual and expected snapshots."""

    MISSING = "missing"      # expected but absent
    EXTRA = "extra"          # present but not expected
    KIND = "kind"
    SIZE = "size"
    CONTENT = "content"
    PERMISSIONS = "permissions"
    MTIME = "mtime"          # tolerated when content matches


class Mismatch(BaseModel):
    """Single discrepancy for one path."""

    path: str
    kind: MismatchKind
    actual: Optional[str] = None
    expected: Optional[str] = None

    def __str__(self) -> str:
        if self.kind == MismatchKind.MISSING:
            return f"missing {self.path}"
        if self.kind == MismatchKind.EXTRA:
            return f"extra {self.path}"
        return f"{self.kind.value} mismatch on {self.path}: actual {self.actual} != expected {self.expected}"


class ComparisonResult(BaseModel):
    """Result of comparing an actual snapshot against the expected one."""

    mismatches: List[Mismatch] = Field(default_factory=list)
    tolerated: List[Mismatch] = Field(default_factory=list)
    actual_count: int = 0
    expected_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.mismatches

    @property
    def missing(self) -> List[str]:
        return [m.path for m in self.mismatches if m.kind == MismatchKind.MISSING]

    @property
    def extra(self) -> List[str]:
        return [m.path for m in self.mismatches if m.kind == MismatchKind.EXTRA]

    @property
    def summary(self) -> Dict[MismatchKind, int]:
        """Get summary counts by mismatch kind."""
        counts = {}
        for mismatch in self.mismatches:
            counts[mismatch.kind] = counts.get(mismatch.kind, 0) + 1
        return counts

    def describe(self, limit: int = 5) -> str:
        if self.ok:
            return "contents match"
        parts = [f"{count} {kind.value}" for kind, count in sorted(self.summary.items())]
        head = (
            f"{len(self.mismatches)} mismatch(es) ({', '.join(parts)}); "
            f"{self.actual_count} actual vs {self.expected_count} expected entries"
        )
        shown = "; ".join(str(m) for m in self.mismatches[:limit])
        if len(self.mismatches) > limit:
            shown += f"; ... {len(self.mismatches) - limit} more"
        return f"{head}: {shown}"


# ============= Versioning =============

class VersioningConfig(BaseModel):
    """Folder versioning policy as the replica's config represents it.

    The harness never interprets the parameters; it only hands them to the
    replica and checks they were accepted.
    """

    type: str = ""  # "" means no versioning
    params: Dict[str, str] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if value is None or value == "none":
            return ""
        if value not in VERSIONING_TYPES:
            raise ValueError(f"unknown versioning type '{value}' (expected none, simple or staggered)")
        return value

    @property
    def label(self) -> str:
        return self.type or "none"

    @classmethod
    def named(cls, name: str) -> "VersioningConfig":
        """Build the policy used by the standard scenarios."""
        if name == "simple":
            return cls(type="simple", params={"keep": "5"})
        return cls(type=name)


# ============= Results =============

class RoundResult(BaseModel):
    """Timing and outcome of one rescan/converge/compare round."""

    iteration: int
    convergence_seconds: float = 0.0
    settle_seconds: float = 0.0
    compared: List[str] = Field(default_factory=list)
    passed: bool = False


class ScenarioResult(BaseModel):
    """Outcome of a full scenario run."""

    versioning: str = "none"
    iterations_planned: int = 0
    iterations_completed: int = 0
    failures: List[str] = Field(default_factory=list)
    rounds: List[RoundResult] = Field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def passed(self) -> bool:
        return not self.failures and self.iterations_completed == self.iterations_planned
