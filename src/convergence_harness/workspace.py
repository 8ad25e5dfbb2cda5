"""Test workspace owning every directory a scenario touches."""

import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .config import FolderGroup, HarnessConfig, ReplicaSpec
from .errors import WorkspaceError

logger = logging.getLogger(__name__)


class TestWorkspace:
    """Resolves replica homes and folder directories under one root.

    Components receive the workspace explicitly instead of relying on the
    process working directory, so several scenarios can run side by side.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, root: Union[str, Path], config: HarnessConfig):
        self.root = Path(root).resolve()
        self.config = config

    def home_dir(self, replica: Union[str, ReplicaSpec]) -> Path:
        """Home (config and index state) of a replica."""
        spec = replica if isinstance(replica, ReplicaSpec) else self.config.replica(replica)
        return self.root / spec.home

    def folder_dir(self, group: Union[str, FolderGroup], instance: str) -> Path:
        """Content directory of a folder on one replica."""
        if isinstance(group, str):
            found = self.config.folder(group)
            if found is None:
                raise KeyError(group)
            group = found
        return self.root / group.directory_for(instance)

    def member_dirs(self, group: FolderGroup) -> List[Path]:
        return [self.root / name for name in group.members.values()]

    @property
    def seed_source(self) -> Path:
        path = Path(self.config.seed_source)
        return path if path.is_absolute() else self.root / path

    def clean_targets(self) -> List[Path]:
        """Everything removed before a run: folder contents and replica indexes."""
        targets = []
        for group in self.config.folders:
            targets.extend(self.member_dirs(group))
        for spec in self.config.replicas:
            targets.extend(sorted(self.home_dir(spec).glob("index*")))
        return targets

    def clean(self, extra: Optional[Iterable[Path]] = None) -> None:
        """Remove folder directories and index databases.

        Replica homes themselves (and their configuration) are kept.

        Raises:
            WorkspaceError: If something could not be removed.
        """
        targets = self.clean_targets() + list(extra or [])
        for target in targets:
            try:
                if target.is_dir() and not target.is_symlink():
                    _make_tree_writable(target)
                    shutil.rmtree(target)
                elif target.exists() or target.is_symlink():
                    target.unlink()
            except OSError as e:
                raise WorkspaceError(f"Cannot remove {target}: {e}") from e
        logger.debug("Cleaned %d paths under %s", len(targets), self.root)

    def prepare(self) -> None:
        """Create every home and folder directory."""
        try:
            for spec in self.config.replicas:
                self.home_dir(spec).mkdir(parents=True, exist_ok=True)
            for group in self.config.folders:
                for directory in self.member_dirs(group):
                    directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"Cannot prepare workspace {self.root}: {e}") from e


def _make_tree_writable(root: Path) -> None:
    # Generated directories can end up without owner write permission
    for path in [root, *root.rglob("*")]:
        if path.is_dir() and not path.is_symlink():
            path.chmod(path.stat().st_mode | 0o700)
