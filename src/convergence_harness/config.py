"""Harness configuration (stored as YAML, default harness.yaml)."""

import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .constants import (
    ALTER_NEW_FILES,
    ALTER_SIZE_EXP,
    APPEND_FILE_NAME,
    DEFAULT_API_KEY,
    DEFAULT_FILE_SIZE_EXP,
    DEFAULT_ITERATIONS,
    DEFAULT_NUM_FILES,
    ENV_API_KEY,
    ENV_BINARY,
)
from .errors import ConfigError


class ReplicaSpec(BaseModel):
    """One replica of the cluster."""

    instance: str
    home: str  # directory name inside the workspace
    port: int
    device_id: Optional[str] = None  # asked from the replica when unset
    extra_args: List[str] = Field(default_factory=list)


class FolderGroup(BaseModel):
    """A folder shared by a fixed subset of replicas."""

    id: str
    members: Dict[str, str]  # replica instance -> content directory name
    seeded: List[str] = Field(default_factory=list)
    source: Optional[str] = None  # replica whose copy is altered each round

    @model_validator(mode="after")
    def _default_roles(self):
        if not self.seeded:
            self.seeded = [next(iter(self.members))]
        if self.source is None:
            self.source = self.seeded[0]
        return self

    def directory_for(self, instance: str) -> str:
        return self.members[instance]


class AppendFile(BaseModel):
    """File appended to every round without changing its mtime."""

    folder: str = "default"
    replica: str = "1"
    name: str = APPEND_FILE_NAME


class LaunchConfig(BaseModel):
    """How replica processes are spawned."""

    binary: str = "syncthing"
    args: List[str] = Field(default_factory=lambda: [
        "-home", "{home}", "-gui-address", "127.0.0.1:{port}", "-gui-apikey", "{api_key}", "-no-browser",
    ])
    env: Dict[str, str] = Field(default_factory=lambda: {"STNORESTART": "1", "STNOUPGRADE": "1"})
    api_key: str = DEFAULT_API_KEY


class Timeouts(BaseModel):
    """Wall-clock budgets, in seconds."""

    startup: float = 30.0
    startup_grace: float = 0.5
    shutdown: float = 10.0
    ready: float = 120.0
    convergence: float = 300.0
    settle: float = 30.0
    poll_interval: float = 0.5
    max_poll_interval: float = 5.0
    backoff: float = 1.5
    settle_polls: int = 3
    request: float = 10.0


class HarnessConfig(BaseModel):
    """Full scenario configuration."""

    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    timeouts: Timeouts = Field(default_factory=Timeouts)
    replicas: List[ReplicaSpec] = Field(default_factory=list)
    folders: List[FolderGroup] = Field(default_factory=list)
    append_file: Optional[AppendFile] = Field(default_factory=AppendFile)
    versioning_replicas: List[str] = Field(default_factory=lambda: ["2"])
    versioning_folder: str = "default"
    num_files: int = DEFAULT_NUM_FILES
    file_size_exp: int = Field(default=DEFAULT_FILE_SIZE_EXP, ge=1)
    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=0)
    alter_new_files: int = Field(default=ALTER_NEW_FILES, ge=0)
    alter_size_exp: int = Field(default=ALTER_SIZE_EXP, ge=1)
    seed: Optional[int] = None
    seed_source: str = "LICENSE"
    merge_conflicts: str = "error"
    check_permissions: bool = True
    ignore: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_topology(self):
        instances = [r.instance for r in self.replicas]
        if len(set(instances)) != len(instances):
            raise ValueError("replica instances must be unique")
        ports = [r.port for r in self.replicas]
        if len(set(ports)) != len(ports):
            raise ValueError("replica ports must be distinct")
        known = set(instances)
        for group in self.folders:
            unknown = set(group.members) - known
            if unknown:
                raise ValueError(f"folder '{group.id}' references unknown replicas: {sorted(unknown)}")
            if not set(group.seeded) <= set(group.members):
                raise ValueError(f"folder '{group.id}' seeds replicas that do not share it")
            if group.source not in group.members:
                raise ValueError(f"folder '{group.id}' source '{group.source}' does not share it")
        if self.append_file is not None and not self.folders and "append_file" not in self.model_fields_set:
            self.append_file = None
        if self.append_file is not None:
            group = self.folder(self.append_file.folder)
            if group is None or self.append_file.replica not in group.members:
                raise ValueError("append_file must name a folder shared by its replica")
        if self.merge_conflicts not in ("error", "last-wins"):
            raise ValueError("merge_conflicts must be 'error' or 'last-wins'")
        return self

    def replica(self, instance: str) -> ReplicaSpec:
        for spec in self.replicas:
            if spec.instance == instance:
                return spec
        raise KeyError(instance)

    def folder(self, folder_id: str) -> Optional[FolderGroup]:
        for group in self.folders:
            if group.id == folder_id:
                return group
        return None

    def folders_of(self, instance: str) -> List[FolderGroup]:
        """Folders a replica shares, in configuration order."""
        return [g for g in self.folders if instance in g.members]


def default_config() -> HarnessConfig:
    """Three replicas: "default" shared by all, "s12" by 1-2, "s23" by 2-3."""
    return HarnessConfig(
        replicas=[
            ReplicaSpec(instance="1", home="h1", port=8081),
            ReplicaSpec(instance="2", home="h2", port=8082),
            ReplicaSpec(instance="3", home="h3", port=8083),
        ],
        folders=[
            FolderGroup(id="default", members={"1": "s1", "2": "s2", "3": "s3"}, seeded=["1", "2", "3"]),
            FolderGroup(id="s12", members={"1": "s12-1", "2": "s12-2"}, seeded=["1"]),
            FolderGroup(id="s23", members={"2": "s23-2", "3": "s23-3"}, seeded=["2"]),
        ],
    )


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Apply CONVERGENCE_HARNESS_* environment variables."""
    binary = os.environ.get(ENV_BINARY)
    if binary:
        config.launch.binary = binary
    api_key = os.environ.get(ENV_API_KEY)
    if api_key:
        config.launch.api_key = api_key
    return config


def load_config(path: Optional[Union[str, Path]] = None) -> HarnessConfig:
    """Load harness configuration, falling back to the default topology.

    Raises:
        ConfigError: If the file cannot be read or does not validate.
    """
    if path is None:
        return apply_env_overrides(default_config())

    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config {path}: expected a mapping at top level")

    if not data.get("replicas") and not data.get("folders"):
        base = default_config().model_dump(include={"replicas", "folders"})
        data = {**base, **data}

    try:
        config = HarnessConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}:\n{e}") from e
    return apply_env_overrides(config)


def save_config(config: HarnessConfig, path: Union[str, Path]) -> None:
    """Write configuration as YAML."""
    from .utils import atomic_write_text

    data = config.model_dump(mode="json")
    atomic_write_text(Path(path), yaml.safe_dump(data, sort_keys=False))
