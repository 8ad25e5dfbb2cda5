"""Shared test fixtures and utilities."""

import os
import shutil

import pytest

from convergence_harness.config import default_config
from convergence_harness.core import VersioningConfig
from convergence_harness.process import ReplicaState
from convergence_harness.snapshot import scan_directory
from convergence_harness.workspace import TestWorkspace

SEED_TEXT = (
    "This Source Code Form is subject to the terms of the Mozilla Public\n"
    "License, v. 2.0. If a copy of the MPL was not distributed with this file,\n"
    "You can obtain one at http://mozilla.org/MPL/2.0/.\n"
)


class FakeClock:
    """Clock whose sleep() only advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeEngine:
    """Stands in for the synchronization engine across all fake replicas.

    A folder is synced lazily on the first completion query after a rescan:
    that query reports `lag` percent outstanding, later ones report 0.
    Syncing merges files new on any member into the source replica (paths
    the engine already synced and that vanished from the source are deletes)
    and then mirrors the source onto every other member.
    """

    def __init__(self, workspace, lag=50.0, compare_mtime_only=False):
        self.workspace = workspace
        self.config = workspace.config
        self.lag = lag
        self.compare_mtime_only = compare_mtime_only
        self.dirty = set()
        self.known = {}
        self.rescans = []
        self.queries = 0
        self.versioning = {}

    def rescan(self, instance, folder):
        self.rescans.append((instance, folder))
        self.dirty.add(folder)

    def completion(self, instance, folder, device):
        self.queries += 1
        if folder in self.dirty:
            self.dirty.discard(folder)
            self.sync(self.config.folder(folder))
            return 100.0 - self.lag
        return 100.0

    def sync(self, group):
        dirs = {i: self.workspace.folder_dir(group, i) for i in group.members}
        source = dirs[group.source]
        known = self.known.get(group.id, set())

        for instance, directory in dirs.items():
            if instance == group.source:
                continue
            for entry in scan_directory(directory).sorted_entries():
                if entry.path in known or (source / entry.path).exists():
                    continue
                self._copy_entry(directory, source, entry.path)

        reference = scan_directory(source)
        for instance, directory in dirs.items():
            if instance == group.source:
                continue
            current = scan_directory(directory)
            for path in sorted(current.paths - reference.paths, reverse=True):
                target = directory / path
                if target.is_dir():
                    shutil.rmtree(target, ignore_errors=True)
                elif target.exists():
                    target.unlink()
            for entry in reference.sorted_entries():
                theirs = current.get(entry.path)
                if theirs is not None and self._unchanged(entry, theirs):
                    continue
                self._copy_entry(source, directory, entry.path)
        self.known[group.id] = set(reference.paths)

    def _unchanged(self, ours, theirs):
        if self.compare_mtime_only:
            return int(ours.mtime) == int(theirs.mtime)
        return ours.digest == theirs.digest and ours.mode == theirs.mode

    def _copy_entry(self, src_root, dst_root, relpath):
        src = src_root / relpath
        dst = dst_root / relpath
        if src.is_dir():
            dst.mkdir(parents=True, exist_ok=True)
            return
        dst.parent.mkdir(parents=True, exist_ok=True)
        if dst.exists():
            dst.unlink()
        shutil.copy2(src, dst)


class FakeClient:
    """REST client double backed by a FakeEngine."""

    def __init__(self, engine, instance):
        self.engine = engine
        self.instance = instance

    def ping(self):
        return True

    def device_id(self):
        return f"DEVICE-{self.instance}"

    def completion(self, folder, device):
        return self.engine.completion(self.instance, folder, device)

    def outstanding(self, folder, device):
        return 100.0 - self.completion(folder, device)

    def rescan(self, folder):
        self.engine.rescan(self.instance, folder)

    def folder_state(self, folder):
        return "idle"

    def folder_versioning(self, folder):
        return self.engine.versioning.get((self.instance, folder), VersioningConfig())

    def set_folder_versioning(self, folder, versioning):
        key = (self.instance, folder)
        changed = self.engine.versioning.get(key) != versioning
        self.engine.versioning[key] = versioning
        return changed


class FakeReplica:
    """Replica double: no process, just lifecycle bookkeeping."""

    def __init__(self, spec, engine, events):
        self.spec = spec
        self.instance = spec.instance
        self.device_id = f"DEVICE-{spec.instance}"
        self.client = FakeClient(engine, spec.instance)
        self.state = ReplicaState.NOT_STARTED
        self.events = events

    def start(self):
        self.state = ReplicaState.RUNNING
        self.events.append(("start", self.instance))

    def stop(self):
        if self.state == ReplicaState.RUNNING:
            self.events.append(("stop", self.instance))
        self.state = ReplicaState.STOPPED
        return 0

    def restart(self):
        self.events.append(("restart", self.instance))


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def seed_file(tmp_path):
    """Seed source used to fill generated files."""
    path = tmp_path / "LICENSE"
    path.write_text(SEED_TEXT * 20)
    return path


@pytest.fixture
def small_config(seed_file):
    """Default three-replica topology with small, fast trees."""
    config = default_config()
    config.num_files = 20
    config.file_size_exp = 10
    config.iterations = 3
    config.alter_new_files = 5
    config.alter_size_exp = 10
    config.seed = 1234
    config.seed_source = str(seed_file)
    return config


@pytest.fixture
def workspace(tmp_path, small_config):
    return TestWorkspace(tmp_path / "ws", small_config)


@pytest.fixture
def fake_cluster(workspace):
    """Factory producing FakeReplicas sharing one FakeEngine."""
    engine = FakeEngine(workspace)
    events = []

    def factory(spec):
        return FakeReplica(spec, engine, events)

    factory.engine = engine
    factory.events = events
    return factory


@pytest.fixture
def write_file(tmp_path):
    """Factory fixture to write files relative to tmp_path."""
    def _write(path: str, content: str = "test content", mode: int = 0o644):
        file_path = tmp_path / path
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content)
        os.chmod(file_path, mode)
        return file_path
    return _write
