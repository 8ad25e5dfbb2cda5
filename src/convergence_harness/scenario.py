"""Cluster scenario: generate, converge, compare, mutate, repeat.

Expected state is always read back from disk. Before the first round it
is the merge of the independently seeded trees; after every mutation
round it is the snapshot of each folder's source replica. Replicas must
converge on exactly that, with no missing or extra entries.
"""

import logging
import random
import time
from typing import Dict, List, Optional

from .config import FolderGroup, HarnessConfig
from .constants import APPEND_INITIAL, APPEND_MORE
from .core import RoundResult, ScenarioResult, Snapshot, VersioningConfig
from .diffing import assert_snapshots_equal, merge_snapshots
from .errors import ConvergenceTimeoutError, SetupError, SnapshotMismatchError
from .generator import (
    SeedSource,
    alter_files,
    append_preserving_mtime,
    generate_files,
    write_marker_file,
)
from .ignore import IgnoreSpec
from .process import ReplicaProcess, replica_factory, running_cluster
from .snapshot import scan_directory
from .utils import get_iso_timestamp
from .waiter import Clock, ConvergenceWaiter, SystemClock
from .workspace import TestWorkspace

logger = logging.getLogger(__name__)


class ClusterScenario:
    """Drives one run of the convergence scenario against a replica cluster."""

    def __init__(
        self,
        workspace: TestWorkspace,
        versioning: Optional[VersioningConfig] = None,
        factory=None,
        waiter: Optional[ConvergenceWaiter] = None,
        clock: Optional[Clock] = None,
        now: Optional[float] = None,
    ):
        self.workspace = workspace
        self.config: HarnessConfig = workspace.config
        self.versioning = versioning
        self.clock = clock or SystemClock()
        self.factory = factory or replica_factory(workspace, self.config, clock=self.clock)
        self.waiter = waiter or ConvergenceWaiter.from_timeouts(self.config.timeouts, clock=self.clock)
        self.ignore = IgnoreSpec(self.config.ignore)
        self.seed = self.config.seed if self.config.seed is not None else random.randrange(2 ** 32)
        self._now = now
        self._seed_source: Optional[SeedSource] = None

    def now(self) -> float:
        return time.time() if self._now is None else self._now

    def rng(self, *parts) -> random.Random:
        """Independent, reproducible generator per directory and round."""
        return random.Random(":".join(str(p) for p in (self.seed, *parts)))

    @property
    def seed_source(self) -> SeedSource:
        if self._seed_source is None:
            self._seed_source = SeedSource(self.workspace.seed_source)
        return self._seed_source

    def scan(self, group: FolderGroup, instance: str) -> Snapshot:
        return scan_directory(self.workspace.folder_dir(group, instance), self.ignore)

    # ============= Setup =============

    def setup_trees(self) -> Dict[str, Snapshot]:
        """Clean the workspace, generate initial trees and compute expected state.

        Returns:
            Expected snapshot per folder id.
        """
        logger.info("Cleaning %s", self.workspace.root)
        self.workspace.clean()
        self.workspace.prepare()

        logger.info(
            "Generating files (num_files=%d, file_size_exp=%d, seed=%d)",
            self.config.num_files, self.config.file_size_exp, self.seed,
        )
        now = self.now()
        for group in self.config.folders:
            for instance in group.seeded:
                directory = self.workspace.folder_dir(group, instance)
                generate_files(
                    directory,
                    self.config.num_files,
                    self.config.file_size_exp,
                    self.seed_source,
                    rng=self.rng(group.id, instance),
                    now=now,
                )

        marker = self.config.append_file
        if marker is not None:
            path = self.workspace.folder_dir(marker.folder, marker.replica) / marker.name
            write_marker_file(path, APPEND_INITIAL)

        return self.initial_expected()

    def initial_expected(self) -> Dict[str, Snapshot]:
        """Merge seeded trees of shared folders; copy singly seeded ones."""
        expected = {}
        for group in self.config.folders:
            snapshots = [self.scan(group, instance) for instance in group.seeded]
            if len(snapshots) == 1:
                expected[group.id] = snapshots[0]
            else:
                expected[group.id] = merge_snapshots(*snapshots, on_conflict=self.config.merge_conflicts)
            logger.info("Expected %s: %s", group.id, expected[group.id].summary())
        return expected

    def apply_versioning(self, replicas: Dict[str, ReplicaProcess]) -> None:
        """Hand the versioning policy to the configured replicas.

        Raises:
            SetupError: If a replica does not report the policy back.
        """
        if self.versioning is None:
            return
        folder = self.config.versioning_folder
        for instance in self.config.versioning_replicas:
            replica = replicas[instance]
            if replica.client.set_folder_versioning(folder, self.versioning):
                replica.restart()
            accepted = replica.client.folder_versioning(folder)
            if accepted.type != self.versioning.type:
                raise SetupError(
                    f"Replica {instance} reports versioning '{accepted.label}' for {folder}, "
                    f"expected '{self.versioning.label}'"
                )

    # ============= Rounds =============

    def rescan_all(self, replicas: Dict[str, ReplicaProcess]) -> None:
        for instance, replica in replicas.items():
            for group in self.config.folders_of(instance):
                replica.client.rescan(group.id)

    def await_convergence(self, replicas: Dict[str, ReplicaProcess]) -> None:
        for group in self.config.folders:
            members = [replicas[instance] for instance in group.members]
            self.waiter.await_completion(group.id, members)

    def compare_all(self, expected: Dict[str, Snapshot]) -> List[SnapshotMismatchError]:
        """Compare every member directory of every folder with its expected state."""
        targets = {}
        for group in self.config.folders:
            for instance, name in group.members.items():
                targets[name] = (self.workspace.folder_dir(group, instance), expected[group.id])

        self.waiter.await_settled(targets, self.ignore, self.config.check_permissions)

        failures = []
        for name, (directory, snapshot) in targets.items():
            try:
                assert_snapshots_equal(
                    scan_directory(directory, self.ignore),
                    snapshot,
                    label=name,
                    check_permissions=self.config.check_permissions,
                )
            except SnapshotMismatchError as e:
                logger.error("%s", e)
                failures.append(e)
        return failures

    def mutation_ignore(self, group: FolderGroup) -> IgnoreSpec:
        """Patterns left alone by alter_files; the append file only changes by its append."""
        marker = self.config.append_file
        if marker is None or marker.folder != group.id:
            return self.ignore
        return IgnoreSpec([*self.config.ignore, f"/{marker.name}"])

    def mutate(self, iteration: int) -> Dict[str, Snapshot]:
        """Alter every folder's source tree and return the new expected state."""
        now = self.now()
        for group in self.config.folders:
            directory = self.workspace.folder_dir(group, group.source)
            alter_files(
                directory,
                self.seed_source,
                rng=self.rng(group.id, "alter", iteration),
                now=now,
                new_files=self.config.alter_new_files,
                size_exp=self.config.alter_size_exp,
                ignore=self.mutation_ignore(group),
            )

        marker = self.config.append_file
        if marker is not None:
            path = self.workspace.folder_dir(marker.folder, marker.replica) / marker.name
            if path.exists():
                append_preserving_mtime(path, APPEND_MORE)

        return {
            group.id: self.scan(group, group.source)
            for group in self.config.folders
        }

    # ============= Run =============

    def run(self) -> ScenarioResult:
        """Run the whole scenario.

        Convergence timeouts and mismatches end the run as failures in the
        result; setup errors propagate. Replicas are stopped either way.
        """
        result = ScenarioResult(
            versioning=self.versioning.label if self.versioning else "unchanged",
            iterations_planned=self.config.iterations,
            started_at=get_iso_timestamp(),
        )
        logger.info(
            "Testing with num_files=%d, file_size_exp=%d, iterations=%d, versioning=%s",
            self.config.num_files, self.config.file_size_exp, self.config.iterations, result.versioning,
        )
        expected = self.setup_trees()

        with running_cluster(self.config.replicas, self.factory) as started:
            replicas = {replica.instance: replica for replica in started}
            for replica in started:
                logger.debug("Replica %s is device %s", replica.instance, replica.device_id)
            self.apply_versioning(replicas)

            try:
                logger.info("Waiting for startup scans...")
                self.waiter.await_ready([
                    (replicas[instance], group.id)
                    for group in self.config.folders
                    for instance in group.members
                ])
            except ConvergenceTimeoutError as e:
                logger.error("%s", e)
                result.failures.append(str(e))
                return self._finish(result)

            for iteration in range(self.config.iterations):
                round_result = RoundResult(iteration=iteration)
                result.rounds.append(round_result)

                logger.info("Round %d: forcing rescan...", iteration + 1)
                self.rescan_all(replicas)

                start = self.clock.monotonic()
                try:
                    self.await_convergence(replicas)
                except ConvergenceTimeoutError as e:
                    logger.error("%s", e)
                    result.failures.append(str(e))
                    break
                round_result.convergence_seconds = self.clock.monotonic() - start

                logger.info("Round %d: checking...", iteration + 1)
                start = self.clock.monotonic()
                failures = self.compare_all(expected)
                round_result.settle_seconds = self.clock.monotonic() - start
                round_result.compared = sorted(
                    name for group in self.config.folders for name in group.members.values()
                )
                if failures:
                    result.failures.extend(str(e) for e in failures)
                    break
                round_result.passed = True
                result.iterations_completed += 1

                if iteration + 1 < self.config.iterations:
                    logger.info("Round %d: altering...", iteration + 1)
                    expected = self.mutate(iteration)

        return self._finish(result)

    def _finish(self, result: ScenarioResult) -> ScenarioResult:
        result.finished_at = get_iso_timestamp()
        if result.passed:
            logger.info("Scenario passed (%d iterations)", result.iterations_completed)
        else:
            logger.error("Scenario failed after %d iteration(s)", result.iterations_completed)
        return result
