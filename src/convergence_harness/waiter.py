"""Bounded polling for convergence, readiness and on-disk settling.

Every wait is a retry loop over an injected clock: production code uses
SystemClock, unit tests pass a fake whose sleep() only advances time.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import Timeouts
from .core import Snapshot
from .diffing import compare_snapshots
from .errors import ConvergenceTimeoutError, ReplicaAPIError, SnapshotError
from .ignore import IgnoreSpec
from .snapshot import scan_directory

logger = logging.getLogger(__name__)

IDLE_STATE = "idle"


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class WaitState(str, Enum):
    """States of a polling wait."""

    POLLING = "polling"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


@dataclass
class WaitOutcome:
    """How a wait ended."""

    state: WaitState
    polls: int = 0
    elapsed: float = 0.0
    pending: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state == WaitState.CONVERGED


class ConvergenceWaiter:
    """Polls replicas (or directories) until a condition holds or time runs out."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        timeout: float = 300.0,
        interval: float = 0.5,
        max_interval: float = 5.0,
        backoff: float = 1.5,
        ready_timeout: float = 120.0,
        settle_timeout: float = 30.0,
        settle_polls: int = 3,
    ):
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.interval = interval
        self.max_interval = max_interval
        self.backoff = backoff
        self.ready_timeout = ready_timeout
        self.settle_timeout = settle_timeout
        self.settle_polls = settle_polls

    @classmethod
    def from_timeouts(cls, timeouts: Timeouts, clock: Optional[Clock] = None) -> "ConvergenceWaiter":
        return cls(
            clock=clock,
            timeout=timeouts.convergence,
            interval=timeouts.poll_interval,
            max_interval=timeouts.max_poll_interval,
            backoff=timeouts.backoff,
            ready_timeout=timeouts.ready,
            settle_timeout=timeouts.settle,
            settle_polls=timeouts.settle_polls,
        )

    def poll(self, check: Callable[[], List[str]], timeout: float) -> WaitOutcome:
        """Run `check` until it reports nothing pending.

        The first check happens immediately, so a condition that already
        holds costs one poll and no sleep. Between polls the delay grows by
        `backoff` up to `max_interval`, and never overshoots the deadline.
        """
        start = self.clock.monotonic()
        delay = self.interval
        outcome = WaitOutcome(state=WaitState.POLLING)
        while outcome.state == WaitState.POLLING:
            outcome.polls += 1
            outcome.pending = check()
            outcome.elapsed = self.clock.monotonic() - start
            if not outcome.pending:
                outcome.state = WaitState.CONVERGED
            elif outcome.elapsed >= timeout:
                outcome.state = WaitState.TIMED_OUT
            else:
                self.clock.sleep(min(delay, timeout - outcome.elapsed))
                delay = min(delay * self.backoff, self.max_interval)
        return outcome

    # ============= Completion =============

    def stale_pairs(self, folder: str, replicas: Sequence) -> List[str]:
        """Every ordered (reporter, peer) pair not yet at zero outstanding."""
        stale = []
        for reporter in replicas:
            for peer in replicas:
                if peer is reporter:
                    continue
                label = f"{reporter.instance}->{peer.instance}"
                try:
                    outstanding = reporter.client.outstanding(folder, peer.device_id)
                except ReplicaAPIError as e:
                    logger.warning("Completion query %s for %s failed: %s", label, folder, e)
                    stale.append(f"{label} (unavailable)")
                    continue
                if outstanding > 0:
                    stale.append(f"{label} ({outstanding:.0f}%)")
        return stale

    def await_completion(self, folder: str, replicas: Sequence) -> WaitOutcome:
        """Block until every replica sharing `folder` reports every peer in sync.

        All pairs must be at zero outstanding in the same poll; one stale
        pair keeps the whole wait polling.

        Raises:
            ConvergenceTimeoutError: If the budget runs out first.
        """
        logger.info("Waiting for %s on replicas %s", folder, ", ".join(r.instance for r in replicas))
        outcome = self.poll(lambda: self.stale_pairs(folder, replicas), self.timeout)
        if not outcome.converged:
            raise ConvergenceTimeoutError(folder, self.timeout, outcome.pending)
        logger.info("Folder %s converged after %d poll(s), %.1fs", folder, outcome.polls, outcome.elapsed)
        return outcome

    # ============= Readiness =============

    def busy_folders(self, owned: Sequence[Tuple[object, str]]) -> List[str]:
        busy = []
        for replica, folder in owned:
            try:
                state = replica.client.folder_state(folder)
            except ReplicaAPIError as e:
                logger.warning("Status query for %s on %s failed: %s", folder, replica.instance, e)
                state = "unavailable"
            if state != IDLE_STATE:
                busy.append(f"{replica.instance}/{folder} ({state or 'unknown'})")
        return busy

    def await_ready(self, owned: Sequence[Tuple[object, str]]) -> WaitOutcome:
        """Block until every (replica, folder) pair reports its scan finished.

        Raises:
            ConvergenceTimeoutError: If a folder is still busy at the deadline.
        """
        outcome = self.poll(lambda: self.busy_folders(owned), self.ready_timeout)
        if not outcome.converged:
            raise ConvergenceTimeoutError("initial scan", self.ready_timeout, outcome.pending)
        return outcome

    # ============= Settling =============

    def await_settled(
        self,
        targets: Dict[str, Tuple[Path, Snapshot]],
        ignore: Optional[IgnoreSpec] = None,
        check_permissions: bool = True,
    ) -> WaitOutcome:
        """Poll directories until their contents stop changing.

        A directory is settled once it matches its expected snapshot, or once
        `settle_polls` consecutive reads returned identical contents. Reported
        completion can run slightly ahead of files landing on disk. Timing out
        is not an error: the following comparison reports whatever is still
        different.

        Args:
            targets: label -> (directory, expected snapshot)
            ignore: Exclusion patterns used for the scans.
        """
        previous: Dict[str, Snapshot] = {}
        stable: Dict[str, int] = {label: 0 for label in targets}
        matched: set = set()

        def check() -> List[str]:
            pending = []
            for label, (directory, expected) in targets.items():
                if label in matched:
                    continue
                try:
                    current = scan_directory(directory, ignore)
                except SnapshotError as e:
                    if not isinstance(e.__cause__, FileNotFoundError):
                        raise
                    logger.debug("%s changed while scanning: %s", label, e)
                    stable[label] = 0
                    previous.pop(label, None)
                    pending.append(label)
                    continue
                if compare_snapshots(current, expected, check_permissions).ok:
                    matched.add(label)
                    continue
                if label in previous and previous[label].entries == current.entries:
                    stable[label] += 1
                else:
                    stable[label] = 0
                previous[label] = current
                if stable[label] < self.settle_polls:
                    pending.append(label)
            return pending

        outcome = self.poll(check, self.settle_timeout)
        if not outcome.converged:
            logger.warning("Directories still changing after %.1fs: %s", outcome.elapsed, ", ".join(outcome.pending))
        return outcome
