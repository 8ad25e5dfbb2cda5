"""Replica process lifecycle.

A cluster is started strictly in order and is never left half running:
if replica i fails, replicas 0..i-1 are stopped before the error reaches
the caller. `running_cluster` wraps start/stop in a context manager so
every exit path, including exceptions, stops every process.
"""

import logging
import os
import shutil
import socket
import subprocess
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from .client import ReplicaClient
from .config import HarnessConfig, LaunchConfig, ReplicaSpec, Timeouts
from .constants import REPLICA_LOG_FILE
from .errors import ClusterStartError, ReplicaAPIError, ReplicaStartError
from .waiter import Clock, SystemClock
from .workspace import TestWorkspace

logger = logging.getLogger(__name__)


class ReplicaState(str, Enum):
    """Lifecycle of a replica process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether something already listens on a TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return True
    return False


class ReplicaProcess:
    """One replica: its spec, OS process handle and REST client."""

    def __init__(
        self,
        spec: ReplicaSpec,
        home: Path,
        launch: LaunchConfig,
        timeouts: Timeouts,
        client: Optional[ReplicaClient] = None,
        popen: Callable = subprocess.Popen,
        clock: Optional[Clock] = None,
    ):
        self.spec = spec
        self.home = Path(home)
        self.launch = launch
        self.timeouts = timeouts
        self.client = client or ReplicaClient(
            spec.instance, spec.port, launch.api_key, timeout=timeouts.request
        )
        self.state = ReplicaState.NOT_STARTED
        self.process = None
        self.exit_code: Optional[int] = None
        self._popen = popen
        self._clock = clock or SystemClock()
        self._log = None
        self._device_id = spec.device_id

    def __repr__(self) -> str:
        return f"ReplicaProcess({self.instance!r}, port={self.port}, state={self.state.value})"

    @property
    def instance(self) -> str:
        return self.spec.instance

    @property
    def port(self) -> int:
        return self.spec.port

    @property
    def log_path(self) -> Path:
        return self.home / REPLICA_LOG_FILE

    @property
    def device_id(self) -> str:
        """Device identifier, asked from the running replica if not configured."""
        if self._device_id is None:
            self._device_id = self.client.device_id()
        return self._device_id

    @property
    def argv(self) -> List[str]:
        values = {"home": str(self.home), "port": self.port, "api_key": self.launch.api_key}
        args = [arg.format(**values) for arg in self.launch.args]
        return [self.launch.binary, *args, *self.spec.extra_args]

    def resolve_binary(self) -> str:
        """Absolute path of the replica binary.

        Raises:
            ReplicaStartError: If the binary cannot be found or executed.
        """
        binary = self.launch.binary
        if os.sep in binary or (os.altsep and os.altsep in binary):
            path = Path(binary).expanduser()
            if path.is_file() and os.access(path, os.X_OK):
                return str(path.resolve())
            raise ReplicaStartError(self.instance, f"binary not found: {binary}")
        found = shutil.which(binary)
        if found is None:
            raise ReplicaStartError(self.instance, f"binary not found: {binary} (not on PATH)")
        return found

    def start(self) -> None:
        """Spawn the process and wait until its API answers.

        Raises:
            ReplicaStartError: binary not found, port in use, process exited
                immediately, or API not ready in time. On this or any other
                exception the process is stopped before it propagates.
        """
        if self.state == ReplicaState.RUNNING:
            return
        binary = self.resolve_binary()
        if port_in_use(self.port):
            raise ReplicaStartError(self.instance, f"port {self.port} in use")

        argv = [binary, *self.argv[1:]]
        env = os.environ.copy()
        env.update(self.launch.env)
        try:
            self.home.mkdir(parents=True, exist_ok=True)
            self._log = self.log_path.open("ab")
            self.process = self._popen(
                argv,
                stdout=self._log,
                stderr=subprocess.STDOUT,
                env=env,
                cwd=str(self.home),
            )
        except OSError as e:
            self._close_log()
            raise ReplicaStartError(self.instance, f"cannot execute {binary}: {e}") from e

        self.state = ReplicaState.RUNNING
        self.exit_code = None
        logger.info("Started replica %s (pid %s, port %d)", self.instance, self.process.pid, self.port)
        try:
            self._await_api()
        except BaseException:
            self.stop()
            raise

    def _await_api(self) -> None:
        self._clock.sleep(self.timeouts.startup_grace)
        start = self._clock.monotonic()
        while True:
            code = self.process.poll()
            if code is not None:
                raise ReplicaStartError(
                    self.instance, f"process exited immediately (code {code}); see {self.log_path}"
                )
            if self.client.ping():
                return
            if self._clock.monotonic() - start >= self.timeouts.startup:
                raise ReplicaStartError(
                    self.instance, f"API on port {self.port} not ready after {self.timeouts.startup:.0f}s"
                )
            self._clock.sleep(self.timeouts.poll_interval)

    def stop(self) -> Optional[int]:
        """Stop the process; safe to call any number of times.

        Asks for a graceful shutdown over the API first, then terminates,
        then kills.

        Returns:
            The process exit code, or None if it never ran.
        """
        if self.state != ReplicaState.RUNNING:
            return self.exit_code

        if self.process.poll() is None:
            try:
                self.client.shutdown()
            except ReplicaAPIError as e:
                logger.debug("Graceful shutdown of %s failed, terminating: %s", self.instance, e)
            try:
                self.process.wait(timeout=self.timeouts.shutdown)
            except subprocess.TimeoutExpired:
                self.process.terminate()
                try:
                    self.process.wait(timeout=self.timeouts.shutdown)
                except subprocess.TimeoutExpired:
                    self.process.kill()
                    self.process.wait()

        self.exit_code = self.process.returncode
        self.state = ReplicaState.STOPPED
        self._close_log()
        logger.info("Stopped replica %s (exit code %s)", self.instance, self.exit_code)
        return self.exit_code

    def restart(self) -> None:
        """Stop and start again, e.g. to pick up a configuration change."""
        self.stop()
        self.start()

    def _close_log(self) -> None:
        if self._log is not None:
            self._log.close()
            self._log = None


def replica_factory(
    workspace: TestWorkspace,
    config: HarnessConfig,
    clock: Optional[Clock] = None,
) -> Callable[[ReplicaSpec], ReplicaProcess]:
    """Build ReplicaProcess objects homed in the workspace."""

    def make(spec: ReplicaSpec) -> ReplicaProcess:
        return ReplicaProcess(
            spec,
            workspace.home_dir(spec),
            config.launch,
            config.timeouts,
            clock=clock,
        )

    return make


def start_all(
    specs: Sequence[ReplicaSpec],
    factory: Callable[[ReplicaSpec], ReplicaProcess],
) -> List[ReplicaProcess]:
    """Start replicas in order, all or nothing.

    Raises:
        ClusterStartError: If any replica fails; the ones already started
            have been stopped by then.
    """
    started: List[ReplicaProcess] = []
    for spec in specs:
        replica = None
        try:
            replica = factory(spec)
            replica.start()
        except ReplicaStartError as e:
            rolled_back = [r.instance for r in reversed(started)]
            stop_all(list(reversed(started)))
            raise ClusterStartError(spec.instance, e.reason, rolled_back) from e
        except BaseException:
            pending = [replica] if replica is not None else []
            stop_all(pending + list(reversed(started)))
            raise
        started.append(replica)
    return started


def stop_all(replicas: Sequence[ReplicaProcess]) -> Dict[str, Optional[int]]:
    """Stop every replica, continuing past individual failures.

    Returns:
        Exit code per instance (None where stopping failed or it never ran).
    """
    codes: Dict[str, Optional[int]] = {}
    for replica in replicas:
        try:
            codes[replica.instance] = replica.stop()
        except Exception as e:
            logger.error("Failed to stop replica %s: %s", replica.instance, e)
            codes[replica.instance] = None
    return codes


@contextmanager
def running_cluster(
    specs: Sequence[ReplicaSpec],
    factory: Callable[[ReplicaSpec], ReplicaProcess],
) -> Iterator[List[ReplicaProcess]]:
    """Start all replicas and guarantee they are stopped on exit."""
    replicas = start_all(specs, factory)
    try:
        yield replicas
    finally:
        stop_all(replicas)
