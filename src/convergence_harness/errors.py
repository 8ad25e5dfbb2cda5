"""Custom exceptions for convergence-harness.

The taxonomy separates harness defects (setup errors, which abort a run),
failures of the system under test (convergence timeouts), and recoverable
comparison failures (snapshot mismatches).
"""


class HarnessError(RuntimeError):
    """Base class for all harness errors."""
    pass


# Setup Errors
class SetupError(HarnessError):
    """Fatal error while preparing or driving the cluster."""
    pass


class WorkspaceError(SetupError):
    """Working directory could not be prepared or cleaned."""
    pass


class GenerationError(SetupError):
    """File tree generation or mutation failed."""

    def __init__(self, directory: str, reason: str):
        self.directory = directory
        self.reason = reason
        super().__init__(f"File generation failed in {directory}: {reason}")


class SnapshotError(SetupError):
    """Directory contents could not be read."""

    def __init__(self, directory: str, reason: str):
        self.directory = directory
        self.reason = reason
        super().__init__(f"Cannot read directory {directory}: {reason}")


class MergeConflictError(SetupError):
    """Independently seeded trees produced the same path with different content."""

    def __init__(self, paths: list):
        self.paths = paths
        path_list = ", ".join(paths[:3])
        if len(paths) > 3:
            path_list += f" and {len(paths) - 3} more"
        super().__init__(
            f"Initial trees collide on {len(paths)} path(s) with differing content: {path_list}. "
            f"Use a different seed or merge with on_conflict='last-wins'."
        )


# Process Errors
class ReplicaStartError(SetupError):
    """A single replica failed to start."""

    def __init__(self, instance: str, reason: str):
        self.instance = instance
        self.reason = reason
        super().__init__(f"Replica {instance} failed to start: {reason}")


class ClusterStartError(SetupError):
    """Cluster startup failed; already started replicas were stopped."""

    def __init__(self, instance: str, reason: str, rolled_back: list):
        self.instance = instance
        self.reason = reason
        self.rolled_back = rolled_back
        stopped = ", ".join(rolled_back) if rolled_back else "none"
        super().__init__(
            f"Cluster startup failed at replica {instance}: {reason} "
            f"(stopped already started replicas: {stopped})"
        )


# Replica API Errors
class ReplicaAPIError(HarnessError):
    """REST call to a replica failed."""

    def __init__(self, instance: str, endpoint: str, reason: str):
        self.instance = instance
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Replica {instance} {endpoint}: {reason}")


class ReplicaUnavailableError(ReplicaAPIError):
    """Replica did not answer at all (connection refused or timeout)."""
    pass


# Test Failures
class ConvergenceTimeoutError(HarnessError):
    """Replicas did not report convergence within the wait budget."""

    def __init__(self, folder: str, timeout: float, stale: list):
        self.folder = folder
        self.timeout = timeout
        self.stale = stale
        pairs = ", ".join(stale[:5])
        if len(stale) > 5:
            pairs += f" and {len(stale) - 5} more"
        super().__init__(
            f"Folder '{folder}' did not converge within {timeout:.0f}s. "
            f"Still outstanding: {pairs}"
        )


class SnapshotMismatchError(HarnessError):
    """Actual directory contents differ from the expected snapshot."""

    def __init__(self, label: str, result):
        self.label = label
        self.result = result
        super().__init__(f"{label}: {result.describe()}")


# Configuration Errors
class ConfigError(HarnessError):
    """Harness configuration is missing or invalid."""
    pass
