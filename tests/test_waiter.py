"""Tests for convergence, readiness and settling waits."""

from types import SimpleNamespace

import pytest

from convergence_harness.config import Timeouts
from convergence_harness.core import Snapshot
from convergence_harness.errors import ConvergenceTimeoutError, ReplicaUnavailableError, SnapshotError
from convergence_harness.snapshot import scan_directory
from convergence_harness.waiter import ConvergenceWaiter, WaitState


class ScriptedClient:
    """Answers outstanding() from a per-pair script; the last value repeats."""

    def __init__(self, instance, script):
        self.instance = instance
        self.script = script
        self.calls = 0

    def outstanding(self, folder, device):
        self.calls += 1
        values = self.script.get(device, [0.0])
        value = values.pop(0) if len(values) > 1 else values[0]
        if isinstance(value, Exception):
            raise value
        return value


def replica(instance, script=None, states=None):
    client = ScriptedClient(instance, script or {})
    states = list(states or ["idle"])
    client.folder_state = lambda folder: states.pop(0) if len(states) > 1 else states[0]
    return SimpleNamespace(instance=instance, device_id=f"DEV-{instance}", client=client)


@pytest.fixture
def waiter(fake_clock):
    return ConvergenceWaiter(
        clock=fake_clock, timeout=60.0, interval=1.0, max_interval=4.0, backoff=2.0,
        ready_timeout=20.0, settle_timeout=10.0, settle_polls=2,
    )


class TestPoll:

    def test_already_done_costs_one_poll(self, waiter, fake_clock):
        outcome = waiter.poll(lambda: [], timeout=10)
        assert outcome.state == WaitState.CONVERGED
        assert outcome.polls == 1
        assert fake_clock.sleeps == []

    def test_backoff_is_capped(self, waiter, fake_clock):
        pending = iter([["x"]] * 6 + [[]])
        outcome = waiter.poll(lambda: next(pending), timeout=100)
        assert outcome.converged
        assert fake_clock.sleeps == [1.0, 2.0, 4.0, 4.0, 4.0, 4.0]

    def test_never_sleeps_past_deadline(self, waiter, fake_clock):
        outcome = waiter.poll(lambda: ["x"], timeout=5)
        assert outcome.state == WaitState.TIMED_OUT
        assert outcome.pending == ["x"]
        assert fake_clock.now == pytest.approx(5.0)
        assert fake_clock.sleeps == [1.0, 2.0, 2.0]

    def test_from_timeouts(self, fake_clock):
        waiter = ConvergenceWaiter.from_timeouts(Timeouts(convergence=12, settle_polls=7), clock=fake_clock)
        assert waiter.timeout == 12
        assert waiter.settle_polls == 7
        assert waiter.clock is fake_clock


class TestAwaitCompletion:

    def test_converged_cluster_returns_immediately(self, waiter, fake_clock):
        replicas = [replica("1"), replica("2"), replica("3")]

        outcome = waiter.await_completion("default", replicas)

        assert outcome.polls == 1
        assert fake_clock.sleeps == []
        # every ordered pair is asked
        assert [r.client.calls for r in replicas] == [2, 2, 2]

    def test_one_stale_pair_keeps_polling(self, waiter):
        replicas = [
            replica("1"),
            replica("2", {"DEV-3": [40.0, 40.0, 10.0, 0.0]}),
            replica("3"),
        ]

        outcome = waiter.await_completion("default", replicas)

        assert outcome.polls == 4

    def test_pairs_must_agree_in_same_poll(self, waiter):
        replicas = [
            replica("1", {"DEV-2": [5.0, 0.0]}),
            replica("2", {"DEV-1": [0.0, 5.0, 0.0]}),
        ]
        outcome = waiter.await_completion("s12", replicas)
        assert outcome.polls == 3

    def test_timeout_names_stale_pairs(self, waiter, fake_clock):
        replicas = [replica("2", {"DEV-3": [25.0]}), replica("3")]

        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            waiter.await_completion("s23", replicas)

        assert exc_info.value.folder == "s23"
        assert exc_info.value.stale == ["2->3 (25%)"]
        assert fake_clock.now == pytest.approx(60.0)

    def test_unavailable_replica_counts_as_stale(self, waiter):
        error = ReplicaUnavailableError("3", "/rest/db/completion", "refused")
        replicas = [replica("2"), replica("3", {"DEV-2": [error, 0.0]})]

        outcome = waiter.await_completion("s23", replicas)

        assert outcome.polls == 2

    def test_stale_pairs_labels(self, waiter):
        error = ReplicaUnavailableError("1", "/rest/db/completion", "refused")
        replicas = [replica("1", {"DEV-2": [error]}), replica("2", {"DEV-1": [12.4]})]
        assert waiter.stale_pairs("s12", replicas) == ["1->2 (unavailable)", "2->1 (12%)"]


class TestAwaitReady:

    def test_waits_for_idle(self, waiter):
        r1 = replica("1", states=["scanning", "scanning", "idle"])
        r2 = replica("2")
        outcome = waiter.await_ready([(r1, "default"), (r2, "default")])
        assert outcome.polls == 3

    def test_timeout(self, waiter):
        r1 = replica("1", states=["scanning"])
        with pytest.raises(ConvergenceTimeoutError) as exc_info:
            waiter.await_ready([(r1, "s12")])
        assert exc_info.value.stale == ["1/s12 (scanning)"]


class TestAwaitSettled:

    def test_matching_directory_is_done(self, waiter, tmp_path, write_file, fake_clock):
        write_file("dir/f", "x")
        expected = scan_directory(tmp_path / "dir")

        outcome = waiter.await_settled({"s1": (tmp_path / "dir", expected)})

        assert outcome.converged
        assert fake_clock.sleeps == []

    def test_stable_but_different_gives_up_early(self, waiter, tmp_path, write_file, fake_clock):
        write_file("expected/f", "x")
        write_file("actual/f", "y")
        expected = scan_directory(tmp_path / "expected")

        outcome = waiter.await_settled({"s2": (tmp_path / "actual", expected)})

        # first read, then settle_polls identical reads
        assert outcome.converged
        assert outcome.polls == 3
        assert fake_clock.now < 10.0

    def test_changing_directory_times_out_without_raising(self, waiter, tmp_path, write_file, fake_clock):
        write_file("expected/f", "x")
        actual = tmp_path / "actual"
        actual.mkdir()
        expected = scan_directory(tmp_path / "expected")
        counter = iter(range(1000))

        original_sleep = fake_clock.sleep

        def sleep_and_write(seconds):
            original_sleep(seconds)
            (actual / f"partial-{next(counter)}").write_text("busy")

        fake_clock.sleep = sleep_and_write

        outcome = waiter.await_settled({"s3": (actual, expected)})

        assert outcome.state == WaitState.TIMED_OUT
        assert outcome.pending == ["s3"]

    def test_file_vanishing_during_scan_is_still_settling(self, waiter, tmp_path, write_file, monkeypatch):
        write_file("dir/f", "x")
        expected = scan_directory(tmp_path / "dir")
        calls = []

        def flaky_scan(directory, ignore=None):
            calls.append(directory)
            if len(calls) == 1:
                try:
                    raise FileNotFoundError(2, "No such file or directory")
                except FileNotFoundError as e:
                    raise SnapshotError(str(directory), "f: No such file or directory") from e
            return scan_directory(directory, ignore)

        monkeypatch.setattr("convergence_harness.waiter.scan_directory", flaky_scan)

        outcome = waiter.await_settled({"s1": (tmp_path / "dir", expected)})

        assert outcome.converged
        assert len(calls) == 2

    def test_unreadable_directory_still_raises(self, waiter, tmp_path, monkeypatch):
        expected = Snapshot(root=str(tmp_path))

        def denied(directory, ignore=None):
            try:
                raise PermissionError(13, "Permission denied")
            except PermissionError as e:
                raise SnapshotError(str(directory), "Permission denied") from e

        monkeypatch.setattr("convergence_harness.waiter.scan_directory", denied)

        with pytest.raises(SnapshotError, match="Permission denied"):
            waiter.await_settled({"s1": (tmp_path, expected)})
