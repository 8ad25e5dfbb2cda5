"""Tests for random tree generation and mutation."""

import os
import random
import stat

import pytest

from convergence_harness.diffing import compare_snapshots
from convergence_harness.errors import GenerationError
from convergence_harness.generator import (
    SeedSource,
    alter_files,
    append_preserving_mtime,
    generate_files,
    max_tree_size,
    random_name,
    write_marker_file,
)
from convergence_harness.snapshot import scan_directory

NOW = 1_700_000_000.0


@pytest.fixture
def source(seed_file):
    return SeedSource(seed_file)


class TestSeedSource:

    def test_wraps_around(self, tmp_path):
        path = tmp_path / "seed"
        path.write_bytes(b"abc")
        assert SeedSource(path).read(2, 7) == b"cabcabc"

    def test_missing(self, tmp_path):
        with pytest.raises(GenerationError, match="cannot read seed source"):
            SeedSource(tmp_path / "missing")

    def test_empty(self, tmp_path):
        path = tmp_path / "seed"
        path.write_bytes(b"")
        with pytest.raises(GenerationError, match="is empty"):
            SeedSource(path)


class TestGenerateFiles:

    def test_creates_count_files(self, tmp_path, source):
        created = generate_files(tmp_path / "out", 50, 10, source, rng=random.Random(1), now=NOW)

        assert len(created) == 50
        assert len(set(created)) == 50
        assert set(created) == set(scan_directory(tmp_path / "out").files)

    def test_layout(self, tmp_path, source):
        created = generate_files(tmp_path / "out", 30, 6, source, rng=random.Random(2), now=NOW)
        for relpath in created:
            parts = relpath.split("/")
            name = parts[-1]
            if name.startswith("."):
                # "." collapses, leaving <n[0:2]>/<n>
                assert parts == [name[0:2], name]
            else:
                assert parts == [name[0], name[0:2], name]
            assert len(name.lstrip(".")) == 16

    def test_dotfile_layout(self, tmp_path, source, monkeypatch):
        monkeypatch.setattr("convergence_harness.generator.DOTFILE_RATIO", 1.0)

        created = generate_files(tmp_path / "out", 10, 6, source, rng=random.Random(3), now=NOW)

        for relpath in created:
            first, name = relpath.split("/")
            assert name.startswith(".")
            assert first == name[0:2]
            assert (tmp_path / "out" / first / name).is_file()

    def test_deterministic(self, tmp_path, source):
        generate_files(tmp_path / "a", 20, 10, source, rng=random.Random(7), now=NOW)
        generate_files(tmp_path / "b", 20, 10, source, rng=random.Random(7), now=NOW)

        a = scan_directory(tmp_path / "a")
        b = scan_directory(tmp_path / "b")
        assert a.entries == b.entries

    def test_different_seeds_differ(self, tmp_path, source):
        a = generate_files(tmp_path / "a", 20, 10, source, rng=random.Random(1), now=NOW)
        b = generate_files(tmp_path / "b", 20, 10, source, rng=random.Random(2), now=NOW)
        assert not set(a) & set(b)

    def test_size_mode_and_mtime_bounds(self, tmp_path, source):
        size_exp = 8
        generate_files(tmp_path / "out", 40, size_exp, source, rng=random.Random(3), now=NOW)

        for e in scan_directory(tmp_path / "out").files.values():
            assert 1 <= e.size < 2 * (1 << (size_exp - 1))
            assert e.mode & stat.S_IRUSR
            assert e.mode <= 0o777
            assert NOW - 30 * 86400 < e.mtime <= NOW

    def test_total_size_bound(self, tmp_path, source):
        generate_files(tmp_path / "out", 25, 9, source, rng=random.Random(4), now=NOW)
        assert scan_directory(tmp_path / "out").total_size <= max_tree_size(25, 9)

    def test_some_dotfiles(self, tmp_path, source):
        created = generate_files(tmp_path / "out", 400, 2, source, rng=random.Random(5), now=NOW)
        dotfiles = [p for p in created if p.split("/")[-1].startswith(".")]
        assert 0 < len(dotfiles) < 60

    def test_content_comes_from_seed(self, tmp_path):
        path = tmp_path / "seed"
        path.write_bytes(b"Z")
        generate_files(tmp_path / "out", 5, 6, SeedSource(path), rng=random.Random(6), now=NOW)
        for f in (tmp_path / "out").rglob("*"):
            if f.is_file():
                assert set(f.read_bytes()) == {ord("Z")}

    def test_invalid_size_exp(self, tmp_path, source):
        with pytest.raises(ValueError):
            generate_files(tmp_path / "out", 1, 0, source)

    def test_zero_count(self, tmp_path, source):
        assert generate_files(tmp_path / "out", 0, 4, source) == []
        assert (tmp_path / "out").is_dir()

    def test_random_name(self):
        name = random_name(random.Random(0))
        assert len(name) == 16
        int(name, 16)


class TestAlterFiles:

    def _tree(self, tmp_path, source, count=200):
        directory = tmp_path / "tree"
        generate_files(directory, count, 8, source, rng=random.Random(10), now=NOW)
        (directory / "top-level-file").write_text("keep me")
        return directory

    def test_changes_tree(self, tmp_path, source):
        directory = self._tree(tmp_path, source)
        before = scan_directory(directory)

        report = alter_files(directory, source, rng=random.Random(11), now=NOW, new_files=25, size_exp=8)
        after = scan_directory(directory)

        assert len(report.added) == 25
        assert report.deleted and report.overwritten and report.truncated
        assert before.entries != after.entries
        for path in report.added:
            assert path in after
        for path in report.deleted:
            if not any(added.startswith(path + "/") for added in report.added):
                assert path not in after

    def test_top_level_never_deleted(self, tmp_path, source):
        directory = self._tree(tmp_path, source)
        top_level = {p.name for p in directory.iterdir()}

        for i in range(5):
            report = alter_files(directory, source, rng=random.Random(i), now=NOW, new_files=0, size_exp=4)
            assert all("/" in path for path in report.deleted)

        assert top_level <= {p.name for p in directory.iterdir()}

    def test_truncate_halves(self, tmp_path, source):
        directory = self._tree(tmp_path, source)
        before = scan_directory(directory)

        report = alter_files(directory, source, rng=random.Random(12), now=NOW, new_files=0, size_exp=4)

        for path in report.truncated:
            if path in report.deleted:
                continue
            assert (directory / path).stat().st_size == before.get(path).size // 2

    def test_deterministic(self, tmp_path, source):
        a = tmp_path / "a"
        b = tmp_path / "b"
        for d in (a, b):
            generate_files(d, 100, 8, source, rng=random.Random(20), now=NOW)
            alter_files(d, source, rng=random.Random(21), now=NOW, new_files=10, size_exp=8)
        assert compare_snapshots(scan_directory(a), scan_directory(b)).ok

    def test_read_only_file_is_altered(self, tmp_path, source):
        directory = tmp_path / "tree"
        target = directory / "a" / "ab" / "f"

        # Keep trying seeds until the single file is overwritten, truncated or appended
        for seed in range(100):
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                target.unlink()
            target.write_bytes(b"x" * 4096)
            os.chmod(target, 0o400)

            report = alter_files(directory, source, rng=random.Random(seed), new_files=0, size_exp=4)
            if report.overwritten or report.truncated or report.appended:
                assert os.stat(target).st_mode & stat.S_IWUSR
                return
        pytest.fail("file never altered")

    def test_report_str(self, tmp_path, source):
        directory = self._tree(tmp_path, source, count=10)
        report = alter_files(directory, source, rng=random.Random(1), new_files=2, size_exp=4)
        assert "2 added" in str(report)
        assert report.total >= 2


class TestAppendPreservingMtime:

    def test_mtime_kept_digest_changed(self, tmp_path):
        path = write_marker_file(tmp_path / "test-appendfile", "hello\n")
        os.utime(path, (NOW, NOW))
        before = scan_directory(tmp_path).get("test-appendfile")

        append_preserving_mtime(path, "more data\n")
        after = scan_directory(tmp_path).get("test-appendfile")

        assert path.read_text() == "hello\nmore data\n"
        assert after.mtime == before.mtime
        assert after.digest != before.digest
        assert after.mode == 0o644

    def test_missing_file(self, tmp_path):
        with pytest.raises(GenerationError):
            append_preserving_mtime(tmp_path / "missing", "x")
