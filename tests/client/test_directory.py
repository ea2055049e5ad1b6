"""Tests for Directory and ignore rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from filesync.client.sync.directory import Directory, normalize_path, swallow_enoent
from filesync.client.sync.ignore import IgnorePatterns
from filesync.core.hashing import compute_hash


def write(root: Path, relative: str, content: str = "content") -> Path:
    """Create a file (and its parents) under root."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestIgnorePatterns:
    """Tests for IgnorePatterns."""

    def test_defaults(self) -> None:
        ignore = IgnorePatterns()
        assert ignore.should_ignore(".DS_Store")
        assert ignore.should_ignore("node_modules/")
        assert ignore.should_ignore("node_modules/react/index.js")
        assert ignore.should_ignore(".git/HEAD")
        assert not ignore.should_ignore("src/index.js")

    def test_negation(self) -> None:
        """A later negated pattern re-includes a path."""
        ignore = IgnorePatterns(["*.log", "!keep.log"])
        assert ignore.should_ignore("debug.log")
        assert not ignore.should_ignore("keep.log")

    def test_directory_only_pattern(self) -> None:
        """A trailing slash only matches directories."""
        ignore = IgnorePatterns(["build/"])
        assert ignore.should_ignore("build/")
        assert ignore.should_ignore("build/out.js")
        assert not ignore.should_ignore("build")

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = write(tmp_path, ".ignore", "# comment\n\n*.tmp\ncache/\n")
        ignore = IgnorePatterns()

        assert ignore.load_from_file(path) == 2
        assert ignore.should_ignore("a.tmp")
        assert ignore.patterns[-2:] == ["*.tmp", "cache/"]

    def test_load_missing_file(self, tmp_path: Path) -> None:
        assert IgnorePatterns().load_from_file(tmp_path / ".ignore") == 0

    def test_add_pattern_rebuilds_matcher(self) -> None:
        ignore = IgnorePatterns()
        assert not ignore.should_ignore("a.tmp")
        ignore.add_pattern("*.tmp")
        assert ignore.should_ignore("a.tmp")


class TestNormalize:
    """Tests for path normalization."""

    @pytest.mark.parametrize(
        ("path", "is_directory", "expected"),
        [
            ("a.txt", False, "a.txt"),
            ("a.txt/", False, "a.txt"),
            ("dir", True, "dir/"),
            ("dir//", True, "dir/"),
            ("a//b\\c.txt", False, "a/b/c.txt"),
            ("", True, ""),
        ],
    )
    def test_normalize_path(self, path: str, is_directory: bool, expected: str) -> None:
        assert normalize_path(path, is_directory) == expected

    def test_normalize_absolute(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path)
        assert directory.normalize(directory.path / "sub" / "a.txt", False) == "sub/a.txt"
        assert directory.normalize(directory.path / "sub", True) == "sub/"
        assert directory.normalize(directory.path, True) == ""

    def test_absolute_escaping_root(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path)
        with pytest.raises(ValueError):
            directory.absolute("..", "outside.txt")


class TestDirectoryIgnores:
    """Tests for Directory.ignores."""

    def test_root_never_ignored(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path)
        assert not directory.ignores("")
        assert not directory.ignores(directory.path)

    def test_outside_root_always_ignored(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path / "root")
        assert directory.ignores("../other.txt")
        assert directory.ignores(tmp_path / "other.txt")

    def test_ignore_file_rules(self, tmp_path: Path) -> None:
        write(tmp_path, ".ignore", "*.log\n")
        directory = Directory(tmp_path)
        assert directory.ignores("debug.log")
        assert not directory.ignores("debug.txt")

    def test_control_subtree_never_ignored(self, tmp_path: Path) -> None:
        write(tmp_path, ".ignore", ".gadget/\n*.js\n")
        directory = Directory(tmp_path)
        assert not directory.ignores(".gadget/client.js")

    def test_reload_ignore_file(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path)
        assert not directory.ignores("a.tmp")

        write(tmp_path, ".ignore", "*.tmp\n")
        directory.load_ignore_file()

        assert directory.ignores("a.tmp")


class TestDirectoryWalk:
    """Tests for walking and hashing."""

    def test_walk_depth_first_sorted(self, tmp_path: Path) -> None:
        write(tmp_path, "b.txt")
        write(tmp_path, "a/z.txt")
        write(tmp_path, "a/b/c.txt")
        directory = Directory(tmp_path)

        assert list(directory.walk()) == [
            ("a/", True),
            ("a/b/", True),
            ("a/b/c.txt", False),
            ("a/z.txt", False),
            ("b.txt", False),
        ]

    def test_walk_skips_ignored_directories(self, tmp_path: Path) -> None:
        write(tmp_path, "node_modules/pkg/index.js")
        write(tmp_path, "src/index.js")
        directory = Directory(tmp_path)

        assert [path for path, _ in directory.walk()] == ["src/", "src/index.js"]

    def test_walk_is_restartable(self, tmp_path: Path) -> None:
        write(tmp_path, "a.txt")
        directory = Directory(tmp_path)

        assert list(directory.walk()) == list(directory.walk())

    def test_walk_missing_root(self, tmp_path: Path) -> None:
        assert list(Directory(tmp_path / "missing").walk()) == []

    def test_hashes(self, tmp_path: Path) -> None:
        write(tmp_path, "dir/a.txt", "a")
        directory = Directory(tmp_path)

        hashes = directory.hashes()

        assert hashes == {
            "dir/": compute_hash(tmp_path / "dir"),
            "dir/a.txt": compute_hash(tmp_path / "dir" / "a.txt"),
        }

    def test_hashes_skip_bookkeeping(self, tmp_path: Path) -> None:
        """Bookkeeping written by filesync never shows up as a change."""
        write(tmp_path, ".gadget/sync.json", "{}")
        write(tmp_path, ".gadget/dev-lock.json", "{}")
        write(tmp_path, ".gadget/backup/old.txt")
        write(tmp_path, ".gadget/client/index.js")
        directory = Directory(tmp_path)

        assert sorted(directory.hashes()) == [".gadget/", ".gadget/client/", ".gadget/client/index.js"]

    def test_bookkeeping_walked_outside_hashing(self, tmp_path: Path) -> None:
        write(tmp_path, ".gadget/sync.json", "{}")
        directory = Directory(tmp_path)

        assert (".gadget/sync.json", False) in list(directory.walk())

    def test_has_files(self, tmp_path: Path) -> None:
        directory = Directory(tmp_path)
        assert not directory.has_files()

        write(tmp_path, ".gadget/sync.json", "{}")
        assert not directory.has_files()

        write(tmp_path, "a.txt")
        assert directory.has_files()

    def test_is_empty_or_nonexistent(self, tmp_path: Path) -> None:
        assert Directory(tmp_path / "missing").is_empty_or_nonexistent()
        assert Directory(tmp_path).is_empty_or_nonexistent()
        write(tmp_path, "a.txt")
        assert not Directory(tmp_path).is_empty_or_nonexistent()

    def test_swallow_enoent(self, tmp_path: Path) -> None:
        with swallow_enoent():
            (tmp_path / "missing").read_text()

        with pytest.raises(IsADirectoryError), swallow_enoent():
            tmp_path.read_text()
