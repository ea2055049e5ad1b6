"""Tests for content hashing."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from filesync.core.hashing import (
    SUPPORTS_PERMISSIONS,
    Hash,
    compute_hash,
    hash_map_from_dict,
    hash_maps_equal,
    hashes_equal,
    strip_cr,
)


class TestHash:
    """Tests for the Hash record."""

    def test_from_dict_sha1(self) -> None:
        """Should parse the wire representation."""
        h = Hash.from_dict({"sha1": "abc", "permissions": 420})
        assert h == Hash("abc", 0o644)

    def test_from_dict_without_permissions(self) -> None:
        """Permissions are optional."""
        assert Hash.from_dict({"sha1": "abc"}).permissions is None

    def test_from_dict_invalid(self) -> None:
        """A hash without a checksum is rejected."""
        with pytest.raises(ValueError):
            Hash.from_dict({"permissions": 420})

    def test_to_dict_round_trip(self) -> None:
        """to_dict output parses back to the same hash."""
        h = Hash("abc", 0o755)
        assert Hash.from_dict(h.to_dict()) == h

    def test_hash_map_from_dict(self) -> None:
        """Should parse every entry of a wire hash map."""
        hashes = hash_map_from_dict({"a.txt": {"sha1": "1"}, "dir/": {"sha1": "2"}})
        assert hashes == {"a.txt": Hash("1"), "dir/": Hash("2")}


class TestComputeHash:
    """Tests for compute_hash."""

    def test_crlf_and_lf_hash_the_same(self, tmp_path: Path) -> None:
        """Carriage returns don't affect the digest."""
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        lf = tmp_path / "a" / "file.txt"
        crlf = tmp_path / "b" / "file.txt"
        lf.write_bytes(b"one\ntwo\n")
        crlf.write_bytes(b"one\r\ntwo\r\n")

        assert compute_hash(lf).checksum == compute_hash(crlf).checksum

    def test_basename_is_part_of_digest(self, tmp_path: Path) -> None:
        """Same content under different names hashes differently."""
        (tmp_path / "a.txt").write_text("same")
        (tmp_path / "b.txt").write_text("same")

        assert compute_hash(tmp_path / "a.txt").checksum != compute_hash(tmp_path / "b.txt").checksum

    def test_content_changes_digest(self, tmp_path: Path) -> None:
        """Different content hashes differently."""
        path = tmp_path / "file.txt"
        path.write_text("one")
        before = compute_hash(path)
        path.write_text("two")

        assert compute_hash(path).checksum != before.checksum

    def test_directory_depends_on_basename_only(self, tmp_path: Path) -> None:
        """Two directories with the same name hash identically regardless of contents."""
        (tmp_path / "a" / "dir").mkdir(parents=True)
        (tmp_path / "b" / "dir").mkdir(parents=True)
        (tmp_path / "b" / "dir" / "child.txt").write_text("child")

        assert compute_hash(tmp_path / "a" / "dir").checksum == compute_hash(tmp_path / "b" / "dir").checksum

    @pytest.mark.skipif(not SUPPORTS_PERMISSIONS, reason="platform has no unix permissions")
    def test_permissions_recorded(self, tmp_path: Path) -> None:
        """Unix permission bits are part of the hash."""
        path = tmp_path / "script.sh"
        path.write_text("#!/bin/sh\n")
        os.chmod(path, 0o755)

        assert compute_hash(path).permissions == 0o755

    def test_missing_file(self, tmp_path: Path) -> None:
        """A vanished path raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            compute_hash(tmp_path / "missing.txt")

    def test_large_file_streamed(self, tmp_path: Path) -> None:
        """CRs split across read blocks are still stripped."""
        content = b"x" * (64 * 1024 - 1) + b"\r\n" + b"y" * 10
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        (tmp_path / "a" / "big").write_bytes(content)
        (tmp_path / "b" / "big").write_bytes(content.replace(b"\r", b""))

        assert compute_hash(tmp_path / "a" / "big").checksum == compute_hash(tmp_path / "b" / "big").checksum


class TestHashesEqual:
    """Tests for hash comparison."""

    def test_strip_cr(self) -> None:
        assert strip_cr(b"a\r\nb") == b"a\nb"
        assert strip_cr(b"plain") == b"plain"

    def test_different_checksums(self) -> None:
        assert not hashes_equal("a.txt", Hash("1"), Hash("2"))

    def test_missing_permissions_is_wildcard(self) -> None:
        """A side without permissions matches any permissions."""
        assert hashes_equal("a.txt", Hash("1", 0o644), Hash("1"))
        assert hashes_equal("a.txt", Hash("1"), Hash("1", 0o755))

    def test_permissions_compared_for_files(self) -> None:
        assert not hashes_equal("a.txt", Hash("1", 0o644), Hash("1", 0o755))

    def test_permissions_ignored_for_directories(self) -> None:
        assert hashes_equal("dir/", Hash("1", 0o700), Hash("1", 0o755))

    def test_hash_maps_equal(self) -> None:
        a = {"a.txt": Hash("1", 0o644), "dir/": Hash("2")}
        b = {"a.txt": Hash("1"), "dir/": Hash("2", 0o755)}
        assert hash_maps_equal(a, b)

    def test_hash_maps_with_different_paths(self) -> None:
        assert not hash_maps_equal({"a.txt": Hash("1")}, {"b.txt": Hash("1")})
