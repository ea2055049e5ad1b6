"""Content hashing for synchronized trees.

This module provides:
- Hash: content digest + optional unix permissions of one path
- HashMap: normalized relative path -> Hash
- compute_hash: streamed SHA-1 of a file or directory
- hashes_equal / hash_maps_equal: comparison with permission wildcards

Carriage-return bytes are stripped before hashing so that CRLF and LF
checkouts of the same file hash identically. A directory has no content,
so its digest depends only on its basename.
"""

from __future__ import annotations

import hashlib
import os
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

BLOCK_SIZE = 64 * 1024

# Windows translates every mode to 666/444, so permissions are meaningless there.
SUPPORTS_PERMISSIONS = sys.platform.startswith(("linux", "darwin"))


@dataclass(frozen=True)
class Hash:
    """Digest of a single file or directory.

    Attributes:
        checksum: Hex SHA-1 of the basename and CR-stripped contents.
        permissions: Unix permission bits (e.g. 0o644), or None when the
            platform that produced the hash doesn't support them.
    """

    checksum: str
    permissions: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Hash:
        """Create from the wire representation ({"sha1": ..., "permissions": ...})."""
        checksum = data.get("sha1", data.get("checksum"))
        if not isinstance(checksum, str):
            raise ValueError(f"invalid hash: {data!r}")
        permissions = data.get("permissions")
        return cls(checksum=checksum, permissions=int(permissions) if permissions is not None else None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        data: dict[str, Any] = {"sha1": self.checksum}
        if self.permissions is not None:
            data["permissions"] = self.permissions
        return data


HashMap = dict[str, Hash]


def hash_map_from_dict(data: dict[str, Any]) -> HashMap:
    """Parse a wire hash map."""
    return {path: Hash.from_dict(value) for path, value in data.items()}


def strip_cr(block: bytes) -> bytes:
    """Remove carriage-return bytes from a block."""
    if b"\r" not in block:
        return block
    return block.replace(b"\r", b"")


def compute_hash(path: Path) -> Hash:
    """Compute the Hash of a file or directory.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Absolute path to the file or directory.

    Returns:
        The Hash of the path.

    Raises:
        FileNotFoundError: If the path disappears before or while reading.
    """
    hasher = hashlib.sha1(usedforsecurity=False)
    hasher.update(os.fsencode(path.name))

    st = path.stat()
    permissions = stat.S_IMODE(st.st_mode) & 0o777 if SUPPORTS_PERMISSIONS else None

    if stat.S_ISDIR(st.st_mode):
        return Hash(checksum=hasher.hexdigest(), permissions=permissions)

    with open(path, "rb") as f:
        for block in iter(lambda: f.read(BLOCK_SIZE), b""):
            hasher.update(strip_cr(block))

    return Hash(checksum=hasher.hexdigest(), permissions=permissions)


def hashes_equal(path: str, a: Hash, b: Hash) -> bool:
    """Check whether two hashes describe the same content.

    A missing permissions value on either side is a wildcard, and
    directories never compare permissions.
    """
    if a.checksum != b.checksum:
        return False

    if path.endswith("/"):
        return True

    if a.permissions is None or b.permissions is None:
        return True

    return a.permissions == b.permissions


def hash_maps_equal(a: HashMap, b: HashMap) -> bool:
    """Check whether two hash maps describe the same tree."""
    if a.keys() != b.keys():
        return False
    return all(hashes_equal(path, a_hash, b[path]) for path, a_hash in a.items())
